from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm.ai.client import get_chat_client
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, get_db
from estatecrm.crm.api import get_current_user
from estatecrm.crm.models import Deal, Lead, Notification
from estatecrm.crm.service import ActorUser
from estatecrm.main import app
from estatecrm.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="agent-1", roles={"agent"}, correlation_id=getattr(request.state, "correlation_id", None))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_chat_client] = lambda: None
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient) -> dict:
    response = client.post("/api/leads", json={"first_name": "Olivia", "last_name": "Garcia", "source": "website"})
    assert response.status_code == 201
    return response.json()


def _create_property(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "title": "Harbor Loft",
        "address": "8 Pier Rd",
        "city": "Seattle",
        "state": "WA",
        "property_type": "apartment",
        "price": "420000",
        "bedrooms": 2,
    }
    payload.update(overrides)
    response = client.post("/api/properties", json=payload)
    assert response.status_code == 201
    return response.json()


def _create_deal(client: TestClient, **overrides: object) -> dict:
    lead = _create_lead(client)
    prop = _create_property(client)
    payload: dict[str, object] = {
        "lead_id": lead["id"],
        "property_id": prop["id"],
        "deal_value": "415000",
        "commission": "12450",
    }
    payload.update(overrides)
    response = client.post("/api/deals", json=payload)
    assert response.status_code == 201
    return response.json()


def test_create_deal_requires_existing_lead_and_property(client: TestClient) -> None:
    prop = _create_property(client)
    response = client.post(
        "/api/deals",
        json={"lead_id": str(uuid.uuid4()), "property_id": prop["id"], "deal_value": "1000"},
    )
    assert response.status_code == 404
    assert response.json()["message"] == "lead not found"


def test_deal_status_rejects_unknown_value(client: TestClient) -> None:
    deal = _create_deal(client)
    response = client.patch(f"/api/deals/{deal['id']}/status", json={"status": "closed"})
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "deal_status_failed"
    assert "closed" in body["message"]


def test_deal_moves_through_pipeline_and_stamps_close_date(client: TestClient, db_session: Session) -> None:
    deal = _create_deal(client)

    for stage in ("inspection", "legal", "payment", "handover"):
        response = client.patch(f"/api/deals/{deal['id']}/status", json={"status": stage})
        assert response.status_code == 200
        assert response.json()["status"] == stage

    closed = client.get(f"/api/deals/{deal['id']}").json()
    assert closed["actual_close_date"] == datetime.now(timezone.utc).date().isoformat()

    reopened = client.patch(f"/api/deals/{deal['id']}/status", json={"status": "offer"})
    assert reopened.status_code == 409
    assert reopened.json()["code"] == "invalid_transition"

    handover = db_session.scalars(
        select(Notification).where(Notification.type == "deal_status_changed").order_by(Notification.created_at.desc())
    ).first()
    assert handover is not None
    assert handover.title == "Deal Closed Successfully"
    assert handover.message == "Deal with Olivia Garcia completed! Commission: $12,450"


def test_deal_status_falls_back_when_lead_is_gone(client: TestClient, db_session: Session) -> None:
    deal = _create_deal(client)
    row = db_session.get(Deal, uuid.UUID(deal["id"]))
    assert row is not None
    lead = db_session.get(Lead, row.lead_id)
    db_session.delete(lead)
    db_session.commit()

    response = client.patch(f"/api/deals/{deal['id']}/status", json={"status": "cancelled"})
    assert response.status_code == 200
    notification = db_session.scalars(
        select(Notification).where(Notification.type == "deal_status_changed")
    ).one()
    assert notification.message == "Deal with Unknown lead has been cancelled"


def test_list_deals_filters_by_status(client: TestClient) -> None:
    first = _create_deal(client)
    _create_deal(client)
    client.patch(f"/api/deals/{first['id']}/status", json={"status": "inspection"})

    inspection = client.get("/api/deals", params={"status": "inspection"}).json()
    assert [deal["id"] for deal in inspection] == [first["id"]]
    assert len(client.get("/api/deals").json()) == 2


def test_delete_deal(client: TestClient) -> None:
    deal = _create_deal(client)
    response = client.delete(f"/api/deals/{deal['id']}")
    assert response.status_code == 200
    assert response.json() == {"message": "Deal deleted successfully"}
    assert client.get(f"/api/deals/{deal['id']}").status_code == 404


def test_property_filters(client: TestClient) -> None:
    _create_property(client, title="Small Flat", price="250000", bedrooms=1)
    _create_property(client, title="Family Home", property_type="house", price="650000", bedrooms=4, city="Tacoma")

    by_bedrooms = client.get("/api/properties", params={"bedrooms": 3}).json()
    assert [item["title"] for item in by_bedrooms] == ["Family Home"]

    by_price = client.get("/api/properties", params={"max_price": 300000}).json()
    assert [item["title"] for item in by_price] == ["Small Flat"]

    by_city = client.get("/api/properties", params={"city": "taco"}).json()
    assert [item["title"] for item in by_city] == ["Family Home"]

    by_type = client.get("/api/properties", params={"property_type": "all"}).json()
    assert len(by_type) == 2


def test_property_status_transitions(client: TestClient, db_session: Session) -> None:
    prop = _create_property(client)

    sold = client.patch(f"/api/properties/{prop['id']}/status", json={"status": "sold"})
    assert sold.status_code == 200
    assert sold.json()["status"] == "sold"

    relisted = client.patch(f"/api/properties/{prop['id']}/status", json={"status": "available"})
    assert relisted.status_code == 409
    assert relisted.json()["code"] == "invalid_transition"

    notification = db_session.scalars(
        select(Notification).where(Notification.type == "property_status_changed")
    ).one()
    assert notification.title == "Property Sold"
    assert notification.message == '"Harbor Loft" has been sold successfully!'


def test_property_view_notifies_agent(client: TestClient) -> None:
    prop = _create_property(client)
    response = client.post(f"/api/properties/{prop['id']}/views", json={"viewer_name": "Sam Carter"})
    assert response.status_code == 201
    body = response.json()
    assert body["type"] == "property_viewed"
    assert body["message"] == 'Sam Carter viewed "Harbor Loft" - Consider following up'


def test_delete_property_referenced_by_deal_conflicts(client: TestClient) -> None:
    deal = _create_deal(client)
    response = client.delete(f"/api/properties/{deal['property_id']}")
    assert response.status_code == 409
    assert response.json()["code"] == "property_delete_failed"


def test_update_property_fields(client: TestClient) -> None:
    prop = _create_property(client)
    response = client.patch(
        f"/api/properties/{prop['id']}",
        json={"price": "399000", "features": ["balcony", "gym"], "status": "under_offer"},
    )
    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["price"]) == Decimal("399000")
    assert body["features"] == ["balcony", "gym"]
    assert body["status"] == "under_offer"


@pytest.mark.parametrize("field", ["title", "address", "price", "features", "images", "property_type"])
def test_update_property_refuses_null_for_required_field(client: TestClient, field: str) -> None:
    prop = _create_property(client)
    response = client.patch(f"/api/properties/{prop['id']}", json={field: None})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert client.get(f"/api/properties/{prop['id']}").json()[field] == prop[field]


def test_update_deal_refuses_null_value_but_clears_notes(client: TestClient) -> None:
    deal = _create_deal(client, notes="Buyer wants a quick close")

    rejected = client.patch(f"/api/deals/{deal['id']}", json={"deal_value": None})
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "validation_error"
    assert "deal_value cannot be null" in rejected.json()["details"][0]["msg"]

    cleared = client.patch(f"/api/deals/{deal['id']}", json={"notes": None})
    assert cleared.status_code == 200
    assert cleared.json()["notes"] is None
    assert Decimal(cleared.json()["deal_value"]) == Decimal("415000")
