from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm import events
from estatecrm.ai.client import get_chat_client
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, get_db
from estatecrm.crm.api import get_current_user
from estatecrm.crm.models import Activity, Notification
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
    events.published_events.clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="agent-1",
            email="agent@example.com",
            roles={"agent"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_chat_client] = lambda: None
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _lead_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "first_name": "Emma",
        "last_name": "Johnson",
        "email": "emma@example.com",
        "phone": "+1-555-0142",
        "budget": "450000",
        "budget_max": "600000",
        "preferred_locations": ["Austin"],
        "property_types": ["house"],
        "timeline": "short_term",
        "source": "referral",
    }
    payload.update(overrides)
    return payload


def _create_property(client: TestClient, title: str = "Sunset Villa") -> dict:
    response = client.post(
        "/api/properties",
        json={
            "title": title,
            "address": "12 Sunset Blvd",
            "city": "Austin",
            "state": "TX",
            "property_type": "house",
            "price": "550000",
            "bedrooms": 4,
        },
    )
    assert response.status_code == 201
    return response.json()


def test_create_lead_defaults_to_new_and_gets_scored(client: TestClient) -> None:
    response = client.post("/api/leads", json=_lead_payload(status="new"))
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "new"
    assert body["assigned_to"] == "agent-1"
    assert 0 <= body["score"] <= 100
    # complete contact, budget range, short-term timeline and a referral source
    assert body["score"] == 90

    fetched = client.get(f"/api/leads/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["email"] == "emma@example.com"
    assert fetched.json()["preferred_locations"] == ["Austin"]


def test_create_lead_without_status_defaults_to_new(client: TestClient) -> None:
    response = client.post("/api/leads", json={"first_name": "Liam", "last_name": "Ng"})
    assert response.status_code == 201
    assert response.json()["status"] == "new"


def test_create_lead_rejects_inverted_budget(client: TestClient) -> None:
    response = client.post("/api/leads", json=_lead_payload(budget="700000", budget_max="600000"))
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_create_lead_rejects_unknown_status(client: TestClient) -> None:
    response = client.post("/api/leads", json=_lead_payload(status="hot"))
    assert response.status_code == 400
    assert response.json()["code"] == "lead_create_failed"


def test_list_leads_filters_by_status_and_search(client: TestClient) -> None:
    first = client.post("/api/leads", json=_lead_payload()).json()
    client.post("/api/leads", json=_lead_payload(first_name="Noah", last_name="Brown", email="noah@example.com"))
    client.patch(f"/api/leads/{first['id']}/status", json={"status": "contacted"})

    contacted = client.get("/api/leads", params={"status": "contacted"})
    assert [lead["id"] for lead in contacted.json()] == [first["id"]]

    everyone = client.get("/api/leads", params={"status": "all"})
    assert len(everyone.json()) == 2

    searched = client.get("/api/leads", params={"search": "noah"})
    assert [lead["first_name"] for lead in searched.json()] == ["Noah"]


def test_lead_to_deal_flow_notifies_each_step(client: TestClient, db_session: Session) -> None:
    lead = client.post(
        "/api/leads", json=_lead_payload(budget="700000", budget_max="900000", source="website")
    ).json()
    assert 0 <= lead["score"] <= 100

    qualified = client.patch(f"/api/leads/{lead['id']}", json={"status": "qualified"})
    assert qualified.status_code == 200
    assert qualified.json()["status"] == "qualified"

    prop = _create_property(client)
    deal = client.post(
        "/api/deals",
        json={"lead_id": lead["id"], "property_id": prop["id"], "deal_value": "540000", "commission": "16200"},
    )
    assert deal.status_code == 201
    assert deal.json()["status"] == "offer"

    notifications = db_session.scalars(select(Notification).order_by(Notification.created_at.asc())).all()
    by_type = {item.type: item for item in notifications}
    assert by_type["lead_added"].title == "New Lead Added"
    assert by_type["lead_added"].message == "Emma Johnson submitted a new inquiry via website"
    assert by_type["lead_added"].action_url == f"/leads/{lead['id']}"
    assert by_type["lead_status_changed"].title == "Lead Qualified"
    assert "Emma Johnson" in by_type["lead_status_changed"].message
    assert "qualified" in by_type["lead_status_changed"].message
    assert by_type["deal_created"].message == 'Deal created for Emma Johnson on "Sunset Villa" worth $540,000'
    assert all(item.user_id == "agent-1" for item in notifications)

    activity_types = set(db_session.scalars(select(Activity.type)).all())
    assert {"lead_created", "status_change", "property_created", "deal_created"} <= activity_types

    event_types = [item["event_type"] for item in events.published_events]
    assert "crm.lead.created" in event_types
    assert "crm.lead.status_changed" in event_types
    assert "crm.deal.created" in event_types


def test_status_noop_has_no_side_effects(client: TestClient, db_session: Session) -> None:
    lead = client.post("/api/leads", json=_lead_payload()).json()
    before = len(db_session.scalars(select(Notification)).all())

    response = client.patch(f"/api/leads/{lead['id']}/status", json={"status": "new"})
    assert response.status_code == 200
    assert response.json()["status"] == "new"
    assert len(db_session.scalars(select(Notification)).all()) == before


def test_lead_status_rejects_moves_out_of_closed_won(client: TestClient) -> None:
    lead = client.post("/api/leads", json=_lead_payload()).json()
    won = client.patch(f"/api/leads/{lead['id']}/status", json={"status": "closed_won"})
    assert won.status_code == 200

    reopened = client.patch(f"/api/leads/{lead['id']}/status", json={"status": "contacted"})
    assert reopened.status_code == 409
    assert reopened.json()["code"] == "invalid_transition"

    unknown = client.patch(f"/api/leads/{lead['id']}/status", json={"status": "closed"})
    assert unknown.status_code == 400
    assert unknown.json()["code"] == "lead_status_failed"


def test_score_change_notifies_only_on_significant_increase(client: TestClient, db_session: Session) -> None:
    lead = client.post("/api/leads", json={"first_name": "Ava", "last_name": "Lee"}).json()
    assert lead["score"] == 30

    small = client.patch(f"/api/leads/{lead['id']}", json={"score": 45})
    assert small.status_code == 200
    assert db_session.scalars(select(Notification).where(Notification.type == "lead_score_changed")).all() == []

    big = client.patch(f"/api/leads/{lead['id']}", json={"score": 85})
    assert big.status_code == 200
    notifications = db_session.scalars(select(Notification).where(Notification.type == "lead_score_changed")).all()
    assert len(notifications) == 1
    assert notifications[0].title == "High-Value Lead Identified"
    assert notifications[0].message == "Ava Lee score increased from 45 to 85 - Priority follow-up recommended"

    lower = client.patch(f"/api/leads/{lead['id']}", json={"score": 60})
    assert lower.status_code == 200
    assert len(db_session.scalars(select(Notification).where(Notification.type == "lead_score_changed")).all()) == 1


def test_rescore_uses_heuristic_without_ai(client: TestClient) -> None:
    lead = client.post("/api/leads", json={"first_name": "Ava", "last_name": "Lee"}).json()
    client.patch(f"/api/leads/{lead['id']}", json={"score": 70})

    rescored = client.post(f"/api/leads/{lead['id']}/rescore")
    assert rescored.status_code == 200
    assert rescored.json()["score"] == 30


def test_delete_lead_referenced_by_deal_conflicts(client: TestClient) -> None:
    lead = client.post("/api/leads", json=_lead_payload()).json()
    prop = _create_property(client)
    client.post("/api/deals", json={"lead_id": lead["id"], "property_id": prop["id"], "deal_value": "500000"})

    blocked = client.delete(f"/api/leads/{lead['id']}")
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "lead_delete_failed"

    other = client.post("/api/leads", json=_lead_payload(first_name="Mia")).json()
    deleted = client.delete(f"/api/leads/{other['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "Lead deleted successfully"}
    assert client.get(f"/api/leads/{other['id']}").status_code == 404


def test_missing_lead_returns_not_found_envelope(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "corr-404"})
    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "lead_get_failed"
    assert body["message"] == "lead not found"
    assert body["correlation_id"] == "corr-404"


def test_follow_up_reminder_creates_notification(client: TestClient) -> None:
    lead = client.post("/api/leads", json=_lead_payload()).json()
    response = client.post(f"/api/leads/{lead['id']}/follow-up-reminder", json={"reminder_type": "viewing"})
    assert response.status_code == 201
    body = response.json()
    assert body["type"] == "follow_up"
    assert body["message"] == "Follow up on property viewing with Emma Johnson"
    assert body["metadata"]["follow_up_type"] == "viewing"


def test_leads_require_session_without_override(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            response = test_client.get("/api/leads")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"


@pytest.mark.parametrize("field", ["first_name", "last_name", "source", "preferred_locations", "property_types"])
def test_update_lead_refuses_null_for_required_field(client: TestClient, field: str) -> None:
    lead = client.post("/api/leads", json=_lead_payload()).json()

    response = client.patch(f"/api/leads/{lead['id']}", json={field: None})
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_error"
    assert f"{field} cannot be null" in body["details"][0]["msg"]

    unchanged = client.get(f"/api/leads/{lead['id']}").json()
    assert unchanged[field] == lead[field]


def test_update_lead_allows_clearing_optional_field(client: TestClient) -> None:
    lead = client.post("/api/leads", json=_lead_payload()).json()
    response = client.patch(f"/api/leads/{lead['id']}", json={"phone": None, "timeline": None})
    assert response.status_code == 200
    assert response.json()["phone"] is None
    assert response.json()["timeline"] is None
