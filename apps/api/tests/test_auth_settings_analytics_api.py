from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm.ai.client import get_chat_client
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, get_db
from estatecrm.crm.api import get_current_user
from estatecrm.crm.models import User
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
        return ActorUser(
            user_id="agent-1",
            roles={"agent"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_chat_client] = lambda: None
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def session_client(db_session: Session) -> Generator[TestClient, None, None]:
    """Client that authenticates through the real session cookie."""

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def agent(db_session: Session) -> User:
    user = User(id="agent-1", email="agent@example.com", first_name="Sam", last_name="Rivera")
    db_session.add(user)
    db_session.commit()
    return user


def _create_property(client: TestClient, title: str, price: str) -> dict:
    response = client.post(
        "/api/properties",
        json={
            "title": title,
            "address": "1 Main St",
            "city": "Austin",
            "state": "TX",
            "property_type": "house",
            "price": price,
        },
    )
    assert response.status_code == 201
    return response.json()


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "Estate CRM API", "environment": "local"}


def test_dev_login_sets_session_cookie(session_client: TestClient) -> None:
    response = session_client.post(
        "/api/login",
        json={"email": "Casey@Example.com", "first_name": "Casey", "last_name": "Nguyen"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == str(uuid.uuid5(uuid.NAMESPACE_URL, "estatecrm-user:casey@example.com"))
    assert body["first_name"] == "Casey"
    assert body["role"] == "agent"

    set_cookie = response.headers["set-cookie"]
    cookie_name = get_settings().session_cookie_name
    assert set_cookie.startswith(f"{cookie_name}=")
    assert "httponly" in set_cookie.lower()

    token = response.cookies[cookie_name]
    current = session_client.get("/api/auth/user", headers={"Cookie": f"{cookie_name}={token}"})
    assert current.status_code == 200
    assert current.json()["email"] == "Casey@Example.com"


def test_login_twice_updates_the_same_user(session_client: TestClient) -> None:
    first = session_client.post("/api/login", json={"email": "casey@example.com"}).json()
    second = session_client.post("/api/login", json={"email": "casey@example.com", "first_name": "Case"}).json()
    assert first["id"] == second["id"]
    assert second["first_name"] == "Case"


def test_dev_login_can_be_disabled(session_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEV_LOGIN_ENABLED", "false")
    get_settings.cache_clear()
    response = session_client.post("/api/login", json={"email": "casey@example.com"})
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_auth_user_requires_session(session_client: TestClient) -> None:
    response = session_client.get("/api/auth/user")
    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"


def test_logout_clears_cookie(session_client: TestClient) -> None:
    response = session_client.post("/api/logout")
    assert response.status_code == 200
    assert response.json() == {"message": "Logged out"}
    assert get_settings().session_cookie_name in response.headers["set-cookie"]


def test_profile_requires_known_user(client: TestClient) -> None:
    response = client.get("/api/settings/profile")
    assert response.status_code == 404
    assert response.json()["code"] == "settings_profile_failed"


def test_profile_update(client: TestClient, agent: User) -> None:
    response = client.patch("/api/settings/profile", json={"phone": "+1 512 555 0100", "first_name": "Samuel"})
    assert response.status_code == 200
    body = response.json()
    assert body["phone"] == "+1 512 555 0100"
    assert body["first_name"] == "Samuel"
    assert body["last_name"] == "Rivera"

    invalid = client.patch("/api/settings/profile", json={"email": "not-an-email"})
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "validation_error"


def test_notification_settings_merge_with_defaults(client: TestClient, agent: User) -> None:
    defaults = client.get("/api/settings/notifications").json()
    assert defaults["new_leads"] is True
    assert defaults["weekly_reports"] is False
    assert defaults["sms_notifications"] is False

    updated = client.patch("/api/settings/notifications", json={"weekly_reports": True}).json()
    assert updated["weekly_reports"] is True
    assert updated["new_leads"] is True

    again = client.patch("/api/settings/notifications", json={"new_leads": False}).json()
    assert again["weekly_reports"] is True
    assert again["new_leads"] is False
    assert client.get("/api/settings/notifications").json() == again


def test_preferences_merge_and_validate(client: TestClient, agent: User) -> None:
    defaults = client.get("/api/settings/preferences").json()
    assert defaults["theme"] == "dark"
    assert defaults["timezone"] == "america/new_york"
    assert defaults["currency"] == "usd"
    assert defaults["density"] == "comfortable"

    updated = client.patch("/api/settings/preferences", json={"theme": "light", "currency": "eur"}).json()
    assert updated["theme"] == "light"
    assert updated["currency"] == "eur"
    assert updated["density"] == "comfortable"

    rejected = client.patch("/api/settings/preferences", json={"theme": "neon"})
    assert rejected.status_code == 400


def test_dashboard_metrics(client: TestClient) -> None:
    lead = client.post("/api/leads", json={"first_name": "Emma", "last_name": "Johnson"}).json()
    sold = _create_property(client, "Sunset Villa", "550000")
    _create_property(client, "Harbor Loft", "420000")

    closed = client.post(
        "/api/deals",
        json={
            "lead_id": lead["id"],
            "property_id": sold["id"],
            "deal_value": "545000",
            "status": "payment",
            "commission": "12450",
        },
    )
    assert closed.status_code == 201
    open_deal = client.post(
        "/api/deals",
        json={"lead_id": lead["id"], "property_id": sold["id"], "deal_value": "500000", "commission": "9000"},
    )
    assert open_deal.status_code == 201

    response = client.get("/api/dashboard/metrics")
    assert response.status_code == 200
    body = response.json()
    assert body["total_leads"] == 1
    assert body["active_properties"] == 2
    assert body["active_deals"] == 2
    assert Decimal(str(body["total_revenue"])) == Decimal("12450")
    assert 0 < len(body["recent_activities"]) <= 5


def test_recent_activities_capped_at_five(client: TestClient) -> None:
    for index in range(7):
        client.post("/api/leads", json={"first_name": f"Lead{index}", "last_name": "Cap"})
    body = client.get("/api/dashboard/metrics").json()
    assert body["total_leads"] == 7
    assert len(body["recent_activities"]) == 5


def test_detailed_analytics(client: TestClient) -> None:
    qualified = client.post(
        "/api/leads",
        json={"first_name": "Emma", "last_name": "Johnson", "status": "qualified", "source": "referral"},
    ).json()
    client.post("/api/leads", json={"first_name": "Noah", "last_name": "Brown", "source": "website"})
    prop = _create_property(client, "Sunset Villa", "550000")
    client.post(
        "/api/deals",
        json={
            "lead_id": qualified["id"],
            "property_id": prop["id"],
            "deal_value": "500000",
            "status": "payment",
            "commission": "15000",
        },
    )
    task = client.post("/api/tasks", json={"title": "Call Emma"}).json()
    client.post("/api/tasks", json={"title": "Send brochure"})
    client.post(f"/api/tasks/{task['id']}/complete")

    response = client.get("/api/analytics/detailed")
    assert response.status_code == 200
    body = response.json()
    assert body["total_leads"] == 2
    assert body["conversion_rate"] == 50.0
    assert body["task_completion_rate"] == 50.0
    assert body["leads_by_source"] == {"referral": 1, "website": 1}
    assert body["deals_by_status"] == {"payment": 1}
    assert Decimal(str(body["average_deal_value"])) == Decimal("500000.00")
    assert [item["id"] for item in body["top_properties"]] == [prop["id"]]

    months = body["revenue_by_month"]
    assert len(months) == 6
    assert months[-1]["month"] == datetime.now(timezone.utc).strftime("%b %Y")
    assert Decimal(str(months[-1]["revenue"])) == Decimal("15000")
    assert all(Decimal(str(item["revenue"])) == 0 for item in months[:-1])


def test_detailed_analytics_empty(client: TestClient) -> None:
    body = client.get("/api/analytics/detailed").json()
    assert body["total_leads"] == 0
    assert body["conversion_rate"] == 0.0
    assert body["task_completion_rate"] == 0.0
    assert body["high_score_leads"] == []
