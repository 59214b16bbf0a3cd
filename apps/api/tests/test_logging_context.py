from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm.ai.client import get_chat_client
from estatecrm.context import reset_correlation_id, set_correlation_id
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, get_db
from estatecrm.crm.api import get_current_user
from estatecrm.crm.models import Task
from estatecrm.crm.service import ActorUser
from estatecrm.crm.tasks import run_task_due_reminders
from estatecrm.logging import CorrelationIdFilter, JsonLogFormatter
from estatecrm.main import app
from estatecrm.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def session_factory() -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "estatecrm.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_status_transition_is_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    lead = client.post("/api/leads", json={"first_name": "Log", "last_name": "Lead"}).json()

    response = client.patch(
        f"/api/leads/{lead['id']}/status",
        json={"status": "contacted"},
        headers={"X-Correlation-Id": "corr-transition"},
    )
    assert response.status_code == 200

    assert any(
        getattr(record, "entity_type", None) == "lead"
        and getattr(record, "from_status", None) == "new"
        and getattr(record, "to_status", None) == "contacted"
        and getattr(record, "correlation_id", None) == "corr-transition"
        for record in caplog.records
    )


def test_logs_include_job_context_and_correlation_id(
    session_factory: sessionmaker,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    db_session.add(
        Task(title="Log reminder", due_date=datetime.now(timezone.utc) + timedelta(hours=2), created_by="agent-1")
    )
    db_session.commit()

    assert run_task_due_reminders(session_factory) == 1

    job_records = [record for record in caplog.records if record.name == "estatecrm.jobs"]
    assert job_records
    assert any(
        getattr(record, "job_type", None) == "TASK_DUE_REMINDERS"
        and str(getattr(record, "correlation_id", "")).startswith("job-")
        and record.getMessage() == "job.completed"
        for record in job_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    token = set_correlation_id("fmt-1")
    try:
        record = logging.makeLogRecord(
            {
                "name": "estatecrm.test",
                "levelno": logging.INFO,
                "levelname": "INFO",
                "msg": "lead.status_changed",
                "entity_type": "lead",
                "secret_value": "hidden",
                "error": "x" * 600,
            }
        )
        assert CorrelationIdFilter().filter(record)
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_correlation_id(token)

    assert payload["msg"] == "lead.status_changed"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["entity_type"] == "lead"
    assert "secret_value" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500
