from __future__ import annotations

import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from estatecrm.ai.client import get_chat_client
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, get_db
from estatecrm.crm.api import get_current_user
from estatecrm.crm.models import Task
from estatecrm.crm.service import ActorUser
from estatecrm.crm.tasks import run_task_due_reminders
from estatecrm.main import app
from estatecrm.middleware.rate_limit import reset_rate_limiter
from estatecrm.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel()
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/leads",
        json={"first_name": "Otel", "last_name": "Lead"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_ai_span_records_degraded_outcome(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/ai/score-lead",
        json={"first_name": "Otel", "last_name": "Lead"},
        headers={"X-Correlation-Id": "otel-ai-1"},
    )
    assert response.status_code == 200

    ai_spans = [span for span in span_exporter.get_finished_spans() if span.name == "ai.score_lead"]
    assert ai_spans
    assert ai_spans[-1].attributes.get("ai.outcome") == "degraded"
    assert ai_spans[-1].attributes.get("correlation_id") == "otel-ai-1"


def test_job_span_contains_job_type_and_correlation(
    session_factory: sessionmaker,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    db_session.add(Task(title="Span task", due_date=datetime.now(timezone.utc) + timedelta(hours=3), created_by="a"))
    db_session.commit()

    assert run_task_due_reminders(session_factory) == 1

    job_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.job.run"]
    assert job_spans
    assert any(
        span.attributes.get("job_type") == "TASK_DUE_REMINDERS"
        and str(span.attributes.get("correlation_id", "")).startswith("job-")
        and span.attributes.get("notified") == 1
        for span in job_spans
    )
