from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm import events
from estatecrm.core.database import Base
from estatecrm.crm.models import Activity, Communication, Deal, Lead, Notification, Property, Task, User
from estatecrm.crm.seed import (
    DEMO_EMAIL,
    SAMPLE_COMMUNICATIONS,
    SAMPLE_DEALS,
    SAMPLE_LEADS,
    SAMPLE_PROPERTIES,
    SAMPLE_TASKS,
    WELCOME_TITLE,
    crm_seed_helper,
    seed_demo_workspace,
)


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
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def _count(session: Session, model: type) -> int:
    return int(session.scalar(select(func.count()).select_from(model)) or 0)


def test_seed_loads_sample_portfolio(db_session: Session) -> None:
    actor_user = crm_seed_helper.ensure_demo_user(db_session)
    summary = crm_seed_helper.seed_sample_data(db_session, actor_user)

    assert summary.leads == len(SAMPLE_LEADS)
    assert summary.properties == len(SAMPLE_PROPERTIES)
    assert summary.deals == len(SAMPLE_DEALS)
    assert summary.tasks == len(SAMPLE_TASKS)
    assert summary.communications == len(SAMPLE_COMMUNICATIONS)
    assert summary.notifications == 1

    assert _count(db_session, Lead) == len(SAMPLE_LEADS)
    assert _count(db_session, Property) == len(SAMPLE_PROPERTIES)
    assert _count(db_session, Deal) == len(SAMPLE_DEALS)
    assert _count(db_session, Task) == len(SAMPLE_TASKS)
    assert _count(db_session, Communication) == len(SAMPLE_COMMUNICATIONS)

    user = db_session.scalar(select(User).where(User.email == DEMO_EMAIL))
    assert user is not None
    assert user.id == actor_user.user_id
    assert all(lead.assigned_to == user.id for lead in db_session.scalars(select(Lead)).all())
    assert all(0 <= lead.score <= 100 for lead in db_session.scalars(select(Lead)).all())

    sold = db_session.scalar(select(Property).where(Property.title == "Charming Townhouse"))
    assert sold is not None and sold.status == "sold"


def test_seed_goes_through_services(db_session: Session) -> None:
    actor_user = crm_seed_helper.ensure_demo_user(db_session)
    crm_seed_helper.seed_sample_data(db_session, actor_user)

    notification_types = db_session.scalars(
        select(Notification.type).where(Notification.user_id == actor_user.user_id)
    ).all()
    assert notification_types.count("lead_added") == len(SAMPLE_LEADS)
    assert notification_types.count("deal_created") == len(SAMPLE_DEALS)
    assert notification_types.count("task_completed") == 1

    welcome = db_session.scalar(select(Notification).where(Notification.title == WELCOME_TITLE))
    assert welcome is not None
    assert welcome.action_url == "/dashboard"

    activity_types = set(db_session.scalars(select(Activity.type)).all())
    assert {"lead_created", "property_created", "deal_created", "task_completed"} <= activity_types

    event_types = {item["event_type"] for item in events.published_events}
    assert {"crm.lead.created", "crm.property.created", "crm.deal.created"} <= event_types


def test_seed_is_idempotent(db_session: Session) -> None:
    actor_user = crm_seed_helper.ensure_demo_user(db_session)
    crm_seed_helper.seed_sample_data(db_session, actor_user)
    notifications_before = _count(db_session, Notification)

    again = crm_seed_helper.seed_sample_data(db_session, actor_user)
    assert again.total == 0
    assert _count(db_session, Lead) == len(SAMPLE_LEADS)
    assert _count(db_session, Deal) == len(SAMPLE_DEALS)
    assert _count(db_session, Notification) == notifications_before

    assert crm_seed_helper.ensure_demo_user(db_session).user_id == actor_user.user_id
    assert _count(db_session, User) == 1


def test_seed_demo_workspace_uses_its_own_session(
    session_factory: sessionmaker,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    summary = seed_demo_workspace(session_factory)
    assert summary.leads == len(SAMPLE_LEADS)

    assert _count(db_session, Lead) == len(SAMPLE_LEADS)
    assert any(record.getMessage() == "seed.completed" for record in caplog.records)
    assert seed_demo_workspace(session_factory).total == 0
