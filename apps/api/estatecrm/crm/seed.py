from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from estatecrm.core.database import SessionLocal
from estatecrm.crm.models import Communication, Deal, Lead, Notification, Property, Task
from estatecrm.crm.schemas import (
    CommunicationCreate,
    DealCreate,
    LeadCreate,
    NotificationCreate,
    PropertyCreate,
    TaskCreate,
)
from estatecrm.crm.service import (
    ActorUser,
    CommunicationService,
    DealService,
    LeadService,
    NotificationService,
    PropertyService,
    TaskService,
    UserService,
)
from estatecrm.logging import configure_logging

logger = logging.getLogger("estatecrm.seed")

DEMO_EMAIL = "demo@estatecrm.local"
WELCOME_TITLE = "Welcome to EstateCRM"

SAMPLE_LEADS: tuple[dict[str, Any], ...] = (
    {
        "first_name": "John",
        "last_name": "Smith",
        "email": "john.smith@example.com",
        "phone": "+1-555-0123",
        "source": "website",
        "status": "new",
        "budget": Decimal("500000"),
        "budget_max": Decimal("750000"),
        "preferred_locations": ["Downtown", "Midtown"],
        "property_types": ["condo", "apartment"],
        "timeline": "short_term",
        "notes": "Looking for modern condo with city views",
    },
    {
        "first_name": "Sarah",
        "last_name": "Johnson",
        "email": "sarah.j@example.com",
        "phone": "+1-555-0124",
        "source": "referral",
        "status": "qualified",
        "budget": Decimal("800000"),
        "budget_max": Decimal("1200000"),
        "preferred_locations": ["Suburb", "Waterfront"],
        "property_types": ["house", "townhouse"],
        "timeline": "medium_term",
        "notes": "Family of 4, needs good schools nearby",
    },
    {
        "first_name": "Mike",
        "last_name": "Chen",
        "email": "mike.chen@example.com",
        "phone": "+1-555-0125",
        "source": "facebook",
        "status": "contacted",
        "budget": Decimal("300000"),
        "budget_max": Decimal("450000"),
        "preferred_locations": ["Urban"],
        "property_types": ["studio", "apartment"],
        "timeline": "immediate",
        "notes": "First-time buyer, prefers move-in ready",
    },
    {
        "first_name": "Emma",
        "last_name": "Davis",
        "email": "emma.davis@example.com",
        "phone": "+1-555-0126",
        "source": "google",
        "status": "proposal_sent",
        "budget": Decimal("1500000"),
        "budget_max": Decimal("2000000"),
        "preferred_locations": ["Luxury District"],
        "property_types": ["penthouse", "condo"],
        "timeline": "short_term",
        "notes": "Seeking luxury penthouse with premium amenities",
    },
    {
        "first_name": "David",
        "last_name": "Wilson",
        "email": "david.wilson@example.com",
        "phone": "+1-555-0127",
        "source": "walk_in",
        "status": "nurturing",
        "budget": Decimal("600000"),
        "budget_max": Decimal("850000"),
        "preferred_locations": ["Suburb"],
        "property_types": ["house"],
        "timeline": "long_term",
        "notes": "Planning to move next year, wants single family home",
    },
)

SAMPLE_PROPERTIES: tuple[dict[str, Any], ...] = (
    {
        "title": "Modern Downtown Condo",
        "address": "123 Main Street, Unit 15A",
        "city": "New York",
        "state": "NY",
        "zip_code": "10001",
        "property_type": "condo",
        "price": Decimal("650000"),
        "bedrooms": 2,
        "bathrooms": Decimal("2"),
        "square_feet": 1200,
        "year_built": 2018,
        "description": "Modern condo with floor-to-ceiling windows and city views",
        "features": ["City View", "Modern Kitchen", "In-unit Laundry", "Gym"],
        "commission": Decimal("3"),
    },
    {
        "title": "Family Suburban Home",
        "address": "456 Oak Drive",
        "city": "Westchester",
        "state": "NY",
        "zip_code": "10583",
        "property_type": "house",
        "price": Decimal("950000"),
        "bedrooms": 4,
        "bathrooms": Decimal("3.5"),
        "square_feet": 2800,
        "lot_size": Decimal("0.5"),
        "year_built": 2010,
        "description": "Colonial home in a top-rated school district",
        "features": ["Large Yard", "Updated Kitchen", "Hardwood Floors", "Garage"],
        "commission": Decimal("2.5"),
    },
    {
        "title": "Luxury Penthouse Suite",
        "address": "999 Park Avenue, PH1",
        "city": "New York",
        "state": "NY",
        "zip_code": "10028",
        "property_type": "penthouse",
        "price": Decimal("1800000"),
        "bedrooms": 3,
        "bathrooms": Decimal("3.5"),
        "square_feet": 2500,
        "year_built": 2020,
        "description": "Penthouse with panoramic city views and premium finishes",
        "features": ["Panoramic Views", "Chef Kitchen", "Private Terrace", "Concierge"],
        "commission": Decimal("2"),
    },
    {
        "title": "Charming Townhouse",
        "address": "321 Maple Street",
        "city": "Brooklyn",
        "state": "NY",
        "zip_code": "11201",
        "property_type": "townhouse",
        "status": "sold",
        "price": Decimal("1100000"),
        "bedrooms": 3,
        "bathrooms": Decimal("2.5"),
        "square_feet": 1800,
        "year_built": 1920,
        "description": "Historic townhouse with modern updates",
        "features": ["Historic Charm", "Private Garden"],
        "commission": Decimal("3.5"),
    },
)

# (lead email, property address, status, deal value, commission)
SAMPLE_DEALS: tuple[tuple[str, str, str, Decimal, Decimal], ...] = (
    ("sarah.j@example.com", "456 Oak Drive", "legal", Decimal("935000"), Decimal("23375")),
    ("emma.davis@example.com", "999 Park Avenue, PH1", "offer", Decimal("1750000"), Decimal("35000")),
    ("mike.chen@example.com", "123 Main Street, Unit 15A", "payment", Decimal("640000"), Decimal("19200")),
)

# (title, lead email, type, priority, status, due in hours)
SAMPLE_TASKS: tuple[tuple[str, str, str, str, str, int], ...] = (
    ("Follow up with John Smith", "john.smith@example.com", "call", "high", "pending", 20),
    ("Schedule viewing for Sarah Johnson", "sarah.j@example.com", "visit", "medium", "in_progress", 48),
    ("Send penthouse brochure to Emma Davis", "emma.davis@example.com", "email", "urgent", "pending", 6),
    ("Collect pre-approval letter from Mike Chen", "mike.chen@example.com", "document", "medium", "completed", -24),
)

# (lead email, type, direction, subject, content)
SAMPLE_COMMUNICATIONS: tuple[tuple[str, str, str, str | None, str], ...] = (
    (
        "john.smith@example.com",
        "email",
        "outbound",
        "Downtown condo options",
        "Hi John, I have put together three downtown condos that match your budget. Happy to walk you through them.",
    ),
    (
        "sarah.j@example.com",
        "call",
        "outbound",
        "School district questions",
        "Discussed school ratings around Oak Drive. Sarah wants to visit this weekend.",
    ),
    (
        "emma.davis@example.com",
        "sms",
        "inbound",
        None,
        "Could we see the Park Avenue penthouse on Thursday?",
    ),
    (
        "mike.chen@example.com",
        "whatsapp",
        "outbound",
        None,
        "Pre-approval received, thanks Mike. Next step is the payment schedule.",
    ),
)


@dataclass
class SeedSummary:
    leads: int = 0
    properties: int = 0
    deals: int = 0
    tasks: int = 0
    communications: int = 0
    notifications: int = 0

    @property
    def total(self) -> int:
        return self.leads + self.properties + self.deals + self.tasks + self.communications + self.notifications


class CrmSeedHelper:
    """Loads the sample portfolio through the services, so the usual activities and notifications are written.

    Every row is looked up by a natural key first; running the helper twice creates nothing new.
    """

    def __init__(self) -> None:
        self._users = UserService()
        self._leads = LeadService()
        self._properties = PropertyService()
        self._deals = DealService()
        self._tasks = TaskService()
        self._communications = CommunicationService()
        self._notifications = NotificationService()

    def ensure_demo_user(self, session: Session, email: str = DEMO_EMAIL) -> ActorUser:
        user = self._users.upsert_dev_user(session, email=email, first_name="Demo", last_name="Agent")
        return ActorUser(user_id=user.id, email=user.email, roles={"agent"})

    def seed_sample_data(self, session: Session, actor_user: ActorUser, now: datetime | None = None) -> SeedSummary:
        now = now or datetime.now(timezone.utc)
        summary = SeedSummary()

        leads: dict[str, Any] = {}
        for sample in SAMPLE_LEADS:
            existing = session.scalar(select(Lead.id).where(Lead.email == sample["email"]).limit(1))
            if existing is None:
                existing = self._leads.create_lead(session, actor_user, LeadCreate(**sample), None).id
                summary.leads += 1
            leads[sample["email"]] = existing

        properties: dict[str, Any] = {}
        for sample in SAMPLE_PROPERTIES:
            existing = session.scalar(select(Property.id).where(Property.address == sample["address"]).limit(1))
            if existing is None:
                existing = self._properties.create_property(session, actor_user, PropertyCreate(**sample)).id
                summary.properties += 1
            properties[sample["address"]] = existing

        for lead_email, address, deal_status, value, commission in SAMPLE_DEALS:
            lead_id, property_id = leads[lead_email], properties[address]
            exists = session.scalar(
                select(Deal.id).where(Deal.lead_id == lead_id, Deal.property_id == property_id).limit(1)
            )
            if exists is not None:
                continue
            self._deals.create_deal(
                session,
                actor_user,
                DealCreate(
                    lead_id=lead_id,
                    property_id=property_id,
                    status=deal_status,
                    deal_value=value,
                    commission=commission,
                ),
            )
            summary.deals += 1

        for title, lead_email, task_type, priority, task_status, due_in_hours in SAMPLE_TASKS:
            if session.scalar(select(Task.id).where(Task.title == title).limit(1)) is not None:
                continue
            self._tasks.create_task(
                session,
                actor_user,
                TaskCreate(
                    title=title,
                    type=task_type,
                    priority=priority,
                    status=task_status,
                    due_date=now + timedelta(hours=due_in_hours),
                    lead_id=leads[lead_email],
                ),
            )
            summary.tasks += 1

        for lead_email, channel, direction, subject, content in SAMPLE_COMMUNICATIONS:
            lead_id = leads[lead_email]
            exists = session.scalar(
                select(Communication.id)
                .where(
                    Communication.user_id == actor_user.user_id,
                    Communication.lead_id == lead_id,
                    Communication.content == content,
                )
                .limit(1)
            )
            if exists is not None:
                continue
            self._communications.create_communication(
                session,
                actor_user,
                CommunicationCreate(
                    lead_id=lead_id, type=channel, direction=direction, subject=subject, content=content
                ),
            )
            summary.communications += 1

        welcomed = session.scalar(
            select(Notification.id)
            .where(Notification.user_id == actor_user.user_id, Notification.title == WELCOME_TITLE)
            .limit(1)
        )
        if welcomed is None:
            self._notifications.create_notification(
                session,
                actor_user,
                NotificationCreate(
                    type="system",
                    title=WELCOME_TITLE,
                    message="Sample leads, properties and deals are ready to explore",
                    action_url="/dashboard",
                ),
            )
            summary.notifications += 1

        logger.info("seed.completed", extra={"user_id": actor_user.user_id, "count": summary.total})
        return summary


crm_seed_helper = CrmSeedHelper()


def seed_demo_workspace(session_factory=SessionLocal, email: str = DEMO_EMAIL) -> SeedSummary:
    with session_factory() as session:
        actor_user = crm_seed_helper.ensure_demo_user(session, email)
        return crm_seed_helper.seed_sample_data(session, actor_user)


if __name__ == "__main__":
    configure_logging()
    seed_demo_workspace()
