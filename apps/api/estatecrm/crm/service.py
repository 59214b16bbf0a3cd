from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.orm import Session

from estatecrm import events
from estatecrm.ai import service as ai_service
from estatecrm.ai.client import ChatCompletionClient
from estatecrm.ai.schemas import AIResult, LeadProfile, LeadScore, PropertyMatch, PropertyProfile
from estatecrm.core.config import get_settings
from estatecrm.crm.models import (
    Activity,
    Communication,
    Deal,
    Lead,
    LeadPropertyMatch,
    Notification,
    Property,
    Task,
    User,
)
from estatecrm.crm.notifications import as_utc, notification_dispatcher, utcnow
from estatecrm.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    CommunicationCreate,
    CommunicationRead,
    CommunicationStats,
    CommunicationUpdate,
    DashboardMetrics,
    DealCreate,
    DealRead,
    DealUpdate,
    DetailedAnalytics,
    LeadCreate,
    LeadPropertyMatchRead,
    LeadRead,
    LeadUpdate,
    LogCallRequest,
    MonthlyRevenue,
    NotificationCreate,
    NotificationRead,
    NotificationSettings,
    NotificationSettingsUpdate,
    ProfileUpdate,
    PropertyCreate,
    PropertyRead,
    PropertyUpdate,
    ScheduleAppointmentRequest,
    SendEmailRequest,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    UserPreferences,
    UserPreferencesUpdate,
    UserRead,
)
from estatecrm.crm.state import (
    ACTIVE_DEAL_STATUSES,
    CLOSED_DEAL_STATUSES,
    QUALIFIED_LEAD_STATUSES,
    deal_state_machine,
    lead_state_machine,
    property_state_machine,
    task_state_machine,
)


logger = logging.getLogger("estatecrm.crm")

UNKNOWN_LEAD_NAME = "Unknown lead"
UNKNOWN_PROPERTY_TITLE = "Unknown property"


@dataclass
class ActorUser:
    user_id: str
    email: str | None = None
    roles: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


def _log_transition(entity_type: str, entity_id: uuid.UUID, old_status: str, new_status: str, actor_user: ActorUser) -> None:
    logger.info(
        "status.changed",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "from_status": old_status,
            "to_status": new_status,
            "user_id": actor_user.user_id,
        },
    )


def lead_profile(lead: Lead) -> LeadProfile:
    return LeadProfile(
        first_name=lead.first_name,
        last_name=lead.last_name,
        email=lead.email,
        phone=lead.phone,
        budget=lead.budget,
        budget_max=lead.budget_max,
        preferred_locations=list(lead.preferred_locations or []),
        property_types=list(lead.property_types or []),
        source=lead.source,
        timeline=lead.timeline,
        status=lead.status,
        score=lead.score,
        notes=lead.notes,
    )


def property_profile(prop: Property) -> PropertyProfile:
    return PropertyProfile(
        title=prop.title,
        price=prop.price,
        city=prop.city,
        property_type=prop.property_type,
        bedrooms=prop.bedrooms,
        bathrooms=prop.bathrooms,
        square_feet=prop.square_feet,
        features=list(prop.features or []),
    )


class ActivityService:
    def record(
        self,
        session: Session,
        actor_user: ActorUser | None,
        *,
        activity_type: str,
        title: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        lead_id: uuid.UUID | None = None,
        property_id: uuid.UUID | None = None,
        deal_id: uuid.UUID | None = None,
    ) -> Activity:
        activity = Activity(
            type=activity_type,
            title=title,
            description=description,
            metadata_json=metadata,
            lead_id=lead_id,
            property_id=property_id,
            deal_id=deal_id,
            user_id=actor_user.user_id if actor_user is not None else None,
        )
        session.add(activity)
        return activity

    def create_activity(self, session: Session, actor_user: ActorUser, dto: ActivityCreate) -> ActivityRead:
        activity = self.record(
            session,
            actor_user,
            activity_type=dto.type,
            title=dto.title,
            description=dto.description,
            metadata=dto.metadata,
            lead_id=dto.lead_id,
            property_id=dto.property_id,
            deal_id=dto.deal_id,
        )
        session.commit()
        session.refresh(activity)
        return ActivityRead.model_validate(activity)

    def list_activities(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int,
    ) -> list[ActivityRead]:
        stmt: Select[tuple[Activity]] = select(Activity)
        if filters.get("lead_id"):
            stmt = stmt.where(Activity.lead_id == filters["lead_id"])
        if filters.get("property_id"):
            stmt = stmt.where(Activity.property_id == filters["property_id"])
        if filters.get("deal_id"):
            stmt = stmt.where(Activity.deal_id == filters["deal_id"])
        rows = session.scalars(stmt.order_by(Activity.created_at.desc()).limit(limit)).all()
        return [ActivityRead.model_validate(row) for row in rows]


activity_service = ActivityService()


class LeadService:
    entity_type = "lead"

    def create_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: LeadCreate,
        chat_client: ChatCompletionClient | None,
    ) -> LeadRead:
        initial_status = lead_state_machine.validate_state(dto.status)
        lead = Lead(
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            budget=dto.budget,
            budget_max=dto.budget_max,
            preferred_locations=list(dto.preferred_locations),
            property_types=list(dto.property_types),
            timeline=dto.timeline,
            source=dto.source,
            status=initial_status,
            notes=dto.notes,
            assigned_to=dto.assigned_to or actor_user.user_id,
        )
        scored = ai_service.score_lead(chat_client, lead_profile(lead))
        lead.score = scored.value.score
        session.add(lead)
        session.flush()

        activity_service.record(
            session,
            actor_user,
            activity_type="lead_created",
            title=f"New lead: {lead.full_name}",
            description=f"Lead created from {lead.source} with AI score {lead.score}",
            metadata={
                "ai_score": lead.score,
                "temperature": scored.value.temperature,
                "ai_outcome": scored.outcome,
            },
            lead_id=lead.id,
        )
        notification_dispatcher.on_lead_created(session, lead, actor_user.user_id)
        session.commit()
        session.refresh(lead)

        events.publish(
            events.build_envelope(
                "crm.lead.created",
                actor_user.user_id,
                {"lead_id": str(lead.id), "status": lead.status, "score": lead.score},
            )
        )
        return LeadRead.model_validate(lead)

    def list_leads(self, session: Session, actor_user: ActorUser, filters: dict[str, Any], limit: int) -> list[LeadRead]:
        stmt: Select[tuple[Lead]] = select(Lead)
        status_filter = filters.get("status")
        if status_filter and status_filter != "all":
            stmt = stmt.where(Lead.status == status_filter)
        if filters.get("assigned_to"):
            stmt = stmt.where(Lead.assigned_to == filters["assigned_to"])
        if filters.get("search"):
            pattern = f"%{filters['search']}%"
            stmt = stmt.where(
                or_(Lead.first_name.ilike(pattern), Lead.last_name.ilike(pattern), Lead.email.ilike(pattern))
            )
        rows = session.scalars(stmt.order_by(Lead.created_at.desc()).limit(limit)).all()
        return [LeadRead.model_validate(row) for row in rows]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._load(session, lead_id))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._load(session, lead_id)
        payload = dto.model_dump(exclude_unset=True)
        requested_status = payload.pop("status", None)
        requested_score = payload.pop("score", None)

        budget = payload.get("budget", lead.budget)
        budget_max = payload.get("budget_max", lead.budget_max)
        if budget is not None and budget_max is not None and budget_max < budget:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="budget_max must be greater than or equal to budget")

        if "email" in payload and payload["email"] is not None:
            payload["email"] = str(payload["email"])
        for key, value in payload.items():
            setattr(lead, key, value)

        old_status = lead.status
        status_changed = False
        if requested_status is not None:
            status_changed = lead_state_machine.transition(old_status, requested_status)
            if status_changed:
                self._apply_status(session, actor_user, lead, old_status, requested_status)

        if requested_score is not None and requested_score != lead.score:
            old_score = lead.score
            lead.score = requested_score
            notification_dispatcher.on_lead_score_changed(session, lead, old_score, requested_score, actor_user.user_id)

        lead.updated_at = utcnow()
        session.commit()
        session.refresh(lead)
        events.publish(
            events.build_envelope(
                "crm.lead.updated",
                actor_user.user_id,
                {"lead_id": str(lead.id), "changed_fields": sorted(dto.model_fields_set)},
            )
        )
        if status_changed:
            self._publish_status_changed(actor_user, lead, old_status)
        return LeadRead.model_validate(lead)

    def change_status(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, new_status: str) -> LeadRead:
        lead = self._load(session, lead_id)
        old_status = lead.status
        if not lead_state_machine.transition(old_status, new_status):
            return LeadRead.model_validate(lead)

        self._apply_status(session, actor_user, lead, old_status, new_status)
        lead.updated_at = utcnow()
        session.commit()
        session.refresh(lead)
        self._publish_status_changed(actor_user, lead, old_status)
        return LeadRead.model_validate(lead)

    def rescore_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        chat_client: ChatCompletionClient | None,
    ) -> tuple[LeadRead, AIResult[LeadScore]]:
        lead = self._load(session, lead_id)
        scored = ai_service.score_lead(chat_client, lead_profile(lead))
        old_score = lead.score
        new_score = scored.value.score
        if new_score != old_score:
            lead.score = new_score
            lead.updated_at = utcnow()
            activity_service.record(
                session,
                actor_user,
                activity_type="lead_rescored",
                title=f"Lead re-scored: {lead.full_name}",
                description=f"Score changed from {old_score} to {new_score}",
                metadata={"old_score": old_score, "new_score": new_score, "ai_outcome": scored.outcome},
                lead_id=lead.id,
            )
            notification_dispatcher.on_lead_score_changed(session, lead, old_score, new_score, actor_user.user_id)
        session.commit()
        session.refresh(lead)
        return LeadRead.model_validate(lead), scored

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._load(session, lead_id)
        deal_count = session.scalar(select(func.count()).select_from(Deal).where(Deal.lead_id == lead.id)) or 0
        if deal_count:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"lead is referenced by {deal_count} deal(s)",
            )
        session.delete(lead)
        session.commit()
        events.publish(events.build_envelope("crm.lead.deleted", actor_user.user_id, {"lead_id": str(lead_id)}))

    def list_matches(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[LeadPropertyMatchRead]:
        self._load(session, lead_id)
        rows = session.scalars(
            select(LeadPropertyMatch)
            .where(LeadPropertyMatch.lead_id == lead_id)
            .order_by(LeadPropertyMatch.match_score.desc(), LeadPropertyMatch.created_at.desc())
        ).all()
        return [LeadPropertyMatchRead.model_validate(row) for row in rows]

    def create_follow_up_reminder(
        self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, reminder_type: str
    ) -> NotificationRead:
        lead = self._load(session, lead_id)
        notification = notification_dispatcher.create_follow_up_reminder(session, lead, actor_user.user_id, reminder_type)
        session.commit()
        session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def _apply_status(self, session: Session, actor_user: ActorUser, lead: Lead, old_status: str, new_status: str) -> None:
        lead.status = new_status
        activity_service.record(
            session,
            actor_user,
            activity_type="status_change",
            title=f"Lead status changed: {lead.full_name}",
            description=f"Status changed from {old_status} to {new_status}",
            metadata={"old_status": old_status, "new_status": new_status},
            lead_id=lead.id,
        )
        notification_dispatcher.on_lead_status_changed(session, lead, old_status, new_status, actor_user.user_id)
        _log_transition(self.entity_type, lead.id, old_status, new_status, actor_user)

    def _publish_status_changed(self, actor_user: ActorUser, lead: Lead, old_status: str) -> None:
        events.publish(
            events.build_envelope(
                "crm.lead.status_changed",
                actor_user.user_id,
                {"lead_id": str(lead.id), "from_status": old_status, "to_status": lead.status},
            )
        )

    def _load(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise _not_found("lead")
        return lead


class PropertyService:
    entity_type = "property"

    def create_property(self, session: Session, actor_user: ActorUser, dto: PropertyCreate) -> PropertyRead:
        property_state_machine.validate_state(dto.status)
        prop = Property(**dto.model_dump())
        if prop.listing_agent is None:
            prop.listing_agent = actor_user.user_id
        session.add(prop)
        session.flush()
        activity_service.record(
            session,
            actor_user,
            activity_type="property_created",
            title=f"New property listed: {prop.title}",
            description=f"{prop.property_type} in {prop.city} listed at ${prop.price}",
            metadata={"price": str(prop.price), "city": prop.city},
            property_id=prop.id,
        )
        session.commit()
        session.refresh(prop)
        events.publish(
            events.build_envelope("crm.property.created", actor_user.user_id, {"property_id": str(prop.id)})
        )
        return PropertyRead.model_validate(prop)

    def list_properties(
        self, session: Session, actor_user: ActorUser, filters: dict[str, Any], limit: int
    ) -> list[PropertyRead]:
        stmt: Select[tuple[Property]] = select(Property)
        status_filter = filters.get("status")
        if status_filter and status_filter != "all":
            stmt = stmt.where(Property.status == status_filter)
        property_type = filters.get("property_type")
        if property_type and property_type != "all":
            stmt = stmt.where(Property.property_type == property_type)
        if filters.get("city"):
            stmt = stmt.where(Property.city.ilike(f"%{filters['city']}%"))
        if filters.get("min_price") is not None:
            stmt = stmt.where(Property.price >= filters["min_price"])
        if filters.get("max_price") is not None:
            stmt = stmt.where(Property.price <= filters["max_price"])
        if filters.get("bedrooms") is not None:
            stmt = stmt.where(Property.bedrooms >= filters["bedrooms"])
        rows = session.scalars(stmt.order_by(Property.created_at.desc()).limit(limit)).all()
        return [PropertyRead.model_validate(row) for row in rows]

    def get_property(self, session: Session, actor_user: ActorUser, property_id: uuid.UUID) -> PropertyRead:
        return PropertyRead.model_validate(self._load(session, property_id))

    def update_property(
        self, session: Session, actor_user: ActorUser, property_id: uuid.UUID, dto: PropertyUpdate
    ) -> PropertyRead:
        prop = self._load(session, property_id)
        payload = dto.model_dump(exclude_unset=True)
        requested_status = payload.pop("status", None)
        for key, value in payload.items():
            setattr(prop, key, value)

        old_status = prop.status
        status_changed = False
        if requested_status is not None:
            status_changed = property_state_machine.transition(old_status, requested_status)
            if status_changed:
                self._apply_status(session, actor_user, prop, old_status, requested_status)

        prop.updated_at = utcnow()
        session.commit()
        session.refresh(prop)
        if status_changed:
            self._publish_status_changed(actor_user, prop, old_status)
        return PropertyRead.model_validate(prop)

    def change_status(
        self, session: Session, actor_user: ActorUser, property_id: uuid.UUID, new_status: str
    ) -> PropertyRead:
        prop = self._load(session, property_id)
        old_status = prop.status
        if not property_state_machine.transition(old_status, new_status):
            return PropertyRead.model_validate(prop)

        self._apply_status(session, actor_user, prop, old_status, new_status)
        prop.updated_at = utcnow()
        session.commit()
        session.refresh(prop)
        self._publish_status_changed(actor_user, prop, old_status)
        return PropertyRead.model_validate(prop)

    def record_view(
        self, session: Session, actor_user: ActorUser, property_id: uuid.UUID, viewer_name: str
    ) -> NotificationRead:
        prop = self._load(session, property_id)
        activity_service.record(
            session,
            actor_user,
            activity_type="property_viewed",
            title=f"Property viewed: {prop.title}",
            description=f"{viewer_name} viewed the property",
            metadata={"viewer_name": viewer_name},
            property_id=prop.id,
        )
        notification = notification_dispatcher.on_property_viewed(session, prop, viewer_name, actor_user.user_id)
        session.commit()
        session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def add_image(self, session: Session, actor_user: ActorUser, property_id: uuid.UUID, object_path: str) -> PropertyRead:
        prop = self._load(session, property_id)
        images = list(prop.images or [])
        if object_path not in images:
            images.append(object_path)
        prop.images = images
        prop.updated_at = utcnow()
        session.commit()
        session.refresh(prop)
        return PropertyRead.model_validate(prop)

    def delete_property(self, session: Session, actor_user: ActorUser, property_id: uuid.UUID) -> None:
        prop = self._load(session, property_id)
        deal_count = session.scalar(select(func.count()).select_from(Deal).where(Deal.property_id == prop.id)) or 0
        if deal_count:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"property is referenced by {deal_count} deal(s)",
            )
        session.delete(prop)
        session.commit()
        events.publish(
            events.build_envelope("crm.property.deleted", actor_user.user_id, {"property_id": str(property_id)})
        )

    def _apply_status(
        self, session: Session, actor_user: ActorUser, prop: Property, old_status: str, new_status: str
    ) -> None:
        prop.status = new_status
        activity_service.record(
            session,
            actor_user,
            activity_type="status_change",
            title=f"Property status changed: {prop.title}",
            description=f"Status changed from {old_status} to {new_status}",
            metadata={"old_status": old_status, "new_status": new_status},
            property_id=prop.id,
        )
        notification_dispatcher.on_property_status_changed(session, prop, old_status, new_status, actor_user.user_id)
        _log_transition(self.entity_type, prop.id, old_status, new_status, actor_user)

    def _publish_status_changed(self, actor_user: ActorUser, prop: Property, old_status: str) -> None:
        events.publish(
            events.build_envelope(
                "crm.property.status_changed",
                actor_user.user_id,
                {"property_id": str(prop.id), "from_status": old_status, "to_status": prop.status},
            )
        )

    def _load(self, session: Session, property_id: uuid.UUID) -> Property:
        prop = session.get(Property, property_id)
        if prop is None:
            raise _not_found("property")
        return prop


class DealService:
    entity_type = "deal"

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        deal_state_machine.validate_state(dto.status)
        lead = session.get(Lead, dto.lead_id)
        if lead is None:
            raise _not_found("lead")
        prop = session.get(Property, dto.property_id)
        if prop is None:
            raise _not_found("property")

        payload = dto.model_dump()
        payload["assigned_to"] = dto.assigned_to or actor_user.user_id
        deal = Deal(**payload)
        session.add(deal)
        session.flush()

        activity_service.record(
            session,
            actor_user,
            activity_type="deal_created",
            title=f"New deal: {lead.full_name}",
            description=f'Deal created for "{prop.title}"',
            metadata={"deal_value": str(deal.deal_value), "status": deal.status},
            lead_id=lead.id,
            property_id=prop.id,
            deal_id=deal.id,
        )
        notification_dispatcher.on_deal_created(session, deal, lead.full_name, prop.title, actor_user.user_id)
        session.commit()
        session.refresh(deal)
        events.publish(
            events.build_envelope(
                "crm.deal.created",
                actor_user.user_id,
                {"deal_id": str(deal.id), "lead_id": str(deal.lead_id), "property_id": str(deal.property_id)},
            )
        )
        return DealRead.model_validate(deal)

    def list_deals(self, session: Session, actor_user: ActorUser, filters: dict[str, Any]) -> list[DealRead]:
        stmt: Select[tuple[Deal]] = select(Deal)
        status_filter = filters.get("status")
        if status_filter and status_filter != "all":
            stmt = stmt.where(Deal.status == status_filter)
        if filters.get("assigned_to"):
            stmt = stmt.where(Deal.assigned_to == filters["assigned_to"])
        rows = session.scalars(stmt.order_by(Deal.created_at.desc())).all()
        return [DealRead.model_validate(row) for row in rows]

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self._load(session, deal_id))

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = self._load(session, deal_id)
        for key, value in dto.model_dump(exclude_unset=True).items():
            setattr(deal, key, value)
        deal.updated_at = utcnow()
        session.commit()
        session.refresh(deal)
        return DealRead.model_validate(deal)

    def change_status(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, new_status: str) -> DealRead:
        deal = self._load(session, deal_id)
        old_status = deal.status
        if not deal_state_machine.transition(old_status, new_status):
            return DealRead.model_validate(deal)

        deal.status = new_status
        if new_status == "handover" and deal.actual_close_date is None:
            deal.actual_close_date = utcnow().date()
        deal.updated_at = utcnow()

        lead = session.get(Lead, deal.lead_id)
        prop = session.get(Property, deal.property_id)
        lead_name = lead.full_name if lead is not None else UNKNOWN_LEAD_NAME
        property_title = prop.title if prop is not None else UNKNOWN_PROPERTY_TITLE
        activity_service.record(
            session,
            actor_user,
            activity_type="status_change",
            title=f"Deal status changed: {lead_name}",
            description=f"Status changed from {old_status} to {new_status}",
            metadata={"old_status": old_status, "new_status": new_status},
            lead_id=deal.lead_id,
            property_id=deal.property_id,
            deal_id=deal.id,
        )
        notification_dispatcher.on_deal_status_changed(
            session, deal, old_status, new_status, lead_name, property_title, actor_user.user_id
        )
        _log_transition(self.entity_type, deal.id, old_status, new_status, actor_user)
        session.commit()
        session.refresh(deal)
        events.publish(
            events.build_envelope(
                "crm.deal.status_changed",
                actor_user.user_id,
                {"deal_id": str(deal.id), "from_status": old_status, "to_status": new_status},
            )
        )
        return DealRead.model_validate(deal)

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        deal = self._load(session, deal_id)
        session.delete(deal)
        session.commit()
        events.publish(events.build_envelope("crm.deal.deleted", actor_user.user_id, {"deal_id": str(deal_id)}))

    def _load(self, session: Session, deal_id: uuid.UUID) -> Deal:
        deal = session.get(Deal, deal_id)
        if deal is None:
            raise _not_found("deal")
        return deal


class TaskService:
    entity_type = "task"

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        task_state_machine.validate_state(dto.status)
        payload = dto.model_dump()
        payload["assigned_to"] = dto.assigned_to or actor_user.user_id
        task = Task(**payload, created_by=actor_user.user_id)
        session.add(task)
        if task.status == "completed":
            session.flush()
            self._mark_completed(session, actor_user, task)
        session.commit()
        session.refresh(task)
        return TaskRead.model_validate(task)

    def list_tasks(self, session: Session, actor_user: ActorUser, filters: dict[str, Any]) -> list[TaskRead]:
        stmt: Select[tuple[Task]] = select(Task)
        status_filter = filters.get("status")
        if status_filter and status_filter != "all":
            stmt = stmt.where(Task.status == status_filter)
        if filters.get("assigned_to"):
            stmt = stmt.where(Task.assigned_to == filters["assigned_to"])
        if filters.get("lead_id"):
            stmt = stmt.where(Task.lead_id == filters["lead_id"])
        priority = filters.get("priority")
        if priority and priority != "all":
            stmt = stmt.where(Task.priority == priority)
        rows = session.scalars(stmt.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.created_at.asc())).all()
        return [TaskRead.model_validate(row) for row in rows]

    def get_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        return TaskRead.model_validate(self._load(session, task_id))

    def update_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = self._load(session, task_id)
        payload = dto.model_dump(exclude_unset=True)
        requested_status = payload.pop("status", None)
        for key, value in payload.items():
            setattr(task, key, value)

        if requested_status is not None:
            old_status = task.status
            if task_state_machine.transition(old_status, requested_status):
                if requested_status == "completed":
                    self._mark_completed(session, actor_user, task)
                else:
                    task.status = requested_status
                    if old_status == "completed":
                        task.completed_at = None
                _log_transition(self.entity_type, task.id, old_status, requested_status, actor_user)

        task.updated_at = utcnow()
        session.commit()
        session.refresh(task)
        return TaskRead.model_validate(task)

    def complete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        task = self._load(session, task_id)
        if not task_state_machine.transition(task.status, "completed"):
            return TaskRead.model_validate(task)

        old_status = task.status
        self._mark_completed(session, actor_user, task)
        task.updated_at = utcnow()
        _log_transition(self.entity_type, task.id, old_status, "completed", actor_user)
        session.commit()
        session.refresh(task)
        events.publish(
            events.build_envelope("crm.task.completed", actor_user.user_id, {"task_id": str(task.id)})
        )
        return TaskRead.model_validate(task)

    def delete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> None:
        task = self._load(session, task_id)
        session.delete(task)
        session.commit()

    def send_due_reminders(self, session: Session, actor_user: ActorUser | None, now: datetime | None = None) -> int:
        """Emit one ``task_due`` notification per open task due inside the reminder window.

        A task is reminded once; rescheduling it makes it eligible again.
        """
        reference = as_utc(now or utcnow())
        horizon = reference + timedelta(hours=get_settings().task_due_window_hours)
        candidates = session.scalars(
            select(Task).where(Task.status != "completed", Task.due_date.is_not(None)).order_by(Task.due_date.asc())
        ).all()

        notified = 0
        for task in candidates:
            due = as_utc(task.due_date)  # type: ignore[arg-type]
            if due < reference or due > horizon:
                continue
            recipient = task.assigned_to or task.created_by or (actor_user.user_id if actor_user else None)
            if recipient is None:
                logger.warning("task.reminder_skipped", extra={"entity_type": "task", "entity_id": str(task.id)})
                continue
            if self._already_reminded(session, task):
                continue
            notification_dispatcher.on_task_due_soon(session, task, recipient, now=reference)
            notified += 1

        session.commit()
        logger.info("task.reminders_sent", extra={"count": notified})
        return notified

    def _already_reminded(self, session: Session, task: Task) -> bool:
        latest = session.scalar(
            select(func.max(Notification.created_at)).where(
                Notification.type == "task_due",
                Notification.entity_id == str(task.id),
            )
        )
        return latest is not None and as_utc(latest) >= as_utc(task.updated_at)

    def _mark_completed(self, session: Session, actor_user: ActorUser, task: Task) -> None:
        task.status = "completed"
        if task.completed_at is None:
            task.completed_at = utcnow()
        activity_service.record(
            session,
            actor_user,
            activity_type="task_completed",
            title=f"Task completed: {task.title}",
            description=task.description,
            metadata={"priority": task.priority, "type": task.type},
            lead_id=task.lead_id,
            property_id=task.property_id,
            deal_id=task.deal_id,
        )
        notification_dispatcher.on_task_completed(session, task, task.assigned_to or actor_user.user_id)

    def _load(self, session: Session, task_id: uuid.UUID) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise _not_found("task")
        return task


class NotificationService:
    def list_notifications(
        self, session: Session, actor_user: ActorUser, is_read: bool | None, limit: int
    ) -> list[NotificationRead]:
        stmt: Select[tuple[Notification]] = select(Notification).where(Notification.user_id == actor_user.user_id)
        if is_read is not None:
            stmt = stmt.where(Notification.is_read.is_(is_read))
        rows = session.scalars(stmt.order_by(Notification.created_at.desc()).limit(limit)).all()
        return [NotificationRead.model_validate(row) for row in rows]

    def create_notification(self, session: Session, actor_user: ActorUser, dto: NotificationCreate) -> NotificationRead:
        notification = notification_dispatcher.emit(
            session,
            user_id=actor_user.user_id,
            notification_type=dto.type,
            title=dto.title,
            message=dto.message,
            action_url=dto.action_url,
            entity_type=dto.entity_type,
            entity_id=dto.entity_id,
            metadata=dto.metadata,
        )
        session.commit()
        session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def mark_read(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> NotificationRead:
        notification = session.get(Notification, notification_id)
        if notification is None or notification.user_id != actor_user.user_id:
            raise _not_found("notification")
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            session.commit()
            session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def mark_all_read(self, session: Session, actor_user: ActorUser) -> int:
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == actor_user.user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=utcnow())
        )
        session.commit()
        return int(result.rowcount or 0)

    def unread_count(self, session: Session, actor_user: ActorUser) -> int:
        return int(
            session.scalar(
                select(func.count())
                .select_from(Notification)
                .where(Notification.user_id == actor_user.user_id, Notification.is_read.is_(False))
            )
            or 0
        )


class CommunicationService:
    def list_communications(
        self, session: Session, actor_user: ActorUser, filters: dict[str, Any], limit: int
    ) -> list[CommunicationRead]:
        stmt: Select[tuple[Communication]] = select(Communication).where(Communication.user_id == actor_user.user_id)
        if filters.get("lead_id"):
            stmt = stmt.where(Communication.lead_id == filters["lead_id"])
        if filters.get("type"):
            stmt = stmt.where(Communication.type == filters["type"])
        if filters.get("direction"):
            stmt = stmt.where(Communication.direction == filters["direction"])
        rows = session.scalars(stmt.order_by(Communication.created_at.desc()).limit(limit)).all()
        return [CommunicationRead.model_validate(row) for row in rows]

    def create_communication(
        self, session: Session, actor_user: ActorUser, dto: CommunicationCreate
    ) -> CommunicationRead:
        payload = dto.model_dump()
        metadata = payload.pop("metadata", None)
        communication = Communication(**payload, metadata_json=metadata, user_id=actor_user.user_id)
        session.add(communication)
        session.commit()
        session.refresh(communication)
        return CommunicationRead.model_validate(communication)

    def get_communication(self, session: Session, actor_user: ActorUser, communication_id: uuid.UUID) -> CommunicationRead:
        return CommunicationRead.model_validate(self._load(session, actor_user, communication_id))

    def update_communication(
        self, session: Session, actor_user: ActorUser, communication_id: uuid.UUID, dto: CommunicationUpdate
    ) -> CommunicationRead:
        communication = self._load(session, actor_user, communication_id)
        payload = dto.model_dump(exclude_unset=True)
        if "metadata" in payload:
            communication.metadata_json = payload.pop("metadata")
        for key, value in payload.items():
            setattr(communication, key, value)
        communication.updated_at = utcnow()
        session.commit()
        session.refresh(communication)
        return CommunicationRead.model_validate(communication)

    def delete_communication(self, session: Session, actor_user: ActorUser, communication_id: uuid.UUID) -> None:
        communication = self._load(session, actor_user, communication_id)
        session.delete(communication)
        session.commit()

    def stats(self, session: Session, actor_user: ActorUser) -> CommunicationStats:
        base = select(func.count()).select_from(Communication).where(Communication.user_id == actor_user.user_id)

        def count(*conditions: Any) -> int:
            return int(session.scalar(base.where(*conditions)) or 0)

        outbound = count(Communication.direction == "outbound")
        inbound = count(Communication.direction == "inbound")
        return CommunicationStats(
            emails=count(Communication.type == "email"),
            calls=count(Communication.type == "call"),
            sms=count(Communication.type == "sms"),
            total=count(),
            response_rate=float(round(inbound / outbound * 100)) if outbound else 0.0,
        )

    def send_email(self, session: Session, actor_user: ActorUser, dto: SendEmailRequest) -> CommunicationRead:
        communication = Communication(
            user_id=actor_user.user_id,
            lead_id=dto.lead_id,
            type="email",
            direction="outbound",
            subject=dto.subject,
            content=dto.content,
            status="sent",
            metadata_json={"to": str(dto.to)},
        )
        session.add(communication)
        activity_service.record(
            session,
            actor_user,
            activity_type="email_sent",
            title=f"Email sent: {dto.subject}",
            description=f"Email sent to {dto.to}",
            metadata={"to": str(dto.to)},
            lead_id=dto.lead_id,
        )
        return self._commit(session, communication)

    def log_call(self, session: Session, actor_user: ActorUser, dto: LogCallRequest) -> CommunicationRead:
        metadata: dict[str, Any] = {"duration_minutes": dto.duration_minutes, "outcome": dto.outcome}
        communication = Communication(
            user_id=actor_user.user_id,
            lead_id=dto.lead_id,
            type="call",
            direction=dto.direction,
            subject=f"{dto.direction.capitalize()} call",
            content=dto.notes,
            status="delivered",
            metadata_json=metadata,
        )
        session.add(communication)
        duration = f" ({dto.duration_minutes} min)" if dto.duration_minutes is not None else ""
        activity_service.record(
            session,
            actor_user,
            activity_type="call_logged",
            title=f"{dto.direction.capitalize()} call logged{duration}",
            description=dto.notes,
            metadata=metadata,
            lead_id=dto.lead_id,
        )
        return self._commit(session, communication)

    def schedule_appointment(
        self, session: Session, actor_user: ActorUser, dto: ScheduleAppointmentRequest
    ) -> CommunicationRead:
        metadata: dict[str, Any] = {"location": dto.location}
        communication = Communication(
            user_id=actor_user.user_id,
            lead_id=dto.lead_id,
            property_id=dto.property_id,
            type="meeting",
            direction="outbound",
            subject=dto.title,
            content=dto.notes or dto.title,
            status="scheduled",
            scheduled_for=dto.scheduled_for,
            metadata_json=metadata,
        )
        session.add(communication)
        session.add(
            Task(
                title=dto.title,
                description=dto.notes,
                type="meeting",
                priority="medium",
                status="pending",
                due_date=dto.scheduled_for,
                lead_id=dto.lead_id,
                property_id=dto.property_id,
                assigned_to=actor_user.user_id,
                created_by=actor_user.user_id,
            )
        )
        activity_service.record(
            session,
            actor_user,
            activity_type="appointment_scheduled",
            title=f"Appointment scheduled: {dto.title}",
            description=f"Scheduled for {as_utc(dto.scheduled_for).isoformat()}",
            metadata=metadata,
            lead_id=dto.lead_id,
            property_id=dto.property_id,
        )
        return self._commit(session, communication)

    def _commit(self, session: Session, communication: Communication) -> CommunicationRead:
        session.commit()
        session.refresh(communication)
        return CommunicationRead.model_validate(communication)

    def _load(self, session: Session, actor_user: ActorUser, communication_id: uuid.UUID) -> Communication:
        communication = session.get(Communication, communication_id)
        if communication is None or communication.user_id != actor_user.user_id:
            raise _not_found("communication")
        return communication


class MatchService:
    def match(
        self,
        session: Session,
        actor_user: ActorUser,
        chat_client: ChatCompletionClient | None,
        *,
        lead_id: uuid.UUID | None,
        property_id: uuid.UUID | None,
        lead: LeadProfile | None,
        prop: PropertyProfile | None,
    ) -> AIResult[PropertyMatch]:
        if lead_id is not None:
            row = session.get(Lead, lead_id)
            if row is None:
                raise _not_found("lead")
            lead = lead_profile(row)
        if property_id is not None:
            prop_row = session.get(Property, property_id)
            if prop_row is None:
                raise _not_found("property")
            prop = property_profile(prop_row)
        if lead is None or prop is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="lead and property are required")

        result = ai_service.match_property(chat_client, lead, prop)
        if lead_id is not None and property_id is not None:
            session.add(
                LeadPropertyMatch(
                    lead_id=lead_id,
                    property_id=property_id,
                    match_score=result.value.match_score,
                    ai_reasons=list(result.value.reasons),
                )
            )
            session.commit()
        return result


class AnalyticsService:
    def dashboard_metrics(self, session: Session, actor_user: ActorUser) -> DashboardMetrics:
        total_leads = session.scalar(select(func.count()).select_from(Lead)) or 0
        active_properties = (
            session.scalar(select(func.count()).select_from(Property).where(Property.status == "available")) or 0
        )
        active_deals = (
            session.scalar(select(func.count()).select_from(Deal).where(Deal.status.in_(ACTIVE_DEAL_STATUSES))) or 0
        )
        total_revenue = session.scalar(
            select(func.coalesce(func.sum(Deal.commission), 0)).where(Deal.status.in_(CLOSED_DEAL_STATUSES))
        )
        recent = session.scalars(select(Activity).order_by(Activity.created_at.desc()).limit(5)).all()
        return DashboardMetrics(
            total_leads=int(total_leads),
            active_properties=int(active_properties),
            active_deals=int(active_deals),
            total_revenue=Decimal(str(total_revenue or 0)),
            recent_activities=[ActivityRead.model_validate(row) for row in recent],
        )

    def detailed_analytics(self, session: Session, actor_user: ActorUser, today: date | None = None) -> DetailedAnalytics:
        total_leads = int(session.scalar(select(func.count()).select_from(Lead)) or 0)
        qualified_leads = int(
            session.scalar(select(func.count()).select_from(Lead).where(Lead.status.in_(QUALIFIED_LEAD_STATUSES))) or 0
        )
        average_deal_value = session.scalar(select(func.avg(Deal.deal_value)))
        average_lead_score = session.scalar(select(func.avg(Lead.score)))
        total_tasks = int(session.scalar(select(func.count()).select_from(Task)) or 0)
        completed_tasks = int(
            session.scalar(select(func.count()).select_from(Task).where(Task.status == "completed")) or 0
        )
        leads_by_source = {
            str(source): int(count)
            for source, count in session.execute(select(Lead.source, func.count()).group_by(Lead.source)).all()
        }
        deals_by_status = {
            str(deal_status): int(count)
            for deal_status, count in session.execute(select(Deal.status, func.count()).group_by(Deal.status)).all()
        }
        top_properties = session.scalars(select(Property).order_by(Property.price.desc()).limit(5)).all()
        high_score_leads = session.scalars(
            select(Lead).where(Lead.score >= 80).order_by(Lead.score.desc(), Lead.created_at.desc()).limit(5)
        ).all()

        return DetailedAnalytics(
            total_leads=total_leads,
            conversion_rate=round(qualified_leads / total_leads * 100, 1) if total_leads else 0.0,
            average_deal_value=Decimal(str(average_deal_value or 0)).quantize(Decimal("0.01")),
            average_lead_score=round(float(average_lead_score or 0), 1),
            task_completion_rate=round(completed_tasks / total_tasks * 100, 1) if total_tasks else 0.0,
            leads_by_source=leads_by_source,
            deals_by_status=deals_by_status,
            revenue_by_month=self._revenue_by_month(session, today or utcnow().date()),
            top_properties=[PropertyRead.model_validate(row) for row in top_properties],
            high_score_leads=[LeadRead.model_validate(row) for row in high_score_leads],
        )

    def _revenue_by_month(self, session: Session, today: date) -> list[MonthlyRevenue]:
        months: list[tuple[int, int]] = []
        year, month = today.year, today.month
        for _ in range(6):
            months.append((year, month))
            month -= 1
            if month == 0:
                year, month = year - 1, 12
        months.reverse()

        buckets: dict[tuple[int, int], Decimal] = {key: Decimal("0") for key in months}
        closed = session.scalars(select(Deal).where(Deal.status.in_(CLOSED_DEAL_STATUSES))).all()
        for deal in closed:
            closed_on = deal.actual_close_date or as_utc(deal.updated_at).date()
            key = (closed_on.year, closed_on.month)
            if key in buckets:
                buckets[key] += Decimal(str(deal.commission or 0))

        return [
            MonthlyRevenue(month=date(key[0], key[1], 1).strftime("%b %Y"), revenue=buckets[key])
            for key in months
        ]

    def business_snapshot(self, session: Session, actor_user: ActorUser) -> dict[str, Any]:
        """Portfolio summary handed to the chat and query helpers."""
        metrics = self.dashboard_metrics(session, actor_user)
        leads = session.scalars(select(Lead).order_by(Lead.score.desc()).limit(50)).all()
        average_price = session.scalar(select(func.avg(Property.price)))
        return {
            "total_leads": metrics.total_leads,
            "active_properties": metrics.active_properties,
            "active_deals": metrics.active_deals,
            "total_revenue": metrics.total_revenue,
            "property_count": int(session.scalar(select(func.count()).select_from(Property)) or 0),
            "deal_count": int(session.scalar(select(func.count()).select_from(Deal)) or 0),
            "pending_tasks": int(
                session.scalar(select(func.count()).select_from(Task).where(Task.status != "completed")) or 0
            ),
            "average_property_price": Decimal(str(average_price or 0)).quantize(Decimal("0.01")),
            "recent_activity_count": len(metrics.recent_activities),
            "leads": [
                {
                    "id": str(lead.id),
                    "name": lead.full_name,
                    "score": lead.score,
                    "status": lead.status,
                    "budget": lead.budget,
                    "property_types": list(lead.property_types or []),
                }
                for lead in leads
            ],
        }


class UserService:
    def upsert_dev_user(
        self, session: Session, *, email: str, first_name: str | None, last_name: str | None
    ) -> UserRead:
        user = session.scalar(select(User).where(User.email == email))
        if user is None:
            user = User(id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"estatecrm-user:{email.lower()}")), email=email)
            session.add(user)
        if first_name is not None:
            user.first_name = first_name
        if last_name is not None:
            user.last_name = last_name
        user.updated_at = datetime.now(timezone.utc)
        session.commit()
        session.refresh(user)
        logger.info("user.login", extra={"user_id": user.id})
        return UserRead.model_validate(user)

    def get_user(self, session: Session, actor_user: ActorUser) -> UserRead:
        return UserRead.model_validate(self._load(session, actor_user))

    def _load(self, session: Session, actor_user: ActorUser) -> User:
        user = session.get(User, actor_user.user_id)
        if user is None:
            raise _not_found("user")
        return user


class SettingsService:
    def __init__(self, users: UserService) -> None:
        self._users = users

    def update_profile(self, session: Session, actor_user: ActorUser, dto: ProfileUpdate) -> UserRead:
        user = self._users._load(session, actor_user)
        payload = dto.model_dump(exclude_unset=True)
        if "email" in payload and payload["email"] is not None:
            payload["email"] = str(payload["email"])
        for key, value in payload.items():
            setattr(user, key, value)
        user.updated_at = utcnow()
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)

    def get_notification_settings(self, session: Session, actor_user: ActorUser) -> NotificationSettings:
        user = self._users._load(session, actor_user)
        return NotificationSettings.model_validate(user.notification_settings or {})

    def update_notification_settings(
        self, session: Session, actor_user: ActorUser, dto: NotificationSettingsUpdate
    ) -> NotificationSettings:
        user = self._users._load(session, actor_user)
        merged = NotificationSettings.model_validate(
            {**(user.notification_settings or {}), **dto.model_dump(exclude_unset=True, exclude_none=True)}
        )
        user.notification_settings = merged.model_dump()
        user.updated_at = utcnow()
        session.commit()
        return merged

    def get_preferences(self, session: Session, actor_user: ActorUser) -> UserPreferences:
        user = self._users._load(session, actor_user)
        return UserPreferences.model_validate(user.preferences or {})

    def update_preferences(self, session: Session, actor_user: ActorUser, dto: UserPreferencesUpdate) -> UserPreferences:
        user = self._users._load(session, actor_user)
        merged = UserPreferences.model_validate(
            {**(user.preferences or {}), **dto.model_dump(exclude_unset=True, exclude_none=True)}
        )
        user.preferences = merged.model_dump()
        user.updated_at = utcnow()
        session.commit()
        return merged
