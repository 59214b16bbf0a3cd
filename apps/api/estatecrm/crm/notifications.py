from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from estatecrm.crm.models import Deal, Lead, Notification, Property, Task
from estatecrm.metrics import observe_notification


logger = logging.getLogger("estatecrm.crm.notifications")

HIGH_SCORE_THRESHOLD = 80
SIGNIFICANT_SCORE_INCREASE = 20

_LEAD_STATUS_MESSAGES: dict[str, tuple[str, str]] = {
    "qualified": ("Lead Qualified", "{name} has been qualified and is ready for follow-up"),
    "contacted": ("Lead Contacted", "Successfully contacted {name}"),
    "meeting_scheduled": ("Meeting Scheduled", "Meeting scheduled with {name}"),
    "proposal_sent": ("Proposal Sent", "Proposal sent to {name}"),
    "negotiating": ("Negotiation Started", "Entered negotiation phase with {name}"),
    "closed_won": ("Lead Converted", "{name} converted to customer!"),
    "closed_lost": ("Lead Lost", "{name} marked as lost"),
}
_LEAD_STATUS_FALLBACK = ("Lead Status Updated", "{name} moved from {old} to {new}")

_PROPERTY_STATUS_MESSAGES: dict[str, tuple[str, str]] = {
    "available": ("Property Listed", '"{title}" is now available for viewing'),
    "under_offer": ("Property Under Offer", '"{title}" has received an offer'),
    "sold": ("Property Sold", '"{title}" has been sold successfully!'),
    "withdrawn": ("Property Withdrawn", '"{title}" has been withdrawn from market'),
}
_PROPERTY_STATUS_FALLBACK = ("Property Status Updated", '"{title}" status changed from {old} to {new}')

_DEAL_STATUS_MESSAGES: dict[str, tuple[str, str]] = {
    "offer": ("Offer Stage", "Deal with {lead} entered offer stage"),
    "inspection": ("Inspection Scheduled", "Property inspection scheduled for {lead}"),
    "legal": ("Legal Review", "Deal with {lead} in legal review stage"),
    "payment": ("Payment Processing", "Processing payment for {lead}'s deal"),
    "handover": ("Deal Closed Successfully", "Deal with {lead} completed! Commission: ${commission}"),
    "cancelled": ("Deal Cancelled", "Deal with {lead} has been cancelled"),
}
_DEAL_STATUS_FALLBACK = ("Deal Status Updated", "Deal with {lead} moved from {old} to {new}")

_FOLLOW_UP_MESSAGES: dict[str, str] = {
    "initial": "Initial follow-up needed for {name}",
    "viewing": "Follow up on property viewing with {name}",
    "proposal": "Check on proposal status with {name}",
    "negotiation": "Continue negotiation discussion with {name}",
}
_FOLLOW_UP_FALLBACK = "Time to follow up with {name}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_money(value: Decimal | int | float | None) -> str:
    if value is None:
        return "0"
    amount = Decimal(str(value))
    if amount == amount.to_integral_value():
        return f"{int(amount):,}"
    return f"{amount:,.2f}"


def should_notify_score_change(old_score: int, new_score: int) -> bool:
    return (new_score - old_score) >= SIGNIFICANT_SCORE_INCREASE or (
        new_score >= HIGH_SCORE_THRESHOLD and old_score < HIGH_SCORE_THRESHOLD
    )


def describe_time_until_due(due_date: datetime, now: datetime | None = None) -> tuple[int, str]:
    reference = now or utcnow()
    hours = math.ceil((as_utc(due_date) - as_utc(reference)).total_seconds() / 3600)
    if hours <= 1:
        return hours, "due in 1 hour"
    if hours <= 24:
        return hours, f"due in {hours} hours"
    return hours, f"due in {math.ceil(hours / 24)} days"


def _json_number(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


class NotificationDispatcher:
    """Builds the user-facing notification for a business event.

    Rows are only added to the caller's session; the caller commits them together
    with the mutation that caused them.
    """

    def emit(
        self,
        session: Session,
        *,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        action_url: str | None = None,
        entity_type: str | None = None,
        entity_id: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        payload = dict(metadata or {})
        payload.setdefault("timestamp", utcnow().isoformat())
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            action_url=action_url,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            metadata_json=payload,
        )
        session.add(notification)
        observe_notification(notification_type)
        logger.info(
            "notification.emitted",
            extra={
                "notification_type": notification_type,
                "entity_type": entity_type,
                "entity_id": notification.entity_id,
                "user_id": user_id,
            },
        )
        return notification

    def on_lead_created(self, session: Session, lead: Lead, user_id: str) -> Notification:
        via = f" via {lead.source}" if lead.source else ""
        return self.emit(
            session,
            user_id=user_id,
            notification_type="lead_added",
            title="New Lead Added",
            message=f"{lead.full_name} submitted a new inquiry{via}",
            action_url=f"/leads/{lead.id}",
            entity_type="lead",
            entity_id=lead.id,
            metadata={
                "lead_name": lead.full_name,
                "lead_score": lead.score,
                "source": lead.source,
                "budget": _json_number(lead.budget),
            },
        )

    def on_lead_status_changed(
        self, session: Session, lead: Lead, old_status: str, new_status: str, user_id: str
    ) -> Notification:
        title, template = _LEAD_STATUS_MESSAGES.get(new_status, _LEAD_STATUS_FALLBACK)
        return self.emit(
            session,
            user_id=user_id,
            notification_type="lead_status_changed",
            title=title,
            message=template.format(name=lead.full_name, old=old_status, new=new_status),
            action_url=f"/leads/{lead.id}",
            entity_type="lead",
            entity_id=lead.id,
            metadata={
                "lead_name": lead.full_name,
                "old_status": old_status,
                "new_status": new_status,
                "lead_score": lead.score,
            },
        )

    def on_lead_score_changed(
        self, session: Session, lead: Lead, old_score: int, new_score: int, user_id: str
    ) -> Notification | None:
        if not should_notify_score_change(old_score, new_score):
            return None
        is_high_value = new_score >= HIGH_SCORE_THRESHOLD
        suffix = " - Priority follow-up recommended" if is_high_value else ""
        return self.emit(
            session,
            user_id=user_id,
            notification_type="lead_score_changed",
            title="High-Value Lead Identified" if is_high_value else "Lead Score Improved",
            message=f"{lead.full_name} score increased from {old_score} to {new_score}{suffix}",
            action_url=f"/leads/{lead.id}",
            entity_type="lead",
            entity_id=lead.id,
            metadata={
                "lead_name": lead.full_name,
                "old_score": old_score,
                "new_score": new_score,
                "score_diff": new_score - old_score,
                "is_high_value": is_high_value,
            },
        )

    def on_property_viewed(self, session: Session, prop: Property, viewer_name: str, user_id: str) -> Notification:
        return self.emit(
            session,
            user_id=user_id,
            notification_type="property_viewed",
            title="Property Viewed",
            message=f'{viewer_name} viewed "{prop.title}" - Consider following up',
            action_url=f"/properties/{prop.id}",
            entity_type="property",
            entity_id=prop.id,
            metadata={"property_title": prop.title, "viewer_name": viewer_name, "property_price": _json_number(prop.price)},
        )

    def on_property_status_changed(
        self, session: Session, prop: Property, old_status: str, new_status: str, user_id: str
    ) -> Notification:
        title, template = _PROPERTY_STATUS_MESSAGES.get(new_status, _PROPERTY_STATUS_FALLBACK)
        return self.emit(
            session,
            user_id=user_id,
            notification_type="property_status_changed",
            title=title,
            message=template.format(title=prop.title, old=old_status, new=new_status),
            action_url=f"/properties/{prop.id}",
            entity_type="property",
            entity_id=prop.id,
            metadata={
                "property_title": prop.title,
                "old_status": old_status,
                "new_status": new_status,
                "property_price": _json_number(prop.price),
            },
        )

    def on_deal_created(
        self, session: Session, deal: Deal, lead_name: str, property_title: str, user_id: str
    ) -> Notification:
        return self.emit(
            session,
            user_id=user_id,
            notification_type="deal_created",
            title="New Deal Created",
            message=f'Deal created for {lead_name} on "{property_title}" worth ${format_money(deal.deal_value)}',
            action_url=f"/deals/{deal.id}",
            entity_type="deal",
            entity_id=deal.id,
            metadata={"lead_name": lead_name, "property_title": property_title, "deal_value": _json_number(deal.deal_value)},
        )

    def on_deal_status_changed(
        self,
        session: Session,
        deal: Deal,
        old_status: str,
        new_status: str,
        lead_name: str,
        property_title: str,
        user_id: str,
    ) -> Notification:
        title, template = _DEAL_STATUS_MESSAGES.get(new_status, _DEAL_STATUS_FALLBACK)
        return self.emit(
            session,
            user_id=user_id,
            notification_type="deal_status_changed",
            title=title,
            message=template.format(
                lead=lead_name,
                old=old_status,
                new=new_status,
                commission=format_money(deal.commission),
            ),
            action_url=f"/deals/{deal.id}",
            entity_type="deal",
            entity_id=deal.id,
            metadata={
                "lead_name": lead_name,
                "property_title": property_title,
                "old_status": old_status,
                "new_status": new_status,
                "deal_value": _json_number(deal.deal_value),
                "commission": _json_number(deal.commission),
            },
        )

    def on_task_due_soon(self, session: Session, task: Task, user_id: str, now: datetime | None = None) -> Notification:
        if task.due_date is None:
            raise ValueError("task has no due date")
        hours, urgency = describe_time_until_due(task.due_date, now)
        return self.emit(
            session,
            user_id=user_id,
            notification_type="task_due",
            title="Task Due Soon",
            message=f'"{task.title}" is {urgency}',
            action_url="/tasks",
            entity_type="task",
            entity_id=task.id,
            metadata={
                "task_title": task.title,
                "due_date": as_utc(task.due_date).isoformat(),
                "hours_until_due": hours,
                "priority": task.priority,
            },
        )

    def on_task_completed(self, session: Session, task: Task, user_id: str) -> Notification:
        return self.emit(
            session,
            user_id=user_id,
            notification_type="task_completed",
            title="Task Completed",
            message=f'"{task.title}" has been completed',
            action_url="/tasks",
            entity_type="task",
            entity_id=task.id,
            metadata={
                "task_title": task.title,
                "completed_at": as_utc(task.completed_at).isoformat() if task.completed_at else None,
                "priority": task.priority,
            },
        )

    def create_follow_up_reminder(
        self, session: Session, lead: Lead, user_id: str, follow_up_type: str = "general"
    ) -> Notification:
        template = _FOLLOW_UP_MESSAGES.get(follow_up_type, _FOLLOW_UP_FALLBACK)
        return self.emit(
            session,
            user_id=user_id,
            notification_type="follow_up",
            title="Follow-up Reminder",
            message=template.format(name=lead.full_name),
            action_url=f"/leads/{lead.id}",
            entity_type="lead",
            entity_id=lead.id,
            metadata={"lead_name": lead.full_name, "follow_up_type": follow_up_type},
        )

    def on_ai_insight_generated(
        self, session: Session, insight: str, relevant_entity: str, entity_id: str | None, user_id: str
    ) -> Notification:
        return self.emit(
            session,
            user_id=user_id,
            notification_type="ai_insight",
            title="AI Insight Generated",
            message=insight,
            action_url="/ai",
            entity_type=relevant_entity,
            entity_id=entity_id,
            metadata={"insight": insight, "relevant_entity": relevant_entity},
        )


notification_dispatcher = NotificationDispatcher()
