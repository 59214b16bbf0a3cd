from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, model_validator


TaskType = Literal["call", "visit", "email", "document", "meeting", "other"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
CommunicationType = Literal["email", "sms", "call", "whatsapp", "meeting"]
CommunicationDirection = Literal["inbound", "outbound"]
CommunicationStatus = Literal["draft", "sent", "delivered", "failed", "scheduled"]
FollowUpType = Literal["initial", "viewing", "proposal", "negotiation", "other"]


class MessageResponse(BaseModel):
    message: str


class CountResponse(BaseModel):
    count: int


class UpdatedResponse(BaseModel):
    updated: int


class StatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    first_name: str | None = None
    last_name: str | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str | None
    first_name: str | None
    last_name: str | None
    profile_image_url: str | None
    phone: str | None
    role: str
    created_at: datetime
    updated_at: datetime


class ProfileUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    profile_image_url: str | None = None


class NotificationSettings(BaseModel):
    new_leads: bool = True
    task_reminders: bool = True
    deal_updates: bool = True
    ai_insights: bool = True
    weekly_reports: bool = False
    email_notifications: bool = True
    sms_notifications: bool = False


class NotificationSettingsUpdate(BaseModel):
    new_leads: bool | None = None
    task_reminders: bool | None = None
    deal_updates: bool | None = None
    ai_insights: bool | None = None
    weekly_reports: bool | None = None
    email_notifications: bool | None = None
    sms_notifications: bool | None = None


class UserPreferences(BaseModel):
    theme: Literal["light", "dark", "system"] = "dark"
    timezone: str = "america/new_york"
    language: str = "en"
    currency: str = "usd"
    date_format: str = "mm/dd/yyyy"
    density: Literal["comfortable", "compact"] = "comfortable"


class UserPreferencesUpdate(BaseModel):
    theme: Literal["light", "dark", "system"] | None = None
    timezone: str | None = None
    language: str | None = None
    currency: str | None = None
    date_format: str | None = None
    density: Literal["comfortable", "compact"] | None = None


def _check_budget_range(budget: Decimal | None, budget_max: Decimal | None) -> None:
    if budget is not None and budget_max is not None and budget_max < budget:
        raise ValueError("budget_max must be greater than or equal to budget")


def _reject_cleared(model: BaseModel, required: tuple[str, ...]) -> None:
    """Partial updates may omit a required column but never set it to null."""
    cleared = sorted(name for name in required if name in model.model_fields_set and getattr(model, name) is None)
    if cleared:
        raise ValueError(", ".join(cleared) + " cannot be null")


class LeadCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    budget: Decimal | None = Field(default=None, ge=0)
    budget_max: Decimal | None = Field(default=None, ge=0)
    preferred_locations: list[str] = Field(default_factory=list)
    property_types: list[str] = Field(default_factory=list)
    timeline: str | None = None
    source: str = "website"
    status: str = "new"
    notes: str | None = None
    assigned_to: str | None = None

    @model_validator(mode="after")
    def validate_budget(self) -> "LeadCreate":
        _check_budget_range(self.budget, self.budget_max)
        return self


class LeadUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    budget: Decimal | None = Field(default=None, ge=0)
    budget_max: Decimal | None = Field(default=None, ge=0)
    preferred_locations: list[str] | None = None
    property_types: list[str] | None = None
    timeline: str | None = None
    source: str | None = None
    status: str | None = None
    score: int | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    assigned_to: str | None = None

    @model_validator(mode="after")
    def validate_fields(self) -> "LeadUpdate":
        _reject_cleared(self, ("first_name", "last_name", "preferred_locations", "property_types", "source"))
        _check_budget_range(self.budget, self.budget_max)
        return self


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    budget: Decimal | None
    budget_max: Decimal | None
    preferred_locations: list[str]
    property_types: list[str]
    timeline: str | None
    source: str
    status: str
    score: int
    notes: str | None
    assigned_to: str | None
    created_at: datetime
    updated_at: datetime


class FollowUpReminderRequest(BaseModel):
    reminder_type: FollowUpType = "other"


class PropertyCreate(BaseModel):
    title: str = Field(min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str | None = None
    property_type: str = Field(min_length=1)
    status: str = "available"
    price: Decimal = Field(gt=0)
    bedrooms: int | None = Field(default=None, ge=0)
    bathrooms: Decimal | None = Field(default=None, ge=0)
    square_feet: int | None = Field(default=None, ge=0)
    lot_size: Decimal | None = Field(default=None, ge=0)
    year_built: int | None = Field(default=None, ge=1600, le=2100)
    description: str | None = None
    features: list[str] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    virtual_tour_url: str | None = None
    listing_agent: str | None = None
    owner_contact: str | None = None
    commission: Decimal | None = Field(default=None, ge=0, le=100)


class PropertyUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    address: str | None = Field(default=None, min_length=1)
    city: str | None = Field(default=None, min_length=1)
    state: str | None = Field(default=None, min_length=1)
    zip_code: str | None = None
    property_type: str | None = None
    status: str | None = None
    price: Decimal | None = Field(default=None, gt=0)
    bedrooms: int | None = Field(default=None, ge=0)
    bathrooms: Decimal | None = Field(default=None, ge=0)
    square_feet: int | None = Field(default=None, ge=0)
    lot_size: Decimal | None = Field(default=None, ge=0)
    year_built: int | None = Field(default=None, ge=1600, le=2100)
    description: str | None = None
    features: list[str] | None = None
    images: list[str] | None = None
    virtual_tour_url: str | None = None
    listing_agent: str | None = None
    owner_contact: str | None = None
    commission: Decimal | None = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def validate_required(self) -> "PropertyUpdate":
        _reject_cleared(self, ("title", "address", "city", "state", "property_type", "price", "features", "images"))
        return self


class PropertyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    address: str
    city: str
    state: str
    zip_code: str | None
    property_type: str
    status: str
    price: Decimal
    bedrooms: int | None
    bathrooms: Decimal | None
    square_feet: int | None
    lot_size: Decimal | None
    year_built: int | None
    description: str | None
    features: list[str]
    images: list[str]
    virtual_tour_url: str | None
    listing_agent: str | None
    owner_contact: str | None
    commission: Decimal | None
    created_at: datetime
    updated_at: datetime


class PropertyViewRequest(BaseModel):
    viewer_name: str = Field(min_length=1)


class DealCreate(BaseModel):
    lead_id: UUID
    property_id: UUID
    status: str = "offer"
    deal_value: Decimal = Field(gt=0)
    offer_amount: Decimal | None = Field(default=None, gt=0)
    expected_close_date: date | None = None
    commission: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    assigned_to: str | None = None


class DealUpdate(BaseModel):
    deal_value: Decimal | None = Field(default=None, gt=0)
    offer_amount: Decimal | None = Field(default=None, gt=0)
    expected_close_date: date | None = None
    actual_close_date: date | None = None
    commission: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    assigned_to: str | None = None

    @model_validator(mode="after")
    def validate_required(self) -> "DealUpdate":
        _reject_cleared(self, ("deal_value",))
        return self


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    property_id: UUID
    status: str
    deal_value: Decimal
    offer_amount: Decimal | None
    expected_close_date: date | None
    actual_close_date: date | None
    commission: Decimal | None
    notes: str | None
    assigned_to: str | None
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    type: TaskType = "call"
    priority: TaskPriority = "medium"
    status: str = "pending"
    due_date: datetime | None = None
    lead_id: UUID | None = None
    property_id: UUID | None = None
    deal_id: UUID | None = None
    assigned_to: str | None = None


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    type: TaskType | None = None
    priority: TaskPriority | None = None
    status: str | None = None
    due_date: datetime | None = None
    lead_id: UUID | None = None
    property_id: UUID | None = None
    deal_id: UUID | None = None
    assigned_to: str | None = None

    @model_validator(mode="after")
    def validate_required(self) -> "TaskUpdate":
        _reject_cleared(self, ("title", "type", "priority"))
        return self


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    type: str
    priority: str
    status: str
    due_date: datetime | None
    completed_at: datetime | None
    lead_id: UUID | None
    property_id: UUID | None
    deal_id: UUID | None
    assigned_to: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class DueRemindersResponse(BaseModel):
    notified: int


class ActivityCreate(BaseModel):
    type: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    metadata: dict[str, Any] | None = None
    lead_id: UUID | None = None
    property_id: UUID | None = None
    deal_id: UUID | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    title: str
    description: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias=AliasChoices("metadata_json", "metadata"))
    lead_id: UUID | None
    property_id: UUID | None
    deal_id: UUID | None
    user_id: str | None
    created_at: datetime


class NotificationCreate(BaseModel):
    type: str = Field(min_length=1)
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    action_url: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    metadata: dict[str, Any] | None = None


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    type: str
    title: str
    message: str
    is_read: bool
    action_url: str | None
    entity_type: str | None
    entity_id: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias=AliasChoices("metadata_json", "metadata"))
    created_at: datetime
    read_at: datetime | None


class CommunicationCreate(BaseModel):
    lead_id: UUID | None = None
    property_id: UUID | None = None
    deal_id: UUID | None = None
    type: CommunicationType
    direction: CommunicationDirection = "outbound"
    subject: str | None = None
    content: str = Field(min_length=1)
    status: CommunicationStatus = "sent"
    scheduled_for: datetime | None = None
    metadata: dict[str, Any] | None = None


class CommunicationUpdate(BaseModel):
    subject: str | None = None
    content: str | None = Field(default=None, min_length=1)
    status: CommunicationStatus | None = None
    scheduled_for: datetime | None = None
    metadata: dict[str, Any] | None = None


class CommunicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    lead_id: UUID | None
    property_id: UUID | None
    deal_id: UUID | None
    type: str
    direction: str
    subject: str | None
    content: str
    status: str
    scheduled_for: datetime | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias=AliasChoices("metadata_json", "metadata"))
    created_at: datetime
    updated_at: datetime


class CommunicationStats(BaseModel):
    emails: int
    calls: int
    sms: int
    total: int
    response_rate: float


class SendEmailRequest(BaseModel):
    lead_id: UUID | None = None
    to: EmailStr
    subject: str = Field(min_length=1)
    content: str = Field(min_length=1)


class LogCallRequest(BaseModel):
    lead_id: UUID | None = None
    direction: CommunicationDirection = "outbound"
    duration_minutes: int | None = Field(default=None, ge=0)
    outcome: str | None = None
    notes: str = Field(min_length=1)


class ScheduleAppointmentRequest(BaseModel):
    lead_id: UUID | None = None
    property_id: UUID | None = None
    title: str = Field(min_length=1)
    scheduled_for: datetime
    location: str | None = None
    notes: str | None = None


class LeadPropertyMatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    property_id: UUID
    match_score: int
    ai_reasons: list[str]
    status: str
    created_at: datetime


class DashboardMetrics(BaseModel):
    total_leads: int
    active_properties: int
    active_deals: int
    total_revenue: Decimal
    recent_activities: list[ActivityRead]


class MonthlyRevenue(BaseModel):
    month: str
    revenue: Decimal


class DetailedAnalytics(BaseModel):
    total_leads: int
    conversion_rate: float
    average_deal_value: Decimal
    average_lead_score: float
    task_completion_rate: float
    leads_by_source: dict[str, int]
    deals_by_status: dict[str, int]
    revenue_by_month: list[MonthlyRevenue]
    top_properties: list[PropertyRead]
    high_score_leads: list[LeadRead]
