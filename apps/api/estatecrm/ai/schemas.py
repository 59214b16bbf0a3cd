from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Generic, Literal, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


Temperature = Literal["hot", "warm", "cold"]
Tone = Literal["professional", "friendly", "urgent"]
MessageChannel = Literal["email", "whatsapp", "sms"]
AIOutcome = Literal["ok", "degraded"]

ResultT = TypeVar("ResultT")


@dataclass(frozen=True)
class AIResult(Generic[ResultT]):
    """Outcome of an AI helper call: the model's answer, or a safe default plus the cause."""

    value: ResultT
    outcome: AIOutcome = "ok"
    cause: str | None = None

    @classmethod
    def ok(cls, value: ResultT) -> "AIResult[ResultT]":
        return cls(value=value, outcome="ok")

    @classmethod
    def degraded(cls, value: ResultT, cause: str) -> "AIResult[ResultT]":
        return cls(value=value, outcome="degraded", cause=cause)

    @property
    def is_degraded(self) -> bool:
        return self.outcome == "degraded"


class AIResponse(BaseModel, Generic[ResultT]):
    outcome: AIOutcome
    cause: str | None = None
    result: ResultT

    @classmethod
    def from_result(cls, result: AIResult[Any]) -> "AIResponse[Any]":
        return cls(outcome=result.outcome, cause=result.cause, result=result.value)


class LeadProfile(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = ""
    email: str | None = None
    phone: str | None = None
    budget: Decimal | None = None
    budget_max: Decimal | None = None
    preferred_locations: list[str] = Field(default_factory=list)
    property_types: list[str] = Field(default_factory=list)
    source: str = "website"
    timeline: str | None = None
    status: str = "new"
    score: int | None = None
    notes: str | None = None


class PropertyProfile(BaseModel):
    title: str | None = None
    price: Decimal
    city: str
    property_type: str
    bedrooms: int | None = None
    bathrooms: Decimal | None = None
    square_feet: int | None = None
    features: list[str] = Field(default_factory=list)


class LeadScore(BaseModel):
    score: int = Field(ge=0, le=100)
    confidence: float = Field(ge=0, le=1)
    reasons: list[str]
    temperature: Temperature


class PropertyMatch(BaseModel):
    match_score: int = Field(ge=0, le=100)
    reasons: list[str]
    confidence: float = Field(ge=0, le=1)


class MessageDraft(BaseModel):
    subject: str | None = None
    message: str
    channel: MessageChannel
    tone: Tone = "professional"


class PortfolioInsights(BaseModel):
    insights: list[str]
    recommendations: list[str]
    priority_actions: list[str]


class LeadRecommendations(BaseModel):
    recommendations: list[str]


class NextAction(BaseModel):
    type: Literal["call", "email", "meeting", "note"]
    title: str
    description: str
    due_date: date


class ChatReply(BaseModel):
    response: str


class QueryAnswer(BaseModel):
    answer: str
    data: dict[str, Any] = Field(default_factory=dict)


class MatchPropertyRequest(BaseModel):
    lead_id: UUID | None = None
    property_id: UUID | None = None
    lead: LeadProfile | None = None
    property: PropertyProfile | None = None

    @model_validator(mode="after")
    def require_both_sides(self) -> "MatchPropertyRequest":
        if self.lead_id is None and self.lead is None:
            raise ValueError("either lead_id or lead is required")
        if self.property_id is None and self.property is None:
            raise ValueError("either property_id or property is required")
        return self


class GenerateMessageRequest(BaseModel):
    lead: LeadProfile
    channel: MessageChannel = "email"
    context: str | None = None
    last_contact: str | None = None


class ActivitySummary(BaseModel):
    type: str
    title: str


class TaskSummary(BaseModel):
    title: str
    priority: str = "medium"


class LeadRecommendationsRequest(BaseModel):
    lead: LeadProfile
    recent_activities: list[ActivitySummary] = Field(default_factory=list)
    pending_tasks: list[TaskSummary] = Field(default_factory=list)


class NextActionRequest(BaseModel):
    lead: LeadProfile
    recent_activities: list[ActivitySummary] = Field(default_factory=list)
    pending_tasks: list[TaskSummary] = Field(default_factory=list)
    current_score: int = Field(default=0, ge=0, le=100)
    status: str = "new"


class ChatContext(BaseModel):
    page: str | None = None
    lead_id: UUID | None = None
    deal_id: UUID | None = None
    property_id: UUID | None = None
    data: dict[str, Any] | None = None


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    context: ChatContext = Field(default_factory=ChatContext)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
