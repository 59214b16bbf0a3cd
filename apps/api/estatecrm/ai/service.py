from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, TypeVar

from opentelemetry import trace

from estatecrm.ai.client import ChatCompletionClient
from estatecrm.ai.schemas import (
    ActivitySummary,
    AIResult,
    ChatContext,
    ChatReply,
    LeadProfile,
    LeadRecommendations,
    LeadScore,
    MessageChannel,
    MessageDraft,
    NextAction,
    PortfolioInsights,
    PropertyMatch,
    PropertyProfile,
    TaskSummary,
)
from estatecrm.context import get_correlation_id
from estatecrm.metrics import observe_ai_request


logger = logging.getLogger("estatecrm.ai")
tracer = trace.get_tracer("estatecrm.ai.service")

T = TypeVar("T")

TEMPERATURES = ("hot", "warm", "cold")
TONES = ("professional", "friendly", "urgent")
NEXT_ACTION_TYPES = ("call", "email", "meeting", "note")

DEFAULT_LEAD_SCORE = LeadScore(
    score=50,
    confidence=0.3,
    reasons=["Unable to analyze lead automatically"],
    temperature="cold",
)
DEFAULT_PROPERTY_MATCH = PropertyMatch(
    match_score=0,
    reasons=["Unable to analyze match automatically"],
    confidence=0.3,
)
DEFAULT_INSIGHTS = PortfolioInsights(
    insights=["Unable to generate insights at this time"],
    recommendations=["Check your data and try again"],
    priority_actions=["Review recent lead activity"],
)

_DEFAULT_RECOMMENDATIONS: dict[str, list[str]] = {
    "new": [
        "Schedule initial consultation call within 24 hours",
        "Send welcome email with company portfolio",
        "Qualify budget and timeline requirements",
        "Add lead to nurturing email sequence",
    ],
    "contacted": [
        "Follow up on initial conversation points",
        "Share relevant property listings matching their criteria",
        "Schedule property viewing appointments",
        "Send market analysis for their area of interest",
    ],
    "qualified": [
        "Present 3-5 curated property options",
        "Schedule property viewings for this week",
        "Prepare financing pre-approval assistance",
        "Create personalized property search alerts",
    ],
    "tour": [
        "Follow up on recent property viewings",
        "Address any concerns or questions raised",
        "Schedule additional viewings if needed",
        "Prepare competitive market analysis",
    ],
}

# (type, title, description template, days until due)
_DEFAULT_NEXT_ACTIONS: dict[str, tuple[str, str, str, int]] = {
    "new": (
        "call",
        "Initial consultation call",
        "Schedule and conduct initial consultation call with {name} to understand their requirements, "
        "budget, and timeline. Discuss available properties that match their criteria.",
        1,
    ),
    "contacted": (
        "email",
        "Follow-up with property recommendations",
        "Send curated property listings that match {first_name}'s budget of ${budget} and preferred "
        "property types. Include market insights and schedule viewing appointments.",
        2,
    ),
    "qualified": (
        "meeting",
        "Property viewing appointments",
        "Schedule property viewings for {first_name} based on their preferences. Prepare market "
        "analysis and financing options discussion.",
        3,
    ),
    "tour": (
        "call",
        "Post-viewing follow-up",
        "Follow up on recent property viewings with {first_name}. Address any questions or concerns "
        "and gauge interest level. Discuss next steps if interested.",
        1,
    ),
}

_HEURISTIC_TIMELINE_POINTS = {
    "immediate": 25,
    "short_term": 20,
    "medium_term": 12,
    "long_term": 5,
    "just_looking": 0,
}
_HEURISTIC_SOURCE_POINTS = {
    "referral": 15,
    "website": 10,
    "walk_in": 10,
    "phone": 10,
    "email": 8,
    "google": 6,
    "facebook": 6,
}
_HEURISTIC_UNKNOWN_SOURCE_POINTS = 4


class AIResponseError(ValueError):
    """Raised when the model answered with something that cannot be used."""


def format_amount(value: Decimal | int | float | None) -> str:
    if value is None:
        return "Not specified"
    amount = Decimal(str(value))
    if amount == amount.to_integral_value():
        return f"{int(amount):,}"
    return f"{amount:,.2f}"


def _coerce_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def clamp(value: Any, low: float, high: float, default: float) -> float:
    number = _coerce_float(value)
    if number is None:
        return default
    return max(low, min(high, number))


def coerce_string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item if isinstance(item, str) else json.dumps(item, default=str) for item in value if item is not None]


def parse_json_object(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise AIResponseError(f"model returned invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise AIResponseError("model returned JSON that is not an object")
    return payload


def _run(
    operation: str,
    client: ChatCompletionClient | None,
    system_prompt: str,
    user_prompt: str,
    parse: Callable[[str], T],
    fallback: Callable[[], T],
    *,
    unavailable: Callable[[], T] | None = None,
    json_mode: bool = True,
) -> AIResult[T]:
    with tracer.start_as_current_span(f"ai.{operation}") as span:
        span.set_attribute("correlation_id", get_correlation_id() or "")
        if client is None:
            observe_ai_request(operation, "unavailable")
            span.set_attribute("ai.outcome", "degraded")
            return AIResult.degraded((unavailable or fallback)(), "ai_unavailable")

        try:
            raw = client.complete(system_prompt, user_prompt, json_mode=json_mode)
            value = parse(raw)
        except AIResponseError as exc:
            observe_ai_request(operation, "invalid_response")
            span.set_attribute("ai.outcome", "degraded")
            logger.warning(
                "ai.invalid_response",
                extra={"operation": operation, "outcome": "degraded", "error": str(exc)},
            )
            return AIResult.degraded(fallback(), f"invalid_response: {exc}")
        except Exception as exc:
            observe_ai_request(operation, "error")
            span.set_attribute("ai.outcome", "degraded")
            span.record_exception(exc)
            logger.warning(
                "ai.call_failed",
                extra={"operation": operation, "outcome": "degraded", "error": f"{type(exc).__name__}: {exc}"},
            )
            return AIResult.degraded(fallback(), f"error: {type(exc).__name__}")

        observe_ai_request(operation, "ok")
        span.set_attribute("ai.outcome", "ok")
        return AIResult.ok(value)


def parse_lead_score(raw: str) -> LeadScore:
    payload = parse_json_object(raw)
    score = _coerce_float(payload.get("score"))
    if score is None:
        raise AIResponseError("score is missing or not numeric")
    temperature = payload.get("temperature")
    return LeadScore(
        score=int(round(clamp(score, 0, 100, DEFAULT_LEAD_SCORE.score))),
        confidence=clamp(payload.get("confidence"), 0, 1, DEFAULT_LEAD_SCORE.confidence),
        reasons=coerce_string_list(payload.get("reasons")),
        temperature=temperature if temperature in TEMPERATURES else "cold",
    )


def temperature_for_score(score: int) -> str:
    if score > 75:
        return "hot"
    if score > 60:
        return "warm"
    return "cold"


def _choice_key(value: str | None) -> str:
    """Form choices are snake_case; tolerate "Walk-in" or "short term" spellings."""
    return (value or "").strip().lower().replace("-", "_").replace(" ", "_")


def heuristic_lead_score(lead: LeadProfile) -> LeadScore:
    """Deterministic score used when no model is configured."""
    score = 20
    reasons: list[str] = []

    if lead.email and lead.phone:
        score += 15
        reasons.append("Complete contact information")
    elif lead.email or lead.phone:
        score += 8
        reasons.append("Partial contact information")

    if lead.budget is not None and lead.budget_max is not None:
        score += 20
        reasons.append("Budget range specified")
    elif lead.budget is not None or lead.budget_max is not None:
        score += 10
        reasons.append("Budget indicated")

    timeline_points = _HEURISTIC_TIMELINE_POINTS.get(_choice_key(lead.timeline), 0)
    if timeline_points:
        score += timeline_points
        reasons.append(f"Timeline: {lead.timeline}")

    source_points = _HEURISTIC_SOURCE_POINTS.get(_choice_key(lead.source), _HEURISTIC_UNKNOWN_SOURCE_POINTS)
    score += source_points
    reasons.append(f"Source quality assessed ({lead.source})")

    if lead.notes and len(lead.notes.strip()) > 20:
        score += 5
        reasons.append("Engagement noted")

    final_score = max(0, min(100, score))
    return LeadScore(
        score=final_score,
        confidence=0.5,
        reasons=reasons,
        temperature=temperature_for_score(final_score),  # type: ignore[arg-type]
    )


def score_lead(client: ChatCompletionClient | None, lead: LeadProfile) -> AIResult[LeadScore]:
    prompt = f"""
Analyze this real estate lead and provide a scoring assessment.

Lead Information:
- Name: {lead.first_name} {lead.last_name}
- Email: {lead.email or "Not provided"}
- Phone: {lead.phone or "Not provided"}
- Budget: ${format_amount(lead.budget)} - ${format_amount(lead.budget_max)}
- Source: {lead.source}
- Timeline: {lead.timeline or "Not specified"}
- Notes: {lead.notes or "None"}

Please score this lead from 0-100 based on:
1. Budget clarity and realistic range
2. Contact information completeness
3. Timeline urgency
4. Source quality
5. Engagement indicators from notes

Respond with JSON in this format:
{{"score": number (0-100), "confidence": number (0-1), "reasons": ["reason1", "reason2"], "temperature": "hot" | "warm" | "cold"}}
"""
    return _run(
        "score_lead",
        client,
        "You are a real estate lead scoring expert. Analyze leads and provide accurate scoring with clear reasoning.",
        prompt,
        parse_lead_score,
        lambda: DEFAULT_LEAD_SCORE.model_copy(deep=True),
        unavailable=lambda: heuristic_lead_score(lead),
    )


def parse_property_match(raw: str) -> PropertyMatch:
    payload = parse_json_object(raw)
    match_score = _coerce_float(payload.get("match_score", payload.get("matchScore")))
    if match_score is None:
        raise AIResponseError("match_score is missing or not numeric")
    return PropertyMatch(
        match_score=int(round(clamp(match_score, 0, 100, 0))),
        reasons=coerce_string_list(payload.get("reasons")),
        confidence=clamp(payload.get("confidence"), 0, 1, DEFAULT_PROPERTY_MATCH.confidence),
    )


def match_property(
    client: ChatCompletionClient | None, lead: LeadProfile, prop: PropertyProfile
) -> AIResult[PropertyMatch]:
    prompt = f"""
Analyze how well this property matches the lead's preferences.

Lead Preferences:
- Budget: ${format_amount(lead.budget)} - ${format_amount(lead.budget_max)}
- Preferred Locations: {", ".join(lead.preferred_locations) or "Not specified"}
- Property Types: {", ".join(lead.property_types) or "Not specified"}

Property Details:
- Price: ${format_amount(prop.price)}
- Location: {prop.city}
- Type: {prop.property_type}
- Bedrooms: {prop.bedrooms or "Not specified"}
- Bathrooms: {prop.bathrooms or "Not specified"}
- Square Feet: {format_amount(prop.square_feet)}
- Features: {", ".join(prop.features) or "None listed"}

Score the match from 0-100 based on price within budget, location preference,
property type preference, and size and features alignment.

Respond with JSON in this format:
{{"match_score": number (0-100), "reasons": ["reason1", "reason2"], "confidence": number (0-1)}}
"""
    return _run(
        "match_property",
        client,
        "You are a real estate matching expert. Analyze property-lead compatibility with clear reasoning.",
        prompt,
        parse_property_match,
        lambda: DEFAULT_PROPERTY_MATCH.model_copy(deep=True),
    )


def fallback_follow_up_message(lead: LeadProfile, channel: MessageChannel) -> MessageDraft:
    return MessageDraft(
        message=(
            f"Hi {lead.first_name}, I wanted to follow up on your real estate inquiry. "
            "When would be a good time to discuss your needs further?"
        ),
        channel=channel,
        tone="professional",
    )


def generate_follow_up_message(
    client: ChatCompletionClient | None,
    lead: LeadProfile,
    channel: MessageChannel,
    context: str | None = None,
    last_contact: str | None = None,
) -> AIResult[MessageDraft]:
    def parse(raw: str) -> MessageDraft:
        payload = parse_json_object(raw)
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            raise AIResponseError("message is missing")
        subject = payload.get("subject")
        tone = payload.get("tone")
        return MessageDraft(
            subject=subject if isinstance(subject, str) and subject and channel == "email" else None,
            message=message.strip(),
            channel=channel,
            tone=tone if tone in TONES else "professional",
        )

    prompt = f"""
Generate a personalized follow-up message for this real estate lead.

Lead Information:
- Name: {lead.first_name} {lead.last_name}
- Current Status: {lead.status}
- Last Contact: {last_contact or "Unknown"}
- Notes: {lead.notes or "None"}
- Channel: {channel}
- Additional Context: {context or "None"}

Create a {channel} message that is professional but friendly, personalized to their situation,
contains a clear call-to-action and has an appropriate length for {channel}.
For email, include a subject line.

Respond with JSON in this format:
{{"subject": "string (only for email)", "message": "string", "channel": "{channel}", "tone": "professional" | "friendly" | "urgent"}}
"""
    return _run(
        "generate_message",
        client,
        "You are a real estate communication expert. Write engaging, personalized follow-up messages that drive action.",
        prompt,
        parse,
        lambda: fallback_follow_up_message(lead, channel),
    )


def parse_insights(raw: str) -> PortfolioInsights:
    payload = parse_json_object(raw)
    insights = PortfolioInsights(
        insights=coerce_string_list(payload.get("insights")),
        recommendations=coerce_string_list(payload.get("recommendations")),
        priority_actions=coerce_string_list(payload.get("priority_actions")),
    )
    if not (insights.insights or insights.recommendations or insights.priority_actions):
        raise AIResponseError("insights payload is empty")
    return insights


def generate_insights(
    client: ChatCompletionClient | None,
    *,
    total_leads: int,
    active_deals: int,
    conversion_rate: float | None,
    recent_activity_count: int,
) -> AIResult[PortfolioInsights]:
    rate = f"{conversion_rate:.1f}" if conversion_rate is not None else "Unknown"
    prompt = f"""
Analyze this real estate CRM data and provide actionable insights.

Current Metrics:
- Total Leads: {total_leads}
- Active Deals: {active_deals}
- Conversion Rate: {rate}%
- Recent Activities: {recent_activity_count} recent actions

Provide key insights about current performance, recommendations for improvement,
and priority actions for today and this week.

Respond with JSON in this format:
{{"insights": ["insight1"], "recommendations": ["rec1"], "priority_actions": ["action1"]}}
"""
    return _run(
        "insights",
        client,
        "You are a real estate business intelligence expert. Provide actionable insights and recommendations.",
        prompt,
        parse_insights,
        lambda: DEFAULT_INSIGHTS.model_copy(deep=True),
    )


def default_recommendations(status: str) -> LeadRecommendations:
    return LeadRecommendations(recommendations=list(_DEFAULT_RECOMMENDATIONS.get(status, _DEFAULT_RECOMMENDATIONS["new"])))


def _activity_context(activities: list[ActivitySummary]) -> str:
    if not activities:
        return "No recent activities recorded."
    return "Recent activities: " + ", ".join(f"{item.type}: {item.title}" for item in activities)


def _task_context(tasks: list[TaskSummary]) -> str:
    if not tasks:
        return "No pending tasks."
    return "Pending tasks: " + ", ".join(f"{item.title} ({item.priority} priority)" for item in tasks)


def generate_lead_recommendations(
    client: ChatCompletionClient | None,
    lead: LeadProfile,
    recent_activities: list[ActivitySummary],
    pending_tasks: list[TaskSummary],
) -> AIResult[LeadRecommendations]:
    def parse(raw: str) -> LeadRecommendations:
        payload = parse_json_object(raw)
        recommendations = coerce_string_list(payload.get("recommendations"))
        if not recommendations:
            raise AIResponseError("recommendations list is empty")
        return LeadRecommendations(recommendations=recommendations)

    prompt = f"""
Analyze this real estate lead and provide 3-5 specific, actionable recommendations.

Lead Information:
- Name: {lead.first_name} {lead.last_name}
- Status: {lead.status}
- Budget: ${format_amount(lead.budget)}
- Property Types: {", ".join(lead.property_types) or "Not specified"}
- Timeline: {lead.timeline or "Not specified"}
- Lead Score: {lead.score if lead.score is not None else "Unknown"}/100
- Source: {lead.source}
- Notes: {lead.notes or "No notes available"}

{_activity_context(recent_activities)}
{_task_context(pending_tasks)}

Respond with JSON in this format: {{"recommendations": ["recommendation 1", "recommendation 2"]}}
"""
    return _run(
        "lead_recommendations",
        client,
        "You are an expert real estate sales manager who provides strategic recommendations for lead management. "
        "Always respond with valid JSON.",
        prompt,
        parse,
        lambda: default_recommendations(lead.status),
    )


def default_next_action(lead: LeadProfile, current_score: int, status: str, today: date | None = None) -> NextAction:
    action_type, title, template, days = _DEFAULT_NEXT_ACTIONS.get(status, _DEFAULT_NEXT_ACTIONS["new"])
    description = template.format(
        name=f"{lead.first_name} {lead.last_name}".strip(),
        first_name=lead.first_name,
        budget=format_amount(lead.budget),
    )
    if current_score >= 80:
        title = f"HIGH PRIORITY: {title}"
        description = f"URGENT - High-scoring lead ({current_score}/100): {description}"
    elif current_score < 50:
        action_type = "email"
        title = "Re-engagement campaign"
        description = (
            f"Lead score is low ({current_score}/100). Send re-engagement email to understand current needs "
            "and timeline. Consider offering market updates or new listings."
        )
    return NextAction(
        type=action_type,  # type: ignore[arg-type]
        title=title,
        description=description,
        due_date=(today or date.today()) + timedelta(days=days),
    )


def generate_next_action(
    client: ChatCompletionClient | None,
    lead: LeadProfile,
    recent_activities: list[ActivitySummary],
    pending_tasks: list[TaskSummary],
    current_score: int,
    status: str,
) -> AIResult[NextAction]:
    def parse(raw: str) -> NextAction:
        payload = parse_json_object(raw)
        action_type = payload.get("type")
        title = payload.get("title")
        description = payload.get("description")
        if action_type not in NEXT_ACTION_TYPES or not isinstance(title, str) or not isinstance(description, str):
            raise AIResponseError("next action is missing type, title or description")
        due_raw = payload.get("due_date", payload.get("dueDate"))
        try:
            due = date.fromisoformat(str(due_raw)[:10])
        except ValueError:
            due = date.today() + timedelta(days=1)
        return NextAction(type=action_type, title=title, description=description, due_date=due)

    prompt = f"""
Lead: {lead.first_name} {lead.last_name}
Status: {status}
Score: {current_score}/100
Budget: ${format_amount(lead.budget)}
Timeline: {lead.timeline or "Not specified"}
Source: {lead.source}

{_activity_context(recent_activities)}
{_task_context(pending_tasks)}

What should be the next action to maximize conversion chances?
"""
    system_prompt = (
        "You are an expert real estate CRM assistant. Generate the optimal next action for a lead based on "
        "their profile and interaction history. Respond with JSON in this exact format: "
        '{"type": "call|email|meeting|note", "title": "Brief action title", '
        '"description": "Detailed description", "due_date": "YYYY-MM-DD"}'
    )
    return _run(
        "next_action",
        client,
        system_prompt,
        prompt,
        parse,
        lambda: default_next_action(lead, current_score, status),
    )


def fallback_chat_response(message: str, context: ChatContext, business: dict[str, Any]) -> ChatReply:
    lower = message.lower()
    leads: list[dict[str, Any]] = business.get("leads", [])
    page = context.page or "dashboard"

    if page == "dashboard":
        if "lead" in lower or "new" in lower:
            return ChatReply(
                response=(
                    f"You have {len(leads)} total leads. Your highest priority leads are those with scores above 80. "
                    "Would you like me to show you specific lead details?"
                )
            )
        if "deal" in lower or "revenue" in lower:
            return ChatReply(
                response=(
                    f"You have {business.get('active_deals', 0)} active deals in your pipeline. "
                    f"Total revenue from closed deals is ${format_amount(business.get('total_revenue'))}."
                )
            )
        if "task" in lower or "today" in lower:
            return ChatReply(
                response=(
                    f"You have {business.get('pending_tasks', 0)} pending tasks. Focus on high-priority items "
                    "and follow-ups with qualified leads today."
                )
            )

    if page == "leads":
        if "score" in lower or "priority" in lower:
            high = [lead for lead in leads if lead.get("score", 0) > 80]
            focus = ", ".join(f"{lead['name']} ({lead['score']})" for lead in high[:3])
            return ChatReply(response=f"You have {len(high)} high-scoring leads (80+). Focus on: {focus}.")
        if "follow up" in lower or "contact" in lower:
            return ChatReply(
                response=(
                    'For effective follow-ups, prioritize leads in "qualified" status first, then "contacted" '
                    "leads. Use personalized messages mentioning their property preferences."
                )
            )

    if page == "properties":
        if "match" in lower or "suitable" in lower:
            return ChatReply(
                response=(
                    "I can help match properties to leads based on budget, location, and property type "
                    "preferences. Which specific lead or criteria would you like me to analyze?"
                )
            )
        if "price" in lower or "value" in lower:
            return ChatReply(
                response=(
                    f"Your property portfolio has an average value of ${format_amount(business.get('average_property_price'))}. "
                    "Properties are distributed across different price ranges and locations."
                )
            )

    if context.lead_id is not None:
        lead = next((item for item in leads if item.get("id") == str(context.lead_id)), None)
        if lead is not None:
            next_step = {"new": "Initial contact", "contacted": "Qualification call"}.get(
                lead.get("status", ""), "Property presentation"
            )
            return ChatReply(
                response=(
                    f"For {lead['name']}: Their score is {lead.get('score', 0)}/100, budget is "
                    f"${format_amount(lead.get('budget'))}, and they're interested in "
                    f"{', '.join(lead.get('property_types') or []) or 'any property type'}. Next step: {next_step}."
                )
            )

    if "help" in lower or "what can you do" in lower:
        return ChatReply(
            response=(
                "I can help you with:\n- Lead analysis and scoring\n- Property matching recommendations\n"
                "- Pipeline management insights\n- Task prioritization\n- Market trend analysis\n"
                "- Automated follow-up suggestions\n\nWhat specific area would you like assistance with?"
            )
        )

    return ChatReply(
        response=(
            f'I understand you\'re asking about "{message}". I can analyze your current {context.page or "data"} '
            "and provide specific insights. What particular aspect would you like me to focus on?"
        )
    )


def chat(
    client: ChatCompletionClient | None,
    message: str,
    context: ChatContext,
    business: dict[str, Any],
) -> AIResult[ChatReply]:
    def parse(raw: str) -> ChatReply:
        text = raw.strip()
        if not text:
            raise AIResponseError("empty chat response")
        return ChatReply(response=text)

    page_data = json.dumps(context.data, default=str)[:500] if context.data else ""
    summary = {key: value for key, value in business.items() if key != "leads"}
    prompt = f"""
You are an intelligent real estate CRM assistant. The user is asking: "{message}"

Context:
Current page: {context.page or "unknown"}
Page data: {page_data}
- User has {len(business.get("leads", []))} leads, {business.get("property_count", 0)} properties, {business.get("deal_count", 0)} deals
- Analytics: {json.dumps(summary, default=str)}

Respond conversationally and helpfully. Provide specific, actionable insights based on their real data.
Keep the response under 200 words.
"""
    return _run(
        "chat",
        client,
        "You are a helpful real estate CRM assistant.",
        prompt,
        parse,
        lambda: fallback_chat_response(message, context, business),
        json_mode=False,
    )
