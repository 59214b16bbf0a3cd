import re
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from estatecrm.ai import service as ai_service
from estatecrm.ai.client import ChatCompletionClient, get_chat_client
from estatecrm.ai.schemas import (
    AIResponse,
    ChatReply,
    ChatRequest,
    GenerateMessageRequest,
    LeadProfile,
    LeadRecommendations,
    LeadRecommendationsRequest,
    LeadScore,
    MatchPropertyRequest,
    MessageDraft,
    NextAction,
    NextActionRequest,
    PortfolioInsights,
    PropertyMatch,
    QueryAnswer,
    QueryRequest,
)
from estatecrm.api.errors import route_errors
from estatecrm.core.database import get_db
from estatecrm.crm.api import get_current_user
from estatecrm.crm.notifications import notification_dispatcher
from estatecrm.crm.service import ActorUser, AnalyticsService, MatchService

router = APIRouter(prefix="/api/ai", tags=["ai"])
match_service = MatchService()
analytics_service = AnalyticsService()


@router.post("/score-lead", response_model=AIResponse[LeadScore])
def score_lead(
    request: Request,
    dto: LeadProfile,
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> AIResponse[Any]:
    return AIResponse.from_result(ai_service.score_lead(chat_client, dto))


@router.post("/match-property", response_model=AIResponse[PropertyMatch])
@route_errors("ai_match_failed")
def match_property(
    request: Request,
    dto: MatchPropertyRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> AIResponse[Any] | JSONResponse:
    result = match_service.match(
        db,
        user,
        chat_client,
        lead_id=dto.lead_id,
        property_id=dto.property_id,
        lead=dto.lead,
        prop=dto.property,
    )
    return AIResponse.from_result(result)


@router.post("/generate-message", response_model=AIResponse[MessageDraft])
def generate_message(
    request: Request,
    dto: GenerateMessageRequest,
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> AIResponse[Any]:
    result = ai_service.generate_follow_up_message(chat_client, dto.lead, dto.channel, dto.context, dto.last_contact)
    return AIResponse.from_result(result)


@router.get("/insights", response_model=AIResponse[PortfolioInsights])
def portfolio_insights(
    request: Request,
    notify: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> AIResponse[Any]:
    detailed = analytics_service.detailed_analytics(db, user)
    metrics = analytics_service.dashboard_metrics(db, user)
    result = ai_service.generate_insights(
        chat_client,
        total_leads=metrics.total_leads,
        active_deals=metrics.active_deals,
        conversion_rate=detailed.conversion_rate,
        recent_activity_count=len(metrics.recent_activities),
    )
    if notify and not result.is_degraded and result.value.insights:
        notification_dispatcher.on_ai_insight_generated(db, result.value.insights[0], "portfolio", None, user.user_id)
        db.commit()
    return AIResponse.from_result(result)


@router.post("/lead-recommendations", response_model=AIResponse[LeadRecommendations])
def lead_recommendations(
    request: Request,
    dto: LeadRecommendationsRequest,
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> AIResponse[Any]:
    result = ai_service.generate_lead_recommendations(chat_client, dto.lead, dto.recent_activities, dto.pending_tasks)
    return AIResponse.from_result(result)


@router.post("/generate-next-action", response_model=AIResponse[NextAction])
def generate_next_action(
    request: Request,
    dto: NextActionRequest,
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> AIResponse[Any]:
    result = ai_service.generate_next_action(
        chat_client,
        dto.lead,
        dto.recent_activities,
        dto.pending_tasks,
        dto.current_score,
        dto.status,
    )
    return AIResponse.from_result(result)


@router.post("/chat", response_model=AIResponse[ChatReply])
def chat(
    request: Request,
    dto: ChatRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> AIResponse[Any]:
    business = analytics_service.business_snapshot(db, user)
    return AIResponse.from_result(ai_service.chat(chat_client, dto.message, dto.context, business))


_QUERY_TOPICS: dict[str, tuple[str, ...]] = {
    "leads": ("lead", "prospect", "buyer"),
    "deals": ("deal", "pipeline", "offer"),
    "revenue": ("revenue", "commission", "earn", "money"),
    "properties": ("propert", "listing", "house", "home"),
    "tasks": ("task", "todo", "to-do", "follow"),
}


def answer_query(query: str, business: dict[str, Any]) -> QueryAnswer:
    """Answer a free-form portfolio question from the dashboard figures."""
    lowered = query.lower()
    topics = [topic for topic, words in _QUERY_TOPICS.items() if any(word in lowered for word in words)]
    if not topics:
        topics = list(_QUERY_TOPICS)

    parts: list[str] = []
    data: dict[str, Any] = {}
    if "leads" in topics:
        hot = [lead for lead in business["leads"] if lead["score"] >= 80]
        data["total_leads"] = business["total_leads"]
        data["high_score_leads"] = len(hot)
        parts.append(f"You have {business['total_leads']} leads, {len(hot)} of them scoring 80 or above.")
    if "deals" in topics:
        data["active_deals"] = business["active_deals"]
        parts.append(f"There are {business['active_deals']} active deals in the pipeline.")
    if "revenue" in topics:
        data["total_revenue"] = str(business["total_revenue"])
        parts.append(f"Commission from closed deals totals ${ai_service.format_amount(business['total_revenue'])}.")
    if "properties" in topics:
        data["active_properties"] = business["active_properties"]
        data["average_property_price"] = str(business["average_property_price"])
        parts.append(
            f"{business['active_properties']} properties are available, averaging "
            f"${ai_service.format_amount(business['average_property_price'])}."
        )
    if "tasks" in topics:
        data["pending_tasks"] = business["pending_tasks"]
        parts.append(f"{business['pending_tasks']} tasks are still open.")

    match = re.search(r"\btop\s+(\d+)\b", lowered)
    if match and "leads" in topics:
        count = min(int(match.group(1)), 10)
        data["top_leads"] = business["leads"][:count]
    return QueryAnswer(answer=" ".join(parts), data=data)


@router.post("/query", response_model=QueryAnswer)
def query_portfolio(
    request: Request,
    dto: QueryRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QueryAnswer:
    return answer_query(dto.query, analytics_service.business_snapshot(db, user))
