from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from estatecrm.ai.api import router as ai_router
from estatecrm.api.errors import error_response, route_errors
from estatecrm.core.auth import AuthUser, get_current_user as get_auth_user, issue_session_token
from estatecrm.core.config import get_settings
from estatecrm.core.database import get_db
from estatecrm.crm.api import (
    activities_router,
    analytics_router,
    communications_router,
    deals_router,
    get_current_user,
    leads_router,
    notifications_router,
    properties_router,
    settings_router,
    tasks_router,
    user_service,
)
from estatecrm.crm.schemas import LoginRequest, MessageResponse, UserRead
from estatecrm.crm.service import ActorUser
from estatecrm.metrics import generate_metrics_payload, metrics_content_type
from estatecrm.objects.api import router as objects_router

router = APIRouter()
router.include_router(leads_router)
router.include_router(properties_router)
router.include_router(deals_router)
router.include_router(tasks_router)
router.include_router(activities_router)
router.include_router(notifications_router)
router.include_router(communications_router)
router.include_router(analytics_router)
router.include_router(settings_router)
router.include_router(ai_router)
router.include_router(objects_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.post("/api/login", response_model=UserRead, tags=["auth"])
def login(
    request: Request,
    dto: LoginRequest,
    response: Response,
    db: Session = Depends(get_db),
) -> UserRead | JSONResponse:
    settings = get_settings()
    if not settings.dev_login_enabled:
        return error_response(request, status_code=status.HTTP_404_NOT_FOUND, code="not_found", message="Not Found")

    user = user_service.upsert_dev_user(db, email=str(dto.email), first_name=dto.first_name, last_name=dto.last_name)
    token = issue_session_token(user.id, user.email, [user.role])
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_ttl_minutes * 60,
        httponly=True,
        samesite="lax",
        secure=settings.app_env.lower() in {"prod", "production"},
    )
    return user


@router.post("/api/logout", response_model=MessageResponse, tags=["auth"])
def logout(response: Response) -> MessageResponse:
    response.delete_cookie(get_settings().session_cookie_name)
    return MessageResponse(message="Logged out")


@router.get("/api/auth/user", response_model=UserRead, tags=["auth"])
@route_errors("auth_user_failed")
def auth_user(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    return user_service.get_user(db, user)


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_auth_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
