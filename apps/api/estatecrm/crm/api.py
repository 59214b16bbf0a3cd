import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from estatecrm.ai.client import ChatCompletionClient, get_chat_client
from estatecrm.api.errors import route_errors
from estatecrm.context import get_correlation_id
from estatecrm.core.auth import AuthUser, get_current_user as get_auth_user
from estatecrm.core.database import get_db
from estatecrm.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    CommunicationCreate,
    CommunicationRead,
    CommunicationStats,
    CommunicationDirection,
    CommunicationType,
    CommunicationUpdate,
    CountResponse,
    DashboardMetrics,
    DealCreate,
    DealRead,
    DealUpdate,
    DetailedAnalytics,
    DueRemindersResponse,
    FollowUpReminderRequest,
    LeadCreate,
    LeadPropertyMatchRead,
    LeadRead,
    LeadUpdate,
    LogCallRequest,
    MessageResponse,
    NotificationCreate,
    NotificationRead,
    NotificationSettings,
    NotificationSettingsUpdate,
    ProfileUpdate,
    PropertyCreate,
    PropertyRead,
    PropertyUpdate,
    PropertyViewRequest,
    ScheduleAppointmentRequest,
    SendEmailRequest,
    StatusUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    UpdatedResponse,
    UserPreferences,
    UserPreferencesUpdate,
    UserRead,
)
from estatecrm.crm.service import (
    ActivityService,
    ActorUser,
    AnalyticsService,
    CommunicationService,
    DealService,
    LeadService,
    NotificationService,
    PropertyService,
    SettingsService,
    TaskService,
    UserService,
)

leads_router = APIRouter(prefix="/api/leads", tags=["crm.leads"])
properties_router = APIRouter(prefix="/api/properties", tags=["crm.properties"])
deals_router = APIRouter(prefix="/api/deals", tags=["crm.deals"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])
activities_router = APIRouter(prefix="/api/activities", tags=["crm.activities"])
notifications_router = APIRouter(prefix="/api/notifications", tags=["crm.notifications"])
communications_router = APIRouter(prefix="/api/communications", tags=["crm.communications"])
analytics_router = APIRouter(prefix="/api", tags=["crm.analytics"])
settings_router = APIRouter(prefix="/api/settings", tags=["crm.settings"])

lead_service = LeadService()
property_service = PropertyService()
deal_service = DealService()
task_service = TaskService()
activity_service = ActivityService()
notification_service = NotificationService()
communication_service = CommunicationService()
analytics_service = AnalyticsService()
user_service = UserService()
settings_service = SettingsService(user_service)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        email=auth_user.email,
        roles={str(role).lower() for role in auth_user.roles},
        correlation_id=correlation_id,
    )


@leads_router.get("", response_model=list[LeadRead])
@route_errors("lead_list_failed")
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to: str | None = Query(default=None),
    search: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    return lead_service.list_leads(
        db,
        user,
        filters={"status": status_filter, "assigned_to": assigned_to, "search": search},
        limit=limit,
    )


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
@route_errors("lead_create_failed")
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> LeadRead | JSONResponse:
    return lead_service.create_lead(db, user, dto, chat_client)


@leads_router.get("/{lead_id}", response_model=LeadRead)
@route_errors("lead_get_failed")
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    return lead_service.get_lead(db, user, lead_id)


@leads_router.patch("/{lead_id}", response_model=LeadRead)
@route_errors("lead_update_failed", transitions=True)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    return lead_service.update_lead(db, user, lead_id, dto)


@leads_router.delete("/{lead_id}", response_model=MessageResponse)
@route_errors("lead_delete_failed")
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    lead_service.delete_lead(db, user, lead_id)
    return MessageResponse(message="Lead deleted successfully")


@leads_router.patch("/{lead_id}/status", response_model=LeadRead)
@route_errors("lead_status_failed", transitions=True)
def change_lead_status(
    request: Request,
    lead_id: uuid.UUID,
    dto: StatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    return lead_service.change_status(db, user, lead_id, dto.status)


@leads_router.post("/{lead_id}/rescore", response_model=LeadRead)
@route_errors("lead_rescore_failed")
def rescore_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    chat_client: ChatCompletionClient | None = Depends(get_chat_client),
) -> LeadRead | JSONResponse:
    lead, _ = lead_service.rescore_lead(db, user, lead_id, chat_client)
    return lead


@leads_router.get("/{lead_id}/matches", response_model=list[LeadPropertyMatchRead])
@route_errors("lead_matches_failed")
def list_lead_matches(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadPropertyMatchRead] | JSONResponse:
    return lead_service.list_matches(db, user, lead_id)


@leads_router.post(
    "/{lead_id}/follow-up-reminder",
    response_model=NotificationRead,
    status_code=status.HTTP_201_CREATED,
)
@route_errors("lead_follow_up_failed")
def create_follow_up_reminder(
    request: Request,
    lead_id: uuid.UUID,
    dto: FollowUpReminderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    return lead_service.create_follow_up_reminder(db, user, lead_id, dto.reminder_type)


@properties_router.get("", response_model=list[PropertyRead])
@route_errors("property_list_failed")
def list_properties(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    property_type: str | None = Query(default=None),
    city: str | None = Query(default=None),
    min_price: Decimal | None = Query(default=None, ge=0),
    max_price: Decimal | None = Query(default=None, ge=0),
    bedrooms: int | None = Query(default=None, ge=0),
    limit: int = Query(default=25, ge=1, le=50),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PropertyRead] | JSONResponse:
    return property_service.list_properties(
        db,
        user,
        filters={
            "status": status_filter,
            "property_type": property_type,
            "city": city,
            "min_price": min_price,
            "max_price": max_price,
            "bedrooms": bedrooms,
        },
        limit=limit,
    )


@properties_router.post("", response_model=PropertyRead, status_code=status.HTTP_201_CREATED)
@route_errors("property_create_failed")
def create_property(
    request: Request,
    dto: PropertyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PropertyRead | JSONResponse:
    return property_service.create_property(db, user, dto)


@properties_router.get("/{property_id}", response_model=PropertyRead)
@route_errors("property_get_failed")
def get_property(
    request: Request,
    property_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PropertyRead | JSONResponse:
    return property_service.get_property(db, user, property_id)


@properties_router.patch("/{property_id}", response_model=PropertyRead)
@route_errors("property_update_failed", transitions=True)
def patch_property(
    request: Request,
    property_id: uuid.UUID,
    dto: PropertyUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PropertyRead | JSONResponse:
    return property_service.update_property(db, user, property_id, dto)


@properties_router.delete("/{property_id}", response_model=MessageResponse)
@route_errors("property_delete_failed")
def delete_property(
    request: Request,
    property_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    property_service.delete_property(db, user, property_id)
    return MessageResponse(message="Property deleted successfully")


@properties_router.patch("/{property_id}/status", response_model=PropertyRead)
@route_errors("property_status_failed", transitions=True)
def change_property_status(
    request: Request,
    property_id: uuid.UUID,
    dto: StatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PropertyRead | JSONResponse:
    return property_service.change_status(db, user, property_id, dto.status)


@properties_router.post("/{property_id}/views", response_model=NotificationRead, status_code=status.HTTP_201_CREATED)
@route_errors("property_view_failed")
def record_property_view(
    request: Request,
    property_id: uuid.UUID,
    dto: PropertyViewRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    return property_service.record_view(db, user, property_id, dto.viewer_name)


@deals_router.get("", response_model=list[DealRead])
@route_errors("deal_list_failed")
def list_deals(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    return deal_service.list_deals(db, user, filters={"status": status_filter, "assigned_to": assigned_to})


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
@route_errors("deal_create_failed")
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    return deal_service.create_deal(db, user, dto)


@deals_router.get("/{deal_id}", response_model=DealRead)
@route_errors("deal_get_failed")
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    return deal_service.get_deal(db, user, deal_id)


@deals_router.patch("/{deal_id}", response_model=DealRead)
@route_errors("deal_update_failed")
def patch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    return deal_service.update_deal(db, user, deal_id, dto)


@deals_router.delete("/{deal_id}", response_model=MessageResponse)
@route_errors("deal_delete_failed")
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    deal_service.delete_deal(db, user, deal_id)
    return MessageResponse(message="Deal deleted successfully")


@deals_router.patch("/{deal_id}/status", response_model=DealRead)
@route_errors("deal_status_failed", transitions=True)
def change_deal_status(
    request: Request,
    deal_id: uuid.UUID,
    dto: StatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    return deal_service.change_status(db, user, deal_id, dto.status)


@tasks_router.get("", response_model=list[TaskRead])
@route_errors("task_list_failed")
def list_tasks(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to: str | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    priority: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    return task_service.list_tasks(
        db,
        user,
        filters={"status": status_filter, "assigned_to": assigned_to, "lead_id": lead_id, "priority": priority},
    )


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
@route_errors("task_create_failed")
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    return task_service.create_task(db, user, dto)


@tasks_router.post("/due-reminders", response_model=DueRemindersResponse)
@route_errors("task_due_reminders_failed")
def send_due_reminders(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DueRemindersResponse | JSONResponse:
    return DueRemindersResponse(notified=task_service.send_due_reminders(db, user))


@tasks_router.get("/{task_id}", response_model=TaskRead)
@route_errors("task_get_failed")
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    return task_service.get_task(db, user, task_id)


@tasks_router.patch("/{task_id}", response_model=TaskRead)
@route_errors("task_update_failed", transitions=True)
def patch_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    return task_service.update_task(db, user, task_id, dto)


@tasks_router.delete("/{task_id}", response_model=MessageResponse)
@route_errors("task_delete_failed")
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    task_service.delete_task(db, user, task_id)
    return MessageResponse(message="Task deleted successfully")


@tasks_router.post("/{task_id}/complete", response_model=TaskRead)
@route_errors("task_complete_failed")
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    return task_service.complete_task(db, user, task_id)


@activities_router.get("", response_model=list[ActivityRead])
@route_errors("activity_list_failed")
def list_activities(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None),
    property_id: uuid.UUID | None = Query(default=None),
    deal_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    return activity_service.list_activities(
        db,
        user,
        filters={"lead_id": lead_id, "property_id": property_id, "deal_id": deal_id},
        limit=limit,
    )


@activities_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
@route_errors("activity_create_failed")
def create_activity(
    request: Request,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    return activity_service.create_activity(db, user, dto)


@notifications_router.get("", response_model=list[NotificationRead])
@route_errors("notification_list_failed")
def list_notifications(
    request: Request,
    is_read: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    return notification_service.list_notifications(db, user, is_read, limit)


@notifications_router.post("", response_model=NotificationRead, status_code=status.HTTP_201_CREATED)
@route_errors("notification_create_failed")
def create_notification(
    request: Request,
    dto: NotificationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    return notification_service.create_notification(db, user, dto)


@notifications_router.get("/unread-count", response_model=CountResponse)
@route_errors("notification_count_failed")
def unread_notification_count(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CountResponse | JSONResponse:
    return CountResponse(count=notification_service.unread_count(db, user))


@notifications_router.patch("/read-all", response_model=UpdatedResponse)
@route_errors("notification_read_all_failed")
def mark_all_notifications_read(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UpdatedResponse | JSONResponse:
    return UpdatedResponse(updated=notification_service.mark_all_read(db, user))


@notifications_router.patch("/{notification_id}/read", response_model=NotificationRead)
@route_errors("notification_read_failed")
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    return notification_service.mark_read(db, user, notification_id)


@communications_router.get("", response_model=list[CommunicationRead])
@route_errors("communication_list_failed")
def list_communications(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None),
    type_filter: CommunicationType | None = Query(default=None, alias="type"),
    direction: CommunicationDirection | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CommunicationRead] | JSONResponse:
    return communication_service.list_communications(
        db,
        user,
        filters={"lead_id": lead_id, "type": type_filter, "direction": direction},
        limit=limit,
    )


@communications_router.post("", response_model=CommunicationRead, status_code=status.HTTP_201_CREATED)
@route_errors("communication_create_failed")
def create_communication(
    request: Request,
    dto: CommunicationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationRead | JSONResponse:
    return communication_service.create_communication(db, user, dto)


@communications_router.get("/stats", response_model=CommunicationStats)
@route_errors("communication_stats_failed")
def communication_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationStats | JSONResponse:
    return communication_service.stats(db, user)


@communications_router.post("/send-email", response_model=CommunicationRead, status_code=status.HTTP_201_CREATED)
@route_errors("communication_send_email_failed")
def send_email(
    request: Request,
    dto: SendEmailRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationRead | JSONResponse:
    return communication_service.send_email(db, user, dto)


@communications_router.post("/log-call", response_model=CommunicationRead, status_code=status.HTTP_201_CREATED)
@route_errors("communication_log_call_failed")
def log_call(
    request: Request,
    dto: LogCallRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationRead | JSONResponse:
    return communication_service.log_call(db, user, dto)


@communications_router.post(
    "/schedule-appointment",
    response_model=CommunicationRead,
    status_code=status.HTTP_201_CREATED,
)
@route_errors("communication_schedule_failed")
def schedule_appointment(
    request: Request,
    dto: ScheduleAppointmentRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationRead | JSONResponse:
    return communication_service.schedule_appointment(db, user, dto)


@communications_router.get("/{communication_id}", response_model=CommunicationRead)
@route_errors("communication_get_failed")
def get_communication(
    request: Request,
    communication_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationRead | JSONResponse:
    return communication_service.get_communication(db, user, communication_id)


@communications_router.patch("/{communication_id}", response_model=CommunicationRead)
@route_errors("communication_update_failed")
def patch_communication(
    request: Request,
    communication_id: uuid.UUID,
    dto: CommunicationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationRead | JSONResponse:
    return communication_service.update_communication(db, user, communication_id, dto)


@communications_router.delete("/{communication_id}", response_model=MessageResponse)
@route_errors("communication_delete_failed")
def delete_communication(
    request: Request,
    communication_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    communication_service.delete_communication(db, user, communication_id)
    return MessageResponse(message="Communication deleted successfully")


@analytics_router.get("/dashboard/metrics", response_model=DashboardMetrics)
@route_errors("dashboard_metrics_failed")
def dashboard_metrics(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DashboardMetrics | JSONResponse:
    return analytics_service.dashboard_metrics(db, user)


@analytics_router.get("/analytics/detailed", response_model=DetailedAnalytics)
@route_errors("analytics_failed")
def detailed_analytics(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DetailedAnalytics | JSONResponse:
    return analytics_service.detailed_analytics(db, user)


@settings_router.get("/profile", response_model=UserRead)
@route_errors("settings_profile_failed")
def get_profile(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    return user_service.get_user(db, user)


@settings_router.patch("/profile", response_model=UserRead)
@route_errors("settings_profile_update_failed")
def update_profile(
    request: Request,
    dto: ProfileUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    return settings_service.update_profile(db, user, dto)


@settings_router.get("/notifications", response_model=NotificationSettings)
@route_errors("settings_notifications_failed")
def get_notification_settings(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationSettings | JSONResponse:
    return settings_service.get_notification_settings(db, user)


@settings_router.patch("/notifications", response_model=NotificationSettings)
@route_errors("settings_notifications_update_failed")
def update_notification_settings(
    request: Request,
    dto: NotificationSettingsUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationSettings | JSONResponse:
    return settings_service.update_notification_settings(db, user, dto)


@settings_router.get("/preferences", response_model=UserPreferences)
@route_errors("settings_preferences_failed")
def get_preferences(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserPreferences | JSONResponse:
    return settings_service.get_preferences(db, user)


@settings_router.patch("/preferences", response_model=UserPreferences)
@route_errors("settings_preferences_update_failed")
def update_preferences(
    request: Request,
    dto: UserPreferencesUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserPreferences | JSONResponse:
    return settings_service.update_preferences(db, user, dto)
