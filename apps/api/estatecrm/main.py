from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from estatecrm.api.errors import code_for_status, error_response
from estatecrm.api.routes import router as api_router
from estatecrm.core.config import get_settings
from estatecrm.core.context import RequestContextMiddleware
from estatecrm.core.events import InternalEvent, event_bus
from estatecrm.logging import configure_logging
from estatecrm.middleware.correlation_id import CorrelationIdMiddleware
from estatecrm.middleware.rate_limit import MutationRateLimitMiddleware
from estatecrm.middleware.request_logging import RequestLoggingMiddleware
from estatecrm.otel import configure_tracing, server_request_hook


configure_logging()
logger = logging.getLogger("estatecrm.lifecycle")
_subscriptions_registered = False

_domain_event_types = [
    "crm.lead.created",
    "crm.lead.updated",
    "crm.lead.status_changed",
    "crm.lead.deleted",
    "crm.property.created",
    "crm.property.status_changed",
    "crm.property.deleted",
    "crm.deal.created",
    "crm.deal.status_changed",
    "crm.deal.deleted",
    "crm.task.completed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_domain_event(event: InternalEvent) -> None:
    logger.info(
        "domain_event",
        extra={"event_name": event.name, "user_id": event.payload.get("actor_user_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _domain_event_types:
            event_bus.subscribe(event_name, _on_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title=get_settings().app_name, version=get_settings().app_version, lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        request,
        status_code=400,
        code="validation_error",
        message="Request validation failed",
        details=jsonable_encoder(exc.errors()),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(
        request,
        status_code=exc.status_code,
        code=code_for_status(exc.status_code),
        message=str(exc.detail),
        details=exc.detail,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error("database_error", exc_info=exc, extra={"path": request.url.path, "error": str(exc)})
    return error_response(request, status_code=500, code="internal_error", message="Internal server error")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", exc_info=exc, extra={"path": request.url.path, "error": str(exc)})
    return error_response(request, status_code=500, code="internal_error", message="Internal server error")


configure_tracing(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
