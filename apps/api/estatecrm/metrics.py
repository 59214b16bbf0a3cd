from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_notifications_emitted_total = Counter(
    "crm_notifications_emitted_total",
    "Total notifications written by the dispatcher",
    ["notification_type"],
)

crm_status_transitions_total = Counter(
    "crm_status_transitions_total",
    "Status transitions by entity and outcome",
    ["entity", "outcome"],
)

ai_requests_total = Counter(
    "ai_requests_total",
    "AI helper calls by operation and outcome",
    ["operation", "outcome"],
)

crm_jobs_total = Counter(
    "crm_jobs_total",
    "Total CRM jobs by status",
    ["job_type", "status"],
)

crm_job_duration_seconds = Histogram(
    "crm_job_duration_seconds",
    "CRM job duration in seconds",
    ["job_type"],
)


_PARAM_RE = re.compile(r"\{[^{}]+\}")
_UUID_SEGMENT_RE = re.compile(r"/[0-9a-fA-F]{8}(?:-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12}(?=/|$)")


def resolve_http_path_label(request: Request) -> str:
    """Low-cardinality path label: the matched route template with every parameter shown as ``{id}``."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _PARAM_RE.sub("{id}", template)
    return _UUID_SEGMENT_RE.sub("/{id}", request.url.path)

def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_notification(notification_type: str) -> None:
    crm_notifications_emitted_total.labels(notification_type=notification_type).inc()


def observe_status_transition(entity: str, outcome: str) -> None:
    crm_status_transitions_total.labels(entity=entity, outcome=outcome).inc()


def observe_ai_request(operation: str, outcome: str) -> None:
    ai_requests_total.labels(operation=operation, outcome=outcome).inc()


def observe_job(job_type: str, status: str, duration: float) -> None:
    crm_jobs_total.labels(job_type=job_type, status=status).inc()
    crm_job_duration_seconds.labels(job_type=job_type).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
