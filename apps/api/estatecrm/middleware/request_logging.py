from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from estatecrm.metrics import observe_http_request, resolve_http_path_label

logger = logging.getLogger("estatecrm.request")


def _record(request: Request, status_code: int, started: float) -> dict[str, object]:
    elapsed = time.perf_counter() - started
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
    context = getattr(request.state, "context", None)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
        "user_id": getattr(context, "user_id", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line and one metrics sample per request, labelled by route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_record(request, 500, started))
            raise
        logger.info("http.request", extra=_record(request, response.status_code, started))
        return response
