from __future__ import annotations

import math
import threading
import time
from collections import deque

from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from estatecrm.api.errors import error_response
from estatecrm.core.auth import decode_session_token, read_session_token
from estatecrm.core.config import get_settings

WINDOW_SECONDS = 60.0
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
EXEMPT_PATHS = frozenset({"/api/login", "/api/logout"})


class SlidingWindowLimiter:
    """Remembers mutation timestamps per (user, route group) over the last window."""

    def __init__(self, window_seconds: float = WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._hits: dict[tuple[str, str], deque[float]] = {}
        self._last_sweep = 0.0

    def hit(self, key: tuple[str, str], limit: int, now: float | None = None) -> int:
        """Record a request. Returns 0 when allowed, otherwise seconds until a slot frees up."""
        now = time.monotonic() if now is None else now
        with self._lock:
            self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= max(limit, 0):
                oldest = hits[0] if hits else now
                return max(1, math.ceil(self.window_seconds - (now - oldest)))
            hits.append(now)
            return 0

    def _sweep(self, now: float) -> None:
        # Drop keys idle for a whole window, at most once per window.
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_seconds]:
            del self._hits[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_sweep = 0.0


_limiter = SlidingWindowLimiter()


def route_group(path: str) -> str:
    # /api/leads/{id}/status -> leads
    parts = [part for part in path.split("/") if part]
    return parts[1] if len(parts) > 1 else "api"


def session_subject(request: Request) -> str:
    token = read_session_token(request)
    if not token:
        return "anonymous"
    try:
        subject = decode_session_token(token).get("sub")
    except JWTError:
        return "anonymous"
    return str(subject) if subject else "anonymous"


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        limited = (
            not settings.rate_limit_disabled
            and path.startswith("/api/")
            and path not in EXEMPT_PATHS
            and request.method.upper() in MUTATING_METHODS
        )
        if not limited:
            return await call_next(request)

        retry_after = _limiter.hit(
            (session_subject(request), route_group(path)),
            settings.rate_limit_mutations_per_minute,
        )
        if retry_after == 0:
            return await call_next(request)

        return error_response(
            request,
            status_code=429,
            code="rate_limited",
            message="Too many requests",
            headers={"Retry-After": str(retry_after)},
        )


def reset_rate_limiter() -> None:
    _limiter.clear()
