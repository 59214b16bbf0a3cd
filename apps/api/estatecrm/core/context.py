from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from estatecrm.context import reset_user_id, set_user_id


@dataclass
class RequestContext:
    """Per-request facts shared by the auth dependency, error envelopes and request logs."""

    correlation_id: str | None
    client_host: str | None
    user_id: str | None = None

    def bind_user(self, user_id: str) -> None:
        self.user_id = user_id
        set_user_id(user_id)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = RequestContext(
            correlation_id=getattr(request.state, "correlation_id", None),
            client_host=request.client.host if request.client else None,
        )
        token = set_user_id(None)
        try:
            return await call_next(request)
        finally:
            reset_user_id(token)
