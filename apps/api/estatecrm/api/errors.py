from __future__ import annotations

import functools
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.requests import Request

from estatecrm.context import get_correlation_id


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or getattr(getattr(request.state, "context", None), "correlation_id", None)
    )
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.__dict__), headers=headers)


def code_for_status(status_code: int) -> str:
    if status_code == 401:
        return "unauthorized"
    if status_code == 403:
        return "forbidden"
    if status_code == 404:
        return "not_found"
    if status_code == 409:
        return "invalid_transition"
    return "http_error"


HandlerT = TypeVar("HandlerT", bound=Callable[..., Any])


def route_errors(code: str, *, transitions: bool = False) -> Callable[[HandlerT], HandlerT]:
    """Turn an ``HTTPException`` raised by a route's service call into an envelope tagged ``code``.

    Routes that move an entity between statuses pass ``transitions=True`` so a rejected
    move is reported as ``invalid_transition`` instead of the route's own code. The wrapped
    route must declare a ``request: Request`` parameter.
    """

    def decorate(handler: HandlerT) -> HandlerT:
        @functools.wraps(handler)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return handler(*args, **kwargs)
            except HTTPException as exc:
                conflict = transitions and exc.status_code == status.HTTP_409_CONFLICT
                return error_response(
                    kwargs["request"],
                    status_code=exc.status_code,
                    code="invalid_transition" if conflict else code,
                    message=str(exc.detail),
                    details=exc.detail,
                    headers=exc.headers,
                )

        return wrapper  # type: ignore[return-value]

    return decorate
