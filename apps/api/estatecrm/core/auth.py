from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from jose import ExpiredSignatureError, JWTError, jwt
from starlette.requests import Request

from estatecrm.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    email: str | None = None
    roles: list[str] = field(default_factory=list)


def issue_session_token(sub: str, email: str | None = None, roles: list[str] | None = None) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": sub,
        "email": email,
        "roles": roles or ["agent"],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.session_ttl_minutes)).timestamp()),
    }
    return jwt.encode(claims, settings.session_secret, algorithm=settings.session_algorithm)


def read_session_token(request: Request) -> str:
    settings = get_settings()
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.replace("Bearer ", "", 1)
    return request.cookies.get(settings.session_cookie_name, "")


def decode_session_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    return jwt.decode(token, settings.session_secret, algorithms=[settings.session_algorithm])


async def get_current_user(request: Request) -> AuthUser:
    token = read_session_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        payload = decode_session_token(token)
    except ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired")
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    roles = payload.get("roles", ["agent"])
    if not isinstance(roles, list):
        roles = ["agent"]

    context = getattr(request.state, "context", None)
    if context is not None:
        context.bind_user(str(subject))
    email = payload.get("email")
    return AuthUser(sub=str(subject), email=str(email) if email else None, roles=[str(role) for role in roles])
