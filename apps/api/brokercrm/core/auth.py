from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from brokercrm.context import set_user_id
from brokercrm.core.config import get_settings
from brokercrm.records.versioning import SYSTEM, Actor, resolve_actor


@dataclass
class AuthUser:
    sub: str
    email: str | None
    name: str | None
    role: str

    @property
    def roles(self) -> list[str]:
        return [self.role]

    def identity(self) -> dict[str, Any]:
        return {"id": self.sub, "email": self.email, "name": self.name, "role": self.role}


def create_access_token(user: Mapping[str, Any]) -> str:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expiry_hours)
    claims = {
        "sub": str(user["id"]),
        "userId": str(user["id"]),
        "email": user.get("email"),
        "name": user.get("name"),
        "role": user.get("role", "user"),
        "exp": expires_at,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> AuthUser:
    settings = get_settings()
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    subject = payload.get("sub") or payload.get("userId")
    if not subject:
        raise JWTError("token has no subject")
    return AuthUser(
        sub=str(subject),
        email=payload.get("email"),
        name=payload.get("name"),
        role=str(payload.get("role") or "user"),
    )


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_optional_user(request: Request) -> AuthUser | None:
    token = bearer_token(request)
    if not token:
        return None
    try:
        user = decode_access_token(token)
    except JWTError as exc:
        raise _unauthorized("Invalid or expired token") from exc
    set_user_id(user.sub)
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
    return user


async def get_current_user(request: Request) -> AuthUser | None:
    user = await get_optional_user(request)
    if user is None and get_settings().auth_required:
        raise _unauthorized("Authentication required")
    return user


async def require_user(request: Request) -> AuthUser:
    user = await get_optional_user(request)
    if user is None:
        raise _unauthorized("Authentication required")
    return user


def actor_for(user: AuthUser | None) -> Actor:
    if user is None:
        return SYSTEM
    return resolve_actor(user.identity())
