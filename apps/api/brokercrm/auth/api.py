from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from brokercrm.auth.audit import (
    LOGIN_FAILED,
    LOGIN_SUCCESS,
    LOGOUT,
    build_entry,
    list_auth_events,
    record_auth_event,
)
from brokercrm.auth.passwords import verify_password
from brokercrm.core.auth import AuthUser, create_access_token, require_user
from brokercrm.records.entities import EntityType, get_definition
from brokercrm.records.schemas import LoginRequest
from brokercrm.records.service import paginate
from brokercrm.records.storage.base import RecordStore

logger = logging.getLogger("brokercrm.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])

INVALID_CREDENTIALS = "Invalid email or password"


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


def _public_user(user: dict[str, Any]) -> dict[str, Any]:
    return {"id": user.get("id"), "email": user.get("email"), "name": user.get("name"), "role": user.get("role")}


@router.post("/login")
async def login(request: Request, credentials: LoginRequest, store: RecordStore = Depends(get_store)) -> dict[str, Any]:
    email = str(credentials.email).lower()
    users = await store.find(get_definition(EntityType.USER).file_collection, {"email": email})
    user = next((candidate for candidate in users if candidate.get("active", True)), None)

    if user is None or not verify_password(credentials.password, user.get("passwordHash")):
        reason = "unknown or inactive user" if user is None else "wrong password"
        await record_auth_event(store, build_entry(LOGIN_FAILED, request, email=email, user=user, reason=reason))
        logger.info("auth.login_failed", extra={"outcome": "unauthorized"})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)

    await record_auth_event(store, build_entry(LOGIN_SUCCESS, request, email=email, user=user))
    logger.info("auth.login", extra={"user_id": user.get("id"), "outcome": "ok"})
    return {"token": create_access_token(user), "user": _public_user(user)}


@router.get("/verify")
async def verify(user: AuthUser = Depends(require_user)) -> dict[str, Any]:
    return {"valid": True, "user": user.identity()}


@router.post("/logout")
async def logout(
    request: Request,
    user: AuthUser = Depends(require_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, str]:
    await record_auth_event(store, build_entry(LOGOUT, request, email=user.email, user=user.identity()))
    return {"message": "Logged out"}


@router.get("/audit")
async def audit_trail(
    email: str | None = None,
    event_type: str | None = Query(default=None, alias="eventType"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    user: AuthUser = Depends(require_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    if user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Requires role: admin")
    entries = await list_auth_events(store, email=email, event_type=event_type)
    return paginate(entries, page, limit)
