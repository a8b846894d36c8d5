"""Append-only trail of login, failed login and logout events."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from starlette.requests import Request

from brokercrm.core.context import resolve_client_ip
from brokercrm.records.entities import AUTH_AUDIT_COLLECTION
from brokercrm.records.storage.base import BackendError, RecordStore
from brokercrm.records.versioning import utcnow

logger = logging.getLogger("brokercrm.auth.audit")

LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILED = "LOGIN_FAILED"
LOGOUT = "LOGOUT"


def build_entry(
    event_type: str,
    request: Request,
    *,
    email: str | None,
    user: Mapping[str, Any] | None = None,
    reason: str | None = None,
) -> dict[str, Any]:
    return {
        "id": f"AUTH-{uuid.uuid4().hex}",
        "eventType": event_type,
        "email": email,
        "userId": user.get("id") if user else None,
        "userName": user.get("name") if user else None,
        "userRole": user.get("role") if user else None,
        "reason": reason,
        "ipAddress": resolve_client_ip(request),
        "userAgent": request.headers.get("user-agent", "unknown"),
        "timestamp": utcnow().isoformat(),
        "success": event_type != LOGIN_FAILED,
    }


async def record_auth_event(store: RecordStore, entry: dict[str, Any]) -> None:
    try:
        await store.append(AUTH_AUDIT_COLLECTION, entry)
    except BackendError:
        logger.exception("auth.audit_write_failed", extra={"backend": store.name})
        return
    logger.info("auth.audit", extra={"operation": entry["eventType"], "user_id": entry.get("userId")})


async def list_auth_events(
    store: RecordStore,
    *,
    email: str | None = None,
    event_type: str | None = None,
) -> list[dict[str, Any]]:
    match: dict[str, Any] = {}
    if email:
        match["email"] = email.lower()
    if event_type:
        match["eventType"] = event_type
    entries = await store.find(AUTH_AUDIT_COLLECTION, match)
    return sorted(entries, key=lambda entry: str(entry.get("timestamp") or ""), reverse=True)
