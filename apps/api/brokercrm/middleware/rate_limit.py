"""Per-user token buckets for writes under ``/api/``.

Every mutating request spends one token from the bucket for its
(user, resource) pair; buckets refill continuously over a one-minute window.
Reads are never limited.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass

from fastapi import status
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from brokercrm.core.auth import bearer_token, decode_access_token
from brokercrm.core.config import get_settings
from brokercrm.core.context import resolve_client_ip
from brokercrm.errors import error_response

logger = logging.getLogger("brokercrm.rate_limit")

WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class MutationBudget:
    def __init__(self, clock=time.monotonic) -> None:  # type: ignore[no-untyped-def]
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def consume(self, caller: str, resource: str, per_window: int, window_seconds: int = WINDOW_SECONDS) -> int | None:
        """Spend one token; return ``None`` if allowed, else seconds until the next token."""
        if per_window <= 0:
            return window_seconds

        now = self._clock()
        rate = per_window / float(window_seconds)
        with self._lock:
            bucket = self._buckets.setdefault((caller, resource), _Bucket(float(per_window), now))
            bucket.tokens = min(float(per_window), bucket.tokens + max(0.0, now - bucket.refilled_at) * rate)
            bucket.refilled_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return None
            return max(1, math.ceil((1.0 - bucket.tokens) / rate))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_budget = MutationBudget()


def resource_of(path: str) -> str:
    # /api/<resource>/...
    segments = [segment for segment in path.split("/") if segment]
    return segments[1] if len(segments) > 1 else "api"


def caller_of(request: Request) -> str:
    token = bearer_token(request)
    if token:
        try:
            return decode_access_token(token).sub
        except JWTError:
            pass
    return f"anonymous:{resolve_client_ip(request)}"


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not request.url.path.startswith("/api/")
        ):
            return await call_next(request)

        caller = caller_of(request)
        resource = resource_of(request.url.path)
        retry_after = _budget.consume(caller, resource, settings.rate_limit_mutations_per_minute)
        if retry_after is None:
            return await call_next(request)

        logger.warning(
            "http.rate_limited",
            extra={"method": request.method, "path": request.url.path, "user_id": caller},
        )
        return error_response(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "rate_limited",
            "Too many requests",
            headers={"Retry-After": str(retry_after)},
        )


def reset_rate_limiter() -> None:
    _budget.clear()
