from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.api.errors import error_response
from app.core.auth import extract_session_token, verify_session
from app.core.config import get_settings
from app.platform.security.errors import AuthenticationError


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, user_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            state = self._buckets.setdefault(key, _BucketState(tokens=float(capacity), last_refill=now))
            state.tokens = min(float(capacity), state.tokens + max(0.0, now - state.last_refill) * refill_rate)
            state.last_refill = now

            if state.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - state.tokens) / refill_rate))

            state.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-user token bucket over state-changing ``/api`` calls, keyed by route group."""

    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}
    exempt_paths = {"/api/auth/session"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if (
            not path.startswith("/api/")
            or path in self.exempt_paths
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            user_id=_resolve_user_id(request),
            route_group=resolve_route_group(path),
            capacity=settings.rate_limit_mutations_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        response = error_response(request, status_code=429, code="rate_limited", message="Too many requests")
        response.headers["Retry-After"] = str(retry_after)
        return response


def resolve_route_group(path: str) -> str:
    # /api/crm/tasks/... -> crm.tasks, /api/notifications/... -> notifications
    parts = [part for part in path.split("/") if part][1:]
    if not parts:
        return "api"
    if parts[0] in {"crm", "accounts", "admin"} and len(parts) > 1:
        return f"{parts[0]}.{parts[1]}"
    return parts[0]


def _resolve_user_id(request: Request) -> str:
    try:
        return verify_session(extract_session_token(request)).uid
    except AuthenticationError:
        return "anonymous"


def reset_rate_limiter() -> None:
    _limiter.clear()
