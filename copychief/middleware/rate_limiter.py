"""Rate limiting middleware: per-account sliding windows.

In-memory counters, so limits are per process. The send endpoint gets a
stricter limit since each request may start an LLM completion.
"""

import logging
import os
import time
from collections import defaultdict
from dataclasses import dataclass, field

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from copychief.api.auth import decode_access_token

logger = logging.getLogger(__name__)

# Disable rate limiting in test mode (env var set by conftest.py)
_TESTING = os.environ.get("COPYCHIEF_TESTING") == "1"

DEFAULT_RPM = 120
SEND_RPM = 20
SEND_PATH = "/api/v1/chat/send"


@dataclass
class RateBucket:
    """Sliding window rate limiter for a single key."""

    timestamps: list[float] = field(default_factory=list)

    def allow(self, limit: int, window_seconds: float = 60.0) -> bool:
        now = time.monotonic()
        cutoff = now - window_seconds
        self.timestamps = [t for t in self.timestamps if t > cutoff]
        if len(self.timestamps) >= limit:
            return False
        self.timestamps.append(now)
        return True

    def is_stale(self, max_age_seconds: float = 300.0) -> bool:
        if not self.timestamps:
            return True
        return (time.monotonic() - self.timestamps[-1]) > max_age_seconds


_buckets: dict[str, RateBucket] = defaultdict(RateBucket)
_last_eviction: float = 0.0
_EVICTION_INTERVAL = 300.0


def _maybe_evict_stale_buckets() -> None:
    global _last_eviction
    now = time.monotonic()
    if now - _last_eviction < _EVICTION_INTERVAL:
        return
    _last_eviction = now
    stale_keys = [k for k, b in _buckets.items() if b.is_stale()]
    for k in stale_keys:
        del _buckets[k]
    if stale_keys:
        logger.debug("Evicted %d stale rate limit buckets", len(stale_keys))


def identity_for(request: Request) -> str:
    """Account id from the bearer JWT, falling back to client IP.

    Client-supplied identity headers are never trusted.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        account_id = decode_access_token(auth_header[7:])
        if account_id is not None:
            return f"account:{account_id}"
    client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, enabled: bool | None = None):
        super().__init__(app)
        self.enabled = (not _TESTING) if enabled is None else enabled

    async def dispatch(self, request: Request, call_next):
        if not self.enabled:
            return await call_next(request)

        _maybe_evict_stale_buckets()
        identity = identity_for(request)
        path = request.url.path

        if path == SEND_PATH:
            key, limit = f"send:{identity}", SEND_RPM
        else:
            key, limit = f"api:{identity}", DEFAULT_RPM

        if not _buckets[key].allow(limit):
            logger.warning("Rate limited: identity=%s path=%s", identity, path)
            return JSONResponse(
                status_code=429,
                content={"detail": f"Rate limit exceeded. Max {limit} requests per minute."},
            )

        return await call_next(request)
