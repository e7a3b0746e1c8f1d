"""
Rate limiting for the public token endpoints.

Confirmation, claim and decline links are bearer capabilities reachable
without signing in, so they are throttled per client IP:

    TOKEN_ENDPOINT_RATE_LIMIT requests per minute per IP (default 20)

Usage:
    from .rate_limiter import token_rate_limit

    @router.get("/appointments/confirm", dependencies=[Depends(token_rate_limit)])
    async def confirm(...):
        ...
"""

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Tuple

from fastapi import HTTPException, Request, status

from .core.config import get_settings

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# In-Memory Sliding Window
# ────────────────────────────────────────────────────────────────

class RateLimiter:
    """
    Sliding-window limiter keyed by (client IP, bucket).

    State is per process; several API workers each keep their own window.
    """

    def __init__(self, cleanup_interval: float = 300):
        self.hits: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self.cleanup_interval = cleanup_interval
        self.last_cleanup = time.monotonic()

    @staticmethod
    def client_ip(request: Request) -> str:
        """First X-Forwarded-For hop when proxied, else the socket peer."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _cleanup(self, current: float, horizon: float) -> None:
        if current - self.last_cleanup < self.cleanup_interval:
            return
        for key in list(self.hits):
            window = self.hits[key]
            while window and window[0] <= current - horizon:
                window.popleft()
            if not window:
                del self.hits[key]
        self.last_cleanup = current
        logger.debug(f"Rate limiter cleanup: {len(self.hits)} keys tracked")

    def check(
        self,
        ip: str,
        bucket: str,
        max_requests: int,
        window_seconds: int = 60,
        current: Optional[float] = None,
    ) -> Tuple[bool, dict]:
        """
        Record a hit unless the window is full.

        Returns:
            (is_allowed, metadata) where metadata has remaining, retry_after, limit
        """
        current = time.monotonic() if current is None else current
        self._cleanup(current, window_seconds)

        window = self.hits[(ip, bucket)]
        while window and window[0] <= current - window_seconds:
            window.popleft()

        is_allowed = len(window) < max_requests
        if is_allowed:
            window.append(current)

        retry_after = int(window[0] + window_seconds - current) + 1 if window else window_seconds
        metadata = {
            "remaining": max(0, max_requests - len(window)),
            "retry_after": retry_after,
            "limit": max_requests,
            "window_seconds": window_seconds,
        }
        return is_allowed, metadata

    def clear(self) -> None:
        self.hits.clear()


_rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

def rate_limit_dependency(max_requests: Optional[int] = None, window_seconds: int = 60, bucket: str = "tokens"):
    """
    Build a dependency enforcing a per-IP limit on a group of routes.

    max_requests defaults to TOKEN_ENDPOINT_RATE_LIMIT, read per request.
    """

    async def dependency(request: Request) -> None:
        limit = max_requests or get_settings().token_endpoint_rate_limit
        ip = _rate_limiter.client_ip(request)
        is_allowed, metadata = _rate_limiter.check(ip, bucket, limit, window_seconds)

        if not is_allowed:
            logger.warning(
                f"[RATE_LIMIT] Blocked {ip} on {request.url.path}: "
                f"{metadata['limit']} per {window_seconds}s exceeded"
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "Rate limit exceeded",
                    "message": f"Too many requests. Limit: {limit} per {window_seconds}s",
                    "retry_after": metadata["retry_after"],
                },
                headers={
                    "Retry-After": str(metadata["retry_after"]),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

    return dependency


token_rate_limit = rate_limit_dependency()
