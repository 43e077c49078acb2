"""
Sliding-window rate limiting for the webhook boundary.

In-memory and per-process: each client IP gets a window of recent request
timestamps. The limiter instance lives on ``app.state`` so every worker keeps
its own counters.
"""

import math
import time
from collections import deque
from collections.abc import Callable

from fastapi import HTTPException, Request, status

from sigcore.shared.logging import get_logger

logger = get_logger(__name__)

# Stale keys are purged at most this often
CLEANUP_INTERVAL_SECONDS = 300.0


class SlidingWindowRateLimiter:
    """Allow at most ``limit`` hits per ``window_seconds`` for each key."""

    def __init__(
        self,
        limit: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_cleanup = clock()

    def hit(self, key: str) -> float | None:
        """Register one request.

        Returns:
            None when allowed, otherwise seconds until a slot frees up.
        """
        now = self._clock()
        self._cleanup(now)

        window = self._hits.setdefault(key, deque())
        cutoff = now - self._window
        while window and window[0] <= cutoff:
            window.popleft()

        if len(window) >= self._limit:
            return max(window[0] + self._window - now, 0.0)

        window.append(now)
        return None

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        cutoff = now - self._window
        stale = [key for key, window in self._hits.items() if not window or window[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("Purged rate limit entries", extra={"purged": len(stale)})

    def reset(self) -> None:
        self._hits.clear()


def client_ip(request: Request) -> str:
    """Client IP: first ``X-Forwarded-For`` hop, then ``X-Real-IP``, then the peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def enforce_webhook_rate_limit(request: Request) -> None:
    """FastAPI dependency rejecting clients above the webhook rate limit."""
    limiter: SlidingWindowRateLimiter | None = getattr(request.app.state, "webhook_rate_limiter", None)
    if limiter is None:
        return

    ip = client_ip(request)
    retry_after = limiter.hit(f"webhook:{ip}")
    if retry_after is None:
        return

    seconds = max(1, math.ceil(retry_after))
    logger.warning(
        "Webhook rate limit exceeded",
        extra={"client_ip": ip, "path": request.url.path, "retry_after": seconds},
    )
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Too many requests. Please try again later.",
            "retry_after": seconds,
        },
        headers={"Retry-After": str(seconds)},
    )
