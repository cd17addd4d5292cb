"""
In-memory rate limiting for the payment verification callbacks.

Each verification call may poll the Solana RPC for up to a minute or hit the
Paystack API, so browsers retrying in a loop are throttled per client IP.

Uses a sliding-window counter per (IP, route) key. Single-process only;
multi-worker deployments need a shared store.
"""
import time
import logging
from collections import defaultdict

from fastapi import Request

from domain.errors import RateLimitError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window request counter keyed by an arbitrary string."""

    def __init__(self):
        # {key: [timestamp1, timestamp2, ...]}
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _prune(self, key: str, window_seconds: int, now: float):
        cutoff = now - window_seconds
        self._requests[key] = [ts for ts in self._requests[key] if ts > cutoff]

    def check(self, key: str, max_requests: int, window_seconds: int) -> bool:
        """Record a hit for `key` and return False if it exceeds the window budget."""
        now = time.monotonic()
        self._prune(key, window_seconds, now)

        if len(self._requests[key]) >= max_requests:
            return False

        self._requests[key].append(now)
        return True

    def remaining(self, key: str, max_requests: int, window_seconds: int) -> int:
        self._prune(key, window_seconds, time.monotonic())
        return max(0, max_requests - len(self._requests[key]))

    def reset(self):
        self._requests.clear()


# Global rate limiter instance
limiter = RateLimiter()


def rate_limit(max_requests: int = 10, window_seconds: int = 60):
    """
    FastAPI dependency factory.

    Usage:
        @router.post("/payments/solana/verify")
        async def verify(..., _rate=Depends(rate_limit(10, 60))):
            ...
    """
    async def _check_rate_limit(request: Request):
        client_ip = request.client.host if request.client else "unknown"
        key = f"{client_ip}:{request.url.path}"

        if not limiter.check(key, max_requests, window_seconds):
            logger.warning(
                f"Rate limit exceeded: {client_ip} on {request.url.path} "
                f"({max_requests}/{window_seconds}s)"
            )
            raise RateLimitError(
                f"Maximum {max_requests} requests per {window_seconds} seconds. Try again later.",
                details={"retryAfter": window_seconds, "limit": max_requests},
            )

    return _check_rate_limit
