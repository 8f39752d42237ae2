"""Rate limiting for apprep.

Two limiters, both on the ``limits`` package that slowapi is built on:
- slowapi guards the account endpoints, keyed by user ID from the JWT
  with a fallback to IP address.
- QuestionRateLimiter guards question generation per client. It is an
  injected service, and it reports the remaining quota for the
  X-RateLimit-* response headers.
"""

import logging
import os
import time
from dataclasses import dataclass

from limits import parse, strategies
from limits.storage import storage_from_string
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

logger = logging.getLogger(__name__)

GENERATION_RATE_LIMIT = os.environ.get("GENERATION_RATE_LIMIT", "15/minute")
RATE_LIMIT_STORAGE_URI = os.environ.get("RATE_LIMIT_STORAGE_URI", "memory://")


def get_user_identifier(request: Request) -> str:
    """Extract user identifier for rate limiting.

    Uses the JWT user_id if available, falls back to IP address.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        from fastapi import HTTPException
        from .auth import decode_access_token

        token = auth_header.split(" ", 1)[1]
        try:
            payload = decode_access_token(token)
            return f"user:{payload['user_id']}"
        except (HTTPException, KeyError):
            pass
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=get_user_identifier, storage_uri=RATE_LIMIT_STORAGE_URI)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_in: float  # seconds until the client's window resets


class QuestionRateLimiter:
    """Per-client fixed window limit on question generation.

    Backed by the same ``limits`` strategies and storage that slowapi uses,
    but called explicitly so the endpoint can report the remaining quota.
    Expired windows are dropped by the storage itself.

    Args:
        rate: Limit in ``limits`` notation, e.g. "15/minute"
        storage_uri: ``limits`` storage URI ("memory://", "redis://...")
    """

    def __init__(
        self,
        rate: str = GENERATION_RATE_LIMIT,
        storage_uri: str = RATE_LIMIT_STORAGE_URI,
    ):
        self.item = parse(rate)
        self.storage = storage_from_string(storage_uri)
        self._strategy = strategies.FixedWindowRateLimiter(self.storage)

    @property
    def limit(self) -> int:
        return self.item.amount

    def check(self, client_id: str) -> RateLimitResult:
        """Count a request for a client and say whether it may proceed."""
        allowed = self._strategy.hit(self.item, "question", client_id)
        reset_at, remaining = self._strategy.get_window_stats(self.item, "question", client_id)
        reset_in = max(0.0, reset_at - time.time())
        if not allowed:
            logger.info(f"Question rate limit reached for {client_id}")
        return RateLimitResult(allowed, self.limit, remaining, reset_in)

    def reset(self):
        """Forget every client's window."""
        self.storage.reset()
