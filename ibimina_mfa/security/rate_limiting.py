"""
Rate Limiting for Ibimina MFA

Two layers protect the MFA endpoints:

* :class:`RateLimiter` counts hits per composite key (user, IP, factor) in a
  fixed window. Counters live in a ``limits`` storage (``memory://``,
  ``redis://`` ...) so limits hold across instances. When that storage fails
  the limiter keeps counting in a process-local memory storage instead of
  failing open.
* Flask-Limiter guards every endpoint with a coarse per-address limit.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, current_app
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter

from ..extensions import limiter

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    retry_at: Optional[datetime] = None
    degraded: bool = False


class RateLimiter:
    """
    Fixed-window limiter over an injectable counter storage.

    Args:
        storage: Primary ``limits`` storage, the source of truth
        fallback: Process-local storage used while the primary is failing
        secret: HMAC key used to hash bucket keys before storage
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        fallback: Optional[Storage] = None,
        secret: str = "",
    ):
        self.storage = storage or MemoryStorage()
        self.fallback = fallback or MemoryStorage()
        self.secret = secret
        self._strategy = FixedWindowRateLimiter(self.storage)
        self._fallback_strategy = FixedWindowRateLimiter(self.fallback)

    def hash_key(self, key: str) -> str:
        """Raw identifiers never reach storage; buckets are keyed by HMAC."""
        return hmac.new(
            self.secret.encode("utf-8"), key.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def apply(self, key: str, max_hits: int, window_seconds: int) -> RateLimitResult:
        """
        Record a hit and check it against the limit.

        Args:
            key: Composite identity, e.g. ``mfa-verify:<user_id>``
            max_hits: Hits allowed per window
            window_seconds: Window length

        Returns:
            RateLimitResult: ``ok`` False with ``retry_at`` once the limit is hit
        """
        item = RateLimitItemPerSecond(int(max_hits), int(window_seconds))
        hashed = self.hash_key(key)
        try:
            return self._hit(self._strategy, item, hashed, degraded=False)
        except Exception as e:
            log.warning(
                f"Rate limit storage unavailable ({type(e).__name__}), "
                "falling back to in-memory limits"
            )
        return self._hit(self._fallback_strategy, item, hashed, degraded=True)

    @staticmethod
    def _hit(strategy, item, hashed, degraded) -> RateLimitResult:
        if strategy.hit(item, hashed):
            return RateLimitResult(ok=True, degraded=degraded)
        stats = strategy.get_window_stats(item, hashed)
        retry_at = datetime.fromtimestamp(stats.reset_time, tz=timezone.utc)
        return RateLimitResult(ok=False, retry_at=retry_at, degraded=degraded)

    def reset(self, key: str, max_hits: int, window_seconds: int) -> None:
        item = RateLimitItemPerSecond(int(max_hits), int(window_seconds))
        hashed = self.hash_key(key)
        for strategy in (self._strategy, self._fallback_strategy):
            try:
                strategy.clear(item, hashed)
            except Exception as e:
                log.warning(f"Failed to reset rate limit bucket: {type(e).__name__}")


def init_rate_limiting(app: Flask):
    """Initialize the coarse endpoint limiter for the Flask app"""
    app.config.setdefault("RATELIMIT_STORAGE_URI", app.config.get("MFA_RATELIMIT_STORAGE_URI", "memory://"))
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)
    limiter.init_app(app)
    log.info("Security rate limiter initialized")
    return limiter


def endpoint_limit() -> str:
    return current_app.config.get("MFA_ENDPOINT_RATE_LIMIT", "60 per minute")
