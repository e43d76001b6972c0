"""
Single-use guard for TOTP steps and passkey challenges.

A (user, time-step) pair or a WebAuthn challenge may be consumed once. The
guard shares the ``limits`` counter storage with the rate limiter: an atomic
``incr`` with a TTL covering the drift window or the ceremony state lifetime. With a shared Redis
storage the guard is global; with ``memory://`` it is per process.
"""

import hashlib
import hmac
import logging
from typing import Optional

from limits.storage import MemoryStorage, Storage

log = logging.getLogger(__name__)


class ReplayGuard:
    """
    Records consumed TOTP steps and passkey challenges.

    Args:
        storage: Primary ``limits`` storage
        fallback: Process-local storage used while the primary is failing
        ttl_seconds: How long a consumed step is remembered
        secret: HMAC key used to hash entry keys
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        fallback: Optional[Storage] = None,
        ttl_seconds: int = 65,
        secret: str = "",
    ):
        self.storage = storage or MemoryStorage()
        self.fallback = fallback or MemoryStorage()
        self.ttl_seconds = int(ttl_seconds)
        self.secret = secret

    def _key(self, namespace: str, value: str) -> str:
        digest = hmac.new(
            self.secret.encode("utf-8"),
            value.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"{namespace}/{digest}"

    def _consume(self, key: str, ttl_seconds: int) -> bool:
        try:
            count = self.storage.incr(key, ttl_seconds)
        except Exception as e:
            log.warning(
                f"Replay guard storage unavailable ({type(e).__name__}), "
                "using in-memory guard"
            )
            count = self.fallback.incr(key, ttl_seconds)
        return count == 1

    def prevent_totp_replay(self, user_id, step: int) -> bool:
        """
        Consume a step for a user.

        Returns:
            bool: True on first use, False if the step was already used
        """
        key = self._key("totp-replay", f"{user_id}:{step}")
        if not self._consume(key, self.ttl_seconds):
            log.warning(f"TOTP replay attempt detected for user {user_id}")
            return False
        return True

    def consume_challenge(self, user_id, challenge: bytes, ttl_seconds: int) -> bool:
        """
        Consume a WebAuthn challenge for a user.

        Returns:
            bool: True on first use, False if the challenge was already used
        """
        key = self._key("passkey-challenge", f"{user_id}:{challenge.hex()}")
        if not self._consume(key, int(ttl_seconds)):
            log.warning(f"Passkey challenge reuse detected for user {user_id}")
            return False
        return True
