"""
Self-contained signed tokens.

Pending enrollments, WebAuthn ceremony state, MFA sessions and trusted devices
are all carried as opaque URL-safe tokens instead of server-side rows. Every
token embeds its own ``iat``/``exp`` and is HMAC-SHA256 signed with
``itsdangerous``. The signer salt is the token purpose, so a token minted for
one purpose never verifies as another.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from itsdangerous import BadData, URLSafeSerializer

log = logging.getLogger(__name__)

GENERIC_PURPOSE = "generic"


@dataclass(frozen=True)
class SignedPayload:
    """Decoded token contents."""

    purpose: str
    data: Dict[str, Any] = field(default_factory=dict)
    issued_at: int = 0
    expires_at: Optional[int] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        if now is None:
            now = time.time()
        return now >= self.expires_at


def _serializer(secret: str, purpose: str) -> URLSafeSerializer:
    return URLSafeSerializer(
        secret,
        salt=purpose,
        signer_kwargs={"digest_method": hashlib.sha256},
    )


def create_signed_token(
    payload: Dict[str, Any],
    secret: str,
    ttl_seconds: Optional[int] = None,
    purpose: str = GENERIC_PURPOSE,
    now: Optional[float] = None,
) -> str:
    """
    Sign a payload into an opaque token.

    Args:
        payload: JSON-serializable mapping
        secret: Signing secret
        ttl_seconds: Lifetime; ``None`` for a token without expiry
        purpose: Token purpose, used as the signer salt
        now: Issue time override (Unix seconds)

    Returns:
        str: URL-safe token
    """
    if not secret:
        raise ValueError("A signing secret is required")
    issued_at = int(time.time() if now is None else now)
    body = {
        "iat": issued_at,
        "exp": issued_at + int(ttl_seconds) if ttl_seconds is not None else None,
        "data": payload,
    }
    return _serializer(secret, purpose).dumps(body)


def verify_signed_token(
    token: Optional[str],
    secret: str,
    purpose: str = GENERIC_PURPOSE,
    now: Optional[float] = None,
) -> Optional[SignedPayload]:
    """
    Verify and decode a token.

    Fails closed: any tampering, malformed encoding, signature mismatch,
    foreign purpose or expiry returns ``None``. Never raises for bad input.
    """
    if not token or not isinstance(token, str) or not secret:
        return None

    serializer = _serializer(secret, purpose)
    try:
        body = serializer.loads(token)
    except BadData:
        return None
    except (UnicodeError, ValueError, TypeError):
        return None

    if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
        return None

    # Base64 tails carry unused bits; only the canonical encoding is accepted
    if not hmac.compare_digest(serializer.dumps(body).encode("utf-8"), token.encode("utf-8")):
        return None

    issued_at = body.get("iat")
    expires_at = body.get("exp")
    if not isinstance(issued_at, int) or not (expires_at is None or isinstance(expires_at, int)):
        return None

    payload = SignedPayload(
        purpose=purpose,
        data=body["data"],
        issued_at=issued_at,
        expires_at=expires_at,
    )
    if payload.is_expired(now):
        log.debug(f"Signed token for '{purpose}' expired")
        return None
    return payload
