"""
MFA session and trusted-device issuance.

A successful challenge always yields a short-lived signed ``mfa_session``
cookie. When the user asks to remember the device, a ``TrustedDevice`` row is
stored and a long-lived signed ``trusted_device`` cookie lets that device skip
future challenges while its fingerprint (hashed user agent plus truncated IP)
still matches.
"""

import hashlib
import ipaddress
import logging
import secrets
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ...extensions import db
from ..tokens import SignedPayload, create_signed_token, verify_signed_token
from .models import TrustedDevice, utcnow

log = logging.getLogger(__name__)

SESSION_PURPOSE = "mfa-session"
TRUSTED_PURPOSE = "trusted-device"


@dataclass(frozen=True)
class CookieSpec:
    """A cookie to set on the response."""

    name: str
    value: str
    max_age: int


def hash_user_agent(user_agent: Optional[str]) -> str:
    return hashlib.sha256((user_agent or "").encode("utf-8")).hexdigest()


def derive_ip_prefix(ip: Optional[str]) -> Optional[str]:
    """
    Truncate a client address so a device keeps its fingerprint within its network.

    IPv4 keeps the /24 (``a.b.c``) and IPv6 the first four hextets. The first
    entry of a forwarded-for list is used.
    """
    if not ip:
        return None
    candidate = ip.split(",")[0].strip()
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if address.version == 4:
        return ".".join(str(address).split(".")[:3])
    return ":".join(address.exploded.split(":")[:4])


def hash_device_fingerprint(user_id, user_agent_hash: str, ip_prefix: Optional[str]) -> str:
    material = f"{user_id}:{user_agent_hash}:{ip_prefix or ''}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class SessionIssuer:
    """
    Mints and checks MFA session and trusted-device tokens.

    Args:
        session_secret: Signing secret for session tokens
        trusted_secret: Signing secret for trusted-device tokens
        session_ttl_hours: Session token lifetime
        trusted_ttl_days: Trusted-device token lifetime
    """

    def __init__(self, session_secret: str, trusted_secret: str,
                 session_ttl_hours: int = 12, trusted_ttl_days: int = 30,
                 session_cookie: str = "mfa_session", trusted_cookie: str = "trusted_device"):
        self.session_secret = session_secret
        self.trusted_secret = trusted_secret
        self.session_ttl_seconds = int(session_ttl_hours) * 3600
        self.trusted_ttl_seconds = int(trusted_ttl_days) * 86400
        self.session_cookie = session_cookie
        self.trusted_cookie = trusted_cookie

    @classmethod
    def from_config(cls, config) -> "SessionIssuer":
        return cls(
            session_secret=config.get("MFA_SESSION_SECRET"),
            trusted_secret=config.get("MFA_TRUSTED_COOKIE_SECRET"),
            session_ttl_hours=config.get("MFA_SESSION_TTL_HOURS", 12),
            trusted_ttl_days=config.get("MFA_TRUSTED_TTL_DAYS", 30),
            session_cookie=config.get("MFA_SESSION_COOKIE", "mfa_session"),
            trusted_cookie=config.get("MFA_TRUSTED_COOKIE", "trusted_device"),
        )

    @property
    def cookie_names(self) -> List[str]:
        return [self.session_cookie, self.trusted_cookie]

    def create_session_token(self, user_id) -> str:
        return create_signed_token(
            {"userId": user_id},
            self.session_secret,
            ttl_seconds=self.session_ttl_seconds,
            purpose=SESSION_PURPOSE,
        )

    def verify_session_token(self, token: Optional[str]) -> Optional[SignedPayload]:
        return verify_signed_token(token, self.session_secret, purpose=SESSION_PURPOSE)

    def create_trusted_token(self, user_id, device_id: str) -> str:
        return create_signed_token(
            {"userId": user_id, "deviceId": device_id},
            self.trusted_secret,
            ttl_seconds=self.trusted_ttl_seconds,
            purpose=TRUSTED_PURPOSE,
        )

    def verify_trusted_token(self, token: Optional[str]) -> Optional[SignedPayload]:
        return verify_signed_token(token, self.trusted_secret, purpose=TRUSTED_PURPOSE)

    def has_valid_session(self, user_id, token: Optional[str]) -> bool:
        payload = self.verify_session_token(token)
        return payload is not None and payload.data.get("userId") == user_id

    def _session_cookie(self, user_id) -> CookieSpec:
        return CookieSpec(self.session_cookie, self.create_session_token(user_id), self.session_ttl_seconds)

    def _trusted_cookie(self, user_id, device_id) -> CookieSpec:
        return CookieSpec(
            self.trusted_cookie,
            self.create_trusted_token(user_id, device_id),
            self.trusted_ttl_seconds,
        )

    def remember_device(self, user_id, user_agent: Optional[str], ip: Optional[str]) -> Optional[str]:
        """
        Persist a trusted device for the current client.

        Returns:
            Optional[str]: the new device id, None if it could not be stored
        """
        ua_hash = hash_user_agent(user_agent)
        ip_prefix = derive_ip_prefix(ip)
        device_id = secrets.token_hex(16)
        now = utcnow()
        try:
            db.session.add(
                TrustedDevice(
                    user_id=user_id,
                    device_id=device_id,
                    device_fingerprint_hash=hash_device_fingerprint(user_id, ua_hash, ip_prefix),
                    user_agent_hash=ua_hash,
                    ip_prefix=ip_prefix,
                    created_at=now,
                    last_used_at=now,
                )
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error(f"Failed to store trusted device for user {user_id}: {e}")
            return None
        log.info(f"Trusted device registered for user {user_id}")
        return device_id

    def issue_session_cookies(self, user_id, remember_device: bool = False,
                              user_agent: Optional[str] = None,
                              ip: Optional[str] = None) -> List[CookieSpec]:
        """
        Cookies to set after a successful challenge.

        Args:
            user_id: Verified user
            remember_device: Also trust this device
            user_agent: Client user agent
            ip: Client address

        Returns:
            List[CookieSpec]: session cookie, plus the trusted-device cookie if requested
        """
        cookies = [self._session_cookie(user_id)]
        if remember_device:
            device_id = self.remember_device(user_id, user_agent, ip)
            if device_id:
                cookies.append(self._trusted_cookie(user_id, device_id))
        return cookies

    def check_trusted_device(self, user_id, trusted_token: Optional[str],
                             user_agent: Optional[str], ip: Optional[str]) -> Optional[str]:
        """
        Validate a trusted-device token against the stored device.

        A fingerprint mismatch deletes the device row. A match refreshes
        ``last_used_at`` and the stored IP prefix.

        Returns:
            Optional[str]: the device id when the device is still trusted
        """
        payload = self.verify_trusted_token(trusted_token)
        if payload is None or payload.data.get("userId") != user_id:
            return None
        device_id = payload.data.get("deviceId")
        if not device_id:
            return None

        device = TrustedDevice.find(user_id, device_id)
        if device is None:
            return None

        ua_hash = hash_user_agent(user_agent)
        ip_prefix = derive_ip_prefix(ip)
        fingerprint = hash_device_fingerprint(user_id, ua_hash, ip_prefix)
        if device.device_fingerprint_hash != fingerprint or device.user_agent_hash != ua_hash:
            log.warning(f"Trusted device fingerprint mismatch for user {user_id}; revoking device")
            db.session.delete(device)
            db.session.commit()
            return None

        device.last_used_at = utcnow()
        device.ip_prefix = ip_prefix
        db.session.commit()
        return device_id

    def renew_cookies(self, user_id, device_id: str) -> List[CookieSpec]:
        return [self._session_cookie(user_id), self._trusted_cookie(user_id, device_id)]


def apply_cookies(response, cookies: List[CookieSpec]):
    for cookie in cookies:
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            httponly=True,
            secure=True,
            samesite="Lax",
            path="/",
        )
    return response


def clear_cookies(response, names: List[str]):
    for name in names:
        response.delete_cookie(name, path="/", secure=True, httponly=True, samesite="Lax")
    return response
