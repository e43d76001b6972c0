"""
MFA factor providers.

Each factor kind has exactly one provider exposing ``issue`` (start a
challenge) and ``verify`` (check a response). ``verify`` never raises for a
wrong, expired or replayed response: it returns a :class:`VerifyOutcome`
whose ``reason`` is recorded in the audit log and never shown to the client.

Providers:
    TOTPFactor: Authenticator app codes with replay protection
    EmailOTPFactor: Server-issued codes delivered by email
    WhatsAppOTPFactor: Server-issued codes delivered over WhatsApp
    BackupCodeFactor: Single-use recovery codes
    PasskeyFactor: WebAuthn authentication ceremony
"""

import base64
import binascii
import hmac
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ...extensions import db
from ..audit_logging import AuditAction
from ..crypto import (
    DecryptionError,
    decrypt_sensitive_string,
    generate_numeric_code,
    hash_issued_code,
    verify_one_time_code,
    verify_totp,
)
from ..replay import ReplayGuard
from ..tokens import create_signed_token, verify_signed_token
from .delivery import EmailSender, WhatsAppSender, build_email_sender, mask_msisdn
from .exceptions import (
    FactorNotEnrolledError,
    FactorUnavailableError,
    InvalidCodeError,
    RateLimitedError,
    ValidationError,
)
from .models import OtpIssue, PasskeyCredential, UserMfaState, utcnow

log = logging.getLogger(__name__)

PASSKEY_AUTH_PURPOSE = "passkey-authentication"
PASSKEY_REGISTER_PURPOSE = "passkey-registration"

_NON_DIGIT = re.compile(r"[^0-9]")


class FactorKind(str, Enum):
    """Supported MFA factor kinds."""

    TOTP = "totp"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    BACKUP = "backup"
    PASSKEY = "passkey"

    @classmethod
    def parse(cls, value: str) -> "FactorKind":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown factor {value!r}", error="invalid_factor")


@dataclass(frozen=True)
class ChallengeDescriptor:
    """What the client needs to answer a challenge."""

    factor: FactorKind
    channel: str
    expires_at: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {"channel": self.channel}
        if self.expires_at is not None:
            body["expiresAt"] = _aware(self.expires_at).isoformat()
        if self.payload:
            body.update(self.payload)
        return body


@dataclass(frozen=True)
class VerifyOutcome:
    """
    Result of a factor verification.

    ``reason`` is internal: it goes to the audit log only.
    """

    ok: bool
    factor: FactorKind
    reason: Optional[str] = None
    step: Optional[int] = None
    used_backup: bool = False
    audit_metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, factor: FactorKind, **kwargs) -> "VerifyOutcome":
        return cls(ok=True, factor=factor, **kwargs)

    @classmethod
    def failure(cls, factor: FactorKind, reason: str, **metadata) -> "VerifyOutcome":
        return cls(ok=False, factor=factor, reason=reason, audit_metadata=metadata)

    @property
    def audit_action(self) -> AuditAction:
        if not self.ok:
            if self.factor == FactorKind.PASSKEY:
                return AuditAction.MFA_PASSKEY_FAILED
            return AuditAction.MFA_FAILED
        if self.factor == FactorKind.BACKUP:
            return AuditAction.MFA_BACKUP_SUCCESS
        if self.factor == FactorKind.PASSKEY:
            return AuditAction.MFA_PASSKEY_SUCCESS
        return AuditAction.MFA_SUCCESS


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FactorProvider:
    """Base class for factor providers."""

    kind: FactorKind = None

    def is_available(self) -> bool:
        return True

    def is_enrolled(self, user, state: UserMfaState) -> bool:
        raise NotImplementedError

    def issue(self, user, state: UserMfaState) -> ChallengeDescriptor:
        """Server-side step before the user can answer; a no-op by default."""
        return ChallengeDescriptor(factor=self.kind, channel=self.kind.value)

    def verify(self, user, state: UserMfaState, response: str) -> VerifyOutcome:
        raise NotImplementedError


class TOTPFactor(FactorProvider):
    """Authenticator app codes, checked against the encrypted secret."""

    kind = FactorKind.TOTP

    def __init__(self, replay_guard: ReplayGuard, window: int = 1):
        self.replay_guard = replay_guard
        self.window = window

    def is_enrolled(self, user, state):
        return bool(state.mfa_enabled and state.mfa_secret_enc)

    def match(self, state, response: str, now: Optional[float] = None):
        """
        Check a code against the stored secret without recording its use.

        Returns:
            Tuple of (TotpMatch or None, failure reason or None)
        """
        if not state.mfa_secret_enc:
            return None, "no_secret"
        try:
            secret = decrypt_sensitive_string(state.mfa_secret_enc)
        except DecryptionError as e:
            log.warning(f"Stored TOTP secret for user {state.user_id} could not be decrypted: {e}")
            return None, "decrypt_failed"
        totp_match = verify_totp(secret, response, window=self.window, now=now)
        if totp_match is None:
            return None, "invalid_code"
        if state.last_mfa_step is not None and totp_match.step <= state.last_mfa_step:
            return None, "stale_step"
        return totp_match, None

    def verify(self, user, state, response):
        totp_match, reason = self.match(state, response)
        if totp_match is None:
            return VerifyOutcome.failure(self.kind, reason)
        if not self.replay_guard.prevent_totp_replay(user.id, totp_match.step):
            return VerifyOutcome.failure(self.kind, "replayed")
        return VerifyOutcome.success(self.kind, step=totp_match.step)


class _IssuedCodeFactor(FactorProvider):
    """Shared flow for codes the server generates and delivers."""

    def __init__(self, ttl_seconds=600, max_attempts=5, resend_cooldown=0,
                 max_active=3, digits=6):
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.resend_cooldown = resend_cooldown
        self.max_active = max_active
        self.digits = digits

    def destination(self, user, state) -> Optional[str]:
        raise NotImplementedError

    def deliver(self, destination: str, code: str) -> None:
        raise NotImplementedError

    def issue_metadata(self, destination: str) -> Dict[str, Any]:
        return {}

    def is_enrolled(self, user, state):
        return bool(state.mfa_enabled and self.destination(user, state))

    def _check_channel_limits(self, user_id, now: datetime) -> None:
        active = (
            OtpIssue.query.filter(
                OtpIssue.user_id == user_id,
                OtpIssue.channel == self.kind.value,
                OtpIssue.consumed_at.is_(None),
                OtpIssue.expires_at > now,
            )
            .order_by(OtpIssue.created_at.desc())
            .all()
        )
        retry_candidates = []
        if active and now - active[0].created_at < timedelta(seconds=self.resend_cooldown):
            retry_candidates.append(active[0].created_at + timedelta(seconds=self.resend_cooldown))
        if len(active) >= self.max_active:
            retry_candidates.append(min(issue.expires_at for issue in active))
        if retry_candidates:
            raise RateLimitedError("channel", _aware(max(retry_candidates)))

    def issue(self, user, state):
        destination = self.destination(user, state)
        if not destination:
            raise FactorNotEnrolledError(f"No {self.kind.value} destination for user {user.id}")

        now = utcnow()
        self._check_channel_limits(user.id, now)

        code = generate_numeric_code(self.digits)
        issue = OtpIssue(
            user_id=user.id,
            channel=self.kind.value,
            code_hash=hash_issued_code(code),
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            attempts=0,
            meta=self.issue_metadata(destination),
            created_at=now,
        )
        db.session.add(issue)
        db.session.commit()
        expires_at = issue.expires_at

        try:
            self.deliver(destination, code)
        except Exception:
            db.session.delete(issue)
            db.session.commit()
            raise
        return ChallengeDescriptor(factor=self.kind, channel=self.kind.value, expires_at=expires_at)

    def verify(self, user, state, response):
        code = _NON_DIGIT.sub("", response or "")
        if len(code) != self.digits:
            return VerifyOutcome.failure(self.kind, "malformed_code")

        now = utcnow()
        issue = OtpIssue.latest_live(user.id, self.kind.value, now)
        if issue is None:
            return VerifyOutcome.failure(self.kind, "no_active_code")
        issue_id, code_hash = issue.id, issue.code_hash

        if not OtpIssue.register_attempt(issue_id, self.max_attempts):
            db.session.commit()
            return VerifyOutcome.failure(self.kind, "attempts_exhausted")
        if not hmac.compare_digest(code_hash, hash_issued_code(code)):
            db.session.commit()
            return VerifyOutcome.failure(self.kind, "code_mismatch")
        if not OtpIssue.consume(issue_id, now):
            db.session.commit()
            return VerifyOutcome.failure(self.kind, "already_consumed")
        db.session.commit()
        return VerifyOutcome.success(self.kind)


class EmailOTPFactor(_IssuedCodeFactor):
    kind = FactorKind.EMAIL

    def __init__(self, sender: EmailSender, **kwargs):
        super().__init__(**kwargs)
        self.sender = sender

    def destination(self, user, state):
        return user.email

    def deliver(self, destination, code):
        self.sender.send_code(destination, code, self.ttl_seconds)


class WhatsAppOTPFactor(_IssuedCodeFactor):
    """
    WhatsApp codes through Twilio.

    The factor is always declared. While the transport is switched off it is
    unavailable: it cannot issue, verify, or count as enrolled.
    """

    kind = FactorKind.WHATSAPP

    def __init__(self, sender: WhatsAppSender, enabled: bool = False, **kwargs):
        super().__init__(**kwargs)
        self.sender = sender
        self.enabled = enabled

    def is_available(self):
        return self.enabled

    def is_enrolled(self, user, state):
        return self.enabled and super().is_enrolled(user, state)

    def destination(self, user, state):
        return state.whatsapp_msisdn

    def issue_metadata(self, destination):
        return {"msisdn": mask_msisdn(destination)}

    def deliver(self, destination, code):
        self.sender.send_code(destination, code, self.ttl_seconds)

    def issue(self, user, state):
        if not self.enabled:
            raise FactorUnavailableError("WhatsApp delivery is disabled")
        return super().issue(user, state)


def consume_backup_code(user_id: str, code: str) -> Optional[List[str]]:
    """
    Atomically consume a backup code.

    The reduced hash list is written with a compare-and-swap on the state
    version read beforehand. Losing a race, a missing state and a non-matching
    code all return None without mutating anything.

    Returns:
        Optional[List[str]]: remaining hashes on success
    """
    state = UserMfaState.get_for_user(user_id)
    if state is None:
        return None
    hashes = state.backup_hashes
    version = state.version
    if not hashes or not code:
        return None

    for index, stored_hash in enumerate(hashes):
        if verify_one_time_code(code, stored_hash):
            remaining = hashes[:index] + hashes[index + 1:]
            if not UserMfaState.conditional_update(user_id, version, mfa_backup_hashes=remaining):
                db.session.rollback()
                log.warning(f"Backup code consumption for user {user_id} lost a concurrent update")
                return None
            db.session.commit()
            log.info(f"Backup code consumed for user {user_id}, {len(remaining)} remaining")
            return remaining
    return None


class BackupCodeFactor(FactorProvider):
    kind = FactorKind.BACKUP

    def is_enrolled(self, user, state):
        return bool(state.mfa_enabled and state.backup_hashes)

    def verify(self, user, state, response):
        remaining = consume_backup_code(user.id, response)
        if remaining is None:
            return VerifyOutcome.failure(self.kind, "backup_rejected")
        return VerifyOutcome.success(
            self.kind,
            used_backup=True,
            audit_metadata={"remaining": len(remaining)},
        )


def parse_passkey_payload(value) -> Optional[Dict[str, Any]]:
    """Decode a passkey verification payload sent as JSON or base64 JSON."""
    if isinstance(value, dict):
        payload = value
    elif isinstance(value, str) and value:
        try:
            payload = json.loads(value)
        except ValueError:
            try:
                decoded = base64.b64decode(value, validate=True).decode("utf-8")
                payload = json.loads(decoded)
            except (binascii.Error, UnicodeDecodeError, ValueError):
                return None
    else:
        return None
    if not isinstance(payload, dict):
        return None
    if not isinstance(payload.get("response"), dict) or not isinstance(payload.get("stateToken"), str):
        return None
    return payload


class PasskeyFactor(FactorProvider):
    """
    WebAuthn passkeys.

    Ceremony state (challenge and user) travels in a signed ``stateToken``
    handed to the client with the options, so no server-side challenge table
    is needed. A verified challenge is recorded in the replay guard and
    cannot be presented again.
    """

    kind = FactorKind.PASSKEY

    def __init__(self, rp_id, rp_name, origin, secret, timeout_ms=60000, state_ttl=300,
                 replay_guard: Optional[ReplayGuard] = None):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.secret = secret
        self.timeout_ms = timeout_ms
        self.state_ttl = state_ttl
        self.replay_guard = replay_guard or ReplayGuard(secret=secret)

    def is_enrolled(self, user, state):
        return bool(state.mfa_passkey_enrolled and PasskeyCredential.for_user(user.id))

    @staticmethod
    def _descriptors(credentials) -> List[PublicKeyCredentialDescriptor]:
        descriptors = []
        for credential in credentials:
            transports = []
            for transport in credential.transports or []:
                try:
                    transports.append(AuthenticatorTransport(transport))
                except ValueError:
                    continue
            descriptors.append(
                PublicKeyCredentialDescriptor(
                    id=base64url_to_bytes(credential.credential_id),
                    transports=transports or None,
                )
            )
        return descriptors

    def _state_token(self, user_id, challenge: bytes, purpose: str) -> str:
        return create_signed_token(
            {"challenge": bytes_to_base64url(challenge), "userId": user_id},
            self.secret,
            ttl_seconds=self.state_ttl,
            purpose=purpose,
        )

    def _read_state(self, user_id, token: str, purpose: str) -> Optional[bytes]:
        payload = verify_signed_token(token, self.secret, purpose=purpose)
        if payload is None or payload.data.get("userId") != user_id:
            return None
        try:
            return base64url_to_bytes(payload.data["challenge"])
        except (KeyError, TypeError, ValueError, binascii.Error):
            return None

    def issue(self, user, state):
        credentials = PasskeyCredential.for_user(user.id)
        if not credentials:
            raise FactorNotEnrolledError(f"No passkeys registered for user {user.id}")

        options = generate_authentication_options(
            rp_id=self.rp_id,
            allow_credentials=self._descriptors(credentials),
            user_verification=UserVerificationRequirement.PREFERRED,
            timeout=self.timeout_ms,
        )
        token = self._state_token(user.id, options.challenge, PASSKEY_AUTH_PURPOSE)
        log.info(f"WebAuthn authentication options generated for user {user.id}")
        return ChallengeDescriptor(
            factor=self.kind,
            channel=self.kind.value,
            expires_at=utcnow() + timedelta(seconds=self.state_ttl),
            payload={"options": json.loads(options_to_json(options)), "stateToken": token},
        )

    def verify(self, user, state, response):
        payload = parse_passkey_payload(response)
        if payload is None:
            return VerifyOutcome.failure(self.kind, "payload_invalid")

        challenge = self._read_state(user.id, payload["stateToken"], PASSKEY_AUTH_PURPOSE)
        if challenge is None:
            return VerifyOutcome.failure(self.kind, "state_invalid")

        credential_json = payload["response"]
        credential_id = credential_json.get("rawId") or credential_json.get("id")
        credential = PasskeyCredential.find(credential_id) if credential_id else None
        if credential is None or credential.user_id != user.id:
            return VerifyOutcome.failure(self.kind, "unknown_credential")

        try:
            verification = verify_authentication_response(
                credential=credential_json,
                expected_challenge=challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=credential.public_key,
                credential_current_sign_count=credential.sign_count,
                require_user_verification=False,
            )
        except (WebAuthnException, KeyError, TypeError, ValueError) as e:
            log.warning(f"WebAuthn authentication rejected for user {user.id}: {type(e).__name__}")
            return VerifyOutcome.failure(self.kind, "webauthn_rejected", error=type(e).__name__)

        if not self.replay_guard.consume_challenge(user.id, challenge, self.state_ttl):
            return VerifyOutcome.failure(self.kind, "state_reused")

        if not credential.update_sign_count(verification.new_sign_count):
            db.session.rollback()
            return VerifyOutcome.failure(self.kind, "sign_count_regression")
        db.session.commit()
        return VerifyOutcome.success(
            self.kind,
            audit_metadata={
                "credentialId": credential.credential_id,
                "deviceType": credential.device_type,
            },
        )

    def registration_options(self, user) -> Dict[str, Any]:
        """WebAuthn creation options plus the signed registration state."""
        existing = PasskeyCredential.for_user(user.id)
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=str(user.id).encode("utf-8"),
            user_name=user.email or str(user.id),
            exclude_credentials=self._descriptors(existing),
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            timeout=self.timeout_ms,
        )
        return {
            "options": json.loads(options_to_json(options)),
            "stateToken": self._state_token(user.id, options.challenge, PASSKEY_REGISTER_PURPOSE),
        }

    def register(self, user, response: Dict[str, Any], state_token: str,
                 friendly_name: Optional[str] = None) -> PasskeyCredential:
        """
        Verify an attestation and store the new credential. The caller commits.

        Raises:
            InvalidCodeError: If the ceremony state or attestation is invalid
        """
        challenge = self._read_state(user.id, state_token, PASSKEY_REGISTER_PURPOSE)
        if challenge is None:
            raise InvalidCodeError("Registration state invalid or expired")
        try:
            verification = verify_registration_response(
                credential=response,
                expected_challenge=challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=False,
            )
        except (WebAuthnException, KeyError, TypeError, ValueError) as e:
            log.warning(f"WebAuthn registration rejected for user {user.id}: {type(e).__name__}")
            raise InvalidCodeError("Passkey registration failed")

        transports = (response.get("response") or {}).get("transports") or []
        device_type = getattr(verification.credential_device_type, "value", verification.credential_device_type)
        credential = PasskeyCredential(
            user_id=user.id,
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=verification.credential_public_key,
            sign_count=verification.sign_count,
            transports=[str(t) for t in transports],
            device_type=device_type,
            backed_up=bool(verification.credential_backed_up),
            friendly_name=friendly_name or f"Passkey {utcnow():%Y-%m-%d %H:%M}",
            created_at=utcnow(),
        )
        db.session.add(credential)
        return credential


def build_factor_registry(config, replay_guard: ReplayGuard,
                          email_sender: Optional[EmailSender] = None,
                          whatsapp_sender: Optional[WhatsAppSender] = None) -> Dict[FactorKind, FactorProvider]:
    """
    Build the factor tag to provider mapping from application config.

    Args:
        config: Flask config mapping
        replay_guard: Guard shared by the TOTP and passkey providers
        email_sender: Optional sender override
        whatsapp_sender: Optional sender override

    Returns:
        Dict[FactorKind, FactorProvider]: one provider per factor kind
    """
    code_settings = {
        "ttl_seconds": config.get("MFA_OTP_TTL", 600),
        "max_attempts": config.get("MFA_OTP_MAX_ATTEMPTS", 5),
        "resend_cooldown": config.get("MFA_OTP_RESEND_COOLDOWN", 0),
        "max_active": config.get("MFA_OTP_MAX_ACTIVE", 3),
    }
    registry = {
        FactorKind.TOTP: TOTPFactor(replay_guard, window=config.get("MFA_TOTP_WINDOW", 1)),
        FactorKind.EMAIL: EmailOTPFactor(email_sender or build_email_sender(config), **code_settings),
        FactorKind.WHATSAPP: WhatsAppOTPFactor(
            whatsapp_sender or WhatsAppSender.from_config(config),
            enabled=bool(config.get("MFA_WHATSAPP_ENABLED", False)),
            **code_settings,
        ),
        FactorKind.BACKUP: BackupCodeFactor(),
        FactorKind.PASSKEY: PasskeyFactor(
            rp_id=config.get("MFA_WEBAUTHN_RP_ID", "localhost"),
            rp_name=config.get("MFA_WEBAUTHN_RP_NAME", "SACCO+"),
            origin=config.get("MFA_WEBAUTHN_ORIGIN", "http://localhost:3000"),
            secret=config.get("MFA_SESSION_SECRET"),
            timeout_ms=config.get("MFA_WEBAUTHN_TIMEOUT", 60000),
            state_ttl=config.get("MFA_PASSKEY_STATE_TTL", 300),
            replay_guard=replay_guard,
        ),
    }
    return registry
