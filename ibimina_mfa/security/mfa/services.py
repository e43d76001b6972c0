"""
Multi-Factor Authentication Orchestration

The orchestrator is the only component that mutates per-user MFA state. It
enrolls users, initiates and verifies challenges across every factor kind,
disables and resets MFA, and issues session and trusted-device cookies.

Workflow:
    initiate_challenge: rate limits -> factor.issue() -> audit
    verify_challenge: rate limits -> factor.verify() (+ replay guard)
        success -> state update -> audit -> session cookies
        failure -> failure counter -> audit -> generic invalid_or_expired

Dependencies are passed to the constructor; :meth:`from_config` wires the
defaults for an application.
"""

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import current_app
from limits.storage import MemoryStorage, Storage, storage_from_string
from sqlalchemy.exc import SQLAlchemyError

from ...extensions import db
from ..audit_logging import AuditAction, MFAAuditLogger
from ..crypto import (
    build_otpauth_uri,
    encrypt_sensitive_string,
    generate_backup_codes,
    generate_qr_code,
    generate_totp_secret,
    hash_identifier,
    preview_secret,
    verify_totp,
)
from ..rate_limiting import RateLimiter
from ..replay import ReplayGuard
from ..tokens import create_signed_token, verify_signed_token
from .delivery import EmailSender, WhatsAppSender, mask_msisdn, normalize_msisdn
from .exceptions import (
    AlreadyEnabledError,
    FactorUnavailableError,
    ForbiddenError,
    InvalidCodeError,
    InvalidEnrollmentTokenError,
    MFAServiceError,
    NotEnabledError,
    NotFoundError,
    PersistenceError,
    RateLimitedError,
    ValidationError,
)
from .factors import (
    ChallengeDescriptor,
    FactorKind,
    FactorProvider,
    PasskeyFactor,
    build_factor_registry,
    consume_backup_code,
    parse_passkey_payload,
)
from .models import PasskeyCredential, TrustedDevice, User, UserMfaState, utcnow
from .session import CookieSpec, SessionIssuer

log = logging.getLogger(__name__)

ENROLLMENT_PURPOSE = "mfa-enrollment"
EXTENSION_KEY = "ibimina_mfa"

# Order in which a client should offer factors
PREFERENCE_ORDER = (
    FactorKind.PASSKEY,
    FactorKind.TOTP,
    FactorKind.EMAIL,
    FactorKind.WHATSAPP,
    FactorKind.BACKUP,
)

_NON_DIGIT = re.compile(r"[^0-9]")


@dataclass(frozen=True)
class VerifyResult:
    """Successful verification and the cookies to set."""

    factor: FactorKind
    used_backup: bool = False
    cookies: List[CookieSpec] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "factor": self.factor.value, "usedBackup": self.used_backup}


@dataclass(frozen=True)
class StatusResult:
    """MFA status of the current client and cookie changes to apply."""

    body: Dict[str, Any]
    set_cookies: List[CookieSpec] = field(default_factory=list)
    clear_cookies: List[str] = field(default_factory=list)


def _ordered_methods(methods) -> List[str]:
    values = set(methods)
    return [kind.value for kind in FactorKind if kind.value in values]


class MFAOrchestrationService:
    """
    High-level MFA state machine.

    States per user: unenrolled -> pending enrollment (signed token only) ->
    enrolled(methods) -> disabled (reset to unenrolled).

    Args:
        factors: Factor tag to provider mapping
        rate_limiter: Counter-backed limiter for user and IP scopes
        replay_guard: Single-use guard shared by the TOTP and passkey providers
        session_issuer: Mints session and trusted-device cookies
        audit: Audit sink
        config: Application config mapping
    """

    def __init__(self, factors: Mapping[FactorKind, FactorProvider], rate_limiter: RateLimiter,
                 replay_guard: ReplayGuard, session_issuer: SessionIssuer,
                 audit: Optional[MFAAuditLogger] = None, config: Optional[Mapping] = None):
        missing = [kind.value for kind in FactorKind if kind not in factors]
        if missing:
            raise ValueError(f"No provider registered for factors: {', '.join(missing)}")
        self.factors = dict(factors)
        self.rate_limiter = rate_limiter
        self.replay_guard = replay_guard
        self.session_issuer = session_issuer
        self.audit = audit or MFAAuditLogger()
        self.config = config or {}

    @classmethod
    def from_config(cls, config: Mapping, storage: Optional[Storage] = None,
                    email_sender: Optional[EmailSender] = None,
                    whatsapp_sender: Optional[WhatsAppSender] = None) -> "MFAOrchestrationService":
        """
        Wire the orchestrator for an application config.

        The rate limiter and replay guard share one counter storage, so a
        shared Redis makes both global across instances.
        """
        if storage is None:
            storage = storage_from_string(config.get("MFA_RATELIMIT_STORAGE_URI", "memory://"))
        secret = config.get("MFA_RATE_LIMIT_SECRET") or ""
        rate_limiter = RateLimiter(storage=storage, fallback=MemoryStorage(), secret=secret)
        replay_guard = ReplayGuard(
            storage=storage,
            fallback=MemoryStorage(),
            ttl_seconds=config.get("MFA_TOTP_PERIOD", 30) * 2 + 5,
            secret=secret,
        )
        factors = build_factor_registry(config, replay_guard, email_sender, whatsapp_sender)
        return cls(
            factors=factors,
            rate_limiter=rate_limiter,
            replay_guard=replay_guard,
            session_issuer=SessionIssuer.from_config(config),
            audit=MFAAuditLogger(),
            config=config,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _persistence(self, user_id, operation: str):
        """Commit on success; database errors become ``update_failed``."""
        try:
            yield
            db.session.commit()
        except MFAServiceError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error(f"MFA {operation} persistence failed for user {user_id}: {e}")
            raise PersistenceError(f"{operation} failed")

    def _state(self, user) -> UserMfaState:
        try:
            return UserMfaState.get_or_create(user.id)
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error(f"Failed to load MFA state for user {user.id}: {e}")
            raise PersistenceError("state unavailable")

    def _limit(self, key: str) -> Tuple[int, int]:
        max_hits, window = self.config.get(key)
        return int(max_hits), int(window)

    def _provider(self, kind: FactorKind) -> FactorProvider:
        provider = self.factors[kind]
        if not provider.is_available():
            raise FactorUnavailableError(f"Factor {kind.value} is unavailable")
        return provider

    def _enforce(self, user_id, bucket: str, limit_key: str, scope: str, operation: str,
                 hashed_ip: Optional[str] = None) -> None:
        max_hits, window = self._limit(limit_key)
        result = self.rate_limiter.apply(bucket, max_hits, window)
        if result.ok:
            return
        retry_iso = result.retry_at.isoformat() if result.retry_at else None
        log.warning(f"MFA {operation} rate limited for user {user_id} (scope={scope})")
        metadata = {"scope": scope, "retryAt": retry_iso, "operation": operation}
        if hashed_ip:
            metadata["hashedIp"] = hashed_ip
        self.audit.log_event(AuditAction.MFA_RATE_LIMITED, user_id, metadata)
        raise RateLimitedError(scope, result.retry_at)

    def _enforce_user_and_ip(self, user_id, operation: str, user_bucket: str,
                             user_limit: str, ip_limit: str, ip: Optional[str]) -> None:
        self._enforce(user_id, user_bucket, user_limit, "user", operation)
        if ip:
            hashed_ip = hash_identifier(ip)
            self._enforce(user_id, f"mfa-{operation}-ip:{hashed_ip}", ip_limit, "ip", operation,
                          hashed_ip=hashed_ip)

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def start_enrollment(self, user) -> Dict[str, Any]:
        """
        Begin TOTP enrollment.

        Returns:
            Dict with ``otpauthUri``, ``secret``, ``secretPreview``, ``qrCode``
            and the signed ``pendingToken``

        Raises:
            AlreadyEnabledError: If MFA is already enabled
        """
        state = self._state(user)
        if state.mfa_enabled:
            raise AlreadyEnabledError("MFA already enabled")

        secret = generate_totp_secret()
        issuer = self.config.get("MFA_TOTP_ISSUER", "SACCO+")
        otpauth_uri = build_otpauth_uri(issuer, user.email or str(user.id), secret)
        pending_token = create_signed_token(
            {"userId": user.id, "secret": secret},
            self.config.get("MFA_ENROLLMENT_SECRET"),
            ttl_seconds=self.config.get("MFA_ENROLLMENT_TTL", 600),
            purpose=ENROLLMENT_PURPOSE,
        )
        self.audit.log_event(AuditAction.MFA_ENROLLMENT_STARTED, user.id)
        return {
            "otpauthUri": otpauth_uri,
            "secret": secret,
            "secretPreview": preview_secret(secret, 6),
            "qrCode": generate_qr_code(otpauth_uri),
            "pendingToken": pending_token,
        }

    def confirm_enrollment(self, user, pending_token: str, code1: str, code2: str) -> Dict[str, Any]:
        """
        Finish TOTP enrollment with two distinct valid codes.

        Returns:
            Dict with the plaintext ``backupCodes``, shown only once

        Raises:
            InvalidEnrollmentTokenError: Bad, expired, tampered or foreign token
            InvalidCodeError: Codes identical, invalid, or from the same time step (422)
        """
        state = self._state(user)
        if state.mfa_enabled:
            raise AlreadyEnabledError("MFA already enabled")

        payload = verify_signed_token(
            pending_token, self.config.get("MFA_ENROLLMENT_SECRET"), purpose=ENROLLMENT_PURPOSE
        )
        if payload is None or payload.data.get("userId") != user.id or not payload.data.get("secret"):
            self.audit.log_event(AuditAction.MFA_ENROLLMENT_FAILED, user.id, {"reason": "invalid_token"})
            raise InvalidEnrollmentTokenError("Pending enrollment token invalid or expired")
        secret = payload.data["secret"]

        first = _NON_DIGIT.sub("", code1 or "")
        second = _NON_DIGIT.sub("", code2 or "")
        first_match = verify_totp(secret, first) if first else None
        second_match = verify_totp(secret, second) if second else None
        if first == second:
            reason = "codes_identical"
        elif first_match is None or second_match is None:
            reason = "invalid_code"
        elif first_match.step == second_match.step:
            reason = "same_step"
        else:
            reason = None
        if reason:
            self.audit.log_event(AuditAction.MFA_ENROLLMENT_FAILED, user.id, {"reason": reason})
            raise InvalidCodeError("Enrollment codes rejected", error="invalid_code", status=422)

        records = generate_backup_codes(self.config.get("MFA_BACKUP_CODE_COUNT", 10))
        methods = [FactorKind.TOTP.value, FactorKind.BACKUP.value]
        if user.email:
            methods.append(FactorKind.EMAIL.value)
        if state.mfa_passkey_enrolled:
            methods.append(FactorKind.PASSKEY.value)
        now = utcnow()

        with self._persistence(user.id, "enrollment"):
            updated = UserMfaState.conditional_update(
                user.id,
                state.version,
                mfa_enabled=True,
                mfa_secret_enc=encrypt_sensitive_string(secret),
                mfa_enrolled_at=now,
                mfa_backup_hashes=[record.hash for record in records],
                mfa_methods=_ordered_methods(methods),
                failed_mfa_count=0,
                last_mfa_step=max(first_match.step, second_match.step),
                last_mfa_success_at=now,
            )
            if not updated:
                raise PersistenceError("MFA state changed during enrollment")

        self.audit.log_event(AuditAction.MFA_ENROLLED, user.id, {"methods": _ordered_methods(methods)})
        log.info(f"MFA enrolled for user {user.id}")
        return {"backupCodes": [record.code for record in records]}

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    def initiate_challenge(self, user, factor, ip: Optional[str] = None) -> ChallengeDescriptor:
        """
        Start a challenge for a factor.

        Raises:
            NotEnabledError: If MFA is not enabled
            RateLimitedError: Per (user, factor), per IP or per channel limit hit
            FactorUnavailableError: Factor switched off by configuration
            ServiceUnavailableError: Delivery failed or timed out
        """
        kind = factor if isinstance(factor, FactorKind) else FactorKind.parse(factor)
        state = self._state(user)
        if not state.mfa_enabled:
            raise NotEnabledError("MFA not enabled")
        provider = self._provider(kind)

        self._enforce_user_and_ip(
            user.id,
            "initiate",
            f"mfa-initiate:{user.id}:{kind.value}",
            "MFA_INITIATE_RATE_LIMIT",
            "MFA_INITIATE_IP_RATE_LIMIT",
            ip,
        )

        try:
            descriptor = provider.issue(user, state)
        except RateLimitedError as e:
            self.audit.log_event(
                AuditAction.MFA_RATE_LIMITED,
                user.id,
                {"scope": e.scope, "factor": kind.value, "retryAt": e.payload.get("retryAt")},
            )
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error(f"Challenge issue failed for user {user.id}: {e}")
            raise PersistenceError("challenge issue failed")

        self.audit.log_event(AuditAction.MFA_CHALLENGE_ISSUED, user.id, {"factor": kind.value})
        return descriptor

    def verify_challenge(self, user, factor, token: Optional[str], remember_device: bool = False,
                         ip: Optional[str] = None, user_agent: Optional[str] = None) -> VerifyResult:
        """
        Verify a challenge response.

        Every verification failure raises the same generic
        ``invalid_or_expired`` error; the specific reason only reaches the
        audit log.

        Raises:
            NotEnabledError: If MFA is not enabled
            RateLimitedError: User, IP or passkey limit hit
            ValidationError: Missing token or malformed passkey payload
            InvalidCodeError: Verification failed
        """
        kind = factor if isinstance(factor, FactorKind) else FactorKind.parse(factor)
        state = self._state(user)
        if not state.mfa_enabled:
            log.warning(f"MFA verify attempted for user {user.id} without MFA enabled")
            self.audit.log_event(AuditAction.MFA_VERIFY_NOT_ENABLED, user.id, {"factor": kind.value})
            raise NotEnabledError("MFA not enabled")

        self._enforce_user_and_ip(
            user.id,
            "verify",
            f"mfa-verify:{user.id}",
            "MFA_VERIFY_RATE_LIMIT",
            "MFA_VERIFY_IP_RATE_LIMIT",
            ip,
        )
        if kind == FactorKind.PASSKEY:
            self._enforce(user.id, f"mfa-passkey:{user.id}", "MFA_PASSKEY_RATE_LIMIT", "user", "passkey")

        provider = self._provider(kind)
        if not token:
            raise ValidationError("Token required", error="token_required")
        if kind == FactorKind.PASSKEY and parse_passkey_payload(token) is None:
            raise ValidationError("Malformed passkey payload")
        if kind != FactorKind.PASSKEY and not isinstance(token, str):
            raise ValidationError("Token must be a string")

        try:
            outcome = provider.verify(user, state, token)
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error(f"MFA verification for user {user.id} failed on the database: {e}")
            raise PersistenceError("verification failed")

        if not outcome.ok:
            try:
                UserMfaState.increment_failures(user.id)
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                log.error(f"Failed to record MFA failure for user {user.id}: {e}")
            log.warning(f"MFA verification failed for user {user.id} ({kind.value}: {outcome.reason})")
            self.audit.log_event(
                outcome.audit_action,
                user.id,
                {"factor": kind.value, "reason": outcome.reason, **outcome.audit_metadata},
            )
            raise InvalidCodeError()

        methods = set(state.methods)
        if kind in (FactorKind.TOTP, FactorKind.BACKUP):
            methods.add(FactorKind.TOTP.value)
        else:
            methods.add(kind.value)
        values = {
            "failed_mfa_count": 0,
            "last_mfa_success_at": utcnow(),
            "mfa_methods": _ordered_methods(methods),
        }
        if outcome.step is not None:
            values["last_mfa_step"] = outcome.step
        if kind == FactorKind.PASSKEY:
            values["mfa_passkey_enrolled"] = True

        with self._persistence(user.id, "verification"):
            UserMfaState.apply_update(user.id, **values)

        self.audit.log_event(
            outcome.audit_action,
            user.id,
            {"factor": kind.value, "usedBackup": outcome.used_backup, **outcome.audit_metadata},
        )
        cookies = self.session_issuer.issue_session_cookies(
            user.id, remember_device=remember_device, user_agent=user_agent, ip=ip
        )
        log.info(f"MFA verification succeeded for user {user.id} ({kind.value})")
        return VerifyResult(factor=kind, used_backup=outcome.used_backup, cookies=cookies)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def disable_mfa(self, user, token: Optional[str], method: str = "totp") -> List[str]:
        """
        Disable MFA after a fresh TOTP or backup-code verification.

        Clears the secret, backup codes, methods, trusted devices and passkeys.

        Returns:
            List[str]: names of the cookies to clear

        Raises:
            NotEnabledError: If MFA is not enabled
            ValidationError: Missing token or unsupported method
            InvalidCodeError: Verification failed (401 ``invalid_code``)
            PersistenceError: State could not be reset
        """
        state = self._state(user)
        if not state.mfa_enabled:
            raise NotEnabledError("MFA not enabled")
        if not token:
            raise ValidationError("Token required", error="token_required")
        if method not in (FactorKind.TOTP.value, FactorKind.BACKUP.value):
            raise ValidationError(f"Unsupported method {method!r}", error="invalid_method")

        kind = FactorKind(method)
        try:
            outcome = self.factors[kind].verify(user, state, token)
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error(f"MFA disable verification for user {user.id} failed on the database: {e}")
            raise PersistenceError("disable failed")

        if not outcome.ok:
            self.audit.log_event(
                AuditAction.MFA_DISABLE_FAILED, user.id, {"method": method, "reason": outcome.reason}
            )
            raise InvalidCodeError("Disable verification failed", error="invalid_code")

        # Backup consumption bumps the version; re-read before the reset
        state = UserMfaState.get_for_user(user.id)
        with self._persistence(user.id, "disable"):
            if not UserMfaState.conditional_update(user.id, state.version, **UserMfaState.reset_values()):
                raise PersistenceError("MFA state changed during disable")
            devices = TrustedDevice.delete_for_user(user.id)
            PasskeyCredential.delete_for_user(user.id)

        self.audit.log_event(AuditAction.MFA_DISABLED, user.id, {"method": method, "trustedDevices": devices})
        log.info(f"MFA disabled for user {user.id}")
        return self.session_issuer.cookie_names

    def consume_backup_code(self, user_id, code: str) -> Optional[List[str]]:
        """Consume a backup code atomically; None when nothing matched or a race was lost."""
        return consume_backup_code(user_id, code)

    def reset_user_mfa(self, actor, target_user_id: str) -> None:
        """
        Administrative reset of another user's MFA.

        Raises:
            ForbiddenError: If the actor is not a system administrator
            NotFoundError: If the target user does not exist
        """
        if not getattr(actor, "is_system_admin", False):
            self.audit.log_event(AuditAction.MFA_RESET_DENIED, actor.id, {"target": target_user_id})
            raise ForbiddenError("MFA reset requires a system administrator")

        target = db.session.get(User, target_user_id)
        if target is None:
            raise NotFoundError(f"User {target_user_id} not found")

        self._state(target)
        with self._persistence(target.id, "reset"):
            UserMfaState.apply_update(target.id, **UserMfaState.reset_values())
            TrustedDevice.delete_for_user(target.id)
            PasskeyCredential.delete_for_user(target.id)

        self.audit.log_event(AuditAction.MFA_RESET, target.id, {"actor": actor.id})
        log.info(f"MFA reset for user {target.id} by {actor.id}")

    def revoke_trusted_device(self, user, device_id: str) -> None:
        device = TrustedDevice.find(user.id, device_id)
        if device is None:
            raise NotFoundError("Trusted device not found")
        with self._persistence(user.id, "device revocation"):
            db.session.delete(device)
        self.audit.log_event(AuditAction.TRUSTED_DEVICE_REVOKED, user.id, {"deviceId": device_id})

    # ------------------------------------------------------------------
    # Additional factors
    # ------------------------------------------------------------------

    def register_whatsapp(self, user, msisdn: str) -> Dict[str, Any]:
        """Attach a WhatsApp number to an MFA-enabled account."""
        self._provider(FactorKind.WHATSAPP)
        state = self._state(user)
        if not state.mfa_enabled:
            raise NotEnabledError("MFA not enabled")
        normalized = normalize_msisdn(msisdn)
        with self._persistence(user.id, "whatsapp registration"):
            UserMfaState.apply_update(user.id, whatsapp_msisdn=normalized)
        masked = mask_msisdn(normalized)
        self.audit.log_event(AuditAction.MFA_WHATSAPP_REGISTERED, user.id, {"msisdn": masked})
        return {"msisdn": masked}

    def _passkeys(self) -> PasskeyFactor:
        return self.factors[FactorKind.PASSKEY]

    def begin_passkey_registration(self, user) -> Dict[str, Any]:
        state = self._state(user)
        if not state.mfa_enabled:
            raise NotEnabledError("MFA not enabled")
        self._enforce(user.id, f"mfa-passkey:{user.id}", "MFA_PASSKEY_RATE_LIMIT", "user", "passkey")
        return self._passkeys().registration_options(user)

    def finish_passkey_registration(self, user, response: Dict[str, Any], state_token: str,
                                    friendly_name: Optional[str] = None) -> Dict[str, Any]:
        state = self._state(user)
        if not state.mfa_enabled:
            raise NotEnabledError("MFA not enabled")
        try:
            with self._persistence(user.id, "passkey registration"):
                credential = self._passkeys().register(user, response, state_token, friendly_name)
                UserMfaState.apply_update(
                    user.id,
                    mfa_passkey_enrolled=True,
                    mfa_methods=_ordered_methods(state.methods + [FactorKind.PASSKEY.value]),
                )
        except InvalidCodeError:
            self.audit.log_event(AuditAction.MFA_ENROLLMENT_FAILED, user.id, {"factor": "passkey"})
            raise

        self.audit.log_event(
            AuditAction.MFA_PASSKEY_REGISTERED,
            user.id,
            {"credentialId": credential.credential_id, "deviceType": credential.device_type},
        )
        return {"credentialId": credential.credential_id, "friendlyName": credential.friendly_name}

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_channels(self, user) -> Dict[str, Any]:
        """Summary of enrolled factors. Never mutates state."""
        state = UserMfaState.get_for_user(user.id)
        if state is None:
            state = UserMfaState(user_id=user.id, mfa_enabled=False, mfa_backup_hashes=[],
                                 mfa_methods=[], mfa_passkey_enrolled=False)
        enrolled = {
            kind.value: bool(self.factors[kind].is_enrolled(user, state))
            for kind in PREFERENCE_ORDER
        }
        preferred = next((kind.value for kind in PREFERENCE_ORDER if enrolled[kind.value]), None)
        return {"preferred": preferred, "enrolled": enrolled}

    def get_status(self, user, session_token: Optional[str], trusted_token: Optional[str],
                   user_agent: Optional[str] = None, ip: Optional[str] = None) -> StatusResult:
        """
        Whether the current client still has to pass a challenge.

        A valid session cookie passes. Otherwise a trusted-device cookie whose
        fingerprint still matches passes and both cookies are renewed.
        """
        state = UserMfaState.get_for_user(user.id)
        methods = state.methods if state else []
        if state is None or not state.mfa_enabled:
            return StatusResult(body={
                "mfaEnabled": False,
                "mfaRequired": bool(getattr(user, "is_system_admin", False)),
                "trustedDevice": False,
                "methods": methods,
            })

        if self.session_issuer.has_valid_session(user.id, session_token):
            return StatusResult(body={
                "mfaEnabled": True,
                "mfaRequired": False,
                "trustedDevice": False,
                "methods": methods,
            })

        device_id = self.session_issuer.check_trusted_device(user.id, trusted_token, user_agent, ip)
        if device_id is None:
            return StatusResult(
                body={"mfaEnabled": True, "mfaRequired": True, "trustedDevice": False, "methods": methods},
                clear_cookies=self.session_issuer.cookie_names,
            )
        return StatusResult(
            body={"mfaEnabled": True, "mfaRequired": False, "trustedDevice": True, "methods": methods},
            set_cookies=self.session_issuer.renew_cookies(user.id, device_id),
        )


def get_orchestrator() -> MFAOrchestrationService:
    return current_app.extensions[EXTENSION_KEY]
