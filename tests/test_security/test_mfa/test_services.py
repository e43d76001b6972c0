"""
Unit tests for the MFA orchestration service.

Test Coverage:
    - TOTP enrollment with two distinct codes
    - Challenge initiation and verification for each factor
    - Generic failures, failure counters and audit reasons
    - User and IP rate limits
    - Disable, administrative reset and device revocation
    - Channel summary and session status
"""

import base64
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time
from webauthn.helpers import bytes_to_base64url

from ibimina_mfa.extensions import db
from ibimina_mfa.security.audit_logging import AuditAction
from ibimina_mfa.security.crypto import (
    current_step,
    encrypt_sensitive_string,
    generate_backup_codes,
    generate_totp_secret,
    totp_code_at,
)
from ibimina_mfa.security.mfa.exceptions import (
    AlreadyEnabledError,
    FactorUnavailableError,
    ForbiddenError,
    InvalidCodeError,
    InvalidEnrollmentTokenError,
    NotEnabledError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from ibimina_mfa.security.mfa.factors import FactorKind
from ibimina_mfa.security.mfa.models import (
    AuditEvent,
    PasskeyCredential,
    TrustedDevice,
    UserMfaState,
)
from ibimina_mfa.security.mfa.services import MFAOrchestrationService, VerifyResult
from ibimina_mfa.security.tokens import create_signed_token

OTHER_KEY = base64.b64encode(b"z" * 32).decode("ascii")
UA = "Mozilla/5.0 (X11; Linux x86_64)"


def audit_actions(user_id):
    return [event.action for event in AuditEvent.query.filter_by(user_id=user_id).order_by(AuditEvent.id)]


def last_audit(user_id, action):
    return (
        AuditEvent.query.filter_by(user_id=user_id, action=action.value)
        .order_by(AuditEvent.id.desc())
        .first()
    )


def enroll(user, secret=None, backup_count=3):
    """Put a user straight into the enrolled state."""
    secret = secret or generate_totp_secret()
    records = generate_backup_codes(backup_count)
    UserMfaState.get_or_create(user.id)
    UserMfaState.apply_update(
        user.id,
        mfa_enabled=True,
        mfa_secret_enc=encrypt_sensitive_string(secret),
        mfa_backup_hashes=[record.hash for record in records],
        mfa_methods=["totp", "email", "backup"],
    )
    db.session.commit()
    return secret, [record.code for record in records]


@pytest.fixture
def email_sender():
    return MagicMock()


@pytest.fixture
def app_services(email_sender):
    return {"email_sender": email_sender}


class TestConstruction:
    def test_requires_every_factor(self, orchestrator):
        factors = dict(orchestrator.factors)
        del factors[FactorKind.WHATSAPP]
        with pytest.raises(ValueError):
            MFAOrchestrationService(
                factors, orchestrator.rate_limiter, orchestrator.replay_guard, orchestrator.session_issuer
            )

    def test_from_config_registers_all_factors(self, orchestrator):
        assert set(orchestrator.factors) == set(FactorKind)


class TestEnrollment:
    """Test cases for TOTP enrollment."""

    def test_start_returns_secret_and_token(self, orchestrator, user):
        result = orchestrator.start_enrollment(user)
        assert result["otpauthUri"].startswith("otpauth://totp/")
        assert result["secret"] in result["otpauthUri"]
        assert result["secretPreview"].startswith(result["secret"][:6])
        assert result["qrCode"].startswith("data:image/png;base64,")
        assert result["pendingToken"]
        assert UserMfaState.get_for_user(user.id).mfa_enabled is False

    def test_confirm_with_consecutive_codes(self, frozen_at, orchestrator, user):
        with freeze_time(frozen_at):
            started = orchestrator.start_enrollment(user)
            step = current_step()
            result = orchestrator.confirm_enrollment(
                user,
                started["pendingToken"],
                totp_code_at(started["secret"], step),
                totp_code_at(started["secret"], step + 1),
            )

        assert len(result["backupCodes"]) == 4
        state = UserMfaState.get_for_user(user.id)
        assert state.mfa_enabled is True
        assert state.methods == ["totp", "email", "backup"]
        assert len(state.backup_hashes) == 4
        assert state.last_mfa_step == step + 1
        assert started["secret"] not in state.mfa_secret_enc
        assert AuditAction.MFA_ENROLLED.value in audit_actions(user.id)

    def test_codes_accept_spaces(self, frozen_at, orchestrator, user):
        with freeze_time(frozen_at):
            started = orchestrator.start_enrollment(user)
            step = current_step()
            first = totp_code_at(started["secret"], step - 1)
            orchestrator.confirm_enrollment(
                user, started["pendingToken"], f"{first[:3]} {first[3:]}", totp_code_at(started["secret"], step)
            )
        assert UserMfaState.get_for_user(user.id).mfa_enabled

    def test_identical_codes_rejected(self, frozen_at, orchestrator, user):
        with freeze_time(frozen_at):
            started = orchestrator.start_enrollment(user)
            code = totp_code_at(started["secret"], current_step())
            with pytest.raises(InvalidCodeError) as excinfo:
                orchestrator.confirm_enrollment(user, started["pendingToken"], code, code)
        assert excinfo.value.status == 422
        assert excinfo.value.error == "invalid_code"
        event = last_audit(user.id, AuditAction.MFA_ENROLLMENT_FAILED)
        assert event.meta == {"reason": "codes_identical"}
        assert UserMfaState.get_for_user(user.id).mfa_enabled is False

    def test_invalid_code_rejected(self, frozen_at, orchestrator, user):
        with freeze_time(frozen_at):
            started = orchestrator.start_enrollment(user)
            step = current_step()
            with pytest.raises(InvalidCodeError):
                orchestrator.confirm_enrollment(
                    user, started["pendingToken"], totp_code_at(started["secret"], step), "abc"
                )
        assert last_audit(user.id, AuditAction.MFA_ENROLLMENT_FAILED).meta == {"reason": "invalid_code"}

    def test_token_for_another_user_rejected(self, orchestrator, user, admin):
        started = orchestrator.start_enrollment(admin)
        with pytest.raises(InvalidEnrollmentTokenError) as excinfo:
            orchestrator.confirm_enrollment(user, started["pendingToken"], "123456", "654321")
        assert excinfo.value.status == 400

    def test_expired_token_rejected(self, orchestrator, user):
        with freeze_time("2026-01-01 10:00:00") as frozen:
            started = orchestrator.start_enrollment(user)
            frozen.tick(601)
            with pytest.raises(InvalidEnrollmentTokenError):
                orchestrator.confirm_enrollment(user, started["pendingToken"], "123456", "654321")

    def test_token_with_wrong_purpose_rejected(self, app, orchestrator, user):
        token = create_signed_token(
            {"userId": user.id, "secret": generate_totp_secret()},
            app.config["MFA_ENROLLMENT_SECRET"],
            ttl_seconds=600,
            purpose="mfa-session",
        )
        with pytest.raises(InvalidEnrollmentTokenError):
            orchestrator.confirm_enrollment(user, token, "123456", "654321")

    def test_already_enabled(self, orchestrator, user):
        enroll(user)
        with pytest.raises(AlreadyEnabledError):
            orchestrator.start_enrollment(user)


class TestInitiateChallenge:
    def test_not_enabled(self, orchestrator, user):
        with pytest.raises(NotEnabledError):
            orchestrator.initiate_challenge(user, "email")

    def test_unknown_factor(self, orchestrator, user):
        enroll(user)
        with pytest.raises(ValidationError):
            orchestrator.initiate_challenge(user, "sms")

    def test_email_challenge(self, orchestrator, user, email_sender):
        enroll(user)
        descriptor = orchestrator.initiate_challenge(user, "email", ip="196.12.34.56")
        assert descriptor.to_dict()["channel"] == "email"
        email_sender.send_code.assert_called_once()
        assert last_audit(user.id, AuditAction.MFA_CHALLENGE_ISSUED).meta == {"factor": "email"}

    def test_user_rate_limit(self, app, orchestrator, user):
        app.config["MFA_INITIATE_RATE_LIMIT"] = (2, 90)
        enroll(user)
        orchestrator.initiate_challenge(user, "email")
        orchestrator.initiate_challenge(user, "email")
        with pytest.raises(RateLimitedError) as excinfo:
            orchestrator.initiate_challenge(user, "email")
        assert excinfo.value.scope == "user"
        assert excinfo.value.to_dict()["retryAt"]
        event = last_audit(user.id, AuditAction.MFA_RATE_LIMITED)
        assert event.meta["scope"] == "user"
        assert event.meta["operation"] == "initiate"

    def test_ip_rate_limit_stores_hashed_ip(self, app, orchestrator, user):
        app.config["MFA_INITIATE_IP_RATE_LIMIT"] = (1, 90)
        enroll(user)
        orchestrator.initiate_challenge(user, "totp", ip="196.12.34.56")
        with pytest.raises(RateLimitedError) as excinfo:
            orchestrator.initiate_challenge(user, "totp", ip="196.12.34.56")
        assert excinfo.value.scope == "ip"
        event = last_audit(user.id, AuditAction.MFA_RATE_LIMITED)
        assert event.meta["hashedIp"] != "196.12.34.56"
        assert "196.12.34.56" not in str(event.meta)

    def test_whatsapp_unavailable_by_default(self, orchestrator, user):
        enroll(user)
        with pytest.raises(FactorUnavailableError) as excinfo:
            orchestrator.initiate_challenge(user, "whatsapp")
        assert excinfo.value.status == 503


class TestVerifyChallenge:
    """Test cases for challenge verification."""

    def test_totp_success_issues_session(self, frozen_at, orchestrator, user):
        secret, _ = enroll(user)
        with freeze_time(frozen_at):
            result = orchestrator.verify_challenge(user, "totp", totp_code_at(secret, current_step()))
        assert isinstance(result, VerifyResult)
        assert result.to_dict() == {"ok": True, "factor": "totp", "usedBackup": False}
        assert [cookie.name for cookie in result.cookies] == ["mfa_session"]
        state = UserMfaState.get_for_user(user.id)
        assert state.failed_mfa_count == 0
        assert state.last_mfa_success_at is not None
        assert last_audit(user.id, AuditAction.MFA_SUCCESS).meta["factor"] == "totp"

    def test_trust_device(self, frozen_at, orchestrator, user):
        secret, _ = enroll(user)
        with freeze_time(frozen_at):
            result = orchestrator.verify_challenge(
                user, "totp", totp_code_at(secret, current_step()),
                remember_device=True, ip="196.12.34.56", user_agent=UA,
            )
        assert [cookie.name for cookie in result.cookies] == ["mfa_session", "trusted_device"]
        assert TrustedDevice.query.filter_by(user_id=user.id).count() == 1

    def test_replayed_totp_is_generic_failure(self, orchestrator, user):
        secret, _ = enroll(user)
        code = totp_code_at(secret, current_step())
        orchestrator.verify_challenge(user, "totp", code)
        with pytest.raises(InvalidCodeError) as excinfo:
            orchestrator.verify_challenge(user, "totp", code)
        assert excinfo.value.to_dict() == {"error": "invalid_or_expired"}
        assert UserMfaState.get_for_user(user.id).failed_mfa_count == 1

    def test_failure_counts_and_audits_reason(self, orchestrator, user):
        enroll(user)
        with pytest.raises(InvalidCodeError):
            orchestrator.verify_challenge(user, "email", "123456")
        assert UserMfaState.get_for_user(user.id).failed_mfa_count == 1
        event = last_audit(user.id, AuditAction.MFA_FAILED)
        assert event.meta == {"factor": "email", "reason": "no_active_code"}

    def test_wrong_data_key_is_generic_failure(self, app, orchestrator, user):
        secret = generate_totp_secret()
        enroll(user, secret)
        UserMfaState.apply_update(
            user.id,
            mfa_secret_enc=encrypt_sensitive_string(secret, key=OTHER_KEY),
        )
        db.session.commit()
        with pytest.raises(InvalidCodeError) as excinfo:
            orchestrator.verify_challenge(user, "totp", totp_code_at(secret, current_step()))
        assert excinfo.value.status == 401
        assert last_audit(user.id, AuditAction.MFA_FAILED).meta["reason"] == "decrypt_failed"

    def test_email_round_trip(self, orchestrator, user, email_sender):
        enroll(user)
        orchestrator.initiate_challenge(user, "email")
        code = email_sender.send_code.call_args.args[1]
        result = orchestrator.verify_challenge(user, "email", code)
        assert result.factor is FactorKind.EMAIL

    def test_backup_code(self, orchestrator, user):
        _, codes = enroll(user)
        result = orchestrator.verify_challenge(user, "backup", codes[0])
        assert result.used_backup is True
        assert len(UserMfaState.get_for_user(user.id).backup_hashes) == 2
        assert last_audit(user.id, AuditAction.MFA_BACKUP_SUCCESS).meta["remaining"] == 2
        with pytest.raises(InvalidCodeError):
            orchestrator.verify_challenge(user, "backup", codes[0])

    def test_not_enabled_is_audited(self, orchestrator, user):
        with pytest.raises(NotEnabledError):
            orchestrator.verify_challenge(user, "totp", "123456")
        assert AuditAction.MFA_VERIFY_NOT_ENABLED.value in audit_actions(user.id)

    def test_missing_token(self, orchestrator, user):
        enroll(user)
        with pytest.raises(ValidationError) as excinfo:
            orchestrator.verify_challenge(user, "totp", "")
        assert excinfo.value.error == "token_required"

    def test_malformed_passkey_payload(self, orchestrator, user):
        enroll(user)
        with pytest.raises(ValidationError):
            orchestrator.verify_challenge(user, "passkey", "not-a-payload")

    def test_verify_rate_limit(self, app, orchestrator, user):
        app.config["MFA_VERIFY_RATE_LIMIT"] = (2, 300)
        enroll(user)
        for _ in range(2):
            with pytest.raises(InvalidCodeError):
                orchestrator.verify_challenge(user, "email", "123456")
        with pytest.raises(RateLimitedError):
            orchestrator.verify_challenge(user, "email", "123456")
        assert UserMfaState.get_for_user(user.id).failed_mfa_count == 2

    def test_passkey_success_marks_enrolled(self, orchestrator, user):
        enroll(user)
        credential_id = bytes_to_base64url(b"credential-1")
        db.session.add(
            PasskeyCredential(user_id=user.id, credential_id=credential_id, public_key=b"key", sign_count=1)
        )
        db.session.commit()
        descriptor = orchestrator.initiate_challenge(user, "passkey")
        payload = {"response": {"id": credential_id}, "stateToken": descriptor.payload["stateToken"]}
        with patch(
            "ibimina_mfa.security.mfa.factors.verify_authentication_response",
            return_value=MagicMock(new_sign_count=2),
        ):
            result = orchestrator.verify_challenge(user, "passkey", payload)
        assert result.factor is FactorKind.PASSKEY
        state = UserMfaState.get_for_user(user.id)
        assert state.mfa_passkey_enrolled is True
        assert "passkey" in state.methods
        assert AuditAction.MFA_PASSKEY_SUCCESS.value in audit_actions(user.id)


class TestDisable:
    def test_disable_with_totp(self, frozen_at, orchestrator, user):
        secret, _ = enroll(user)
        db.session.add(TrustedDevice(user_id=user.id, device_id="d1", device_fingerprint_hash="f"))
        db.session.commit()
        with freeze_time(frozen_at):
            cleared = orchestrator.disable_mfa(user, totp_code_at(secret, current_step()))
        assert cleared == ["mfa_session", "trusted_device"]
        state = UserMfaState.get_for_user(user.id)
        assert state.mfa_enabled is False
        assert state.mfa_secret_enc is None
        assert state.backup_hashes == []
        assert TrustedDevice.query.filter_by(user_id=user.id).count() == 0
        assert last_audit(user.id, AuditAction.MFA_DISABLED).meta["trustedDevices"] == 1

    def test_disable_with_backup_code(self, orchestrator, user):
        _, codes = enroll(user)
        orchestrator.disable_mfa(user, codes[2], method="backup")
        assert UserMfaState.get_for_user(user.id).mfa_enabled is False

    def test_wrong_code(self, orchestrator, user):
        enroll(user)
        with pytest.raises(InvalidCodeError) as excinfo:
            orchestrator.disable_mfa(user, "NOTACODE00", method="backup")
        assert excinfo.value.error == "invalid_code"
        assert excinfo.value.status == 401
        assert UserMfaState.get_for_user(user.id).mfa_enabled is True
        assert AuditAction.MFA_DISABLE_FAILED.value in audit_actions(user.id)

    def test_unsupported_method(self, orchestrator, user):
        enroll(user)
        with pytest.raises(ValidationError) as excinfo:
            orchestrator.disable_mfa(user, "123456", method="email")
        assert excinfo.value.error == "invalid_method"

    def test_not_enabled(self, orchestrator, user):
        with pytest.raises(NotEnabledError):
            orchestrator.disable_mfa(user, "123456")


class TestAdministration:
    def test_reset_by_admin(self, orchestrator, user, admin):
        enroll(user)
        db.session.add(TrustedDevice(user_id=user.id, device_id="d1", device_fingerprint_hash="f"))
        db.session.commit()
        orchestrator.reset_user_mfa(admin, user.id)
        assert UserMfaState.get_for_user(user.id).mfa_enabled is False
        assert TrustedDevice.query.count() == 0
        assert last_audit(user.id, AuditAction.MFA_RESET).meta == {"actor": admin.id}

    def test_reset_denied_for_staff(self, orchestrator, user, admin):
        enroll(admin)
        with pytest.raises(ForbiddenError):
            orchestrator.reset_user_mfa(user, admin.id)
        assert UserMfaState.get_for_user(admin.id).mfa_enabled is True
        assert AuditAction.MFA_RESET_DENIED.value in audit_actions(user.id)

    def test_reset_unknown_user(self, orchestrator, admin):
        with pytest.raises(NotFoundError):
            orchestrator.reset_user_mfa(admin, "missing")

    def test_revoke_trusted_device(self, orchestrator, user):
        db.session.add(TrustedDevice(user_id=user.id, device_id="d1", device_fingerprint_hash="f"))
        db.session.commit()
        orchestrator.revoke_trusted_device(user, "d1")
        assert TrustedDevice.query.count() == 0
        with pytest.raises(NotFoundError):
            orchestrator.revoke_trusted_device(user, "d1")


class TestWhatsAppRegistration:
    def test_unavailable_when_disabled(self, orchestrator, user):
        enroll(user)
        with pytest.raises(FactorUnavailableError):
            orchestrator.register_whatsapp(user, "0788123456")


class TestWhatsAppEnabled:
    @pytest.fixture
    def whatsapp_sender(self):
        return MagicMock()

    @pytest.fixture
    def app_config(self):
        return {"MFA_WHATSAPP_ENABLED": True}

    @pytest.fixture
    def app_services(self, email_sender, whatsapp_sender):
        return {"email_sender": email_sender, "whatsapp_sender": whatsapp_sender}

    def test_register_and_challenge(self, orchestrator, user, whatsapp_sender):
        enroll(user)
        assert orchestrator.register_whatsapp(user, "0788 123 456") == {"msisdn": "+250***456"}
        assert UserMfaState.get_for_user(user.id).whatsapp_msisdn == "+250788123456"
        orchestrator.initiate_challenge(user, "whatsapp")
        to, code = whatsapp_sender.send_code.call_args.args[:2]
        assert to == "+250788123456"
        assert orchestrator.verify_challenge(user, "whatsapp", code).factor is FactorKind.WHATSAPP
        assert "whatsapp" in UserMfaState.get_for_user(user.id).methods

    def test_register_requires_mfa(self, orchestrator, user):
        with pytest.raises(NotEnabledError):
            orchestrator.register_whatsapp(user, "0788123456")

    def test_rejects_foreign_number(self, orchestrator, user):
        enroll(user)
        with pytest.raises(ValidationError):
            orchestrator.register_whatsapp(user, "+15551234567")


class TestPasskeyRegistration:
    def test_register_passkey(self, orchestrator, user):
        enroll(user)
        options = orchestrator.begin_passkey_registration(user)
        verification = MagicMock(
            credential_id=b"new-credential",
            credential_public_key=b"new-key",
            sign_count=0,
            credential_device_type="multi_device",
            credential_backed_up=True,
        )
        with patch(
            "ibimina_mfa.security.mfa.factors.verify_registration_response",
            return_value=verification,
        ):
            result = orchestrator.finish_passkey_registration(
                user, {"id": "x", "response": {}}, options["stateToken"], "Phone"
            )
        assert result == {"credentialId": bytes_to_base64url(b"new-credential"), "friendlyName": "Phone"}
        state = UserMfaState.get_for_user(user.id)
        assert state.mfa_passkey_enrolled is True
        assert state.methods == ["totp", "email", "backup", "passkey"]
        assert orchestrator.get_channels(user)["preferred"] == "passkey"

    def test_bad_state_token_audited(self, orchestrator, user):
        enroll(user)
        with pytest.raises(InvalidCodeError):
            orchestrator.finish_passkey_registration(user, {"id": "x"}, "forged")
        assert last_audit(user.id, AuditAction.MFA_ENROLLMENT_FAILED).meta == {"factor": "passkey"}
        assert PasskeyCredential.query.count() == 0

    def test_requires_mfa(self, orchestrator, user):
        with pytest.raises(NotEnabledError):
            orchestrator.begin_passkey_registration(user)


class TestReadOnlyViews:
    def test_channels_without_state(self, orchestrator, user):
        channels = orchestrator.get_channels(user)
        assert channels["preferred"] is None
        assert channels["enrolled"]["totp"] is False
        assert UserMfaState.get_for_user(user.id) is None

    def test_channels_enrolled(self, orchestrator, user):
        enroll(user)
        channels = orchestrator.get_channels(user)
        assert channels["preferred"] == "totp"
        assert channels["enrolled"] == {
            "passkey": False,
            "totp": True,
            "email": True,
            "whatsapp": False,
            "backup": True,
        }

    def test_status_not_enrolled(self, orchestrator, user, admin):
        assert orchestrator.get_status(user, None, None).body["mfaRequired"] is False
        assert orchestrator.get_status(admin, None, None).body["mfaRequired"] is True

    def test_status_with_session(self, frozen_at, orchestrator, user):
        secret, _ = enroll(user)
        with freeze_time(frozen_at):
            result = orchestrator.verify_challenge(user, "totp", totp_code_at(secret, current_step()))
            status = orchestrator.get_status(user, result.cookies[0].value, None)
        assert status.body["mfaRequired"] is False
        assert status.set_cookies == []

    def test_status_requires_challenge(self, orchestrator, user):
        enroll(user)
        status = orchestrator.get_status(user, None, None)
        assert status.body["mfaRequired"] is True
        assert status.clear_cookies == ["mfa_session", "trusted_device"]

    def test_status_trusted_device_renews_cookies(self, frozen_at, orchestrator, user):
        secret, _ = enroll(user)
        with freeze_time(frozen_at):
            result = orchestrator.verify_challenge(
                user, "totp", totp_code_at(secret, current_step()),
                remember_device=True, ip="196.12.34.56", user_agent=UA,
            )
            status = orchestrator.get_status(user, None, result.cookies[1].value, UA, "196.12.34.56")
        assert status.body["trustedDevice"] is True
        assert status.body["mfaRequired"] is False
        assert [cookie.name for cookie in status.set_cookies] == ["mfa_session", "trusted_device"]
