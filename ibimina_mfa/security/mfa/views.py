"""
MFA JSON API.

Blueprint mounted at ``/api/mfa``. Every route requires an authenticated
Flask-Login user; request bodies are validated with marshmallow schemas and
every :class:`MFAServiceError` is rendered as ``{"error": ...}`` with its
status code.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_limiter.util import get_remote_address
from flask_login import current_user, login_required
from marshmallow import EXCLUDE, Schema, fields, validate
from marshmallow import ValidationError as SchemaValidationError

from ...extensions import limiter
from ..rate_limiting import endpoint_limit
from .exceptions import MFAServiceError, ValidationError
from .services import get_orchestrator
from .session import apply_cookies, clear_cookies

log = logging.getLogger(__name__)

mfa_bp = Blueprint("mfa", __name__, url_prefix="/api/mfa")


class EnrollConfirmSchema(Schema):
    """Schema for confirming a TOTP enrollment."""

    class Meta:
        unknown = EXCLUDE

    pendingToken = fields.Str(required=True, validate=validate.Length(min=1))
    code1 = fields.Str(required=True)
    code2 = fields.Str(required=True)


class ChallengeInitiateSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    factor = fields.Str(required=True)


class ChallengeVerifySchema(Schema):
    """Schema for answering a challenge. Passkey tokens may be objects."""

    class Meta:
        unknown = EXCLUDE

    factor = fields.Str(required=True)
    token = fields.Raw(required=True, allow_none=True)
    trustDevice = fields.Bool(load_default=False)


class DisableSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    token = fields.Str(load_default=None, allow_none=True)
    method = fields.Str(load_default="totp")


class WhatsAppSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    msisdn = fields.Str(required=True)


class PasskeyRegisterSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    response = fields.Dict(required=True)
    stateToken = fields.Str(required=True)
    friendlyName = fields.Str(load_default=None, allow_none=True, validate=validate.Length(max=100))


def _load(schema: Schema) -> dict:
    try:
        return schema.load(request.get_json(silent=True) or {})
    except SchemaValidationError as e:
        raise ValidationError("Invalid payload", details=e.messages)


def _cookie_names():
    orchestrator = get_orchestrator()
    return orchestrator.session_issuer.session_cookie, orchestrator.session_issuer.trusted_cookie


@mfa_bp.errorhandler(MFAServiceError)
def handle_mfa_error(error: MFAServiceError):
    if error.status >= 500:
        log.error(f"MFA request failed: {error.error} ({error})")
    return jsonify(error.to_dict()), error.status


@mfa_bp.route("/enroll/start", methods=["POST"])
@login_required
@limiter.limit(endpoint_limit)
def enroll_start():
    return jsonify(get_orchestrator().start_enrollment(current_user))


@mfa_bp.route("/enroll/confirm", methods=["POST"])
@login_required
@limiter.limit(endpoint_limit)
def enroll_confirm():
    data = _load(EnrollConfirmSchema())
    result = get_orchestrator().confirm_enrollment(
        current_user, data["pendingToken"], data["code1"], data["code2"]
    )
    return jsonify(result)


@mfa_bp.route("/challenge/initiate", methods=["POST"])
@login_required
@limiter.limit(endpoint_limit)
def challenge_initiate():
    data = _load(ChallengeInitiateSchema())
    descriptor = get_orchestrator().initiate_challenge(
        current_user, data["factor"], ip=get_remote_address()
    )
    return jsonify(descriptor.to_dict())


@mfa_bp.route("/challenge/verify", methods=["POST"])
@login_required
@limiter.limit(endpoint_limit)
def challenge_verify():
    data = _load(ChallengeVerifySchema())
    result = get_orchestrator().verify_challenge(
        current_user,
        data["factor"],
        data["token"],
        remember_device=data["trustDevice"],
        ip=get_remote_address(),
        user_agent=request.headers.get("User-Agent"),
    )
    response = jsonify(result.to_dict())
    return apply_cookies(response, result.cookies)


@mfa_bp.route("", methods=["DELETE"])
@mfa_bp.route("/", methods=["DELETE"])
@login_required
@limiter.limit(endpoint_limit)
def disable():
    data = _load(DisableSchema())
    names = get_orchestrator().disable_mfa(current_user, data["token"], data["method"])
    return clear_cookies(jsonify({"success": True}), names)


@mfa_bp.route("/channels", methods=["GET"])
@login_required
@limiter.limit(endpoint_limit)
def channels():
    return jsonify(get_orchestrator().get_channels(current_user))


@mfa_bp.route("/status", methods=["GET"])
@login_required
@limiter.limit(endpoint_limit)
def status():
    session_cookie, trusted_cookie = _cookie_names()
    result = get_orchestrator().get_status(
        current_user,
        request.cookies.get(session_cookie),
        request.cookies.get(trusted_cookie),
        user_agent=request.headers.get("User-Agent"),
        ip=get_remote_address(),
    )
    response = jsonify(result.body)
    apply_cookies(response, result.set_cookies)
    return clear_cookies(response, result.clear_cookies)


@mfa_bp.route("/whatsapp", methods=["POST"])
@login_required
@limiter.limit(endpoint_limit)
def register_whatsapp():
    data = _load(WhatsAppSchema())
    return jsonify(get_orchestrator().register_whatsapp(current_user, data["msisdn"]))


@mfa_bp.route("/passkeys/register/options", methods=["POST"])
@login_required
@limiter.limit(endpoint_limit)
def passkey_register_options():
    return jsonify(get_orchestrator().begin_passkey_registration(current_user))


@mfa_bp.route("/passkeys/register/verify", methods=["POST"])
@login_required
@limiter.limit(endpoint_limit)
def passkey_register_verify():
    data = _load(PasskeyRegisterSchema())
    result = get_orchestrator().finish_passkey_registration(
        current_user, data["response"], data["stateToken"], data["friendlyName"]
    )
    return jsonify(result), 201


@mfa_bp.route("/trusted-devices/<device_id>", methods=["DELETE"])
@login_required
@limiter.limit(endpoint_limit)
def revoke_trusted_device(device_id):
    get_orchestrator().revoke_trusted_device(current_user, device_id)
    return jsonify({"success": True})


@mfa_bp.route("/admin/users/<user_id>/reset", methods=["POST"])
@login_required
@limiter.limit(endpoint_limit)
def admin_reset(user_id):
    get_orchestrator().reset_user_mfa(current_user, user_id)
    return jsonify({"success": True})
