"""
MFA Configuration for Ibimina.

This module contains the default settings for Multi-Factor Authentication and
helpers to validate an application's configuration before it starts serving.
Secrets are read from the environment unless set explicitly in the Flask config.
"""

import os

from ..crypto import decode_data_key

# MFA Configuration Settings
# ========================

# TOTP Configuration
# -----------------
MFA_TOTP_ISSUER = "SACCO+"  # Name shown in authenticator apps
MFA_TOTP_PERIOD = 30  # Seconds per time step
MFA_TOTP_DIGITS = 6
MFA_TOTP_WINDOW = 1  # Time window tolerance (±1 step)

# Enrollment Settings
# -----------------
MFA_ENROLLMENT_TTL = 600  # Pending enrollment token lifetime in seconds
MFA_BACKUP_CODE_COUNT = 10
MFA_BACKUP_HASH_ITERATIONS = 250000

# One-time code Settings (email / WhatsApp)
# -----------------------------------------
MFA_OTP_TTL = 600  # Code expiry in seconds (10 minutes)
MFA_OTP_MAX_ATTEMPTS = 5  # Verification attempts per issued code
MFA_OTP_RESEND_COOLDOWN = 0  # Seconds between codes on one channel, 0 disables
MFA_OTP_MAX_ACTIVE = 3  # Live codes per user and channel
MFA_EMAIL_SUBJECT = "SACCO+ security code"

# WhatsApp Configuration (Twilio)
# ------------------------------
MFA_WHATSAPP_ENABLED = False  # Transport switch; the factor stays declared
MFA_TWILIO_ACCOUNT_SID = None
MFA_TWILIO_AUTH_TOKEN = None
MFA_TWILIO_WHATSAPP_FROM = None

# Provider Settings
# ---------------
MFA_PROVIDER_TIMEOUT = 10  # Seconds before an outbound send is abandoned
MFA_CIRCUIT_FAILURE_THRESHOLD = 5
MFA_CIRCUIT_RECOVERY_TIMEOUT = 60

# WebAuthn Configuration
# --------------------
MFA_WEBAUTHN_RP_ID = "localhost"
MFA_WEBAUTHN_RP_NAME = "SACCO+"
MFA_WEBAUTHN_ORIGIN = "http://localhost:3000"
MFA_WEBAUTHN_TIMEOUT = 60000  # Milliseconds
MFA_PASSKEY_STATE_TTL = 300  # Ceremony state token lifetime in seconds

# Rate Limits as (max_hits, window_seconds)
# ----------------------------------------
MFA_RATELIMIT_STORAGE_URI = "memory://"
MFA_INITIATE_RATE_LIMIT = (3, 300)
MFA_INITIATE_IP_RATE_LIMIT = (10, 300)
MFA_VERIFY_RATE_LIMIT = (5, 300)
MFA_VERIFY_IP_RATE_LIMIT = (10, 300)
MFA_PASSKEY_RATE_LIMIT = (8, 300)
MFA_ENDPOINT_RATE_LIMIT = "60 per minute"  # Coarse Flask-Limiter guard

# Session Settings
# --------------
MFA_SESSION_COOKIE = "mfa_session"
MFA_TRUSTED_COOKIE = "trusted_device"
MFA_SESSION_TTL_HOURS = 12
MFA_TRUSTED_TTL_DAYS = 30

# Proxy
# -----
MFA_TRUSTED_PROXY_COUNT = 0  # Reverse proxies whose X-Forwarded-For is honoured

# Logging
# -------
MFA_LOG_LEVEL = "INFO"

SECRET_KEYS = (
    "MFA_DATA_KEY",
    "MFA_BACKUP_PEPPER",
    "MFA_SESSION_SECRET",
    "MFA_TRUSTED_COOKIE_SECRET",
    "MFA_RATE_LIMIT_SECRET",
    "MFA_ENROLLMENT_SECRET",
)


def get_mfa_config_template():
    """
    Get a template configuration dictionary for MFA.

    Returns:
        Dictionary with every MFA setting and its default value
    """
    template = {
        key: value
        for key, value in globals().items()
        if key.startswith("MFA_")
    }
    for key in SECRET_KEYS:
        template[key] = os.environ.get(key)
    return template


def init_mfa_config(app):
    """
    Apply MFA defaults to an application without overriding operator values.

    Args:
        app: Flask application
    """
    for key, value in get_mfa_config_template().items():
        app.config.setdefault(key, value)


def validate_mfa_config(config_dict):
    """
    Validate MFA configuration.

    Args:
        config_dict: Configuration dictionary to validate

    Returns:
        Tuple of (is_valid, errors_list)
    """
    errors = []

    for key in SECRET_KEYS:
        if not config_dict.get(key):
            errors.append(f"{key} is required for secure MFA operations")

    if config_dict.get("MFA_DATA_KEY"):
        try:
            decode_data_key(config_dict["MFA_DATA_KEY"])
        except ValueError as e:
            errors.append(str(e))

    for key in (
        "MFA_INITIATE_RATE_LIMIT",
        "MFA_INITIATE_IP_RATE_LIMIT",
        "MFA_VERIFY_RATE_LIMIT",
        "MFA_VERIFY_IP_RATE_LIMIT",
        "MFA_PASSKEY_RATE_LIMIT",
    ):
        limit = config_dict.get(key)
        if limit is None:
            continue
        try:
            max_hits, window = limit
        except (TypeError, ValueError):
            errors.append(f"{key} must be a (max_hits, window_seconds) pair")
            continue
        if int(max_hits) < 1 or int(window) < 1:
            errors.append(f"{key} values must be positive")

    return len(errors) == 0, errors
