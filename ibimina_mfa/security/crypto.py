"""
Cryptographic primitives for MFA.

Covers salted one-time code hashing, AES-256-GCM encryption of long-lived
secrets, TOTP generation and verification, and the small hashing helpers used
to keep raw identifiers out of storage keys and logs.

Keys and peppers are process-wide configuration read from ``current_app``
unless passed explicitly.
"""

import base64
import binascii
import hashlib
import hmac
import io
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import List, Optional, Union

import pyotp
import qrcode
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from flask import current_app

log = logging.getLogger(__name__)

NONCE_SIZE = 12
BACKUP_CODE_LENGTH = 10
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
_NON_DIGIT = re.compile(r"[^0-9]")


class DecryptionError(Exception):
    """Raised when a ciphertext cannot be authenticated or decoded."""


@dataclass(frozen=True)
class TotpMatch:
    """A successful TOTP match and the time step it matched."""

    step: int


@dataclass(frozen=True)
class BackupCodeRecord:
    code: str
    hash: str


def _config(key, default=None):
    return current_app.config.get(key, default)


def decode_data_key(value) -> bytes:
    """
    Decode the base64 encryption key used for secrets at rest.

    Raises:
        ValueError: If the key is not 32 bytes once decoded
    """
    if isinstance(value, bytes) and len(value) == 32:
        return value
    try:
        key = base64.b64decode(value, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise ValueError(f"MFA_DATA_KEY is not valid base64: {type(e).__name__}")
    if len(key) != 32:
        raise ValueError("MFA_DATA_KEY must decode to 32 bytes")
    return key


def hash_identifier(value: str) -> str:
    """SHA-256 hex digest used to keep raw identifiers out of logs and keys."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_one_time_code(code: str) -> str:
    return _NON_ALNUM.sub("", code or "").upper()


# ---------------------------------------------------------------------------
# One-time code hashing (backup codes, issued OTPs)
# ---------------------------------------------------------------------------


def _derive(code: str, salt: str, pepper: str, iterations: int) -> str:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    digest = kdf.derive(f"{pepper}{code}".encode("utf-8"))
    return base64.b64encode(digest).decode("ascii")


def hash_one_time_code(
    code: str,
    salt: Optional[str] = None,
    pepper: Optional[str] = None,
    iterations: Optional[int] = None,
) -> str:
    """
    Hash a one-time code for storage.

    Args:
        code: Plain code; normalized before hashing
        salt: Optional salt, random 16 bytes when omitted
        pepper: Server-side pepper, defaults to ``MFA_BACKUP_PEPPER``
        iterations: PBKDF2 iterations, defaults to ``MFA_BACKUP_HASH_ITERATIONS``

    Returns:
        str: ``salt$hash`` string
    """
    if pepper is None:
        pepper = _config("MFA_BACKUP_PEPPER", "")
    if iterations is None:
        iterations = _config("MFA_BACKUP_HASH_ITERATIONS", 250000)
    if salt is None:
        salt = base64.b64encode(secrets.token_bytes(16)).decode("ascii")
    normalized = normalize_one_time_code(code)
    return f"{salt}${_derive(normalized, salt, pepper, iterations)}"


def verify_one_time_code(
    candidate: str,
    stored_hash: str,
    pepper: Optional[str] = None,
    iterations: Optional[int] = None,
) -> bool:
    """
    Check a candidate code against a stored ``salt$hash``.

    The comparison is constant time. Malformed stored hashes never match.
    """
    if not candidate or not stored_hash or "$" not in stored_hash:
        return False
    salt, _, _ = stored_hash.partition("$")
    computed = hash_one_time_code(candidate, salt=salt, pepper=pepper, iterations=iterations)
    return hmac.compare_digest(computed.encode("utf-8"), stored_hash.encode("utf-8"))


def generate_backup_codes(count: Optional[int] = None) -> List[BackupCodeRecord]:
    """
    Generate plaintext backup codes together with their storage hashes.

    Args:
        count: Number of codes, defaults to ``MFA_BACKUP_CODE_COUNT``

    Returns:
        List[BackupCodeRecord]: plaintext is shown to the user exactly once
    """
    if count is None:
        count = _config("MFA_BACKUP_CODE_COUNT", 10)
    records = []
    seen = set()
    while len(records) < count:
        code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        if code in seen:
            continue
        seen.add(code)
        records.append(BackupCodeRecord(code=code, hash=hash_one_time_code(code)))
    return records


def generate_numeric_code(digits: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(digits))


def hash_issued_code(code: str, pepper: Optional[str] = None) -> str:
    """Fast peppered digest for short-lived server-issued codes."""
    if pepper is None:
        pepper = _config("MFA_BACKUP_PEPPER", "")
    return hmac.new(pepper.encode("utf-8"), code.encode("utf-8"), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Secrets at rest
# ---------------------------------------------------------------------------


def _data_key(key: Union[str, bytes, None]) -> bytes:
    if key is None:
        key = _config("MFA_DATA_KEY")
    if not key:
        raise DecryptionError("MFA_DATA_KEY is not configured")
    try:
        return decode_data_key(key)
    except ValueError as e:
        raise DecryptionError(str(e))


def encrypt_sensitive_string(plaintext: str, key: Union[str, bytes, None] = None) -> str:
    """
    Encrypt a secret for database storage.

    Args:
        plaintext: Secret to protect
        key: Optional 32-byte key (raw or base64), defaults to ``MFA_DATA_KEY``

    Returns:
        str: base64 of ``nonce || ciphertext || tag``
    """
    nonce = secrets.token_bytes(NONCE_SIZE)
    sealed = AESGCM(_data_key(key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def _decode_ciphertext(payload: Union[str, bytes, memoryview]) -> bytes:
    if isinstance(payload, memoryview):
        return payload.tobytes()
    if isinstance(payload, bytes):
        return payload
    # Postgres bytea columns can surface as "\x" prefixed hex
    if payload.startswith("\\x"):
        return bytes.fromhex(payload[2:])
    return base64.b64decode(payload, validate=True)


def decrypt_sensitive_string(
    ciphertext: Union[str, bytes, memoryview],
    key: Union[str, bytes, None] = None,
) -> str:
    """
    Decrypt a secret produced by :func:`encrypt_sensitive_string`.

    Raises:
        DecryptionError: wrong key, corrupted or truncated ciphertext
    """
    if not ciphertext:
        raise DecryptionError("Empty ciphertext")
    try:
        blob = _decode_ciphertext(ciphertext)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"Malformed ciphertext: {type(e).__name__}")
    if len(blob) <= NONCE_SIZE:
        raise DecryptionError("Truncated ciphertext")
    try:
        plaintext = AESGCM(_data_key(key)).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag:
        raise DecryptionError("Ciphertext failed authentication")
    return plaintext.decode("utf-8")


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(
        secret,
        digits=_config("MFA_TOTP_DIGITS", 6),
        interval=_config("MFA_TOTP_PERIOD", 30),
    )


def generate_totp_secret() -> str:
    """Base32 secret carrying 160 bits of entropy."""
    return pyotp.random_base32(length=32)


def build_otpauth_uri(issuer: str, account: str, secret: str) -> str:
    return _totp(secret).provisioning_uri(name=account, issuer_name=issuer)


def current_step(now: Optional[float] = None) -> int:
    if now is None:
        now = time.time()
    return int(now // _config("MFA_TOTP_PERIOD", 30))


def totp_code_at(secret: str, step: int) -> str:
    return _totp(secret).generate_otp(step)


def verify_totp(
    secret: str,
    token: str,
    window: Optional[int] = None,
    now: Optional[float] = None,
) -> Optional[TotpMatch]:
    """
    Validate a TOTP code against the steps around ``now``.

    Args:
        secret: Base32 TOTP secret
        token: Code as typed by the user; non-digits are ignored
        window: Steps of drift tolerated on each side, defaults to ``MFA_TOTP_WINDOW``
        now: Unix time, defaults to the current time

    Returns:
        Optional[TotpMatch]: the matched step, or None
    """
    digits = _config("MFA_TOTP_DIGITS", 6)
    sanitized = _NON_DIGIT.sub("", token or "")
    if len(sanitized) != digits:
        return None
    if window is None:
        window = _config("MFA_TOTP_WINDOW", 1)

    totp = _totp(secret)
    step = current_step(now)
    for offset in range(-window, window + 1):
        candidate = step + offset
        if candidate < 0:
            continue
        if hmac.compare_digest(totp.generate_otp(candidate), sanitized):
            return TotpMatch(step=candidate)
    return None


def preview_secret(secret: str, visible: int = 6) -> str:
    if len(secret) <= visible:
        return secret
    return f"{secret[:visible]}••••"


def generate_qr_code(data: str) -> str:
    """
    Render data (an otpauth URI) as a QR code.

    Returns:
        str: PNG data URI
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()
