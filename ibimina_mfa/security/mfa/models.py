"""
Database Models for Ibimina MFA

Per-user MFA state, trusted devices, server-issued one-time codes, WebAuthn
passkey credentials and the append-only audit trail.

CONCURRENCY:
- ``UserMfaState`` carries a ``version`` counter. Contradictory mutations
  (enroll, disable, backup-code consumption) are conditional UPDATEs on the
  version read beforehand, so two concurrent writers cannot both succeed.
- Issued codes are consumed with a conditional UPDATE on ``consumed_at``.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask_login import UserMixin
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from ...extensions import db

log = logging.getLogger(__name__)

SYSTEM_ADMIN_ROLE = "SYSTEM_ADMIN"


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class User(UserMixin, db.Model):
    """
    Platform user as seen by the MFA core.

    Identity and passwords live in the host platform; this model only exposes
    the columns MFA decisions depend on.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True)
    phone = Column(String(32))
    role = Column(String(50), default="SACCO_STAFF", nullable=False)
    sacco_id = Column(String(36))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def is_system_admin(self) -> bool:
        return self.role == SYSTEM_ADMIN_ROLE

    def __repr__(self):
        return f"<User {self.id}>"


class UserMfaState(db.Model):
    """
    MFA state for one user.

    Created on first use and never deleted: disabling MFA resets the row to
    the no-factors state.
    """

    __tablename__ = "mfa_user_state"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True)

    mfa_enabled = Column(Boolean, default=False, nullable=False)
    mfa_secret_enc = Column(Text)
    mfa_enrolled_at = Column(DateTime)
    mfa_backup_hashes = Column(JSON, default=list, nullable=False)
    mfa_methods = Column(JSON, default=list, nullable=False)
    failed_mfa_count = Column(Integer, default=0, nullable=False)
    last_mfa_step = Column(BigInteger)
    last_mfa_success_at = Column(DateTime)
    mfa_passkey_enrolled = Column(Boolean, default=False, nullable=False)
    whatsapp_msisdn = Column(String(32))

    version = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @classmethod
    def get_for_user(cls, user_id: str) -> Optional["UserMfaState"]:
        return db.session.execute(
            select(cls).where(cls.user_id == user_id)
        ).scalar_one_or_none()

    @classmethod
    def get_or_create(cls, user_id: str) -> "UserMfaState":
        state = cls.get_for_user(user_id)
        if state is None:
            state = cls(
                user_id=user_id,
                mfa_enabled=False,
                mfa_backup_hashes=[],
                mfa_methods=[],
                failed_mfa_count=0,
                mfa_passkey_enrolled=False,
                version=0,
            )
            db.session.add(state)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                state = cls.get_for_user(user_id)
        return state

    @classmethod
    def conditional_update(cls, user_id: str, expected_version: int, **values) -> bool:
        """
        Apply ``values`` only if the row still holds ``expected_version``.

        The version is bumped with the write. The caller commits.

        Returns:
            bool: False when another writer got there first
        """
        values["version"] = expected_version + 1
        values["updated_at"] = utcnow()
        result = db.session.execute(
            update(cls)
            .where(cls.user_id == user_id, cls.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @classmethod
    def apply_update(cls, user_id: str, **values) -> None:
        """Unconditional write that still bumps the version. The caller commits."""
        values["version"] = cls.version + 1
        values["updated_at"] = utcnow()
        db.session.execute(
            update(cls)
            .where(cls.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    @classmethod
    def increment_failures(cls, user_id: str) -> None:
        db.session.execute(
            update(cls)
            .where(cls.user_id == user_id)
            .values(failed_mfa_count=cls.failed_mfa_count + 1)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def reset_values() -> Dict[str, Any]:
        """Column values of the no-factors state."""
        return {
            "mfa_enabled": False,
            "mfa_secret_enc": None,
            "mfa_enrolled_at": None,
            "mfa_backup_hashes": [],
            "mfa_methods": [],
            "failed_mfa_count": 0,
            "last_mfa_step": None,
            "mfa_passkey_enrolled": False,
        }

    @property
    def methods(self) -> List[str]:
        return list(self.mfa_methods or [])

    @property
    def backup_hashes(self) -> List[str]:
        return list(self.mfa_backup_hashes or [])

    def __repr__(self):
        return f"<UserMfaState {self.user_id} enabled={self.mfa_enabled} v{self.version}>"


class TrustedDevice(db.Model):
    """A device that may skip the MFA challenge until its token expires."""

    __tablename__ = "trusted_devices"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    device_id = Column(String(64), nullable=False)
    device_fingerprint_hash = Column(String(64), nullable=False)
    user_agent_hash = Column(String(64))
    ip_prefix = Column(String(64))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_used_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_trusted_device_user_device"),
    )

    @classmethod
    def find(cls, user_id: str, device_id: str) -> Optional["TrustedDevice"]:
        return db.session.execute(
            select(cls).where(cls.user_id == user_id, cls.device_id == device_id)
        ).scalar_one_or_none()

    @classmethod
    def delete_for_user(cls, user_id: str) -> int:
        """Remove every trusted device of a user. The caller commits."""
        return cls.query.filter_by(user_id=user_id).delete(synchronize_session=False)

    def __repr__(self):
        return f"<TrustedDevice {self.user_id}:{self.device_id}>"


class OtpIssue(db.Model):
    """
    A one-time code sent by email or WhatsApp.

    Only the peppered hash is stored. A code is live until it expires, is
    consumed, or runs out of attempts.
    """

    __tablename__ = "mfa_otp_issues"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    channel = Column(String(20), nullable=False)
    code_hash = Column(String(128), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    consumed_at = Column(DateTime)
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_otp_issue_user_channel", "user_id", "channel", "created_at"),
    )

    @classmethod
    def latest_live(cls, user_id: str, channel: str, now: datetime) -> Optional["OtpIssue"]:
        return db.session.execute(
            select(cls)
            .where(
                cls.user_id == user_id,
                cls.channel == channel,
                cls.consumed_at.is_(None),
                cls.expires_at > now,
            )
            .order_by(cls.created_at.desc(), cls.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    @classmethod
    def register_attempt(cls, issue_id: int, max_attempts: int) -> bool:
        """Count an attempt; False once the code has used up its attempts."""
        result = db.session.execute(
            update(cls)
            .where(cls.id == issue_id, cls.attempts < max_attempts)
            .values(attempts=cls.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @classmethod
    def consume(cls, issue_id: int, now: datetime) -> bool:
        result = db.session.execute(
            update(cls)
            .where(cls.id == issue_id, cls.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def __repr__(self):
        return f"<OtpIssue {self.user_id}:{self.channel}>"


class PasskeyCredential(db.Model):
    """WebAuthn credential registered by a user."""

    __tablename__ = "passkey_credentials"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    credential_id = Column(String(512), nullable=False, unique=True)  # base64url
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(BigInteger, default=0, nullable=False)
    transports = Column(JSON, default=list)
    device_type = Column(String(32))
    backed_up = Column(Boolean, default=False, nullable=False)
    friendly_name = Column(String(100))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_used_at = Column(DateTime)

    __table_args__ = (Index("ix_passkey_user", "user_id"),)

    @classmethod
    def for_user(cls, user_id: str) -> List["PasskeyCredential"]:
        return list(
            db.session.execute(select(cls).where(cls.user_id == user_id)).scalars()
        )

    @classmethod
    def find(cls, credential_id: str) -> Optional["PasskeyCredential"]:
        return db.session.execute(
            select(cls).where(cls.credential_id == credential_id)
        ).scalar_one_or_none()

    @classmethod
    def delete_for_user(cls, user_id: str) -> int:
        return cls.query.filter_by(user_id=user_id).delete(synchronize_session=False)

    def update_sign_count(self, new_count: int) -> bool:
        """
        Update sign count with cloned-authenticator protection.

        Authenticators that do not count report zero on every use.

        Returns:
            bool: False if the counter went backwards
        """
        if (new_count or self.sign_count) and new_count <= self.sign_count:
            log.warning(
                f"Passkey sign count regression for user {self.user_id}: "
                f"stored={self.sign_count} received={new_count}"
            )
            return False
        self.sign_count = new_count
        self.last_used_at = utcnow()
        return True

    def __repr__(self):
        return f"<PasskeyCredential {self.user_id}:{self.friendly_name}>"


class AuditEvent(db.Model):
    """Append-only MFA audit trail."""

    __tablename__ = "mfa_audit_events"

    id = Column(Integer, primary_key=True)
    action = Column(String(64), nullable=False)
    user_id = Column(String(36))
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (Index("ix_mfa_audit_user_created", "user_id", "created_at"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "userId": self.user_id,
            "metadata": self.meta or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditEvent {self.action}:{self.user_id}>"


def init_db(app):
    """Create MFA tables for the application."""
    with app.app_context():
        db.create_all()
    log.info("MFA tables created")
