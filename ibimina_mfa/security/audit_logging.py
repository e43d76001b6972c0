"""
Audit Logging for Ibimina MFA.

Every enrollment, challenge, verification and reset is appended to the
``mfa_audit_events`` table and mirrored to the application log. The trail is
append-only: nothing in this package updates or deletes audit rows.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

log = logging.getLogger(__name__)

MAX_AUDIT_TRAIL = 1000


class AuditAction(Enum):
    """Types of MFA audit events."""

    # Enrollment
    MFA_ENROLLMENT_STARTED = "MFA_ENROLLMENT_STARTED"
    MFA_ENROLLED = "MFA_ENROLLED"
    MFA_ENROLLMENT_FAILED = "MFA_ENROLLMENT_FAILED"
    MFA_PASSKEY_REGISTERED = "MFA_PASSKEY_REGISTERED"
    MFA_WHATSAPP_REGISTERED = "MFA_WHATSAPP_REGISTERED"

    # Challenge and verification
    MFA_CHALLENGE_ISSUED = "MFA_CHALLENGE_ISSUED"
    MFA_RATE_LIMITED = "MFA_RATE_LIMITED"
    MFA_SUCCESS = "MFA_SUCCESS"
    MFA_BACKUP_SUCCESS = "MFA_BACKUP_SUCCESS"
    MFA_PASSKEY_SUCCESS = "MFA_PASSKEY_SUCCESS"
    MFA_FAILED = "MFA_FAILED"
    MFA_PASSKEY_FAILED = "MFA_PASSKEY_FAILED"
    MFA_VERIFY_NOT_ENABLED = "MFA_VERIFY_NOT_ENABLED"

    # Removal
    MFA_DISABLED = "MFA_DISABLED"
    MFA_DISABLE_FAILED = "MFA_DISABLE_FAILED"
    MFA_RESET = "MFA_RESET"
    MFA_RESET_DENIED = "MFA_RESET_DENIED"
    TRUSTED_DEVICE_REVOKED = "TRUSTED_DEVICE_REVOKED"


_WARNING_ACTIONS = {
    AuditAction.MFA_RATE_LIMITED,
    AuditAction.MFA_FAILED,
    AuditAction.MFA_PASSKEY_FAILED,
    AuditAction.MFA_DISABLE_FAILED,
    AuditAction.MFA_ENROLLMENT_FAILED,
    AuditAction.MFA_RESET_DENIED,
}


class MFAAuditLogger:
    """Append-only audit sink backed by the application database."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        if self._session is not None:
            return self._session
        from ..extensions import db

        return db.session

    def log_event(
        self,
        action: AuditAction,
        user_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Append an audit event.

        A failed audit write is logged and reported through the return value;
        it never undoes or aborts the state change being audited.

        Args:
            action: Event type
            user_id: Subject of the event
            metadata: Extra context; must not contain codes or secrets

        Returns:
            bool: True if the event was persisted
        """
        from .mfa.models import AuditEvent

        metadata = dict(metadata or {})
        level = logging.WARNING if action in _WARNING_ACTIONS else logging.INFO
        log.log(level, f"MFA audit {action.value} user={user_id} {metadata}")

        try:
            self.session.add(
                AuditEvent(action=action.value, user_id=user_id, meta=metadata)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            log.error(f"Failed to log audit event {action.value}: {e}")
            return False
        return True

    def get_audit_trail(self, user_id: Optional[str] = None, limit: int = 100) -> List:
        """Audit events, newest first."""
        from .mfa.models import AuditEvent

        if limit > MAX_AUDIT_TRAIL:
            log.warning(f"Audit trail query limit reduced from {limit} to {MAX_AUDIT_TRAIL}")
            limit = MAX_AUDIT_TRAIL

        query = self.session.query(AuditEvent)
        if user_id:
            query = query.filter(AuditEvent.user_id == user_id)
        return query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
