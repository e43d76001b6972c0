"""
MFA exception hierarchy.

Every exception carries the generic ``error`` code and HTTP ``status`` that
the API returns to the client. The specific cause of a verification failure is
never part of these codes; it only reaches the audit log.
"""


class MFAServiceError(Exception):
    """Base exception for MFA service errors."""

    error = "failed"
    status = 500

    def __init__(self, message=None, error=None, status=None, **payload):
        super().__init__(message or error or self.error)
        if error is not None:
            self.error = error
        if status is not None:
            self.status = status
        self.payload = payload

    def to_dict(self):
        body = {"error": self.error}
        body.update(self.payload)
        return body


class ConfigurationError(MFAServiceError):
    """Exception for service configuration issues."""

    error = "configuration_error"


class ValidationError(MFAServiceError):
    """Exception for malformed client input."""

    error = "invalid_payload"
    status = 400


class NotEnabledError(MFAServiceError):
    error = "mfa_not_enabled"
    status = 400


class AlreadyEnabledError(MFAServiceError):
    error = "already_enabled"
    status = 400


class InvalidEnrollmentTokenError(MFAServiceError):
    error = "invalid_token"
    status = 400


class InvalidCodeError(MFAServiceError):
    """Exception for any failed verification; always generic."""

    error = "invalid_or_expired"
    status = 401


class FactorNotEnrolledError(MFAServiceError):
    error = "factor_not_enrolled"
    status = 400


class FactorUnavailableError(MFAServiceError):
    """Exception for a factor that is declared but administratively disabled."""

    error = "factor_unavailable"
    status = 503


class RateLimitedError(MFAServiceError):
    """Exception for a rejected rate-limit check."""

    error = "rate_limited"
    status = 429

    def __init__(self, scope, retry_at=None):
        super().__init__(
            f"Rate limit exceeded ({scope})",
            scope=scope,
            retryAt=retry_at.isoformat() if retry_at else None,
        )
        self.scope = scope
        self.retry_at = retry_at


class ForbiddenError(MFAServiceError):
    error = "forbidden"
    status = 403


class ServiceUnavailableError(MFAServiceError):
    """Exception for temporarily unavailable external services."""

    error = "delivery_unavailable"
    status = 503


class PersistenceError(MFAServiceError):
    """Exception for database failures; the caller must re-issue the request."""

    error = "update_failed"
    status = 500


class NotFoundError(MFAServiceError):
    error = "not_found"
    status = 404
