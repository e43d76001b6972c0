"""
Outbound delivery of one-time codes.

Senders:
    EmailSender: Email delivery via Flask-Mail
    WhatsAppSender: WhatsApp delivery via the Twilio REST API

Every send is bounded by ``MFA_PROVIDER_TIMEOUT`` and wrapped in a circuit
breaker; a timed-out or failing provider surfaces as
:class:`ServiceUnavailableError`, which the API returns as a retryable 503.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from enum import Enum
from typing import Optional

from flask import current_app
from flask_mail import Message
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from ...extensions import mail
from .exceptions import ServiceUnavailableError, ValidationError

log = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="mfa-delivery")

_RW_MSISDN_PATTERNS = (
    re.compile(r"^07[2-9]\d{7}$"),
    re.compile(r"^2507[2-9]\d{7}$"),
    re.compile(r"^\+2507[2-9]\d{7}$"),
)
_MSISDN_SEPARATORS = re.compile(r"[\s\-().]")


class CircuitBreakerState(Enum):
    """Circuit breaker states for external service resilience."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Service unavailable
    HALF_OPEN = "half_open"  # Testing service recovery


class CircuitBreaker:
    """
    Circuit breaker for an external delivery provider.

    Prevents cascading failures by monitoring provider health and
    temporarily refusing calls to a failing provider.

    Attributes:
        failure_threshold: Number of failures before opening circuit
        recovery_timeout: Time before attempting service recovery
        success_threshold: Successful calls needed to close circuit
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60,
                 success_threshold: int = 1):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold

        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None
        self.state = CircuitBreakerState.CLOSED

    def _can_attempt(self) -> bool:
        if self.state == CircuitBreakerState.CLOSED:
            return True

        if self.state == CircuitBreakerState.OPEN:
            elapsed = (datetime.utcnow() - self.last_failure_time).total_seconds()
            if elapsed > self.recovery_timeout:
                self.state = CircuitBreakerState.HALF_OPEN
                self.success_count = 0
                return True
            return False

        # HALF_OPEN state
        return True

    def record_success(self) -> None:
        self.failure_count = 0

        if self.state == CircuitBreakerState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitBreakerState.CLOSED
                log.info("Circuit breaker closed - service recovered")

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = datetime.utcnow()

        if self.failure_count >= self.failure_threshold:
            self.state = CircuitBreakerState.OPEN
            log.warning(f"Circuit breaker opened after {self.failure_count} failures")
        elif self.state == CircuitBreakerState.HALF_OPEN:
            self.state = CircuitBreakerState.OPEN

    def call(self, func, *args, **kwargs):
        if not self._can_attempt():
            raise ServiceUnavailableError(f"Circuit breaker is OPEN for {func.__name__}")
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


def call_with_timeout(func, timeout: float, *args, **kwargs):
    """
    Run ``func`` in a worker thread and wait at most ``timeout`` seconds.

    The worker runs inside a fresh context of the current application.

    Raises:
        ServiceUnavailableError: If the call does not finish in time
    """
    app = current_app._get_current_object()

    def run():
        with app.app_context():
            return func(*args, **kwargs)

    future = _executor.submit(run)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        log.error(f"{getattr(func, '__name__', 'provider call')} timed out after {timeout}s")
        raise ServiceUnavailableError("Provider call timed out")


def normalize_msisdn(phone: str) -> str:
    """
    Normalize a Rwandan mobile number to E.164.

    Accepts ``07XXXXXXXX``, ``2507XXXXXXXX`` and ``+2507XXXXXXXX``.

    Raises:
        ValidationError: If the number is not a Rwandan mobile number
    """
    cleaned = _MSISDN_SEPARATORS.sub("", phone or "")
    if cleaned.startswith("whatsapp:"):
        cleaned = cleaned[len("whatsapp:"):]
    if not any(pattern.match(cleaned) for pattern in _RW_MSISDN_PATTERNS):
        raise ValidationError("Invalid phone number", error="invalid_msisdn")
    if cleaned.startswith("+250"):
        return cleaned
    if cleaned.startswith("250"):
        return f"+{cleaned}"
    return f"+250{cleaned[1:]}"


def mask_msisdn(msisdn: str) -> str:
    if not msisdn or len(msisdn) < 7:
        return "***"
    return f"{msisdn[:4]}***{msisdn[-3:]}"


def _code_message(code: str, ttl_seconds: int) -> str:
    minutes = max(1, int(ttl_seconds) // 60)
    return f"Your SACCO+ security code is {code}. It expires in {minutes} minutes."


class EmailSender:
    """
    Email delivery for MFA codes using Flask-Mail.

    Args:
        timeout: Seconds before a send is abandoned
        breaker: Circuit breaker shared by every send
    """

    def __init__(self, timeout: float = 10, breaker: Optional[CircuitBreaker] = None):
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker()

    def _html_body(self, code: str, ttl_seconds: int) -> str:
        minutes = max(1, int(ttl_seconds) // 60)
        return f"""
        <!DOCTYPE html>
        <html>
        <body style="font-family: Arial, sans-serif;">
            <h2>SACCO+ security code</h2>
            <p>Use the following code to finish signing in:</p>
            <p style="font-size: 32px; font-weight: bold; letter-spacing: 4px;">{code}</p>
            <p>This code expires in {minutes} minutes. Do not share it with anyone.</p>
        </body>
        </html>
        """

    def _send(self, email: str, code: str, ttl_seconds: int) -> None:
        msg = Message(
            subject=current_app.config.get("MFA_EMAIL_SUBJECT", "SACCO+ security code"),
            sender=current_app.config.get("MAIL_DEFAULT_SENDER"),
            recipients=[email],
            body=_code_message(code, ttl_seconds),
            html=self._html_body(code, ttl_seconds),
        )
        mail.send(msg)

    def send_code(self, email: str, code: str, ttl_seconds: int) -> None:
        """
        Send an MFA code by email.

        Raises:
            ServiceUnavailableError: If the mail server fails or times out
        """
        try:
            self.breaker.call(call_with_timeout, self._send, self.timeout, email, code, ttl_seconds)
        except ServiceUnavailableError:
            raise
        except Exception as e:
            log.error(f"Email MFA delivery failed: {type(e).__name__}")
            raise ServiceUnavailableError("Email delivery failed")
        log.info("MFA code email sent")


class WhatsAppSender:
    """
    WhatsApp delivery for MFA codes through Twilio.

    When Twilio credentials are not configured the send is skipped with an
    info log so development environments work without a provider account.
    """

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 10,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[TwilioClient] = None,
    ):
        self.from_number = from_number
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker()
        self.client = client
        if self.client is None and account_sid and auth_token:
            self.client = TwilioClient(
                account_sid,
                auth_token,
                http_client=TwilioHttpClient(timeout=timeout),
            )

    @classmethod
    def from_config(cls, config) -> "WhatsAppSender":
        timeout = config.get("MFA_PROVIDER_TIMEOUT", 10)
        return cls(
            account_sid=config.get("MFA_TWILIO_ACCOUNT_SID"),
            auth_token=config.get("MFA_TWILIO_AUTH_TOKEN"),
            from_number=config.get("MFA_TWILIO_WHATSAPP_FROM"),
            timeout=timeout,
            breaker=CircuitBreaker(
                failure_threshold=config.get("MFA_CIRCUIT_FAILURE_THRESHOLD", 5),
                recovery_timeout=config.get("MFA_CIRCUIT_RECOVERY_TIMEOUT", 60),
            ),
        )

    @property
    def configured(self) -> bool:
        return self.client is not None and bool(self.from_number)

    @staticmethod
    def _address(number: str) -> str:
        return number if number.startswith("whatsapp:") else f"whatsapp:{number}"

    def _send(self, msisdn: str, body: str) -> str:
        message = self.client.messages.create(
            body=body,
            from_=self._address(self.from_number),
            to=self._address(msisdn),
        )
        return message.sid

    def send_code(self, msisdn: str, code: str, ttl_seconds: int) -> None:
        """
        Send an MFA code over WhatsApp.

        Raises:
            ServiceUnavailableError: If Twilio fails or the circuit is open
        """
        if not self.configured:
            log.info(f"Twilio credentials not configured; skipping WhatsApp send to {mask_msisdn(msisdn)}")
            return
        try:
            sid = self.breaker.call(self._send, msisdn, _code_message(code, ttl_seconds))
        except ServiceUnavailableError:
            raise
        except TwilioException as e:
            log.error(f"Twilio WhatsApp send failed: {type(e).__name__}")
            raise ServiceUnavailableError("WhatsApp delivery failed")
        except Exception as e:
            log.error(f"WhatsApp delivery failed: {type(e).__name__}")
            raise ServiceUnavailableError("WhatsApp delivery failed")
        log.info(f"WhatsApp MFA code sent to {mask_msisdn(msisdn)}: {sid}")


def build_email_sender(config) -> EmailSender:
    return EmailSender(
        timeout=config.get("MFA_PROVIDER_TIMEOUT", 10),
        breaker=CircuitBreaker(
            failure_threshold=config.get("MFA_CIRCUIT_FAILURE_THRESHOLD", 5),
            recovery_timeout=config.get("MFA_CIRCUIT_RECOVERY_TIMEOUT", 60),
        ),
    )

