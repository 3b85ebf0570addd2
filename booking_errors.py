"""
Booking error types and the retry policy for transient failures.

Every error the booking engine raises derives from BookingError so the HTTP
layer can translate it with a single exception handler.
"""

import logging
import time
from functools import wraps
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base class for booking engine errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={"message": self.message, "code": self.code, "details": self.details},
        )


class ValidationError(BookingError):
    """Malformed or missing input. Raised before any mutation."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(BookingError):
    status_code = status.HTTP_404_NOT_FOUND


class AuthorizationError(BookingError):
    """Capability token or owner check failed."""

    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(BookingError):
    """An illegal transition. `guard` names the check that failed."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, guard: str, details: Optional[Dict[str, Any]] = None):
        self.guard = guard
        details = dict(details or {})
        details.setdefault("guard", guard)
        super().__init__(message, code="conflict", details=details)


class TransientError(BookingError):
    """Network, gateway or database unavailable. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class GatewayError(BookingError):
    """The payment gateway rejected a request for a non-transient reason."""

    status_code = status.HTTP_502_BAD_GATEWAY


class SignatureError(BookingError):
    """Webhook payload failed gateway signature verification."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotificationError(BookingError):
    """Notification delivery failed. Logged only, never fails a transition."""


class IntegrityWarning(Exception):
    """
    A gateway-reported amount exceeded what was still owed.

    Never raised: the payment is clamped to total_amount and this warning is
    attached to the transition result, logged and stored in the ledger entry
    for manual reconciliation.
    """

    def __init__(self, booking_id: int, reported: int, applied: int):
        self.booking_id = booking_id
        self.reported = reported
        self.applied = applied
        self.excess = reported - applied
        super().__init__(
            f"Booking {booking_id}: gateway reported {reported} but only {applied} was owed "
            f"(excess {self.excess})"
        )

    def as_dict(self) -> Dict[str, int]:
        return {"reported": self.reported, "applied": self.applied, "excess": self.excess}


def with_retry(max_attempts: int = 3, backoff_seconds: float = 1.0, retry_on=(TransientError,)):
    """
    Retry the wrapped call with exponential backoff.

    Only exceptions in `retry_on` are retried; validation and guard failures
    propagate on the first attempt.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_attempts - 1:
                        logger.error(f"All {max_attempts} attempts failed for {func.__name__}: {e}")
                        raise
                    wait_time = backoff_seconds * (2 ** attempt)
                    logger.warning(
                        f"Attempt {attempt + 1}/{max_attempts} failed for {func.__name__}: {e}. "
                        f"Retrying in {wait_time}s..."
                    )
                    time.sleep(wait_time)

        return wrapper

    return decorator
