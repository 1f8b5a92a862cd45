from typing import Dict, Optional
from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)


def error_response(
    message: str,
    field_errors: Dict[str, str],
    code: int = status.HTTP_400_BAD_REQUEST,
    log_level: int = logging.ERROR,
) -> HTTPException:
    """Return an HTTPException with a consistent structure and log details."""
    logger.log(log_level, "%s %s", message, field_errors)
    detail = {"message": message, "field_errors": field_errors}
    return HTTPException(status_code=code, detail=detail)


class BookingError(Exception):
    """Base for the typed errors raised by the ledger, guard and reconciler.

    Each subclass carries the HTTP status it maps to and the level it should
    be logged at; expected outcomes (conflicts) log below ERROR.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    log_level: int = logging.ERROR

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.field_errors = dict(field_errors or {})

    def to_http(self) -> HTTPException:
        return error_response(self.message, self.field_errors, self.status_code, self.log_level)


class ValidationError(BookingError):
    """Missing or malformed input. Never retried; the caller must fix it."""

    status_code = status.HTTP_400_BAD_REQUEST
    log_level = logging.INFO


class AuthenticityError(BookingError):
    """Webhook signature could not be verified."""

    status_code = status.HTTP_400_BAD_REQUEST
    log_level = logging.WARNING


class ReferentialError(BookingError):
    """Provider, service, add-on, client or booking id does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(BookingError):
    """Requested slot overlaps an existing booking. Pick another time."""

    status_code = status.HTTP_409_CONFLICT
    log_level = logging.INFO


class InvalidTransitionError(BookingError):
    """Status change not permitted from the booking's current state."""

    status_code = status.HTTP_409_CONFLICT
    log_level = logging.INFO


class LockTimeoutError(BookingError):
    """Gave up waiting for a calendar lock; safe to retry the same request."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    log_level = logging.WARNING


class CommercialFieldsError(ValidationError):
    """Monetary fields could not be computed (e.g. service has no price)."""

    log_level = logging.ERROR
