from .errors import (
    error_response,
    BookingError,
    ValidationError,
    AuthenticityError,
    ReferentialError,
    ConflictError,
    InvalidTransitionError,
    LockTimeoutError,
    CommercialFieldsError,
)
