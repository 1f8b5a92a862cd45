import enum


class BookingStatus(str, enum.Enum):
    """Booking lifecycle states."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    MISSED = "missed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class PaymentStatus(str, enum.Enum):
    """Money-side status, tracked separately from the booking lifecycle."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    MANUAL = "manual"


class BookingKind(str, enum.Enum):
    """Creation path of a booking; decides what the commercial fields mean."""
    PAID = "paid"
    INTERNAL = "internal"
    MANUAL = "manual"


class TransitionActor(str, enum.Enum):
    API = "api"
    RECONCILER = "reconciler"
    SWEEPER = "sweeper"


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REFUNDED}
)

# Statuses that occupy the provider's calendar
BLOCKING_EXCLUDED = frozenset({BookingStatus.CANCELLED})

_ANY = frozenset(TransitionActor)
_RECONCILER_ONLY = frozenset({TransitionActor.RECONCILER})

# (from, to) -> actors allowed to drive the edge
ALLOWED_TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], frozenset[TransitionActor]] = {
    (BookingStatus.PENDING, BookingStatus.CONFIRMED): _ANY,
    (BookingStatus.PENDING, BookingStatus.FAILED): _ANY,
    (BookingStatus.CONFIRMED, BookingStatus.COMPLETED): _ANY,
    (BookingStatus.CONFIRMED, BookingStatus.CANCELLED): _ANY,
    (BookingStatus.CONFIRMED, BookingStatus.MISSED): _ANY,
    (BookingStatus.CONFIRMED, BookingStatus.REFUNDED): _RECONCILER_ONLY,
    (BookingStatus.CONFIRMED, BookingStatus.PARTIALLY_REFUNDED): _RECONCILER_ONLY,
    # Refunds are cumulative at the gateway
    (BookingStatus.PARTIALLY_REFUNDED, BookingStatus.PARTIALLY_REFUNDED): _RECONCILER_ONLY,
    (BookingStatus.PARTIALLY_REFUNDED, BookingStatus.REFUNDED): _RECONCILER_ONLY,
    # A later settlement for the same transaction supersedes a failure event
    (BookingStatus.FAILED, BookingStatus.CONFIRMED): _RECONCILER_ONLY,
}


def can_transition(
    current: BookingStatus, target: BookingStatus, actor: TransitionActor = TransitionActor.API
) -> bool:
    if current.is_terminal:
        return False
    actors = ALLOWED_TRANSITIONS.get((current, target))
    return actors is not None and actor in actors
