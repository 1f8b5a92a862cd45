from .provider import Provider
from .client import Client
from .service import Service, ServiceAddon
from .booking import Booking, BookingAddon
from .booking_status import (
    BookingKind,
    BookingStatus,
    PaymentStatus,
    TransitionActor,
    TERMINAL_STATUSES,
    can_transition,
)
from .payment_record import PaymentRecord, PaymentRecordType
from .outbox_event import OutboxEvent

__all__ = [
    "Provider",
    "Client",
    "Service",
    "ServiceAddon",
    "Booking",
    "BookingAddon",
    "BookingKind",
    "BookingStatus",
    "PaymentStatus",
    "TransitionActor",
    "TERMINAL_STATUSES",
    "can_transition",
    "PaymentRecord",
    "PaymentRecordType",
    "OutboxEvent",
]
