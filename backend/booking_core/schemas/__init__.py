from .booking import (
    GuestContact,
    BookingCreate,
    ManualBookingCreate,
    BookingStatusUpdate,
    AddonLineCreate,
    AddonLinePriceUpdate,
    AddonLineResponse,
    BookingResponse,
)
from .payment_event import (
    EventType,
    GatewayEvent,
    SettlementMetadata,
    SettlementData,
    RefundData,
    AccountData,
)
