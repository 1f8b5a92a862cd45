from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .booking_status import BookingKind, BookingStatus, PaymentStatus
from .types import CaseInsensitiveEnum


class Booking(BaseModel):
    """One reservation of a provider's time.

    ``price`` means different things per ``kind``:

    - paid: the fee the customer was charged (platform_fee + provider_payout);
      the service itself is settled directly at the appointment.
    - internal: service_price + addon_total (full price, no platform fee).
    - manual: whatever the administrator entered.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_bookings_end_after_start"),
        Index("ix_bookings_provider_window", "provider_id", "start_time", "end_time"),
    )

    id             = Column(Integer, primary_key=True, index=True)
    # Idempotency key: gateway transaction id of the originating payment
    transaction_id = Column(String, nullable=True, unique=True, index=True)
    kind           = Column(CaseInsensitiveEnum(BookingKind, name="bookingkind"), nullable=False)

    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False, index=True)
    service_id  = Column(Integer, ForeignKey("services.id"), nullable=False)
    client_id   = Column(Integer, ForeignKey("clients.id"), nullable=True, index=True)
    guest_name  = Column(String, nullable=True)
    guest_email = Column(String, nullable=True)
    guest_phone = Column(String, nullable=True)

    start_time = Column(DateTime, nullable=False)
    end_time   = Column(DateTime, nullable=False)

    service_price   = Column(Numeric(10, 2), nullable=False)
    addon_total     = Column(Numeric(10, 2), nullable=False, default=0)
    platform_fee    = Column(Numeric(10, 2), nullable=False, default=0)
    provider_payout = Column(Numeric(10, 2), nullable=False, default=0)
    price           = Column(Numeric(10, 2), nullable=False)

    status = Column(
        CaseInsensitiveEnum(BookingStatus, name="bookingstatus"),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True,
    )
    payment_status = Column(
        CaseInsensitiveEnum(PaymentStatus, name="paymentstatus"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    # Gateway timestamp of the newest event applied to status (last write wins)
    last_payment_event_at = Column(DateTime, nullable=True)
    notes = Column(String, nullable=True)

    provider = relationship("Provider", back_populates="bookings")
    service  = relationship("Service")
    client   = relationship("Client", back_populates="bookings")
    addon_lines = relationship(
        "BookingAddon",
        back_populates="booking",
        order_by="BookingAddon.id",
    )
    payments = relationship(
        "PaymentRecord",
        back_populates="booking",
        order_by="PaymentRecord.id",
    )

    @property
    def is_guest(self) -> bool:
        return self.client_id is None

    def __repr__(self) -> str:
        return (
            f"<Booking id={self.id} provider={self.provider_id} "
            f"[{self.start_time}, {self.end_time}) status={self.status}>"
        )


class BookingAddon(BaseModel):
    """Add-on line item with the add-on's price frozen at booking time."""

    __tablename__ = "booking_addons"
    __table_args__ = (
        UniqueConstraint("booking_id", "addon_id", name="uq_booking_addons_booking_addon"),
    )

    id         = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    addon_id   = Column(Integer, ForeignKey("service_addons.id"), nullable=False)
    price      = Column(Numeric(10, 2), nullable=False)

    booking = relationship("Booking", back_populates="addon_lines")
    addon   = relationship("ServiceAddon")
