import enum

from sqlalchemy import BigInteger, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from .base import BaseModel
from .booking_status import PaymentStatus
from .types import CaseInsensitiveEnum


class PaymentRecordType(str, enum.Enum):
    CHARGE = "charge"
    REFUND = "refund"


class PaymentRecord(BaseModel):
    """Append-only ledger row, one per settled gateway transaction.

    The unique ``transaction_id`` is what makes duplicate webhook deliveries
    harmless: a second insert for the same id fails and is treated as a no-op.
    Amounts are signed minor units (refunds are negative).
    """

    __tablename__ = "payment_records"

    id                    = Column(Integer, primary_key=True, index=True)
    transaction_id        = Column(String, nullable=False, unique=True)
    parent_transaction_id = Column(String, nullable=True, index=True)
    booking_id            = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    record_type           = Column(CaseInsensitiveEnum(PaymentRecordType, name="paymentrecordtype"), nullable=False)
    amount                = Column(BigInteger, nullable=False)
    currency              = Column(String(3), nullable=False)
    status                = Column(CaseInsensitiveEnum(PaymentStatus, name="paymentstatus"), nullable=False)
    platform_fee          = Column(BigInteger, nullable=False, default=0)
    provider_payout       = Column(BigInteger, nullable=False, default=0)

    booking = relationship("Booking", back_populates="payments")
