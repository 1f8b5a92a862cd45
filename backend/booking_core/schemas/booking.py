from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, timezone
from decimal import Decimal

from ..models.booking_status import BookingKind, BookingStatus, PaymentStatus


def to_naive_utc(value: datetime) -> datetime:
    """Store everything as naive UTC; aware inputs are converted first."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class GuestContact(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None


# Shared properties for a booking request
class BookingBase(BaseModel):
    provider_id: int
    service_id: int
    start_time: datetime
    notes: Optional[str] = None
    addon_ids: List[int] = Field(default_factory=list)

    @field_validator("start_time")
    @classmethod
    def normalise_start(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @field_validator("addon_ids")
    @classmethod
    def dedupe_addons(cls, v: List[int]) -> List[int]:
        # Same add-on twice is one line item
        return list(dict.fromkeys(v))


class BookingCreate(BookingBase):
    # Either a registered client or a guest contact, never both
    client_id: Optional[int] = None
    guest_contact: Optional[GuestContact] = None

    @model_validator(mode="after")
    def one_identity(self) -> "BookingCreate":
        if (self.client_id is None) == (self.guest_contact is None):
            raise ValueError("Provide exactly one of client_id or guest_contact")
        return self


class ManualBookingCreate(BookingCreate):
    """Administrative entry; the caller states the commercial fields."""

    price: Decimal = Field(..., ge=0, decimal_places=2)
    platform_fee: Decimal = Field(..., ge=0, decimal_places=2)
    provider_payout: Decimal = Field(..., ge=0, decimal_places=2)

    def manual_amounts(self) -> dict:
        return {
            "price": self.price,
            "platform_fee": self.platform_fee,
            "provider_payout": self.provider_payout,
        }


_API_TARGETS = {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.MISSED}


class BookingStatusUpdate(BaseModel):
    status: BookingStatus

    @field_validator("status")
    @classmethod
    def api_settable(cls, v: BookingStatus) -> BookingStatus:
        if v not in _API_TARGETS:
            raise ValueError(
                "status can only be set to completed, cancelled or missed"
            )
        return v


class AddonLineCreate(BaseModel):
    addon_id: int


class AddonLinePriceUpdate(BaseModel):
    price: Decimal = Field(..., ge=0, decimal_places=2)


class AddonLineResponse(BaseModel):
    id: int
    addon_id: int
    price: Decimal

    model_config = {"from_attributes": True}


# Properties to return to client
class BookingResponse(BaseModel):
    id: int
    transaction_id: Optional[str] = None
    kind: BookingKind
    provider_id: int
    service_id: int
    client_id: Optional[int] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    start_time: datetime
    end_time: datetime
    service_price: Decimal
    addon_total: Decimal
    platform_fee: Decimal
    provider_payout: Decimal
    price: Decimal
    status: BookingStatus
    payment_status: PaymentStatus
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    addon_lines: List[AddonLineResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}
