"""Inbound payment-gateway webhook payloads.

Gateways name events differently; ``EVENT_TYPE_ALIASES`` folds the names we
know about onto the internal ``EventType`` set. Anything else is parsed but
acknowledged as ignored by the reconciler.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator

from .booking import BookingCreate, GuestContact, to_naive_utc


class EventType(str, enum.Enum):
    SETTLEMENT_SUCCEEDED = "settlement.succeeded"
    SETTLEMENT_FAILED = "settlement.failed"
    CHECKOUT_EXPIRED = "checkout.expired"
    REFUND_ISSUED = "refund.issued"
    ACCOUNT_UPDATED = "account.updated"


EVENT_TYPE_ALIASES: Dict[str, EventType] = {
    "payment_intent.succeeded": EventType.SETTLEMENT_SUCCEEDED,
    "checkout.session.completed": EventType.SETTLEMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventType.SETTLEMENT_FAILED,
    "checkout.session.expired": EventType.CHECKOUT_EXPIRED,
    "charge.refunded": EventType.REFUND_ISSUED,
    "account.application.deauthorized": EventType.ACCOUNT_UPDATED,
}

DEAUTHORIZED_TYPES = frozenset({"account.application.deauthorized"})


def normalise_event_type(raw: str) -> Optional[EventType]:
    key = (raw or "").strip().lower()
    try:
        return EventType(key)
    except ValueError:
        return EVENT_TYPE_ALIASES.get(key)


class GatewayEvent(BaseModel):
    id: str = Field(..., min_length=1)
    type: str
    created: int
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def event_type(self) -> Optional[EventType]:
        return normalise_event_type(self.type)

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, tz=timezone.utc).replace(tzinfo=None)


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class SettlementMetadata(BaseModel):
    """Booking details the checkout attached to the payment.

    Gateways flatten metadata to strings, so add-on ids arrive as a comma list
    and a guest checkout sends ``client_id="guest"``.
    """

    model_config = ConfigDict(populate_by_name=True)

    provider_id: int = Field(..., validation_alias=_alias("provider_id", "providerId"))
    service_id: int = Field(..., validation_alias=_alias("service_id", "serviceId"))
    start_time: datetime = Field(..., validation_alias=_alias("start_time", "startTime", "date"))
    addon_ids: List[int] = Field(default_factory=list, validation_alias=_alias("addon_ids", "addonIds"))
    client_id: Optional[int] = Field(None, validation_alias=_alias("client_id", "clientId"))
    guest_name: Optional[str] = Field(None, validation_alias=_alias("guest_name", "guestName"))
    guest_email: Optional[EmailStr] = Field(None, validation_alias=_alias("guest_email", "guestEmail"))
    guest_phone: Optional[str] = Field(None, validation_alias=_alias("guest_phone", "guestPhone"))
    notes: Optional[str] = None

    @field_validator("addon_ids", mode="before")
    @classmethod
    def split_addon_ids(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("client_id", mode="before")
    @classmethod
    def guest_client(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip().lower() in ("", "guest"):
            return None
        return v

    @field_validator("guest_name", "guest_email", "guest_phone", "notes", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("start_time")
    @classmethod
    def normalise_start(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    def to_booking_request(self) -> BookingCreate:
        guest = None
        if self.client_id is None and self.guest_name and self.guest_email:
            guest = GuestContact(name=self.guest_name, email=self.guest_email, phone=self.guest_phone)
        return BookingCreate(
            provider_id=self.provider_id,
            service_id=self.service_id,
            start_time=self.start_time,
            notes=self.notes,
            addon_ids=self.addon_ids,
            client_id=self.client_id,
            guest_contact=guest,
        )


class SettlementData(BaseModel):
    transaction_id: str = Field(..., min_length=1, validation_alias=_alias("transaction_id", "id"))
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RefundData(BaseModel):
    refund_id: str = Field(..., min_length=1)
    # The charge being refunded
    transaction_id: str = Field(..., min_length=1, validation_alias=_alias("transaction_id", "payment_intent"))
    amount: int = Field(..., ge=0)
    # Cumulative across every refund issued against the charge
    amount_refunded: int = Field(..., ge=0)
    currency: Optional[str] = None


class AccountData(BaseModel):
    account_id: str = Field(..., min_length=1, validation_alias=_alias("account_id", "id"))
    charges_enabled: bool = False
    deauthorized: bool = False

    @property
    def account_status(self) -> str:
        if self.deauthorized:
            return "deauthorized"
        return "active" if self.charges_enabled else "pending"
