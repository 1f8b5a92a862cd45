"""Per-path pricing policies for bookings.

``Booking.price`` deliberately means something different for each creation
path. Rather than branching on flags wherever a booking is built, each
``BookingKind`` is paired with a policy object that owns the commercial
fields, the initial status and the payment status for that path.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, ClassVar, Optional, Union

from ..models.booking_status import BookingKind, BookingStatus, PaymentStatus
from ..utils.errors import BookingError, CommercialFieldsError
from .fee_split import FeeConfig, FeeSplit, ZERO_SPLIT, compute_fee_split

_CENT = Decimal("0.01")


def to_money(value: Any, field: str = "amount") -> Decimal:
    """Coerce a major-unit amount to a 2dp Decimal; never defaults missing values."""
    if value is None:
        raise CommercialFieldsError(f"{field} is missing", {field: "required"})
    try:
        return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise CommercialFieldsError(f"{field} is not a valid amount", {field: "invalid"})


def minor_to_money(minor: int) -> Decimal:
    return (Decimal(int(minor)) / Decimal(100)).quantize(_CENT, rounding=ROUND_HALF_UP)


def money_to_minor(value: Decimal) -> int:
    return int((Decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CommercialFields:
    service_price: Decimal
    addon_total: Decimal
    platform_fee: Decimal
    provider_payout: Decimal
    price: Decimal
    fee_split: FeeSplit

    @property
    def is_conserved(self) -> bool:
        return self.price == self.platform_fee + self.provider_payout


@dataclass(frozen=True)
class PaidPricing:
    """Customer pays only the flat platform fee; the service is paid at the appointment."""

    fee_config: FeeConfig

    kind: ClassVar[BookingKind] = BookingKind.PAID
    initial_status: ClassVar[BookingStatus] = BookingStatus.PENDING
    payment_status: ClassVar[PaymentStatus] = PaymentStatus.PENDING
    enforces_conservation: ClassVar[bool] = True

    def commercial_fields(self, service_price: Decimal, addon_total: Decimal) -> CommercialFields:
        split = compute_fee_split(self.fee_config)
        charged = self.fee_config.platform_fee_minor
        platform_fee = minor_to_money(split.net_platform_share)
        # The gateway cost is deducted from the provider's transfer, so the
        # payout is everything charged that is not the platform's net share.
        provider_payout = minor_to_money(charged - split.net_platform_share)
        return CommercialFields(
            service_price=service_price,
            addon_total=addon_total,
            platform_fee=platform_fee,
            provider_payout=provider_payout,
            price=minor_to_money(charged),
            fee_split=split,
        )


@dataclass(frozen=True)
class InternalPricing:
    """Zero-fee account: no platform revenue, the provider keeps the full price."""

    fee_config: FeeConfig

    kind: ClassVar[BookingKind] = BookingKind.INTERNAL
    initial_status: ClassVar[BookingStatus] = BookingStatus.CONFIRMED
    payment_status: ClassVar[PaymentStatus] = PaymentStatus.SUCCEEDED
    enforces_conservation: ClassVar[bool] = True

    def commercial_fields(self, service_price: Decimal, addon_total: Decimal) -> CommercialFields:
        split = compute_fee_split(self.fee_config, zero_fee=True)
        full_price = (service_price + addon_total).quantize(_CENT)
        return CommercialFields(
            service_price=service_price,
            addon_total=addon_total,
            platform_fee=minor_to_money(split.net_platform_share),
            provider_payout=full_price,
            price=full_price,
            fee_split=split,
        )


@dataclass(frozen=True)
class ManualPricing:
    """Administrative entry: the caller states every amount."""

    price: Decimal
    platform_fee: Decimal
    provider_payout: Decimal

    kind: ClassVar[BookingKind] = BookingKind.MANUAL
    initial_status: ClassVar[BookingStatus] = BookingStatus.CONFIRMED
    payment_status: ClassVar[PaymentStatus] = PaymentStatus.MANUAL
    enforces_conservation: ClassVar[bool] = False

    def commercial_fields(self, service_price: Decimal, addon_total: Decimal) -> CommercialFields:
        return CommercialFields(
            service_price=service_price,
            addon_total=addon_total,
            platform_fee=to_money(self.platform_fee, "platform_fee"),
            provider_payout=to_money(self.provider_payout, "provider_payout"),
            price=to_money(self.price, "price"),
            fee_split=ZERO_SPLIT,
        )


PricingPolicy = Union[PaidPricing, InternalPricing, ManualPricing]


def policy_for(
    kind: BookingKind,
    fee_config: Optional[FeeConfig] = None,
    manual_amounts: Optional[dict[str, Any]] = None,
) -> PricingPolicy:
    if kind is BookingKind.PAID:
        if fee_config is None:
            raise BookingError("paid bookings need a fee configuration")
        return PaidPricing(fee_config)
    if kind is BookingKind.INTERNAL:
        if fee_config is None:
            raise BookingError("internal bookings need a fee configuration")
        return InternalPricing(fee_config)
    amounts = manual_amounts or {}
    return ManualPricing(
        price=amounts.get("price"),
        platform_fee=amounts.get("platform_fee"),
        provider_payout=amounts.get("provider_payout"),
    )


def build_commercial_fields(
    policy: PricingPolicy, service_price: Any, addon_total: Decimal
) -> CommercialFields:
    fields = policy.commercial_fields(to_money(service_price, "service_price"), addon_total)
    if policy.enforces_conservation and not fields.is_conserved:
        # Only reachable through a bad fee configuration; refuse to persist it.
        raise BookingError(
            "Commercial fields do not conserve the charged amount",
            {"price": str(fields.price), "platform_fee": str(fields.platform_fee),
             "provider_payout": str(fields.provider_payout)},
        )
    return fields
