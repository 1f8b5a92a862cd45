"""Applies verified payment-gateway events to the booking ledger.

Gateways deliver at least once and in no particular order, so every handler
is written to be replayed:

- a settlement creates its booking at most once (the transaction id is
  unique on both bookings and payment records, and the lookup is repeated
  after the provider calendar lock is held);
- payment records go in under a savepoint, and a duplicate key is a no-op;
- status writes are last-write-wins on the gateway's ``created`` timestamp.

Side effects (outbox rows) are queued only after the ledger commit.
"""

from __future__ import annotations

import enum
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type

import pydantic
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..crud.crud_booking import booking as booking_ledger, booking_transaction
from ..models.booking_status import BookingKind, BookingStatus, PaymentStatus, TransitionActor, can_transition
from ..models.payment_record import PaymentRecordType
from ..schemas.payment_event import (
    DEAUTHORIZED_TYPES,
    AccountData,
    EventType,
    GatewayEvent,
    RefundData,
    SettlementData,
    SettlementMetadata,
)
from ..utils import metrics
from ..utils.errors import ReferentialError, ValidationError
from ..utils.outbox import (
    TOPIC_BOOKING_CONFIRMED,
    TOPIC_BOOKING_REFUNDED,
    TOPIC_PAYMENT_ANALYTICS,
    booking_payload,
    enqueue_outbox,
)
from ..utils.signatures import verify_signature
from ..utils.slot_lock import slot_advisory_lock
from . import slot_guard
from .fee_split import FeeConfig, compute_fee_split, fee_config_from_settings

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    # Duplicate or stale delivery; nothing changed
    NOOP = "noop"
    # Acknowledged without action (unknown type, no matching booking, illegal edge)
    IGNORED = "ignored"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    booking_id: Optional[int] = None
    side_effects: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": True,
            "outcome": self.outcome.value,
            "event_id": self.event_id,
            "booking_id": self.booking_id,
        }


def _pydantic_to_validation_error(message: str, exc: pydantic.ValidationError) -> ValidationError:
    errors = {}
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
        errors[loc] = err.get("msg", "invalid")
    return ValidationError(message, errors)


def _is_stale(db_booking: models.Booking, event: GatewayEvent) -> bool:
    last = db_booking.last_payment_event_at
    return last is not None and event.created_at < last


class PaymentEventReconciler:
    def __init__(
        self,
        secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        fee_config: Optional[FeeConfig] = None,
    ):
        self._secret = secret
        self._tolerance = tolerance_seconds
        self._fee_config = fee_config

    @property
    def secret(self) -> str:
        return settings.PAYMENT_WEBHOOK_SECRET if self._secret is None else self._secret

    @property
    def tolerance_seconds(self) -> int:
        return settings.WEBHOOK_TOLERANCE_SECONDS if self._tolerance is None else self._tolerance

    @property
    def fee_config(self) -> FeeConfig:
        return self._fee_config or fee_config_from_settings(settings)

    # ─── entry point ─────────────────────────────────────────────────────────

    def reconcile(self, db: Session, raw_body: bytes, signature_header: Optional[str]) -> ReconcileResult:
        verify_signature(raw_body, signature_header, self.secret, self.tolerance_seconds)
        event = self.parse_event(raw_body)
        return self.apply(db, event)

    def parse_event(self, raw_body: bytes) -> GatewayEvent:
        try:
            return GatewayEvent.model_validate_json(raw_body)
        except pydantic.ValidationError as exc:
            raise _pydantic_to_validation_error("Malformed webhook payload", exc)

    def apply(self, db: Session, event: GatewayEvent) -> ReconcileResult:
        """Apply an already verified event."""
        event_type = event.event_type
        handlers = {
            EventType.SETTLEMENT_SUCCEEDED: self._settlement_succeeded,
            EventType.SETTLEMENT_FAILED: self._settlement_failed,
            EventType.CHECKOUT_EXPIRED: self._settlement_failed,
            EventType.REFUND_ISSUED: self._refund_issued,
            EventType.ACCOUNT_UPDATED: self._account_updated,
        }
        handler = handlers.get(event_type) if event_type else None
        if handler is None:
            logger.info("webhook event=%s type=%s ignored (unhandled type)", event.id, event.type)
            result = ReconcileResult(ReconcileOutcome.IGNORED)
        else:
            with metrics.Timer("webhook.reconcile.ms", tags={"type": event_type.value}):
                result = handler(db, event)
        result.event_id = event.id
        result.event_type = event_type.value if event_type else event.type

        metrics.incr("webhook.outcome", tags={"type": result.event_type, "outcome": result.outcome.value})
        log = logger.info if result.outcome is not ReconcileOutcome.IGNORED else logger.debug
        log(
            "webhook event=%s type=%s outcome=%s booking=%s",
            event.id,
            result.event_type,
            result.outcome.value,
            result.booking_id,
        )
        for topic, payload in result.side_effects:
            enqueue_outbox(db, topic, payload)
        return result

    # ─── helpers ─────────────────────────────────────────────────────────────

    def _data(self, model: Type[pydantic.BaseModel], event: GatewayEvent):
        try:
            return model.model_validate(event.data)
        except pydantic.ValidationError as exc:
            raise _pydantic_to_validation_error(f"Malformed {event.type} payload", exc)

    def _record(
        self,
        db: Session,
        db_booking: models.Booking,
        transaction_id: str,
        record_type: PaymentRecordType,
        amount: int,
        currency: Optional[str],
        status: PaymentStatus,
        platform_fee: int = 0,
        provider_payout: int = 0,
        parent_transaction_id: Optional[str] = None,
    ) -> bool:
        """Insert a payment record; False when the transaction id is already recorded."""
        record = models.PaymentRecord(
            transaction_id=transaction_id,
            parent_transaction_id=parent_transaction_id,
            booking_id=db_booking.id,
            record_type=record_type,
            amount=int(amount),
            currency=(currency or settings.DEFAULT_CURRENCY).lower(),
            status=status,
            platform_fee=int(platform_fee),
            provider_payout=int(provider_payout),
        )
        try:
            with db.begin_nested():
                db.add(record)
                db.flush()
        except IntegrityError:
            logger.info("payment record transaction=%s already stored; skipping", transaction_id)
            return False
        return True

    def _record_charge(self, db: Session, db_booking: models.Booking, data: SettlementData) -> bool:
        config = self.fee_config
        split = compute_fee_split(config)
        amount = data.amount if data.amount is not None else config.platform_fee_minor
        if data.amount is not None and data.amount != config.platform_fee_minor:
            logger.warning(
                "settlement transaction=%s amount=%s differs from configured fee=%s",
                data.transaction_id,
                data.amount,
                config.platform_fee_minor,
            )
        return self._record(
            db,
            db_booking,
            data.transaction_id,
            PaymentRecordType.CHARGE,
            amount,
            data.currency,
            PaymentStatus.SUCCEEDED,
            platform_fee=split.net_platform_share,
            provider_payout=amount - split.net_platform_share,
        )

    def _mark_event(self, db_booking: models.Booking, event: GatewayEvent) -> None:
        if db_booking.last_payment_event_at is None or event.created_at > db_booking.last_payment_event_at:
            db_booking.last_payment_event_at = event.created_at

    # ─── handlers ────────────────────────────────────────────────────────────

    def _settlement_succeeded(self, db: Session, event: GatewayEvent) -> ReconcileResult:
        data: SettlementData = self._data(SettlementData, event)
        meta: Optional[SettlementMetadata] = None
        meta_error: Optional[ValidationError] = None
        try:
            meta = SettlementMetadata.model_validate(data.metadata)
        except pydantic.ValidationError as exc:
            meta_error = _pydantic_to_validation_error("Missing or invalid booking metadata", exc)

        lock = slot_advisory_lock(meta.provider_id, meta.start_time) if meta else nullcontext(False)
        with lock, booking_transaction(db):
            slot_guard.bound_lock_wait(db)
            existing = booking_ledger.get_booking_by_transaction(db, data.transaction_id, for_update=True)
            if existing is None:
                if meta is None:
                    raise meta_error
                # Serialize with any concurrent delivery of the same event, then look again
                slot_guard.lock_provider_calendar(db, meta.provider_id)
                existing = booking_ledger.get_booking_by_transaction(db, data.transaction_id, for_update=True)

            if existing is not None:
                result = self._apply_settlement(db, existing, data, event)
            else:
                result = self._create_from_settlement(db, meta, data, event)
        return result

    def _create_from_settlement(
        self, db: Session, meta: SettlementMetadata, data: SettlementData, event: GatewayEvent
    ) -> ReconcileResult:
        try:
            request = meta.to_booking_request()
        except pydantic.ValidationError as exc:
            raise _pydantic_to_validation_error("Missing or invalid booking metadata", exc)

        db_booking = booking_ledger.create_booking(
            db,
            request,
            BookingKind.PAID,
            fee_config=self.fee_config,
            transaction_id=data.transaction_id,
        )
        booking_ledger.transition_status(db, db_booking, BookingStatus.CONFIRMED, TransitionActor.RECONCILER)
        db_booking.payment_status = PaymentStatus.SUCCEEDED
        self._mark_event(db_booking, event)
        self._record_charge(db, db_booking, data)
        db.flush()

        payload = booking_payload(db_booking)
        return ReconcileResult(
            ReconcileOutcome.CREATED,
            booking_id=db_booking.id,
            side_effects=[
                (TOPIC_BOOKING_CONFIRMED, payload),
                (
                    TOPIC_PAYMENT_ANALYTICS,
                    {
                        "booking_id": db_booking.id,
                        "transaction_id": data.transaction_id,
                        "amount": data.amount,
                        "platform_fee": db_booking.platform_fee,
                        "provider_payout": db_booking.provider_payout,
                        "addon_total": db_booking.addon_total,
                    },
                ),
            ],
        )

    def _apply_settlement(
        self, db: Session, db_booking: models.Booking, data: SettlementData, event: GatewayEvent
    ) -> ReconcileResult:
        # Commercial fields are never recomputed for an existing booking
        inserted = self._record_charge(db, db_booking, data)
        current = BookingStatus(db_booking.status)

        if _is_stale(db_booking, event):
            return ReconcileResult(
                ReconcileOutcome.UPDATED if inserted else ReconcileOutcome.NOOP,
                booking_id=db_booking.id,
            )
        if current is BookingStatus.CONFIRMED and db_booking.payment_status == PaymentStatus.SUCCEEDED:
            self._mark_event(db_booking, event)
            return ReconcileResult(
                ReconcileOutcome.UPDATED if inserted else ReconcileOutcome.NOOP,
                booking_id=db_booking.id,
            )
        if current is not BookingStatus.CONFIRMED and not can_transition(
            current, BookingStatus.CONFIRMED, TransitionActor.RECONCILER
        ):
            logger.info(
                "settlement for booking id=%s in status %s not applied", db_booking.id, current.value
            )
            return ReconcileResult(
                ReconcileOutcome.UPDATED if inserted else ReconcileOutcome.IGNORED,
                booking_id=db_booking.id,
            )

        if current is not BookingStatus.CONFIRMED:
            booking_ledger.transition_status(
                db, db_booking, BookingStatus.CONFIRMED, TransitionActor.RECONCILER
            )
        db_booking.payment_status = PaymentStatus.SUCCEEDED
        self._mark_event(db_booking, event)
        db.flush()
        return ReconcileResult(
            ReconcileOutcome.UPDATED,
            booking_id=db_booking.id,
            side_effects=[(TOPIC_BOOKING_CONFIRMED, booking_payload(db_booking))],
        )

    def _settlement_failed(self, db: Session, event: GatewayEvent) -> ReconcileResult:
        data: SettlementData = self._data(SettlementData, event)
        with booking_transaction(db):
            slot_guard.bound_lock_wait(db)
            db_booking = booking_ledger.get_booking_by_transaction(db, data.transaction_id, for_update=True)
            if db_booking is None:
                # Paid bookings only exist once settled; nothing to fail
                return ReconcileResult(ReconcileOutcome.IGNORED)
            if _is_stale(db_booking, event):
                return ReconcileResult(ReconcileOutcome.NOOP, booking_id=db_booking.id)

            current = BookingStatus(db_booking.status)
            if current is BookingStatus.FAILED:
                return ReconcileResult(ReconcileOutcome.NOOP, booking_id=db_booking.id)
            if not can_transition(current, BookingStatus.FAILED, TransitionActor.RECONCILER):
                logger.info(
                    "%s for booking id=%s in status %s not applied", event.type, db_booking.id, current.value
                )
                return ReconcileResult(ReconcileOutcome.IGNORED, booking_id=db_booking.id)

            booking_ledger.transition_status(db, db_booking, BookingStatus.FAILED, TransitionActor.RECONCILER)
            db_booking.payment_status = PaymentStatus.FAILED
            self._mark_event(db_booking, event)
            db.flush()
            return ReconcileResult(ReconcileOutcome.UPDATED, booking_id=db_booking.id)

    def _refunded_so_far(self, db: Session, charge_id: str) -> int:
        total = db.execute(
            select(func.coalesce(func.sum(models.PaymentRecord.amount), 0)).where(
                models.PaymentRecord.parent_transaction_id == charge_id,
                models.PaymentRecord.record_type == PaymentRecordType.REFUND,
            )
        ).scalar_one()
        return -int(total)

    def _refund_issued(self, db: Session, event: GatewayEvent) -> ReconcileResult:
        data: RefundData = self._data(RefundData, event)
        with booking_transaction(db):
            slot_guard.bound_lock_wait(db)
            db_booking = booking_ledger.get_booking_by_transaction(db, data.transaction_id, for_update=True)
            if db_booking is None:
                raise ReferentialError(
                    "No booking for refunded transaction", {"transaction_id": data.transaction_id}
                )

            increment = data.amount_refunded - self._refunded_so_far(db, data.transaction_id)
            if increment <= 0:
                return ReconcileResult(ReconcileOutcome.NOOP, booking_id=db_booking.id)

            full = data.amount_refunded >= data.amount
            refund_status = PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED
            inserted = self._record(
                db,
                db_booking,
                data.refund_id,
                PaymentRecordType.REFUND,
                -increment,
                data.currency,
                refund_status,
                platform_fee=0,
                provider_payout=-increment,
                parent_transaction_id=data.transaction_id,
            )
            if not inserted:
                return ReconcileResult(ReconcileOutcome.NOOP, booking_id=db_booking.id)

            db_booking.payment_status = refund_status
            target = BookingStatus.REFUNDED if full else BookingStatus.PARTIALLY_REFUNDED
            current = BookingStatus(db_booking.status)
            if _is_stale(db_booking, event):
                logger.info("refund event=%s older than booking id=%s state; recorded only", event.id, db_booking.id)
            elif can_transition(current, target, TransitionActor.RECONCILER):
                booking_ledger.transition_status(db, db_booking, target, TransitionActor.RECONCILER)
                self._mark_event(db_booking, event)
            else:
                logger.info(
                    "refund for booking id=%s in status %s recorded without status change",
                    db_booking.id,
                    current.value,
                )
            db.flush()
            payload = booking_payload(db_booking)
            payload.update({"refund_id": data.refund_id, "refunded_minor": increment, "full": full})
            return ReconcileResult(
                ReconcileOutcome.UPDATED,
                booking_id=db_booking.id,
                side_effects=[(TOPIC_BOOKING_REFUNDED, payload)],
            )

    def _account_updated(self, db: Session, event: GatewayEvent) -> ReconcileResult:
        data: AccountData = self._data(AccountData, event)
        deauthorized = data.deauthorized or event.type.strip().lower() in DEAUTHORIZED_TYPES
        if deauthorized and not data.deauthorized:
            data = data.model_copy(update={"deauthorized": True, "charges_enabled": False})

        with booking_transaction(db):
            provider = db.execute(
                select(models.Provider)
                .where(models.Provider.gateway_account_id == data.account_id)
                .with_for_update()
            ).scalars().first()
            if provider is None:
                raise ReferentialError(
                    "No provider for gateway account", {"account_id": data.account_id}
                )
            if (
                provider.gateway_account_status == data.account_status
                and bool(provider.charges_enabled) == data.charges_enabled
            ):
                return ReconcileResult(ReconcileOutcome.NOOP)
            logger.info(
                "provider id=%s gateway account %s -> %s charges_enabled=%s",
                provider.id,
                provider.gateway_account_status,
                data.account_status,
                data.charges_enabled,
            )
            provider.gateway_account_status = data.account_status
            provider.charges_enabled = data.charges_enabled
            return ReconcileResult(ReconcileOutcome.UPDATED)


reconciler = PaymentEventReconciler()


def reconcile_event(db: Session, raw_body: bytes, signature_header: Optional[str]) -> ReconcileResult:
    return reconciler.reconcile(db, raw_body, signature_header)
