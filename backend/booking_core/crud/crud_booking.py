from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload
from typing import Any, Dict, Iterator, List, Optional
from contextlib import contextmanager
from decimal import Decimal
from datetime import datetime, timedelta
import logging

from .. import models, schemas
from ..core.config import settings
from ..models.base import utcnow
from ..models.booking_status import BookingKind, BookingStatus, TransitionActor, can_transition
from ..services import slot_guard
from ..services.addon_totals import recompute_addon_total
from ..services.fee_split import FeeConfig, fee_config_from_settings
from ..services.pricing import build_commercial_fields, policy_for, to_money
from ..utils import metrics
from ..utils.errors import (
    CommercialFieldsError,
    InvalidTransitionError,
    LockTimeoutError,
    ReferentialError,
    ValidationError,
)
from ..utils.slot_lock import slot_advisory_lock

logger = logging.getLogger(__name__)

# lock_not_available, deadlock_detected
_PG_LOCK_CODES = {"55P03", "40P01"}


def _is_lock_timeout(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _PG_LOCK_CODES:
        return True
    return "database is locked" in str(orig or exc).lower()


@contextmanager
def booking_transaction(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any error.

    Lock waits that run out (and deadlocks) surface as ``LockTimeoutError`` so
    the caller can retry; they are never reported as slot conflicts.
    """
    try:
        yield db
        db.commit()
    except OperationalError as exc:
        db.rollback()
        if _is_lock_timeout(exc):
            metrics.incr("booking.lock_timeout")
            logger.warning("calendar lock wait expired: %s", exc.orig)
            raise LockTimeoutError(
                "Timed out waiting for the provider calendar; please retry",
                {"start_time": "busy"},
            ) from exc
        raise
    except Exception:
        db.rollback()
        raise


def _ensure_open(db_booking: models.Booking) -> None:
    if BookingStatus(db_booking.status).is_terminal:
        raise InvalidTransitionError(
            f"Booking is {BookingStatus(db_booking.status).value}; add-ons can no longer change",
            {"status": BookingStatus(db_booking.status).value},
        )


class CRUDBooking:
    def get_booking(self, db: Session, booking_id: int) -> Optional[models.Booking]:
        return db.get(models.Booking, booking_id)

    def get_booking_for_update(self, db: Session, booking_id: int) -> models.Booking:
        db_booking = db.get(models.Booking, booking_id, with_for_update=True, populate_existing=True)
        if db_booking is None:
            raise ReferentialError("Booking not found", {"booking_id": "not found"})
        return db_booking

    def get_booking_by_transaction(
        self, db: Session, transaction_id: str, for_update: bool = False
    ) -> Optional[models.Booking]:
        stmt = select(models.Booking).where(models.Booking.transaction_id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return db.execute(stmt).scalars().first()

    def list_provider_bookings(
        self,
        db: Session,
        provider_id: int,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        include_cancelled: bool = False,
        skip: int = 0,
        limit: int = 100,
    ) -> List[models.Booking]:
        stmt = (
            select(models.Booking)
            .options(selectinload(models.Booking.addon_lines))
            .where(models.Booking.provider_id == provider_id)
        )
        if window_start is not None:
            stmt = stmt.where(models.Booking.end_time > window_start)
        if window_end is not None:
            stmt = stmt.where(models.Booking.start_time < window_end)
        if not include_cancelled:
            stmt = stmt.where(models.Booking.status != BookingStatus.CANCELLED)
        stmt = stmt.order_by(models.Booking.start_time.asc()).offset(skip).limit(limit)
        return list(db.execute(stmt).scalars().all())

    # ─── creation ────────────────────────────────────────────────────────────

    def _load_references(self, db: Session, request: schemas.BookingCreate) -> Dict[str, Any]:
        provider = db.get(models.Provider, request.provider_id)
        if provider is None:
            raise ReferentialError("Provider not found", {"provider_id": "not found"})

        service = db.execute(
            select(models.Service).where(
                models.Service.id == request.service_id,
                models.Service.provider_id == provider.id,
            )
        ).scalars().first()
        if service is None:
            raise ReferentialError(
                "Service not found for this provider", {"service_id": "not found"}
            )

        addon_ids = list(dict.fromkeys(request.addon_ids or []))
        addons: List[models.ServiceAddon] = []
        if addon_ids:
            addons = list(
                db.execute(
                    select(models.ServiceAddon)
                    .where(
                        models.ServiceAddon.id.in_(addon_ids),
                        models.ServiceAddon.provider_id == provider.id,
                        models.ServiceAddon.is_active.is_(True),
                    )
                    .order_by(models.ServiceAddon.id)
                ).scalars().all()
            )
            missing = sorted(set(addon_ids) - {a.id for a in addons})
            if missing:
                raise ReferentialError(
                    "Add-on not available for this provider",
                    {"addon_ids": ",".join(str(m) for m in missing)},
                )

        if (request.client_id is None) == (request.guest_contact is None):
            raise ValidationError(
                "Provide exactly one of client_id or guest_contact",
                {"client_id": "client_id xor guest_contact"},
            )
        client = None
        if request.client_id is not None:
            client = db.get(models.Client, request.client_id)
            if client is None:
                raise ReferentialError("Client not found", {"client_id": "not found"})

        return {"provider": provider, "service": service, "addons": addons, "client": client}

    def create_booking(
        self,
        db: Session,
        request: schemas.BookingCreate,
        kind: BookingKind,
        fee_config: Optional[FeeConfig] = None,
        manual_amounts: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[str] = None,
    ) -> models.Booking:
        """Write a booking inside the caller's transaction (no commit).

        Every reference is resolved and every amount computed before the
        calendar is locked, so invalid input never touches the lock.
        """
        refs = self._load_references(db, request)
        provider: models.Provider = refs["provider"]
        service: models.Service = refs["service"]
        addons: List[models.ServiceAddon] = refs["addons"]

        if kind is BookingKind.INTERNAL and not provider.is_zero_fee:
            raise ValidationError(
                "Provider takes payment at checkout; book through the payment flow",
                {"provider_id": "not a zero-fee account"},
            )

        if not service.duration_minutes or service.duration_minutes <= 0:
            raise CommercialFieldsError(
                "Service has no duration", {"service_id": "duration missing"}
            )
        start = request.start_time
        end = start + timedelta(minutes=int(service.duration_minutes))

        addon_subtotal = sum(
            (to_money(a.price, f"addon:{a.id}") for a in addons), Decimal("0.00")
        )
        if kind is not BookingKind.MANUAL and fee_config is None:
            fee_config = fee_config_from_settings(settings)
        policy = policy_for(kind, fee_config=fee_config, manual_amounts=manual_amounts)
        fields = build_commercial_fields(policy, service.price, addon_subtotal)

        slot_guard.assert_slot_available(db, provider.id, start, end)

        guest = request.guest_contact
        db_booking = models.Booking(
            transaction_id=transaction_id,
            kind=kind,
            provider_id=provider.id,
            service_id=service.id,
            client_id=request.client_id,
            guest_name=guest.name if guest else None,
            guest_email=str(guest.email) if guest else None,
            guest_phone=guest.phone if guest else None,
            start_time=start,
            end_time=end,
            service_price=fields.service_price,
            addon_total=Decimal("0.00"),
            platform_fee=fields.platform_fee,
            provider_payout=fields.provider_payout,
            price=fields.price,
            status=policy.initial_status,
            payment_status=policy.payment_status,
            notes=request.notes,
        )
        db.add(db_booking)
        db.flush()

        for addon in addons:
            db.add(
                models.BookingAddon(
                    booking_id=db_booking.id,
                    addon_id=addon.id,
                    price=to_money(addon.price, f"addon:{addon.id}"),
                )
            )
        recompute_addon_total(db, db_booking)

        metrics.incr("booking.created", tags={"kind": kind.value})
        logger.info(
            "booking created id=%s kind=%s provider=%s window=[%s, %s) price=%s",
            db_booking.id,
            kind.value,
            provider.id,
            start.isoformat(),
            end.isoformat(),
            db_booking.price,
        )
        return db_booking

    def reserve(
        self,
        db: Session,
        request: schemas.BookingCreate,
        kind: BookingKind,
        fee_config: Optional[FeeConfig] = None,
        manual_amounts: Optional[Dict[str, Any]] = None,
    ) -> models.Booking:
        """Create and commit a booking under the advisory and row locks."""
        with slot_advisory_lock(request.provider_id, request.start_time):
            with booking_transaction(db):
                db_booking = self.create_booking(
                    db, request, kind, fee_config=fee_config, manual_amounts=manual_amounts
                )
                self.load_view(db, db_booking)
        return db_booking

    def load_view(self, db: Session, db_booking: models.Booking) -> models.Booking:
        """Reload columns and add-on lines inside the open transaction.

        The session keeps them after commit, so serializing the booking
        needs no further database access.
        """
        db.flush()
        db.expire(db_booking)
        db.refresh(db_booking)
        list(db_booking.addon_lines)
        return db_booking

    # ─── lifecycle ───────────────────────────────────────────────────────────

    def transition_status(
        self,
        db: Session,
        db_booking: models.Booking,
        new_status: BookingStatus,
        actor: TransitionActor = TransitionActor.API,
        now: Optional[datetime] = None,
    ) -> models.Booking:
        current = BookingStatus(db_booking.status)
        if not can_transition(current, new_status, actor):
            raise InvalidTransitionError(
                f"Cannot move booking from {current.value} to {new_status.value}",
                {"status": f"{current.value} -> {new_status.value} not allowed"},
            )
        if new_status is BookingStatus.MISSED and db_booking.start_time > (now or utcnow()):
            raise InvalidTransitionError(
                "Booking has not started yet; it cannot be missed",
                {"status": "missed only after start_time"},
            )
        db_booking.status = new_status
        db.flush()
        return db_booking

    def update_status(
        self, db: Session, booking_id: int, new_status: BookingStatus
    ) -> models.Booking:
        with booking_transaction(db):
            db_booking = self.get_booking_for_update(db, booking_id)
            self.transition_status(db, db_booking, new_status, TransitionActor.API)
            self.load_view(db, db_booking)
        return db_booking

    def sweep_missed_bookings(
        self, db: Session, now: Optional[datetime] = None, grace_minutes: Optional[int] = None
    ) -> List[int]:
        """Move confirmed bookings that started too long ago to ``missed``.

        Runs inside the caller's transaction; returns the swept ids.
        """
        now = now or utcnow()
        grace = settings.MISSED_GRACE_MINUTES if grace_minutes is None else grace_minutes
        cutoff = now - timedelta(minutes=grace)
        overdue = db.execute(
            select(models.Booking)
            .where(
                models.Booking.status == BookingStatus.CONFIRMED,
                models.Booking.start_time < cutoff,
            )
            .order_by(models.Booking.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        swept: List[int] = []
        for db_booking in overdue:
            self.transition_status(db, db_booking, BookingStatus.MISSED, TransitionActor.SWEEPER, now=now)
            swept.append(db_booking.id)
        if swept:
            metrics.incr("booking.missed", value=len(swept))
            logger.info("missed sweep cutoff=%s swept=%s", cutoff.isoformat(), swept)
        return swept

    # ─── add-on lines ────────────────────────────────────────────────────────

    def _reprice(self, db_booking: models.Booking) -> None:
        # Internal bookings carry the full price; keep it in step with add-ons
        if BookingKind(db_booking.kind) is BookingKind.INTERNAL:
            full = (Decimal(str(db_booking.service_price)) + Decimal(str(db_booking.addon_total))).quantize(Decimal("0.01"))
            db_booking.price = full
            db_booking.provider_payout = full

    def add_addon_line(self, db: Session, db_booking: models.Booking, addon_id: int) -> models.BookingAddon:
        _ensure_open(db_booking)
        addon = db.execute(
            select(models.ServiceAddon).where(
                models.ServiceAddon.id == addon_id,
                models.ServiceAddon.provider_id == db_booking.provider_id,
                models.ServiceAddon.is_active.is_(True),
            )
        ).scalars().first()
        if addon is None:
            raise ReferentialError("Add-on not available for this provider", {"addon_id": "not found"})

        line = db.execute(
            select(models.BookingAddon).where(
                models.BookingAddon.booking_id == db_booking.id,
                models.BookingAddon.addon_id == addon_id,
            )
        ).scalars().first()
        if line is None:
            line = models.BookingAddon(
                booking_id=db_booking.id,
                addon_id=addon.id,
                price=to_money(addon.price, f"addon:{addon.id}"),
            )
            db.add(line)
        recompute_addon_total(db, db_booking)
        self._reprice(db_booking)
        return line

    def _get_line(self, db: Session, db_booking: models.Booking, line_id: int) -> models.BookingAddon:
        line = db.get(models.BookingAddon, line_id)
        if line is None or line.booking_id != db_booking.id:
            raise ReferentialError("Add-on line not found", {"line_id": "not found"})
        return line

    def remove_addon_line(self, db: Session, db_booking: models.Booking, line_id: int) -> None:
        _ensure_open(db_booking)
        line = self._get_line(db, db_booking, line_id)
        db.delete(line)
        recompute_addon_total(db, db_booking)
        self._reprice(db_booking)

    def change_addon_line_price(
        self, db: Session, db_booking: models.Booking, line_id: int, price: Any
    ) -> models.BookingAddon:
        _ensure_open(db_booking)
        line = self._get_line(db, db_booking, line_id)
        line.price = to_money(price, "price")
        recompute_addon_total(db, db_booking)
        self._reprice(db_booking)
        return line


booking = CRUDBooking()
