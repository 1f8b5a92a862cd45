"""Calendar admission for a provider.

Runs inside the ledger's transaction, before the booking row is inserted.
The provider row is the per-calendar serialization point: on PostgreSQL
``FOR UPDATE`` on it blocks every other admission for the same provider until
commit, including ones racing for a slot that currently has no rows to lock.
On SQLite the engine opens each transaction with ``BEGIN IMMEDIATE`` so
writers are already serialized and ``FOR UPDATE`` compiles away.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Booking, Provider
from ..models.booking_status import BLOCKING_EXCLUDED
from ..utils import metrics
from ..utils.errors import ConflictError, ReferentialError, ValidationError

logger = logging.getLogger(__name__)


def bound_lock_wait(db: Session) -> None:
    if db.get_bind().dialect.name == "postgresql":
        # Scoped to the current transaction; expiry raises 55P03
        db.execute(text(f"SET LOCAL lock_timeout = '{int(settings.DB_LOCK_TIMEOUT_MS)}ms'"))


def lock_provider_calendar(db: Session, provider_id: int) -> int:
    """Take the provider row lock; raises ReferentialError for unknown ids."""
    bound_lock_wait(db)
    locked = db.execute(
        select(Provider.id).where(Provider.id == provider_id).with_for_update()
    ).scalar_one_or_none()
    if locked is None:
        raise ReferentialError("Provider not found", {"provider_id": "not found"})
    return locked


def find_overlapping_ids(
    db: Session,
    provider_id: int,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[int] = None,
) -> list[int]:
    """Ids of blocking bookings whose [start, end) intersects the candidate.

    Each matched row is locked. Touching intervals (one ends exactly when the
    other starts) do not intersect.
    """
    stmt = (
        select(Booking.id)
        .where(
            Booking.provider_id == provider_id,
            Booking.status.notin_(list(BLOCKING_EXCLUDED)),
            Booking.start_time < end,
            Booking.end_time > start,
        )
        .order_by(Booking.id)
        .with_for_update()
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    return list(db.execute(stmt).scalars().all())


def assert_slot_available(
    db: Session,
    provider_id: int,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[int] = None,
) -> None:
    if start is None or end is None or end <= start:
        raise ValidationError(
            "Booking must end after it starts",
            {"end_time": "must be after start_time"},
        )

    lock_provider_calendar(db, provider_id)
    clashes = find_overlapping_ids(db, provider_id, start, end, exclude_booking_id)
    if clashes:
        metrics.incr("booking.slot_conflict", tags={"provider": provider_id})
        logger.info(
            "slot conflict provider=%s window=[%s, %s) clashes=%s",
            provider_id,
            start.isoformat(),
            end.isoformat(),
            clashes,
        )
        raise ConflictError(
            "Requested time overlaps an existing booking",
            {"start_time": "slot unavailable"},
        )
