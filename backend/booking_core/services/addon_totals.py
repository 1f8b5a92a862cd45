from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import Booking, BookingAddon

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def sum_addon_lines(db: Session, booking_id: int) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(BookingAddon.price), 0)).where(
            BookingAddon.booking_id == booking_id
        )
    ).scalar_one()
    return Decimal(str(total)).quantize(_CENT)


def recompute_addon_total(db: Session, booking: Booking) -> Decimal:
    """Rebuild ``booking.addon_total`` from the line items currently stored.

    Always a full re-sum, never an adjustment of the previous value, so a
    partially applied change can't leave the subtotal double-counted.
    Pending line changes are flushed first so the sum sees them.
    """
    db.flush()
    total = sum_addon_lines(db, booking.id)
    if booking.addon_total is None or Decimal(str(booking.addon_total)) != total:
        logger.debug(
            "booking id=%s addon_total %s -> %s", booking.id, booking.addon_total, total
        )
    booking.addon_total = total
    db.flush()
    return total
