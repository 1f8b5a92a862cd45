from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import OutboxEvent
from ..models.base import utcnow

logger = logging.getLogger(__name__)

TOPIC_BOOKING_CONFIRMED = "booking.confirmed"
TOPIC_BOOKING_REFUNDED = "booking.refunded"
TOPIC_PAYMENT_ANALYTICS = "payment.analytics"

MAX_RETRY_DELAY_SECONDS = 300


def _json_default(o: Any):
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return str(o)
    if isinstance(o, Enum):
        return o.value
    return str(o)


def enqueue_outbox(db: Session, topic: str, payload: dict[str, Any], due_at: Optional[datetime] = None) -> int:
    """Insert and commit an outbox row for a post-commit side effect.

    Call only after the owning booking transaction has committed. Failures are
    logged and swallowed: notifications must never undo a reservation.
    Returns the inserted id, or 0 when the row could not be written.
    """
    payload_str = json.dumps(payload, default=_json_default, separators=(",", ":"))
    row = OutboxEvent(topic=topic, payload_json=payload_str, due_at=due_at)
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("outbox_enqueue_failed topic=%s err=%s", topic, exc)
        return 0
    logger.info("outbox_enqueue topic=%s id=%s bytes=%s", topic, int(row.id or 0), len(payload_str))
    return int(row.id or 0)


def booking_payload(booking) -> dict[str, Any]:
    return {
        "booking_id": booking.id,
        "provider_id": booking.provider_id,
        "client_id": booking.client_id,
        "guest_email": booking.guest_email,
        "kind": booking.kind,
        "status": booking.status,
        "payment_status": booking.payment_status,
        "start_time": booking.start_time,
        "end_time": booking.end_time,
        "price": booking.price,
    }


def due_events(db: Session, now: Optional[datetime] = None, limit: int = 200) -> list[OutboxEvent]:
    """Undelivered rows whose retry time has come, oldest first."""
    now = now or utcnow()
    stmt = (
        select(OutboxEvent)
        .where(
            OutboxEvent.delivered_at.is_(None),
            or_(OutboxEvent.due_at.is_(None), OutboxEvent.due_at <= now),
        )
        .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def mark_delivered(db: Session, row: OutboxEvent, now: Optional[datetime] = None) -> None:
    row.delivered_at = now or utcnow()
    db.commit()


def retry_delay_seconds(attempt_count: int) -> int:
    # 2, 4, 8 ... capped at five minutes
    return min(2 ** max(attempt_count, 1), MAX_RETRY_DELAY_SECONDS)


def mark_failed(db: Session, row: OutboxEvent, error: str, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    row.attempt_count = int(row.attempt_count or 0) + 1
    row.last_error = error[:1000]
    row.due_at = now + timedelta(seconds=retry_delay_seconds(row.attempt_count))
    db.commit()
