from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String, Text

from ..database import Base
from .base import utcnow


class OutboxEvent(Base):
    """Best-effort side-effect queue drained by scripts/workers/outbox_worker.py."""

    __tablename__ = "outbox_events"
    __table_args__ = (
        # Fast scan for undelivered
        Index("ix_outbox_undelivered_created", "delivered_at", "created_at"),
    )

    id            = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic         = Column(String(255), nullable=False, index=True)
    payload_json  = Column(Text, nullable=False)
    created_at    = Column(DateTime, nullable=False, default=utcnow)
    delivered_at  = Column(DateTime, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error    = Column(Text, nullable=True)
    due_at        = Column(DateTime, nullable=True)
