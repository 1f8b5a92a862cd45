#!/usr/bin/env python3
"""
Outbox worker: publishes undelivered outbox_events to Redis channels.

Each row goes to channel ``outbox:<topic>`` (booking.confirmed,
booking.refunded, payment.analytics). Failed publishes are retried with
exponential backoff via ``due_at``.

Environment:
  - SQLALCHEMY_DATABASE_URL (from app config)
  - REDIS_URL (same as the API's Redis)
  - OUTBOX_POLL_INTERVAL_MS (default 1000)
  - OUTBOX_MAX_BATCH (default 200)

Delivery is at-least-once; consumers dedupe on the payload's booking_id/topic.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "backend")))

from redis import asyncio as aioredis  # noqa: E402
from redis.exceptions import RedisError  # noqa: E402
from sqlalchemy import func, select  # noqa: E402

from booking_core.core.config import redis_enabled, settings  # noqa: E402
from booking_core.core.observability import setup_logging  # noqa: E402
from booking_core.database import get_db_session  # noqa: E402
from booking_core.models import OutboxEvent  # noqa: E402
from booking_core.utils.metrics import incr as metrics_incr  # noqa: E402
from booking_core.utils.outbox import due_events, mark_delivered, mark_failed  # noqa: E402

logger = logging.getLogger("outbox_worker")


def _get_redis():
    if not redis_enabled():
        return None
    return aioredis.from_url(
        settings.REDIS_URL,
        health_check_interval=30,
        retry_on_timeout=True,
        socket_keepalive=True,
        socket_timeout=5,
    )


async def publish(redis, channel: str, payload: dict[str, Any]) -> None:
    data = json.dumps(payload, separators=(",", ":"))
    await redis.publish(channel, data)


async def run_once(redis, max_batch: int = 200) -> int:
    delivered = 0
    with get_db_session() as db:
        for row in due_events(db, limit=max_batch):
            try:
                payload = json.loads(row.payload_json)
            except ValueError:
                payload = {"_error": "invalid-payload"}
            try:
                await publish(redis, f"outbox:{row.topic}", payload)
            except RedisError as exc:
                mark_failed(db, row, f"publish_failed: {exc}")
                logger.warning("outbox_attempt_failed id=%s topic=%s attempts=%s", row.id, row.topic, row.attempt_count)
                metrics_incr("outbox.attempt_failed_total", tags={"topic": row.topic})
                continue
            mark_delivered(db, row)
            logger.info("outbox_delivered id=%s topic=%s", row.id, row.topic)
            metrics_incr("outbox.delivered_total", tags={"topic": row.topic})
            delivered += 1
    return delivered


def _log_lag() -> None:
    with get_db_session() as db:
        cnt, oldest = db.execute(
            select(func.count(OutboxEvent.id), func.min(OutboxEvent.created_at)).where(
                OutboxEvent.delivered_at.is_(None)
            )
        ).one()
    # Lightweight log line; ops can grep for 'outbox_lag'
    logger.info("outbox_lag count=%s oldest=%s", int(cnt or 0), oldest)


async def main() -> None:
    setup_logging()
    redis = _get_redis()
    if redis is None:
        logger.warning("REDIS_URL disabled; outbox worker has nowhere to deliver")
        return
    interval_ms = int(os.getenv("OUTBOX_POLL_INTERVAL_MS") or 1000)
    max_batch = int(os.getenv("OUTBOX_MAX_BATCH") or 200)
    last_lag_log = 0.0
    try:
        while True:
            try:
                await run_once(redis, max_batch=max_batch)
            except Exception:
                # Log and retry on the next poll
                logger.exception("outbox batch failed")
            now = asyncio.get_running_loop().time()
            if now - last_lag_log >= 10.0:
                _log_lag()
                last_lag_log = now
            await asyncio.sleep(interval_ms / 1000.0)
    finally:
        await redis.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
