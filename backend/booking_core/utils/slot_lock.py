"""Optional per-slot advisory lock backed by Redis.

Two requests racing for the same provider and start time queue up here
before they ever open a database transaction, which keeps row-lock waits
short under bursts. It is only an optimisation: when Redis is disabled,
unreachable, or the lock can't be had within the blocking timeout, the
caller carries on and the row-lock guard still decides admission.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import redis

from ..core.config import redis_enabled, settings

logger = logging.getLogger(__name__)

SLOT_LOCK_KEY_PREFIX = "slot-lock"

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    global _redis_client
    if not redis_enabled():
        return None
    if _redis_client is None:
        # Conservative socket timeouts so a slow Redis never stalls bookings
        conn_to = float(os.getenv("REDIS_CONNECT_TIMEOUT", "0.5"))
        read_to = float(os.getenv("REDIS_SOCKET_TIMEOUT", "0.5"))
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=conn_to,
            socket_timeout=read_to,
        )
    return _redis_client


def reset_redis_client() -> None:
    """Drop the cached client (settings changed, or on shutdown)."""
    global _redis_client
    if _redis_client is not None:
        _redis_client.close()
    _redis_client = None


def slot_lock_key(provider_id: int, start: datetime) -> str:
    return f"{SLOT_LOCK_KEY_PREFIX}:{int(provider_id)}:{start:%Y%m%dT%H%M}"


def _try_acquire(client: redis.Redis, key: str):
    try:
        lock = client.lock(
            key,
            timeout=settings.SLOT_LOCK_TTL_SECONDS,
            blocking_timeout=settings.SLOT_LOCK_BLOCKING_SECONDS,
        )
        if lock.acquire():
            return lock
        logger.info("slot_lock_busy key=%s; continuing on row locks", key)
    except redis.RedisError as exc:
        logger.warning("slot_lock_unavailable key=%s err=%s", key, exc)
    return None


@contextmanager
def slot_advisory_lock(provider_id: int, start: datetime) -> Iterator[bool]:
    """Hold the advisory lock for ``provider_id``/``start`` if obtainable.

    Yields True when the lock is held. Never raises on Redis trouble.
    """
    client = get_redis_client()
    key = slot_lock_key(provider_id, start)
    lock = _try_acquire(client, key) if client is not None else None
    try:
        yield lock is not None
    finally:
        if lock is not None:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # TTL expired while the transaction was still running
                logger.info("slot_lock_expired key=%s", key)
            except redis.RedisError as exc:
                logger.warning("slot_lock_release_failed key=%s err=%s", key, exc)
