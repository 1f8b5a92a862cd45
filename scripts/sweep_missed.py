#!/usr/bin/env python3
"""
Mark confirmed bookings whose start passed more than MISSED_GRACE_MINUTES ago
as missed. Meant for cron (every few minutes); safe to overlap with itself.

Usage:
  python scripts/sweep_missed.py [--grace-minutes N] [--dry-run]
"""
from __future__ import annotations

import argparse
import logging
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "backend")))

from booking_core.core.config import settings  # noqa: E402
from booking_core.core.observability import setup_logging  # noqa: E402
from booking_core.crud import booking, booking_transaction  # noqa: E402
from booking_core.database import get_db_session  # noqa: E402
from booking_core.utils.status_logger import register_status_listeners  # noqa: E402

logger = logging.getLogger("sweep_missed")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--grace-minutes", type=int, default=settings.MISSED_GRACE_MINUTES)
    parser.add_argument("--dry-run", action="store_true", help="report without committing")
    args = parser.parse_args(argv)

    setup_logging()
    register_status_listeners()
    with get_db_session() as db:
        if args.dry_run:
            swept = booking.sweep_missed_bookings(db, grace_minutes=args.grace_minutes)
            db.rollback()
        else:
            with booking_transaction(db):
                swept = booking.sweep_missed_bookings(db, grace_minutes=args.grace_minutes)
    logger.info("sweep_missed done count=%s dry_run=%s ids=%s", len(swept), args.dry_run, swept)
    return 0


if __name__ == "__main__":
    sys.exit(main())
