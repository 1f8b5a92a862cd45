#!/usr/bin/env python3
"""
Re-feed a stored gateway event through the reconciler.

For recovering events the gateway gave up retrying (e.g. during an outage).
Events are applied without signature verification; only feed payloads taken
from our own logs or the gateway dashboard. Replays are idempotent.

Usage:
  python scripts/replay_webhook.py path/to/event.json
  cat event.json | python scripts/replay_webhook.py -
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "backend")))

from booking_core.core.observability import setup_logging  # noqa: E402
from booking_core.database import get_db_session  # noqa: E402
from booking_core.services.reconciler import reconciler  # noqa: E402
from booking_core.utils.errors import BookingError  # noqa: E402
from booking_core.utils.status_logger import register_status_listeners  # noqa: E402

logger = logging.getLogger("replay_webhook")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a stored payment-gateway event")
    parser.add_argument("path", help="JSON file with the raw event, or - for stdin")
    args = parser.parse_args(argv)

    setup_logging()
    register_status_listeners()
    if args.path == "-":
        raw = sys.stdin.buffer.read()
    else:
        with open(args.path, "rb") as fh:
            raw = fh.read()

    with get_db_session() as db:
        try:
            event = reconciler.parse_event(raw)
            result = reconciler.apply(db, event)
        except BookingError as exc:
            logger.error("replay failed: %s %s", exc.message, exc.field_errors)
            return 1
    print(json.dumps(result.to_dict()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
