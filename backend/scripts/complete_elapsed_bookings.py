#!/usr/bin/env python3
"""Timer trigger for the booked -> completed transition.

Run from cron (or any scheduler) every few minutes; each run marks every
booked session whose end time has passed as completed.
"""
import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from advisorbook import config  # noqa: E402
from advisorbook.services.booking_service import build_booking_service  # noqa: E402
from advisorbook.services.errors import PersistenceError  # noqa: E402


def _parse_now(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Mark elapsed advisor sessions as completed.")
    parser.add_argument("--db-path", type=str, default=config.DB_PATH, help="sqlite database file.")
    parser.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="ISO timestamp to treat as the current time (UTC when no offset is given).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    service = build_booking_service(args.db_path, seed=False)
    try:
        completed = service.complete_elapsed_bookings(now=args.now)
    except PersistenceError as exc:
        logging.getLogger("complete_elapsed_bookings").error("Run failed: %s", exc)
        return 1
    print(json.dumps({"completed": completed}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
