#!/usr/bin/env python3
"""Periodic runner for the reservation hold sweeper."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time

from dotenv import load_dotenv

from rental_management.db.engine import build_engine, build_sessionmaker
from rental_management.services.hold_sweeper import sweep_expired_holds


DEFAULT_INTERVAL_SECONDS = 300

LOGGER = logging.getLogger("rental_management.sweeper.runner")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Expire reservation holds whose window has lapsed.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_DB_URL env var.",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=DEFAULT_INTERVAL_SECONDS,
        help="Seconds between sweeps.",
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
    return parser


def main() -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = _build_parser().parse_args()

    db_url = (args.db_url or os.environ.get("RENTAL_DB_URL", "")).strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    session_factory = build_sessionmaker(build_engine(db_url))
    interval = max(1, int(args.interval))

    while True:
        result = sweep_expired_holds(session_factory)
        if args.once:
            return 0 if result.ok else 1
        if not result.ok:
            LOGGER.warning("Sweep failed, next attempt in %ss: %s", interval, result.error)
        try:
            time.sleep(interval)
        except KeyboardInterrupt:
            LOGGER.info("Sweeper stopped")
            return 0


if __name__ == "__main__":
    sys.exit(main())
