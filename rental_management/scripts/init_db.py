#!/usr/bin/env python3
"""Create the reservation ledger tables on an empty database."""

from __future__ import annotations

import argparse
import os
import sys

from dotenv import load_dotenv

from rental_management.db.base import Base
from rental_management.db.engine import build_engine
from rental_management.models import rental_models  # noqa: F401


def main() -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Create reservation ledger tables")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_DB_URL env var.",
    )
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    engine = build_engine(db_url)
    Base.metadata.create_all(engine)
    print(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
