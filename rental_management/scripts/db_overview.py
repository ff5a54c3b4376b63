#!/usr/bin/env python3
"""Database overview and integrity checks for the reservation ledger."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from dotenv import load_dotenv
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

from rental_management.services.reservation_state import utc_now


EXPECTED_TABLES = [
    "UnitTypes",
    "Reservations",
    "Assets",
    "ReservationAssignments",
    "AuditLogs",
    "CronRuns",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "UnitTypes": ["UnitTypeID", "ProviderID", "Name", "QuantityTotal", "DeletedAt"],
    "Reservations": [
        "ReservationID",
        "ProviderID",
        "UnitTypeID",
        "Quantity",
        "StartDate",
        "EndDate",
        "Status",
        "ExpiresAt",
        "ExpiredAt",
        "IdempotencyKey",
        "PaymentReference",
        "PaidAt",
        "CreatedDate",
        "UpdatedDate",
    ],
    "Assets": ["AssetID", "UnitTypeID", "AssetTag", "Status", "ConditionScore"],
    "ReservationAssignments": ["AssignmentID", "ReservationID", "AssetID", "AssignedAt"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
    "CronRuns": ["CronRunID", "CronName", "Status", "RowsAffected", "ErrorMessage", "StartedAt", "FinishedAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str, params: dict | None = None) -> CheckResult:
    count = int(_scalar(engine, sql, params) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if _table_exists(engine, "Reservations") and _table_exists(engine, "UnitTypes"):
        # Sum of every capacity-consuming reservation overlapping each one, itself included.
        checks.append(
            _count_check(
                engine,
                "reservations:overbooked_windows",
                """
                SELECT COUNT(*)
                FROM Reservations r
                JOIN UnitTypes u ON u.UnitTypeID = r.UnitTypeID
                WHERE r.Status IN ('hold', 'confirmed', 'active')
                  AND (
                    SELECT COALESCE(SUM(o.Quantity), 0)
                    FROM Reservations o
                    WHERE o.UnitTypeID = r.UnitTypeID
                      AND o.Status IN ('hold', 'confirmed', 'active')
                      AND o.StartDate < r.EndDate
                      AND o.EndDate > r.StartDate
                  ) > u.QuantityTotal
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "reservations:stale_holds",
                "SELECT COUNT(*) FROM Reservations WHERE Status = 'hold' AND ExpiresAt < :now",
                {"now": utc_now()},
            )
        )
        checks.append(
            _count_check(
                engine,
                "reservations:inverted_window",
                "SELECT COUNT(*) FROM Reservations WHERE StartDate >= EndDate",
            )
        )

    if _table_exists(engine, "ReservationAssignments") and _table_exists(engine, "Reservations"):
        checks.append(
            _count_check(
                engine,
                "assignments:overlapping_live_bookings",
                """
                SELECT COUNT(*)
                FROM ReservationAssignments a
                JOIN Reservations ra ON ra.ReservationID = a.ReservationID
                JOIN ReservationAssignments b
                  ON b.AssetID = a.AssetID AND b.ReservationID > a.ReservationID
                JOIN Reservations rb ON rb.ReservationID = b.ReservationID
                WHERE ra.Status IN ('confirmed', 'active')
                  AND rb.Status IN ('confirmed', 'active')
                  AND ra.StartDate < rb.EndDate
                  AND ra.EndDate > rb.StartDate
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "assignments:orphan_assetid",
                """
                SELECT COUNT(*)
                FROM ReservationAssignments a
                LEFT JOIN Assets s ON s.AssetID = a.AssetID
                WHERE s.AssetID IS NULL
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_status_summary(engine: Engine) -> None:
    _print_section("Reservations by Status")
    if not _table_exists(engine, "Reservations"):
        print("Reservations: missing")
        return
    for status, count in _rows(engine, "SELECT Status, COUNT(*) FROM Reservations GROUP BY Status ORDER BY Status"):
        print(f"{status}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "CronRuns"):
        rows = _rows(
            engine,
            """
            SELECT CronRunID, CronName, Status, RowsAffected, StartedAt, ErrorMessage
            FROM CronRuns
            ORDER BY CronRunID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("CronRuns (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if _table_exists(engine, "AuditLogs"):
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, EntityID, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Reservation ledger DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", _run_integrity_checks(engine))
    _print_row_counts(engine)
    _print_status_summary(engine)
    _print_samples(engine, args.samples)
    return 0


if __name__ == "__main__":
    sys.exit(main())
