from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from rental_management.db.engine import session_scope
from rental_management.models.rental_models import CronRun, Reservation
from rental_management.services.reservation_state import EXPIRED, HOLD, utc_now


SWEEPER_LOGGER = logging.getLogger("rental_management.sweeper")

CRON_NAME = "cleanup_reservation_holds"
RUN_SUCCESS = "success"
RUN_FAILED = "failed"


@dataclass
class SweepResult:
    expired_count: int
    status: str
    started_at: datetime
    finished_at: datetime
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == RUN_SUCCESS


def _expire_stale_holds(session_factory: sessionmaker, now: datetime, started_at: datetime) -> int:
    with session_scope(session_factory) as db:
        result = db.execute(
            update(Reservation)
            .where(Reservation.Status == HOLD)
            .where(Reservation.ExpiresAt.is_not(None))
            .where(Reservation.ExpiresAt < now)
            .values(Status=EXPIRED, ExpiredAt=now, UpdatedDate=now)
            .execution_options(synchronize_session=False)
        )
        expired = int(result.rowcount or 0)
        db.add(
            CronRun(
                CronName=CRON_NAME,
                Status=RUN_SUCCESS,
                RowsAffected=expired,
                StartedAt=started_at,
                FinishedAt=now,
            )
        )
    return expired


def _record_failed_run(session_factory: sessionmaker, started_at: datetime, finished_at: datetime, error: str) -> None:
    try:
        with session_scope(session_factory) as db:
            db.add(
                CronRun(
                    CronName=CRON_NAME,
                    Status=RUN_FAILED,
                    RowsAffected=0,
                    ErrorMessage=error[:2000],
                    StartedAt=started_at,
                    FinishedAt=finished_at,
                )
            )
    except SQLAlchemyError:
        SWEEPER_LOGGER.exception("Could not record failed %s run", CRON_NAME)


def sweep_expired_holds(session_factory: sessionmaker, clock: Callable[[], datetime] = utc_now) -> SweepResult:
    """Expire every hold whose window lapsed, in one bulk transaction.

    Never raises for database failures: a failed run is logged, written to
    CronRuns and reported in the result so the next scheduled run still fires.
    """
    started_at = clock()
    try:
        expired = _expire_stale_holds(session_factory, started_at, started_at)
    except SQLAlchemyError as exc:
        finished_at = clock()
        message = f"{type(exc).__name__}: {exc}"
        SWEEPER_LOGGER.exception("%s failed", CRON_NAME)
        _record_failed_run(session_factory, started_at, finished_at, message)
        return SweepResult(0, RUN_FAILED, started_at, finished_at, error=message)

    SWEEPER_LOGGER.info("%s expired=%s", CRON_NAME, expired)
    return SweepResult(expired, RUN_SUCCESS, started_at, started_at)
