import unittest

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from rental_management.tests.ledger_support import FixedClock, LedgerFixture, hold_payload

from rental_management.db.engine import session_scope
from rental_management.models.rental_models import CronRun
from rental_management.services.errors import ConflictError, StateError
from rental_management.services.hold_sweeper import CRON_NAME, RUN_FAILED, RUN_SUCCESS, sweep_expired_holds
from rental_management.services.reservation_service import ReservationService, parse_hold_request


class _UnreachableLedger:
    def __call__(self):
        raise OperationalError("UPDATE Reservations", {}, Exception("connection refused"))


class _FailFirstSessionFactory:
    """Fails the sweep's own session, then lets the failure record through."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls == 1:
            raise OperationalError("UPDATE Reservations", {}, Exception("deadlock victim"))
        return self._session_factory()


class HoldSweeperTests(unittest.TestCase):
    def setUp(self):
        self.ledger = LedgerFixture()
        self.clock = FixedClock()
        self.service = ReservationService(self.ledger.session_factory, clock=self.clock)
        self.unit_type_id = self.ledger.add_unit_type(quantity_total=2)

    def tearDown(self):
        self.ledger.close()

    def _request(self, quantity=2):
        return parse_hold_request(
            hold_payload(self.unit_type_id, "2026-03-01T00:00:00Z", "2026-03-05T00:00:00Z", quantity=quantity)
        )

    def _cron_runs(self):
        with session_scope(self.ledger.session_factory) as db:
            return db.execute(select(CronRun).order_by(CronRun.CronRunID)).scalars().all()

    def test_sweep_releases_capacity_of_lapsed_hold(self):
        self.service.create_hold(self._request())
        with self.assertRaises(ConflictError):
            self.service.create_hold(self._request())

        self.clock.advance(minutes=16)
        result = self.service.sweep()

        self.assertTrue(result.ok)
        self.assertEqual(result.expired_count, 1)
        retry = self.service.create_hold(self._request())
        self.assertEqual(retry.status, "hold")

    def test_lapsed_hold_still_counts_until_swept(self):
        self.service.create_hold(self._request())
        self.clock.advance(minutes=16)

        with self.assertRaises(ConflictError):
            self.service.create_hold(self._request())

    def test_confirm_after_sweep_reports_expired_hold(self):
        hold = self.service.create_hold(self._request(quantity=1))
        self.clock.advance(minutes=16)
        self.service.sweep()

        stored = self.ledger.reservation(hold.reservation_id)
        self.assertEqual(stored.Status, "expired")
        self.assertEqual(stored.ExpiredAt, self.clock.now)
        with self.assertRaises(StateError) as ctx:
            self.service.confirm(hold.reservation_id)
        self.assertEqual(ctx.exception.code, "hold_expired")
        self.assertIn("start the booking again", ctx.exception.message)

    def test_confirm_before_sweep_reports_hold_expired(self):
        hold = self.service.create_hold(self._request(quantity=1))
        self.clock.advance(minutes=16)

        with self.assertRaises(StateError) as ctx:
            self.service.confirm(hold.reservation_id)
        self.assertEqual(ctx.exception.code, "hold_expired")
        self.assertIn("start the booking again", ctx.exception.message)

    def test_sweep_leaves_live_holds_and_confirmed_rows(self):
        confirmed = self.service.create_hold(self._request(quantity=1))
        self.service.confirm(confirmed.reservation_id, payment_reference="pay-1")
        self.clock.advance(minutes=10)
        fresh = self.service.create_hold(self._request(quantity=1))

        self.clock.advance(minutes=6)
        result = self.service.sweep()

        self.assertEqual(result.expired_count, 0)
        self.assertEqual(self.ledger.reservation(confirmed.reservation_id).Status, "confirmed")
        self.assertEqual(self.ledger.reservation(fresh.reservation_id).Status, "hold")

    def test_repeated_sweep_is_a_no_op(self):
        self.service.create_hold(self._request())
        self.clock.advance(minutes=16)

        self.assertEqual(self.service.sweep().expired_count, 1)
        self.assertEqual(self.service.sweep().expired_count, 0)

    def test_each_run_is_recorded(self):
        self.service.create_hold(self._request())
        self.clock.advance(minutes=16)
        self.service.sweep()

        runs = self._cron_runs()
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0].CronName, CRON_NAME)
        self.assertEqual(runs[0].Status, RUN_SUCCESS)
        self.assertEqual(runs[0].RowsAffected, 1)

    def test_failed_sweep_returns_failure_without_raising(self):
        with self.assertLogs("rental_management.sweeper", level="ERROR"):
            result = sweep_expired_holds(_UnreachableLedger(), clock=self.clock)

        self.assertFalse(result.ok)
        self.assertEqual(result.status, RUN_FAILED)
        self.assertEqual(result.expired_count, 0)
        self.assertIn("connection refused", result.error)

    def test_failed_sweep_is_recorded_and_next_run_recovers(self):
        hold = self.service.create_hold(self._request())
        self.clock.advance(minutes=16)

        with self.assertLogs("rental_management.sweeper", level="ERROR"):
            failed = sweep_expired_holds(_FailFirstSessionFactory(self.ledger.session_factory), clock=self.clock)
        self.assertFalse(failed.ok)
        self.assertEqual(self.ledger.reservation(hold.reservation_id).Status, "hold")

        recovered = self.service.sweep()
        self.assertTrue(recovered.ok)
        self.assertEqual(recovered.expired_count, 1)

        runs = self._cron_runs()
        self.assertEqual([run.Status for run in runs], [RUN_FAILED, RUN_SUCCESS])
        self.assertIn("deadlock victim", runs[0].ErrorMessage)


if __name__ == "__main__":
    unittest.main()
