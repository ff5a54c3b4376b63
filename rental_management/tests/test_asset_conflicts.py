import unittest

from rental_management.tests.ledger_support import FixedClock, LedgerFixture, hold_payload

from rental_management.models.rental_models import ReservationAssignment
from rental_management.services.errors import ConflictError, NotFoundError, ValidationError
import rental_management.services.reservation_service as reservation_module
from rental_management.services.asset_conflict_service import lock_asset
from rental_management.services.reservation_service import ReservationService, parse_hold_request


class AssetConflictTests(unittest.TestCase):
    def setUp(self):
        self.ledger = LedgerFixture()
        self.clock = FixedClock()
        self.service = ReservationService(self.ledger.session_factory, clock=self.clock)
        self.unit_type_id = self.ledger.add_unit_type(quantity_total=3)
        self.asset_a = self.ledger.add_asset(self.unit_type_id, "A", condition_score=90)
        self.asset_b = self.ledger.add_asset(self.unit_type_id, "B", condition_score=70)

    def tearDown(self):
        self.ledger.close()

    def _hold(self, start, end, unit_type_id=None):
        payload = hold_payload(unit_type_id or self.unit_type_id, start, end)
        return self.service.create_hold(parse_hold_request(payload)).reservation_id

    def _candidate_ids(self, reservation_id):
        return [candidate["assetId"] for candidate in self.service.find_candidates(reservation_id)]

    def test_candidates_are_sorted_best_condition_first(self):
        reservation_id = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")

        candidates = self.service.find_candidates(reservation_id)

        self.assertEqual([c["assetId"] for c in candidates], [self.asset_a, self.asset_b])
        self.assertEqual([c["conditionScore"] for c in candidates], [90, 70])

    def test_assigned_asset_is_excluded_only_for_overlapping_windows(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        self.service.assign(r1, self.asset_a)
        self.service.confirm(r1, payment_reference="pay-r1")

        r2 = self._hold("2026-01-03T00:00:00Z", "2026-01-07T00:00:00Z")
        r3 = self._hold("2026-01-10T00:00:00Z", "2026-01-15T00:00:00Z")

        self.assertNotIn(self.asset_a, self._candidate_ids(r2))
        self.assertIn(self.asset_a, self._candidate_ids(r3))

    def test_back_to_back_window_may_reuse_asset(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        self.service.assign(r1, self.asset_a)
        self.service.confirm(r1, payment_reference="pay-r1")

        r2 = self._hold("2026-01-05T00:00:00Z", "2026-01-07T00:00:00Z")

        self.assertIn(self.asset_a, self._candidate_ids(r2))

    def test_own_assignment_does_not_block_itself(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        self.service.assign(r1, self.asset_a)
        self.service.confirm(r1, payment_reference="pay-r1")

        self.assertIn(self.asset_a, self._candidate_ids(r1))

    def test_assigning_overlapping_asset_conflicts(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        self.service.assign(r1, self.asset_a)
        self.service.confirm(r1, payment_reference="pay-r1")
        r2 = self._hold("2026-01-04T00:00:00Z", "2026-01-06T00:00:00Z")

        with self.assertRaises(ConflictError):
            self.service.assign(r2, self.asset_a)
        self.assertIsNone(self.service.get_reservation(r2)["assignment"])

    def test_cancelled_booking_frees_its_asset(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        self.service.assign(r1, self.asset_a)
        self.service.confirm(r1, payment_reference="pay-r1")
        self.service.cancel(r1)

        r2 = self._hold("2026-01-02T00:00:00Z", "2026-01-04T00:00:00Z")

        self.assertIn(self.asset_a, self._candidate_ids(r2))

    def test_rebind_replaces_previous_assignment(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        self.service.assign(r1, self.asset_a)

        rebound = self.service.assign(r1, self.asset_b)

        self.assertEqual(rebound["assignment"]["assetId"], self.asset_b)
        self.assertEqual(self.ledger.count(ReservationAssignment), 1)

    def test_confirm_rejects_hold_whose_asset_was_taken(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        r2 = self._hold("2026-01-02T00:00:00Z", "2026-01-04T00:00:00Z")
        self.service.assign(r1, self.asset_a)
        self.service.assign(r2, self.asset_a)
        self.service.confirm(r1, payment_reference="pay-r1")

        with self.assertRaises(ConflictError):
            self.service.confirm(r2, payment_reference="pay-r2")
        self.assertEqual(self.service.get_reservation(r2)["status"], "hold")

    def test_confirm_locks_assigned_asset_before_overlap_check(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        self.service.assign(r1, self.asset_a)
        locked = []

        def _recording_lock(db, asset_id):
            locked.append(asset_id)
            return lock_asset(db, asset_id)

        original_lock = reservation_module.lock_asset
        reservation_module.lock_asset = _recording_lock
        try:
            self.service.confirm(r1, payment_reference="pay-r1")
        finally:
            reservation_module.lock_asset = original_lock

        self.assertEqual(locked, [self.asset_a])

    def test_confirm_without_assignment_locks_nothing(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")
        locked = []

        original_lock = reservation_module.lock_asset
        reservation_module.lock_asset = lambda db, asset_id: locked.append(asset_id)
        try:
            self.service.confirm(r1)
        finally:
            reservation_module.lock_asset = original_lock

        self.assertEqual(locked, [])

    def test_asset_from_other_unit_type_is_rejected(self):
        other_unit_type = self.ledger.add_unit_type(quantity_total=1, name="Canoe")
        foreign_asset = self.ledger.add_asset(other_unit_type, "C")
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")

        with self.assertRaises(ValidationError):
            self.service.assign(r1, foreign_asset)

    def test_unknown_asset_is_not_found(self):
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")

        with self.assertRaises(NotFoundError):
            self.service.assign(r1, "missing-asset")

    def test_no_candidates_is_reported_as_empty_list(self):
        bare_unit_type = self.ledger.add_unit_type(quantity_total=1, name="Tandem")
        r1 = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z", unit_type_id=bare_unit_type)

        with self.assertLogs("rental_management.reservations", level="WARNING"):
            self.assertEqual(self.service.find_candidates(r1), [])


if __name__ == "__main__":
    unittest.main()
