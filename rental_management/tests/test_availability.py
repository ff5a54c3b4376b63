import unittest
from datetime import datetime

from rental_management.tests.ledger_support import FixedClock, LedgerFixture, hold_payload

from rental_management.services.availability_service import windows_overlap
from rental_management.services.errors import NotFoundError, ValidationError
from rental_management.services.reservation_service import ReservationService, parse_hold_request


JAN_1 = datetime(2026, 1, 1)
JAN_4 = datetime(2026, 1, 4)
JAN_5 = datetime(2026, 1, 5)
JAN_10 = datetime(2026, 1, 10)


class OverlapTests(unittest.TestCase):
    def test_back_to_back_windows_do_not_overlap(self):
        self.assertFalse(windows_overlap(JAN_1, JAN_5, JAN_5, JAN_10))
        self.assertFalse(windows_overlap(JAN_5, JAN_10, JAN_1, JAN_5))

    def test_intersecting_windows_overlap(self):
        self.assertTrue(windows_overlap(JAN_1, JAN_5, JAN_4, JAN_10))
        self.assertTrue(windows_overlap(JAN_4, JAN_10, JAN_1, JAN_5))

    def test_contained_window_overlaps(self):
        self.assertTrue(windows_overlap(JAN_1, JAN_10, JAN_4, JAN_5))


class AvailabilityOracleTests(unittest.TestCase):
    def setUp(self):
        self.ledger = LedgerFixture()
        self.clock = FixedClock()
        self.service = ReservationService(self.ledger.session_factory, clock=self.clock)
        self.unit_type_id = self.ledger.add_unit_type(quantity_total=2)

    def tearDown(self):
        self.ledger.close()

    def _hold(self, start, end, quantity=1):
        request = parse_hold_request(hold_payload(self.unit_type_id, start, end, quantity=quantity))
        return self.service.create_hold(request)

    def test_empty_ledger_reports_full_capacity(self):
        result = self.service.get_availability(self.unit_type_id, JAN_1, JAN_5, quantity=2)
        self.assertTrue(result.is_available)
        self.assertEqual(result.available, 2)
        self.assertEqual(result.committed, 0)

    def test_back_to_back_hold_does_not_consume_capacity(self):
        self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z", quantity=2)

        self.assertFalse(self.service.check_availability(self.unit_type_id, JAN_4, JAN_10))
        self.assertTrue(self.service.check_availability(self.unit_type_id, JAN_5, JAN_10, quantity=2))

    def test_overlapping_quantities_are_summed(self):
        self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z")

        result = self.service.get_availability(self.unit_type_id, JAN_4, JAN_10, quantity=2)
        self.assertEqual(result.committed, 1)
        self.assertEqual(result.available, 1)
        self.assertFalse(result.is_available)
        self.assertEqual(result.to_dict()["requestedQuantity"], 2)

    def test_excluded_reservation_is_not_counted(self):
        hold = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z", quantity=2)

        self.assertFalse(self.service.check_availability(self.unit_type_id, JAN_1, JAN_5))
        self.assertTrue(
            self.service.check_availability(
                self.unit_type_id, JAN_1, JAN_5, exclude_reservation_id=hold.reservation_id, quantity=2
            )
        )

    def test_cancelled_reservation_releases_capacity(self):
        hold = self._hold("2026-01-01T00:00:00Z", "2026-01-05T00:00:00Z", quantity=2)
        self.service.cancel(hold.reservation_id, reason="changed plans")

        self.assertTrue(self.service.check_availability(self.unit_type_id, JAN_1, JAN_5, quantity=2))

    def test_offset_timestamps_are_compared_in_utc(self):
        # 2026-01-05T02:00+02:00 is 2026-01-05T00:00Z, so the windows only touch.
        self._hold("2026-01-01T02:00:00+02:00", "2026-01-05T02:00:00+02:00", quantity=2)

        self.assertTrue(self.service.check_availability(self.unit_type_id, JAN_5, JAN_10, quantity=2))

    def test_soft_deleted_unit_type_is_not_found(self):
        self.ledger.soft_delete_unit_type(self.unit_type_id)

        with self.assertRaises(NotFoundError):
            self.service.get_availability(self.unit_type_id, JAN_1, JAN_5)

    def test_unknown_unit_type_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.service.get_availability("missing-unit-type", JAN_1, JAN_5)

    def test_inverted_window_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.service.get_availability(self.unit_type_id, JAN_5, JAN_1)


if __name__ == "__main__":
    unittest.main()
