import unittest

from support import OTHER_RENTER, OWNER, RENTER, SettlementTestCase, at

from models.settlement_models import GearListing, Reservation, RentalStatus
from services import booking_ledger, rental_service
from services.errors import BOOKING_CONFLICT_MESSAGE, ConflictError, NotFoundError, ValidationError
from services.listing_service import lock_listing


class BookingLedgerTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.add_listing()

    def test_create_reserves_range_and_marks_gear_unavailable(self):
        rental = self.create_rental()

        self.assertEqual(rental.Status, RentalStatus.PENDING)
        gear = self.db.get(GearListing, 1)
        self.assertFalse(gear.IsAvailable)
        self.assertEqual(gear.ReservationVersion, 1)
        self.assertFalse(booking_ledger.is_range_available(self.db, 1, at(1), at(2)))

    def test_overlapping_request_is_rejected(self):
        self.create_rental(start_day=0, days=3)

        with self.assertRaises(ConflictError) as ctx:
            self.create_rental(renter_id=OTHER_RENTER, start_day=2, days=3)
        self.assertEqual(ctx.exception.message, BOOKING_CONFLICT_MESSAGE)

    def test_adjacent_ranges_do_not_collide(self):
        self.create_rental(start_day=0, days=3)
        follow_up = self.create_rental(renter_id=OTHER_RENTER, start_day=3, days=2)

        self.assertEqual(follow_up.Status, RentalStatus.PENDING)

    def test_end_before_start_is_validation_error(self):
        with self.assertRaises(ValidationError):
            rental_service.create_rental_request(self.db, RENTER, 1, at(3), at(1))

    def test_unknown_gear_is_not_found(self):
        with self.assertRaises(NotFoundError):
            rental_service.create_rental_request(self.db, RENTER, 99, at(0), at(1))

    def test_decline_frees_range_and_availability(self):
        rental = self.create_rental()
        rental_service.decline_rental(self.db, rental.RentalID, OWNER)

        self.assertTrue(booking_ledger.is_range_available(self.db, 1, at(0), at(3)))
        self.assertTrue(self.db.get(GearListing, 1).IsAvailable)
        again = self.create_rental(renter_id=OTHER_RENTER)
        self.assertEqual(again.Status, RentalStatus.PENDING)

    def test_release_keeps_gear_unavailable_while_other_bookings_remain(self):
        first = self.create_rental(start_day=0, days=2)
        self.create_rental(renter_id=OTHER_RENTER, start_day=5, days=2)

        rental_service.cancel_rental(self.db, first.RentalID, RENTER)

        self.assertFalse(self.db.get(GearListing, 1).IsAvailable)

    def test_release_is_idempotent(self):
        rental = self.create_rental()
        rental_service.cancel_rental(self.db, rental.RentalID, RENTER)

        self.assertFalse(booking_ledger.release(self.db, rental))
        reservation = self.db.query(Reservation).filter_by(RentalID=rental.RentalID).one()
        self.assertFalse(reservation.IsActive)
        self.assertIsNotNone(reservation.ReleasedAt)

    def test_stale_reservation_version_loses_the_race(self):
        contender = self.new_session()
        stale_version = lock_listing(contender, 1).ReservationVersion
        contender.rollback()

        self.create_rental()

        with self.assertRaises(ConflictError) as ctx:
            booking_ledger.claim_gear(contender, 1, stale_version, is_available=False)
        self.assertEqual(ctx.exception.message, BOOKING_CONFLICT_MESSAGE)
        contender.rollback()

        active = self.db.query(Reservation).filter_by(GearID=1, IsActive=True).count()
        self.assertEqual(active, 1)


if __name__ == "__main__":
    unittest.main()
