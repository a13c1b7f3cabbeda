import unittest
from decimal import Decimal
from unittest.mock import patch

from support import OTHER_RENTER, OWNER, RENTER, SettlementTestCase, at

from models.settlement_models import ExtensionStatus, RentalRequest, Reservation
from services import extension_service, rental_service
from services.errors import AuthorizationError, ConflictError, StateError, ValidationError

class ExtensionTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.add_listing(daily_rate=8)
        self.rental = self.active_rental(start_day=0, days=3)

    def test_request_fixes_cost_and_new_end(self):
        extension = extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 2, "Trip got longer")

        self.assertEqual(extension.Status, ExtensionStatus.PENDING)
        self.assertEqual(extension.NewEndTime, at(5))
        self.assertEqual(extension.ExtensionCost, Decimal("16.00"))

    def test_request_validation(self):
        with self.assertRaises(ValidationError):
            extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 0)
        with self.assertRaises(ValidationError):
            extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 1.5)
        with self.assertRaises(AuthorizationError):
            extension_service.request_extension(self.db, self.rental.RentalID, OWNER, 1)

    def test_pending_rental_cannot_be_extended(self):
        pending = self.create_rental(renter_id=OTHER_RENTER, start_day=20)

        with self.assertRaises(StateError):
            extension_service.request_extension(self.db, pending.RentalID, OTHER_RENTER, 1)

    def test_only_one_pending_extension(self):
        extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 1)

        with self.assertRaises(ConflictError):
            extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 1)

    def test_request_over_existing_booking_conflicts(self):
        self.create_rental(renter_id=OTHER_RENTER, start_day=4, days=2)

        with self.assertRaises(ConflictError):
            extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 2)
        extension = extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 1)
        self.assertEqual(extension.NewEndTime, at(4))

    def test_approval_moves_end_once(self):
        extension = extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 2)

        approved = extension_service.approve_extension(self.db, extension.ExtensionID, OWNER)
        self.assertEqual(approved.Status, ExtensionStatus.APPROVED)
        self.assertIsNotNone(approved.ResolvedAt)

        rental = rental_service.get_rental(self.db, self.rental.RentalID)
        self.assertEqual(rental.EndTime, at(5))
        reservation = self.db.query(Reservation).filter_by(RentalID=rental.RentalID).one()
        self.assertEqual(reservation.EndTime, at(5))

        with self.assertRaises(StateError):
            extension_service.approve_extension(self.db, extension.ExtensionID, OWNER)
        self.assertEqual(rental_service.get_rental(self.db, self.rental.RentalID).EndTime, at(5))

    def test_concurrent_second_approval_is_state_error(self):
        extension = extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 2)
        contender = self.new_session()
        extension_service.get_extension(contender, extension.ExtensionID)

        extension_service.approve_extension(self.db, extension.ExtensionID, OWNER)

        with self.assertRaises(StateError):
            extension_service.approve_extension(contender, extension.ExtensionID, OWNER)
        self.assertEqual(rental_service.get_rental(self.db, self.rental.RentalID).EndTime, at(5))

    def test_concurrent_requests_leave_one_pending_extension(self):
        contender = self.new_session()
        stale = contender.get(RentalRequest, self.rental.RentalID)

        extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 1)

        # The contender read the rental and found no pending request before the first commit.
        with patch.object(extension_service, "load_rental", return_value=stale), patch.object(
            extension_service, "has_pending_extension", return_value=False
        ):
            with self.assertRaises(StateError):
                extension_service.request_extension(contender, self.rental.RentalID, RENTER, 2)

        pending = [
            item
            for item in extension_service.list_extensions(self.db, self.rental.RentalID)
            if item.Status == ExtensionStatus.PENDING
        ]
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].AdditionalDays, 1)

    def test_booking_made_after_request_blocks_approval(self):
        extension = extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 2)
        self.create_rental(renter_id=OTHER_RENTER, start_day=3, days=1)

        with self.assertRaises(ConflictError):
            extension_service.approve_extension(self.db, extension.ExtensionID, OWNER)
        self.assertEqual(extension_service.get_extension(self.db, extension.ExtensionID).Status, ExtensionStatus.PENDING)
        self.assertEqual(rental_service.get_rental(self.db, self.rental.RentalID).EndTime, at(3))

    def test_reject_is_owner_only_and_final(self):
        extension = extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 1)

        with self.assertRaises(AuthorizationError):
            extension_service.reject_extension(self.db, extension.ExtensionID, RENTER)
        rejected = extension_service.reject_extension(self.db, extension.ExtensionID, OWNER, "Needed back")
        self.assertEqual(rejected.Status, ExtensionStatus.REJECTED)
        self.assertEqual(rejected.Notes, "Needed back")
        with self.assertRaises(StateError):
            extension_service.approve_extension(self.db, extension.ExtensionID, OWNER)

        follow_up = extension_service.request_extension(self.db, self.rental.RentalID, RENTER, 1)
        self.assertEqual(
            [item.ExtensionID for item in extension_service.list_extensions(self.db, self.rental.RentalID)],
            [extension.ExtensionID, follow_up.ExtensionID],
        )

if __name__ == "__main__":
    unittest.main()
