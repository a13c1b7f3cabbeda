import unittest
from decimal import Decimal
from unittest.mock import patch

from support import OTHER_RENTER, OWNER, RENTER, SettlementTestCase, at

from models.settlement_models import Payout, PayoutStatus
from services import payout_service, rental_service
from services.errors import ConflictError, NoEarningsError, StateError, ValidationError


class PayoutServiceTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.add_listing(daily_rate=10)

    def completed_rental(self, **kwargs):
        rental = self.active_rental(**kwargs)
        return rental_service.complete_rental(self.db, rental.RentalID, OWNER)

    def test_earnings_bill_partial_days_as_whole_days(self):
        rental = rental_service.create_rental_request(self.db, RENTER, 1, at(0), at(1, hours=6))
        rental_service.approve_rental(self.db, rental.RentalID, OWNER)
        rental_service.complete_rental(self.db, rental.RentalID)

        earnings = payout_service.pending_earnings(self.db, OWNER)
        self.assertEqual(earnings["rentalCount"], 1)
        self.assertEqual(earnings["totalAmount"], Decimal("20.00"))

    def test_create_payout_claims_completed_rentals(self):
        first = self.completed_rental(start_day=0, days=3)
        second = self.completed_rental(renter_id=OTHER_RENTER, start_day=5, days=3)
        self.active_rental(start_day=10, days=1)

        payout = payout_service.create_payout(self.db, OWNER)

        self.assertEqual(payout.Status, PayoutStatus.PENDING)
        self.assertEqual(payout.TotalAmount, Decimal("60.00"))
        self.assertEqual(payout.FeeAmount, Decimal("6.00"))
        self.assertEqual(payout.NetAmount, Decimal("54.00"))
        self.assertEqual(payout.PeriodStart, rental_service.get_rental(self.db, first.RentalID).CompletedAt)
        self.assertEqual(payout_service.payout_rental_ids(self.db, payout.PayoutID), [first.RentalID, second.RentalID])
        self.assertEqual(payout_service.pending_earnings(self.db, OWNER)["rentalCount"], 0)

        with self.assertRaises(NoEarningsError):
            payout_service.create_payout(self.db, OWNER)

    def test_fee_rate_override_and_bounds(self):
        self.completed_rental()

        with self.assertRaises(ValidationError):
            payout_service.create_payout(self.db, OWNER, fee_rate=1)
        with self.assertRaises(ValidationError):
            payout_service.create_payout(self.db, OWNER, fee_rate=-0.1)

        payout = payout_service.create_payout(self.db, OWNER, fee_rate="0.25")
        self.assertEqual(payout.FeeAmount, Decimal("7.50"))
        self.assertEqual(payout.NetAmount, Decimal("22.50"))

    def test_no_earnings_without_completed_rentals(self):
        self.active_rental()

        with self.assertRaises(NoEarningsError):
            payout_service.create_payout(self.db, OWNER)
        self.assertEqual(self.db.query(Payout).count(), 0)

    def test_stale_rental_list_cannot_pay_twice(self):
        self.completed_rental()
        stale = payout_service.unpaid_rentals(self.db, OWNER)
        payout_service.create_payout(self.db, OWNER)

        with patch.object(payout_service, "unpaid_rentals", return_value=stale):
            with self.assertRaises(ConflictError):
                payout_service.create_payout(self.db, OWNER)
        self.assertEqual(self.db.query(Payout).count(), 1)

    def test_status_transitions(self):
        self.completed_rental()
        payout = payout_service.create_payout(self.db, OWNER)

        processing = payout_service.update_payout_status(self.db, payout.PayoutID, "processing")
        self.assertIsNotNone(processing.InitiatedAt)
        self.assertIsNone(processing.CompletedAt)

        paid = payout_service.update_payout_status(self.db, payout.PayoutID, "paid", "Bank ref 42")
        self.assertEqual(paid.Status, PayoutStatus.PAID)
        self.assertIsNotNone(paid.CompletedAt)
        self.assertEqual(paid.Notes, "Bank ref 42")

        with self.assertRaises(StateError):
            payout_service.update_payout_status(self.db, payout.PayoutID, "failed")
        with self.assertRaises(ValidationError):
            payout_service.update_payout_status(self.db, payout.PayoutID, "lost")

    def test_failed_payout_keeps_its_rentals(self):
        rental = self.completed_rental()
        payout = payout_service.create_payout(self.db, OWNER)

        payout_service.update_payout_status(self.db, payout.PayoutID, "failed")

        self.assertEqual(rental_service.get_rental(self.db, rental.RentalID).PayoutID, payout.PayoutID)
        self.assertEqual(payout_service.owners_with_unpaid_rentals(self.db), [])

    def test_batch_honours_threshold(self):
        self.add_listing(gear_id=2, owner_id="owner-2", daily_rate=5)
        self.completed_rental(days=3)
        small = rental_service.create_rental_request(self.db, RENTER, 2, at(0), at(1))
        rental_service.approve_rental(self.db, small.RentalID, "owner-2")
        rental_service.complete_rental(self.db, small.RentalID)

        results = payout_service.run_payout_batch(self.db, threshold=25)

        by_owner = {item["ownerID"]: item for item in results}
        self.assertEqual(by_owner[OWNER]["result"], "created")
        self.assertEqual(by_owner[OWNER]["amount"], 30.0)
        self.assertEqual(by_owner["owner-2"]["result"], "skipped")
        self.assertIsNone(by_owner["owner-2"]["payoutID"])
        self.assertEqual(payout_service.owners_with_unpaid_rentals(self.db), ["owner-2"])

    def test_list_payouts_newest_first(self):
        self.completed_rental(start_day=0)
        older = payout_service.create_payout(self.db, OWNER)
        self.completed_rental(renter_id=OTHER_RENTER, start_day=5)
        newer = payout_service.create_payout(self.db, OWNER)

        listed = payout_service.list_payouts(self.db, OWNER)
        self.assertEqual([payout.PayoutID for payout in listed], [newer.PayoutID, older.PayoutID])
        self.assertEqual(len(payout_service.list_payouts(self.db, OWNER, limit=1)), 1)

        payload = payout_service.serialize_payout(self.db, newer)
        self.assertEqual(payload["status"], "pending")
        self.assertEqual(payload["totalAmount"], 30.0)


if __name__ == "__main__":
    unittest.main()
