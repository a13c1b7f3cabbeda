import unittest
from decimal import Decimal
from types import SimpleNamespace

from support import ADMIN, OWNER, RENTER, SettlementTestCase

from models.settlement_models import DepositStatus, DepositTransactionType
from services import deposit_service, rental_service
from services.errors import (
    AuthorizationError,
    ConflictError,
    LedgerIntegrityError,
    StateError,
    ValidationError,
)


class DepositLedgerTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.add_listing(deposit_amount=50)
        self.rental = self.active_rental()

    def _assert_projection_matches_log(self):
        rental = rental_service.get_rental(self.db, self.rental.RentalID)
        transactions = deposit_service.list_transactions(self.db, rental.RentalID)
        initial = deposit_service.initial_deposit_status(rental.ProtectionType, rental.DepositAmount)
        status, charged = deposit_service.replay_deposit(rental.DepositAmount, initial, transactions)
        self.assertEqual(status, rental.DepositStatus)
        self.assertEqual(charged, rental.DepositChargedAmount)
        self.assertLessEqual(rental.DepositChargedAmount, rental.DepositAmount)

    def test_partial_then_full_charge(self):
        rental = deposit_service.charge_deposit(self.db, self.rental.RentalID, OWNER, 20, "Scratched lens")
        self.assertEqual(rental.DepositStatus, DepositStatus.PARTIALLY_CHARGED)
        self.assertEqual(deposit_service.remaining_deposit(rental), Decimal("30.00"))
        self._assert_projection_matches_log()

        rental = deposit_service.charge_deposit(self.db, self.rental.RentalID, ADMIN, 30, "Broken mount")
        self.assertEqual(rental.DepositStatus, DepositStatus.FULLY_CHARGED)
        kinds = [txn.TransactionType for txn in deposit_service.list_transactions(self.db, rental.RentalID)]
        self.assertEqual(
            kinds,
            [
                DepositTransactionType.HOLD,
                DepositTransactionType.PARTIAL_CHARGE,
                DepositTransactionType.FULL_CHARGE,
            ],
        )
        self._assert_projection_matches_log()

        with self.assertRaises(ConflictError):
            deposit_service.charge_deposit(self.db, self.rental.RentalID, OWNER, 1, "Again")

    def test_charge_validation(self):
        with self.assertRaises(ValidationError):
            deposit_service.charge_deposit(self.db, self.rental.RentalID, OWNER, 0, "Nothing")
        with self.assertRaises(ValidationError):
            deposit_service.charge_deposit(self.db, self.rental.RentalID, OWNER, 50.01, "Too much")
        with self.assertRaises(ValidationError):
            deposit_service.charge_deposit(self.db, self.rental.RentalID, OWNER, 10, "   ")
        with self.assertRaises(AuthorizationError):
            deposit_service.charge_deposit(self.db, self.rental.RentalID, RENTER, 10, "Self charge")
        self.assertEqual(len(deposit_service.list_transactions(self.db, self.rental.RentalID)), 1)

    def test_release_returns_remaining_balance(self):
        deposit_service.charge_deposit(self.db, self.rental.RentalID, OWNER, 15, "Dirty")
        rental = deposit_service.release_deposit(self.db, self.rental.RentalID, OWNER, "Rest back")

        self.assertEqual(rental.DepositStatus, DepositStatus.RELEASED)
        self.assertIsNotNone(rental.DepositReleasedAt)
        release = deposit_service.list_transactions(self.db, rental.RentalID)[-1]
        self.assertEqual(release.TransactionType, DepositTransactionType.RELEASE)
        self.assertEqual(release.Amount, Decimal("35.00"))
        self._assert_projection_matches_log()

        with self.assertRaises(StateError):
            deposit_service.release_deposit(self.db, self.rental.RentalID, OWNER)
        with self.assertRaises(StateError):
            deposit_service.charge_deposit(self.db, self.rental.RentalID, OWNER, 5, "After release")

    def test_hold_only_from_pending_states(self):
        with self.assertRaises(StateError):
            deposit_service.hold_deposit(self.db, self.rental.RentalID, OWNER)

    def test_drifted_projection_is_refused(self):
        rental = rental_service.get_rental(self.db, self.rental.RentalID)
        rental.DepositChargedAmount = Decimal("10.00")
        self.db.commit()

        with self.assertRaises(LedgerIntegrityError):
            deposit_service.charge_deposit(self.db, self.rental.RentalID, OWNER, 5, "Drift")
        self.assertEqual(len(deposit_service.list_transactions(self.db, self.rental.RentalID)), 1)


class ReplayTests(unittest.TestCase):
    def _txn(self, kind, amount):
        return SimpleNamespace(TransactionType=kind, Amount=Decimal(str(amount)))

    def test_replay_follows_log_order(self):
        status, charged = deposit_service.replay_deposit(
            Decimal("50"),
            DepositStatus.PENDING,
            [
                self._txn("hold", 50),
                self._txn("partial_charge", 12.5),
                self._txn("release", 37.5),
            ],
        )
        self.assertEqual(status, DepositStatus.RELEASED)
        self.assertEqual(charged, Decimal("12.50"))

    def test_replay_rejects_overcharged_log(self):
        with self.assertRaises(LedgerIntegrityError):
            deposit_service.replay_deposit(
                Decimal("20"),
                DepositStatus.PENDING,
                [self._txn("hold", 20), self._txn("partial_charge", 15), self._txn("full_charge", 15)],
            )

    def test_initial_status(self):
        self.assertEqual(deposit_service.initial_deposit_status("standard", 10), DepositStatus.PENDING)
        self.assertEqual(deposit_service.initial_deposit_status("standard", 0), DepositStatus.NOT_REQUIRED)
        self.assertEqual(deposit_service.initial_deposit_status("premium", 10), DepositStatus.NOT_REQUIRED)


if __name__ == "__main__":
    unittest.main()
