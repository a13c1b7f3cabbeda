import io
import unittest
from contextlib import redirect_stdout

from sqlalchemy import text

from support import OTHER_RENTER, OWNER, SettlementTestCase

from models.settlement_models import OPEN_RENTAL_STATUSES, TERMINAL_RENTAL_STATUSES
from scripts import ledger_audit
from services import deposit_service, payout_service, rental_service


class LedgerAuditTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.add_listing(daily_rate=10, deposit_amount=40)
        charged = self.active_rental(start_day=0)
        deposit_service.charge_deposit(self.db, charged.RentalID, OWNER, 15, "Missing strap")
        rental_service.complete_rental(self.db, charged.RentalID)
        payout_service.create_payout(self.db, OWNER)
        self.open_rental = self.create_rental(renter_id=OTHER_RENTER, start_day=5)
        self.charged_id = charged.RentalID

    def _failed(self):
        return {check.name for check in ledger_audit.run_integrity_checks(self.engine) if not check.ok}

    def test_consistent_ledger_passes(self):
        self.assertEqual(self._failed(), set())
        with redirect_stdout(io.StringIO()) as out:
            self.assertEqual(ledger_audit.main(["--db-url", self.db_url]), 0)
        self.assertIn("[OK] deposits:replay_mismatch", out.getvalue())

    def test_drifted_deposit_projection_is_reported(self):
        with self.engine.begin() as conn:
            conn.execute(
                text("UPDATE RentalRequests SET DepositChargedAmount = 5 WHERE RentalID = :rid"),
                {"rid": self.charged_id},
            )

        self.assertEqual(self._failed(), {"deposits:replay_mismatch"})
        with redirect_stdout(io.StringIO()):
            self.assertEqual(ledger_audit.main(["--db-url", self.db_url]), 1)

    def test_open_rental_without_reservation_is_reported(self):
        with self.engine.begin() as conn:
            conn.execute(
                text("UPDATE Reservations SET IsActive = :inactive WHERE RentalID = :rid"),
                {"inactive": False, "rid": self.open_rental.RentalID},
            )

        self.assertEqual(self._failed(), {"reservations:open_rental_without_reservation"})

    def test_closed_rental_still_reserved_is_reported(self):
        with self.engine.begin() as conn:
            conn.execute(
                text("UPDATE Reservations SET IsActive = :active WHERE RentalID = :rid"),
                {"active": True, "rid": self.charged_id},
            )

        self.assertEqual(self._failed(), {"reservations:closed_rental_still_reserved"})

    def test_status_lists_follow_the_rental_status_sets(self):
        self.assertEqual(ledger_audit._status_list(OPEN_RENTAL_STATUSES), "'active', 'pending'")
        self.assertEqual(
            ledger_audit._status_list(TERMINAL_RENTAL_STATUSES), "'cancelled', 'completed', 'declined'"
        )

    def test_payout_total_tampering_is_reported(self):
        with self.engine.begin() as conn:
            conn.execute(text("UPDATE Payouts SET TotalAmount = TotalAmount + 1"))

        self.assertIn("payouts:total_mismatch", self._failed())

    def test_missing_url_exits_with_usage_code(self):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(ledger_audit.main(["--db-url", ""]), 2)


if __name__ == "__main__":
    unittest.main()
