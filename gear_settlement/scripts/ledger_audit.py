#!/usr/bin/env python3
"""Ledger integrity checks for the gear settlement database."""

from __future__ import annotations

import argparse
import os
import sys
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from models.settlement_models import OPEN_RENTAL_STATUSES, TERMINAL_RENTAL_STATUSES  # noqa: E402
from services.deposit_replay import initial_deposit_status, replay_deposit  # noqa: E402
from services.errors import LedgerIntegrityError  # noqa: E402
from services.pricing import rental_cost, to_money  # noqa: E402


EXPECTED_TABLES = [
    "GearListings",
    "RentalRequests",
    "Reservations",
    "DepositTransactions",
    "ExtensionRequests",
    "Payouts",
    "Ratings",
    "AuditLogs",
    "NotificationQueue",
]


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


def _status_list(statuses) -> str:
    return ", ".join(f"'{status.value}'" for status in sorted(statuses, key=lambda item: item.value))


def _count_check(engine: Engine, name: str, sql: str, params: dict | None = None) -> CheckResult:
    count = int(_scalar(engine, sql, params) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _check_deposit_replay(engine: Engine) -> CheckResult:
    rentals = _rows(
        engine,
        """
        SELECT RentalID, ProtectionType, DepositAmount, DepositStatus, DepositChargedAmount
        FROM RentalRequests
        ORDER BY RentalID
        """,
    )
    transactions = defaultdict(list)
    for row in _rows(
        engine,
        "SELECT RentalID, TransactionType, Amount FROM DepositTransactions ORDER BY TransactionID",
    ):
        transactions[row.RentalID].append(row)

    mismatched = []
    for rental in rentals:
        initial = initial_deposit_status(rental.ProtectionType, rental.DepositAmount)
        try:
            status, charged = replay_deposit(rental.DepositAmount, initial, transactions[rental.RentalID])
        except LedgerIntegrityError:
            mismatched.append(rental.RentalID)
            continue
        if status.value != rental.DepositStatus or charged != to_money(rental.DepositChargedAmount):
            mismatched.append(rental.RentalID)
    detail = f"count={len(mismatched)}"
    if mismatched:
        detail += f" rentals={','.join(str(item) for item in mismatched[:20])}"
    return CheckResult("deposits:replay_mismatch", not mismatched, detail)


def _check_payout_totals(engine: Engine) -> CheckResult:
    earnings = defaultdict(lambda: to_money(0))
    for row in _rows(
        engine,
        "SELECT PayoutID, DailyRate, StartTime, EndTime FROM RentalRequests WHERE PayoutID IS NOT NULL",
    ):
        # Raw text queries on SQLite hand back strings for DATETIME columns.
        start, end = _as_datetime(row.StartTime), _as_datetime(row.EndTime)
        earnings[row.PayoutID] += rental_cost(row.DailyRate, start, end)

    mismatched = []
    for payout in _rows(engine, "SELECT PayoutID, TotalAmount, FeeAmount, NetAmount FROM Payouts"):
        total = to_money(payout.TotalAmount)
        if total != earnings[payout.PayoutID]:
            mismatched.append(payout.PayoutID)
        elif to_money(payout.NetAmount) != total - to_money(payout.FeeAmount):
            mismatched.append(payout.PayoutID)
    detail = f"count={len(mismatched)}"
    if mismatched:
        detail += f" payouts={','.join(str(item) for item in mismatched[:20])}"
    return CheckResult("payouts:total_mismatch", not mismatched, detail)


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = [
        _count_check(
            engine,
            "deposits:charged_exceeds_amount",
            "SELECT COUNT(*) FROM RentalRequests WHERE DepositChargedAmount > DepositAmount",
        ),
        _check_deposit_replay(engine),
        _count_check(
            engine,
            "reservations:overlapping_active",
            """
            SELECT COUNT(*)
            FROM Reservations a
            JOIN Reservations b
              ON a.GearID = b.GearID AND a.ReservationID < b.ReservationID
            WHERE a.IsActive = :active AND b.IsActive = :active
              AND a.StartTime < b.EndTime AND a.EndTime > b.StartTime
            """,
            {"active": True},
        ),
        _count_check(
            engine,
            "reservations:open_rental_without_reservation",
            f"""
            SELECT COUNT(*)
            FROM RentalRequests r
            LEFT JOIN Reservations res ON res.RentalID = r.RentalID AND res.IsActive = :active
            WHERE r.Status IN ({_status_list(OPEN_RENTAL_STATUSES)}) AND res.ReservationID IS NULL
            """,
            {"active": True},
        ),
        _count_check(
            engine,
            "reservations:closed_rental_still_reserved",
            f"""
            SELECT COUNT(*)
            FROM Reservations res
            JOIN RentalRequests r ON r.RentalID = res.RentalID
            WHERE res.IsActive = :active AND r.Status IN ({_status_list(TERMINAL_RENTAL_STATUSES)})
            """,
            {"active": True},
        ),
        _count_check(
            engine,
            "payouts:rental_not_completed",
            "SELECT COUNT(*) FROM RentalRequests WHERE PayoutID IS NOT NULL AND Status <> 'completed'",
        ),
        _check_payout_totals(engine),
    ]
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Gear settlement ledger audit")
    parser.add_argument("--db-url", default=os.environ.get("GEAR_SETTLEMENT_DB_URL", ""))
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("GEAR_SETTLEMENT_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = _run_existence_checks(engine)
    _print_results("Table Existence", existence)
    if not all(item.ok for item in existence):
        return 1
    integrity = run_integrity_checks(engine)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    return 0 if all(item.ok for item in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
