#!/usr/bin/env python3
"""Scheduled payout batch plus notification dispatch."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

LOGGER = logging.getLogger("gear_settlement.scheduler")


def _log_sender(payload: dict) -> None:
    LOGGER.info("notify type=%s rental_id=%s actor=%s", payload.get("type"), payload.get("rentalID"), payload.get("actorID"))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create payouts for owners above the payout threshold.")
    parser.add_argument("--threshold", type=float, default=None, help="Minimum earnings; defaults to PAYOUT_THRESHOLD.")
    parser.add_argument("--fee-rate", type=float, default=None, help="Platform fee; defaults to PLATFORM_FEE_RATE.")
    parser.add_argument("--skip-notifications", action="store_true", help="Do not dispatch queued notifications.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    from db.session import SessionLocalSettlement
    from services.notification_service import dispatch_pending_notifications
    from services.payout_service import run_payout_batch

    db = SessionLocalSettlement()
    try:
        results = run_payout_batch(db, args.threshold, args.fee_rate)
        for item in results:
            print(f"{item['result'].upper():8} owner={item['ownerID']} amount={item['amount']} payout={item['payoutID']}")
        if not args.skip_notifications:
            summary = dispatch_pending_notifications(db, _log_sender)
            print(f"notifications sent={summary['sent']} failed={summary['failed']}")
    finally:
        db.close()
    return 1 if any(item["result"] == "failed" for item in results) else 0


if __name__ == "__main__":
    raise SystemExit(main())
