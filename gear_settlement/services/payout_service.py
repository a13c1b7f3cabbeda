from __future__ import annotations

from decimal import Decimal
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

import config
from models.settlement_models import Payout, PayoutStatus, RentalRequest, RentalStatus
from services.date_utils import utc_now
from services.errors import ConflictError, NoEarningsError, SettlementError, StateError, ValidationError
from services.notification_service import publish_event
from services.pricing import ZERO, platform_fee, rental_cost, to_money
from services.unit_of_work import atomic, load_payout

LOGGER = logging.getLogger("gear_settlement.payouts")

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING, PayoutStatus.PAID, PayoutStatus.FAILED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.PAID, PayoutStatus.FAILED}),
    PayoutStatus.PAID: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}


def rental_earnings(rental: RentalRequest) -> Decimal:
    return rental_cost(rental.DailyRate, rental.StartTime, rental.EndTime)


def unpaid_rentals(db: Session, owner_id: str) -> list[RentalRequest]:
    return list(
        db.execute(
            select(RentalRequest)
            .where(RentalRequest.OwnerID == owner_id)
            .where(RentalRequest.Status == RentalStatus.COMPLETED)
            .where(RentalRequest.PayoutID.is_(None))
            .order_by(RentalRequest.RentalID)
            .execution_options(populate_existing=True)
        ).scalars().all()
    )


def pending_earnings(db: Session, owner_id: str) -> dict:
    rentals = unpaid_rentals(db, owner_id)
    total = to_money(sum((rental_earnings(rental) for rental in rentals), ZERO))
    return {
        "ownerID": owner_id,
        "rentalCount": len(rentals),
        "totalAmount": total,
        "rentalIDs": [rental.RentalID for rental in rentals],
    }


def create_payout(db: Session, owner_id: str, fee_rate=None) -> Payout:
    rate = Decimal(str(config.PLATFORM_FEE_RATE if fee_rate is None else fee_rate))
    if rate < 0 or rate >= 1:
        raise ValidationError("feeRate must be at least 0 and below 1.")

    with atomic(db):
        rentals = unpaid_rentals(db, owner_id)
        total = to_money(sum((rental_earnings(rental) for rental in rentals), ZERO))
        if not rentals or total <= ZERO:
            raise NoEarningsError("No completed rentals are waiting for a payout.")

        fee = platform_fee(total, rate)
        now = utc_now()
        period_start = min((rental.CompletedAt or rental.CreatedDate or now) for rental in rentals)
        payout = Payout(
            OwnerID=owner_id,
            PeriodStart=period_start,
            PeriodEnd=now,
            TotalAmount=total,
            FeeAmount=fee,
            NetAmount=to_money(total - fee),
            Status=PayoutStatus.PENDING,
            CreatedAt=now,
        )
        db.add(payout)
        db.flush()

        rental_ids = [rental.RentalID for rental in rentals]
        result = db.execute(
            update(RentalRequest)
            .where(RentalRequest.RentalID.in_(rental_ids))
            .where(RentalRequest.PayoutID.is_(None))
            .values(PayoutID=payout.PayoutID, Version=RentalRequest.Version + 1, UpdatedDate=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(rental_ids):
            LOGGER.warning(
                "Payout claim race owner=%s expected=%s claimed=%s",
                owner_id,
                len(rental_ids),
                result.rowcount,
            )
            raise ConflictError("Some rentals were already included in another payout.")
        for rental in rentals:
            db.expire(rental)

    LOGGER.info(
        "Payout created payout_id=%s owner=%s rentals=%s total=%s fee=%s",
        payout.PayoutID,
        owner_id,
        len(rental_ids),
        payout.TotalAmount,
        payout.FeeAmount,
    )
    publish_event(db, "payout.created", None, owner_id)
    return payout


def update_payout_status(db: Session, payout_id: int, status: str, notes: str | None = None) -> Payout:
    try:
        target = PayoutStatus(status)
    except ValueError as exc:
        raise ValidationError(f"Unknown payout status: {status}") from exc

    with atomic(db, stale_message="Payout was changed by another request. Reload and try again."):
        payout = load_payout(db, payout_id)
        current = PayoutStatus(payout.Status)
        if target not in PAYOUT_TRANSITIONS[current]:
            raise StateError(f"Payout cannot move from {current.value} to {target.value}.")
        now = utc_now()
        if payout.InitiatedAt is None:
            payout.InitiatedAt = now
        if target in (PayoutStatus.PAID, PayoutStatus.FAILED):
            payout.CompletedAt = now
        payout.Status = target
        if notes and notes.strip():
            payout.Notes = notes.strip()

    LOGGER.info("Payout status payout_id=%s %s -> %s", payout.PayoutID, current.value, target.value)
    publish_event(db, f"payout.{target.value}", None, payout.OwnerID)
    return payout


def owners_with_unpaid_rentals(db: Session) -> list[str]:
    rows = db.execute(
        select(RentalRequest.OwnerID)
        .where(RentalRequest.Status == RentalStatus.COMPLETED)
        .where(RentalRequest.PayoutID.is_(None))
        .distinct()
        .order_by(RentalRequest.OwnerID)
    ).all()
    return [row[0] for row in rows]


def run_payout_batch(db: Session, threshold=None, fee_rate=None) -> list[dict]:
    """Create one payout per owner whose unpaid earnings reach the threshold."""
    minimum = to_money(config.PAYOUT_THRESHOLD if threshold is None else threshold)
    results = []
    for owner_id in owners_with_unpaid_rentals(db):
        earnings = pending_earnings(db, owner_id)
        amount = earnings["totalAmount"]
        if amount < minimum:
            results.append({"ownerID": owner_id, "result": "skipped", "amount": float(amount), "payoutID": None})
            continue
        try:
            payout = create_payout(db, owner_id, fee_rate)
        except SettlementError as exc:
            LOGGER.warning("Payout batch failed owner=%s: %s", owner_id, exc.message)
            results.append(
                {
                    "ownerID": owner_id,
                    "result": "failed",
                    "amount": float(amount),
                    "payoutID": None,
                    "detail": exc.message,
                }
            )
            continue
        results.append(
            {
                "ownerID": owner_id,
                "result": "created",
                "amount": float(to_money(payout.TotalAmount)),
                "payoutID": payout.PayoutID,
            }
        )
    created = sum(1 for item in results if item["result"] == "created")
    LOGGER.info("Payout batch finished owners=%s created=%s", len(results), created)
    return results


def list_payouts(db: Session, owner_id: str, limit: int = 10) -> list[Payout]:
    return list(
        db.execute(
            select(Payout)
            .where(Payout.OwnerID == owner_id)
            .order_by(Payout.CreatedAt.desc(), Payout.PayoutID.desc())
            .limit(int(limit))
        ).scalars().all()
    )


def payout_rental_ids(db: Session, payout_id: int) -> list[int]:
    rows = db.execute(
        select(RentalRequest.RentalID)
        .where(RentalRequest.PayoutID == int(payout_id))
        .order_by(RentalRequest.RentalID)
    ).all()
    return [row[0] for row in rows]


def serialize_payout(db: Session, payout: Payout) -> dict:
    return {
        "payoutID": payout.PayoutID,
        "ownerID": payout.OwnerID,
        "periodStart": payout.PeriodStart,
        "periodEnd": payout.PeriodEnd,
        "totalAmount": float(to_money(payout.TotalAmount)),
        "feeAmount": float(to_money(payout.FeeAmount)),
        "netAmount": float(to_money(payout.NetAmount)),
        "status": PayoutStatus(payout.Status).value,
        "notes": payout.Notes,
        "createdAt": payout.CreatedAt,
        "initiatedAt": payout.InitiatedAt,
        "completedAt": payout.CompletedAt,
        "rentalIDs": payout_rental_ids(db, payout.PayoutID),
    }
