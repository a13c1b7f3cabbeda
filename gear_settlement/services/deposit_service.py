"""
Deposit escrow ledger.

DepositTransactions is an append-only log and the source of truth. The
deposit fields on RentalRequest are a cached projection of that log; every
write appends a transaction and updates the projection in the same
transaction, then checks that replaying the log reproduces the projection.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

import config
from models.settlement_models import (
    DepositStatus,
    DepositTransaction,
    DepositTransactionType,
    RentalRequest,
    ReturnStatus,
)
from services.date_utils import utc_now
from services.deposit_replay import initial_deposit_status, replay_deposit
from services.errors import (
    AuthorizationError,
    ConflictError,
    LedgerIntegrityError,
    StateError,
    ValidationError,
)
from services.notification_service import publish_event
from services.pricing import ZERO, to_money
from services.unit_of_work import atomic, load_rental

LOGGER = logging.getLogger("gear_settlement.deposits")

HOLDABLE_STATUSES = frozenset({DepositStatus.NOT_REQUIRED, DepositStatus.PENDING})
CHARGEABLE_STATUSES = frozenset({DepositStatus.HELD, DepositStatus.PARTIALLY_CHARGED})


def remaining_deposit(rental: RentalRequest) -> Decimal:
    return to_money(rental.DepositAmount) - to_money(rental.DepositChargedAmount)


def is_in_escrow(rental: RentalRequest) -> bool:
    return DepositStatus(rental.DepositStatus) in CHARGEABLE_STATUSES and remaining_deposit(rental) > ZERO


def list_transactions(db: Session, rental_id: int) -> list[DepositTransaction]:
    return list(
        db.execute(
            select(DepositTransaction)
            .where(DepositTransaction.RentalID == int(rental_id))
            .order_by(DepositTransaction.TransactionID)
        ).scalars().all()
    )


def apply_hold(db: Session, rental: RentalRequest, actor_id: str | None = None) -> DepositTransaction:
    status = DepositStatus(rental.DepositStatus)
    if status not in HOLDABLE_STATUSES:
        raise StateError(f"Deposit cannot be held while {status.value}.")
    amount = to_money(rental.DepositAmount)
    if amount <= ZERO:
        raise ValidationError("Rental has no deposit to hold.")

    now = utc_now()
    rental.DepositStatus = DepositStatus.HELD
    rental.DepositHeldAt = now
    rental.UpdatedDate = now
    return _append(db, rental, DepositTransactionType.HOLD, amount, actor_id=actor_id)


def apply_charge(
    db: Session,
    rental: RentalRequest,
    actor_id: str,
    amount,
    reason: str,
    notes: str | None = None,
) -> DepositTransaction:
    if actor_id != rental.OwnerID and not config.is_administrator(actor_id):
        raise AuthorizationError("Only the gear owner or an administrator can charge a deposit.")
    _require_dispute_clearance(rental, actor_id, "charge")
    if rental.DisputeOutcome and not config.is_administrator(actor_id):
        raise StateError("Deposit was settled by the dispute resolution.")

    status = DepositStatus(rental.DepositStatus)
    if status == DepositStatus.FULLY_CHARGED:
        raise ConflictError("Deposit has already been fully charged.")
    if status not in CHARGEABLE_STATUSES:
        raise StateError(f"Deposit cannot be charged while {status.value}.")

    charge = to_money(amount)
    remaining = remaining_deposit(rental)
    if charge <= ZERO or charge > remaining:
        raise ValidationError(f"Charge amount must be greater than 0 and at most {remaining}.")
    cleaned_reason = (reason or "").strip()
    if not cleaned_reason:
        raise ValidationError("A reason is required to charge a deposit.")

    is_full = charge == remaining
    rental.DepositChargedAmount = to_money(rental.DepositChargedAmount) + charge
    rental.DepositStatus = DepositStatus.FULLY_CHARGED if is_full else DepositStatus.PARTIALLY_CHARGED
    rental.UpdatedDate = utc_now()
    txn_type = DepositTransactionType.FULL_CHARGE if is_full else DepositTransactionType.PARTIAL_CHARGE
    return _append(db, rental, txn_type, charge, actor_id=actor_id, reason=cleaned_reason, notes=notes)


def apply_release(db: Session, rental: RentalRequest, actor_id: str | None = None, notes: str | None = None) -> DepositTransaction:
    status = DepositStatus(rental.DepositStatus)
    if status not in CHARGEABLE_STATUSES:
        raise StateError(f"Deposit cannot be released while {status.value}.")
    remaining = remaining_deposit(rental)
    if remaining <= ZERO:
        raise StateError("No deposit balance remains to release.")

    now = utc_now()
    rental.DepositStatus = DepositStatus.RELEASED
    rental.DepositReleasedAt = now
    rental.UpdatedDate = now
    return _append(db, rental, DepositTransactionType.RELEASE, remaining, actor_id=actor_id, notes=notes)


def hold_deposit(db: Session, rental_id: int, actor_id: str | None = None) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        apply_hold(db, rental, actor_id)
    LOGGER.info("Deposit held rental_id=%s amount=%s", rental.RentalID, rental.DepositAmount)
    publish_event(db, "deposit.held", rental.RentalID, actor_id)
    return rental


def charge_deposit(
    db: Session,
    rental_id: int,
    actor_id: str,
    amount,
    reason: str,
    notes: str | None = None,
) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        txn = apply_charge(db, rental, actor_id, amount, reason, notes)
    LOGGER.info(
        "Deposit charged rental_id=%s type=%s amount=%s actor=%s",
        rental.RentalID,
        txn.TransactionType.value,
        txn.Amount,
        actor_id,
    )
    publish_event(db, f"deposit.{txn.TransactionType.value}", rental.RentalID, actor_id)
    return rental


def release_deposit(db: Session, rental_id: int, actor_id: str | None = None, notes: str | None = None) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        if actor_id is not None and actor_id != rental.OwnerID and not config.is_administrator(actor_id):
            raise AuthorizationError("Only the gear owner or an administrator can release a deposit.")
        if actor_id is not None:
            _require_dispute_clearance(rental, actor_id, "release")
        txn = apply_release(db, rental, actor_id, notes)
    LOGGER.info("Deposit released rental_id=%s amount=%s", rental.RentalID, txn.Amount)
    publish_event(db, "deposit.released", rental.RentalID, actor_id)
    return rental


def deposit_summary(rental: RentalRequest, transactions: Iterable[DepositTransaction]) -> dict:
    return {
        "depositAmount": float(to_money(rental.DepositAmount)),
        "depositStatus": DepositStatus(rental.DepositStatus).value,
        "depositChargedAmount": float(to_money(rental.DepositChargedAmount)),
        "remainingDeposit": float(remaining_deposit(rental)),
        "depositHeldAt": rental.DepositHeldAt,
        "depositReleasedAt": rental.DepositReleasedAt,
        "transactions": [serialize_transaction(txn) for txn in transactions],
    }


def serialize_transaction(txn: DepositTransaction) -> dict:
    return {
        "transactionID": txn.TransactionID,
        "rentalID": txn.RentalID,
        "transactionType": DepositTransactionType(txn.TransactionType).value,
        "amount": float(to_money(txn.Amount)),
        "reason": txn.Reason,
        "notes": txn.Notes,
        "actorID": txn.ActorID,
        "createdAt": txn.CreatedAt,
    }


def _require_dispute_clearance(rental: RentalRequest, actor_id: str | None, verb: str) -> None:
    if rental.ReturnStatus == ReturnStatus.DISPUTE_OPEN and not config.is_administrator(actor_id):
        raise AuthorizationError(f"Only an administrator can {verb} the deposit while a dispute is open.")


def _append(
    db: Session,
    rental: RentalRequest,
    txn_type: DepositTransactionType,
    amount: Decimal,
    *,
    actor_id: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
) -> DepositTransaction:
    txn = DepositTransaction(
        RentalID=rental.RentalID,
        TransactionType=txn_type,
        Amount=to_money(amount),
        Reason=reason,
        Notes=notes,
        ActorID=actor_id,
        CreatedAt=utc_now(),
    )
    db.flush()
    entries = list_transactions(db, rental.RentalID) + [txn]
    _verify_projection(rental, entries)
    db.add(txn)
    return txn


def _verify_projection(rental: RentalRequest, entries: list[DepositTransaction]) -> None:
    if to_money(rental.DepositChargedAmount) > to_money(rental.DepositAmount):
        raise LedgerIntegrityError("Deposit charged amount exceeds the deposit.")
    initial = initial_deposit_status(rental.ProtectionType, rental.DepositAmount)
    status, charged = replay_deposit(rental.DepositAmount, initial, entries)
    if status != DepositStatus(rental.DepositStatus) or charged != to_money(rental.DepositChargedAmount):
        LOGGER.error(
            "Deposit projection drift rental_id=%s cached=(%s,%s) replayed=(%s,%s)",
            rental.RentalID,
            rental.DepositStatus,
            rental.DepositChargedAmount,
            status,
            charged,
        )
        raise LedgerIntegrityError("Deposit projection does not match the transaction log.")
