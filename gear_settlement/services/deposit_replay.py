from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from models.settlement_models import DepositStatus, DepositTransactionType, ProtectionType
from services.errors import LedgerIntegrityError
from services.pricing import ZERO, to_money


def initial_deposit_status(protection_type, deposit_amount) -> DepositStatus:
    if ProtectionType(protection_type) == ProtectionType.STANDARD and to_money(deposit_amount) > ZERO:
        return DepositStatus.PENDING
    return DepositStatus.NOT_REQUIRED


def replay_deposit(deposit_amount, initial_status, transactions: Iterable) -> tuple[DepositStatus, Decimal]:
    """
    Rebuild the deposit projection from the transaction log.

    Args:
        deposit_amount: Deposit snapshot taken at booking time
        initial_status: Status before any transaction was written
        transactions: Log entries in insertion order, anything with
            TransactionType and Amount attributes

    Returns:
        tuple: (deposit status, charged amount)
    """
    status = DepositStatus(initial_status)
    charged = ZERO
    for txn in transactions:
        txn_type = DepositTransactionType(txn.TransactionType)
        if txn_type == DepositTransactionType.HOLD:
            status = DepositStatus.HELD
        elif txn_type == DepositTransactionType.PARTIAL_CHARGE:
            charged += to_money(txn.Amount)
            status = DepositStatus.PARTIALLY_CHARGED
        elif txn_type == DepositTransactionType.FULL_CHARGE:
            charged += to_money(txn.Amount)
            status = DepositStatus.FULLY_CHARGED
        elif txn_type == DepositTransactionType.RELEASE:
            status = DepositStatus.RELEASED
    if charged > to_money(deposit_amount):
        raise LedgerIntegrityError("Deposit log charges more than the deposit amount.")
    return status, to_money(charged)
