from __future__ import annotations


class SettlementError(RuntimeError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SettlementError):
    status_code = 400


class AuthorizationError(SettlementError):
    status_code = 403


class NotFoundError(SettlementError):
    status_code = 404


class ConflictError(SettlementError):
    status_code = 409


class StateError(SettlementError):
    status_code = 409


class NoEarningsError(StateError):
    pass


class LedgerIntegrityError(SettlementError):
    status_code = 500


BOOKING_CONFLICT_MESSAGE = "These dates are no longer available."
