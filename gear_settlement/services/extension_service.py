from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.settlement_models import ExtensionRequest, ExtensionStatus, RentalRequest, RentalStatus
from services import booking_ledger
from services.date_utils import add_days, utc_now
from services.errors import (
    AuthorizationError,
    BOOKING_CONFLICT_MESSAGE,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from services.notification_service import publish_event
from services.pricing import extension_cost, to_money
from services.unit_of_work import atomic, load_extension, load_rental

LOGGER = logging.getLogger("gear_settlement.extensions")

STALE_EXTENSION_MESSAGE = "Extension request was changed by another request. Reload and try again."


def list_extensions(db: Session, rental_id: int) -> list[ExtensionRequest]:
    return list(
        db.execute(
            select(ExtensionRequest)
            .where(ExtensionRequest.RentalID == int(rental_id))
            .order_by(ExtensionRequest.ExtensionID)
        ).scalars().all()
    )


def get_extension(db: Session, extension_id: int) -> ExtensionRequest:
    extension = db.get(ExtensionRequest, int(extension_id), populate_existing=True)
    if not extension:
        raise NotFoundError(f"Extension request {extension_id} not found.")
    return extension


def has_pending_extension(db: Session, rental_id: int) -> bool:
    row = db.execute(
        select(ExtensionRequest.ExtensionID)
        .where(ExtensionRequest.RentalID == int(rental_id))
        .where(ExtensionRequest.Status == ExtensionStatus.PENDING)
        .limit(1)
    ).first()
    return row is not None


def request_extension(
    db: Session,
    rental_id: int,
    renter_id: str,
    additional_days,
    notes: str | None = None,
) -> ExtensionRequest:
    if isinstance(additional_days, bool) or not isinstance(additional_days, int) or additional_days <= 0:
        raise ValidationError("additionalDays must be a positive whole number.")

    with atomic(db):
        rental = load_rental(db, rental_id)
        if rental.RenterID != renter_id:
            raise AuthorizationError("Only the renter can request an extension.")
        _require_active(rental)
        if has_pending_extension(db, rental.RentalID):
            raise ConflictError("An extension request is already pending for this rental.")

        new_end = add_days(rental.EndTime, additional_days)
        if not booking_ledger.is_range_available(db, rental.GearID, rental.EndTime, new_end, rental.RentalID):
            raise ConflictError(BOOKING_CONFLICT_MESSAGE)

        extension = ExtensionRequest(
            RentalID=rental.RentalID,
            RequesterID=renter_id,
            AdditionalDays=additional_days,
            NewEndTime=new_end,
            ExtensionCost=extension_cost(rental.DailyRate, additional_days),
            Status=ExtensionStatus.PENDING,
            Notes=(notes or "").strip() or None,
            RequestedAt=utc_now(),
        )
        db.add(extension)
        # Bumps the rental version so a concurrent request for the same rental loses.
        rental.UpdatedDate = extension.RequestedAt

    LOGGER.info(
        "Extension requested extension_id=%s rental_id=%s days=%s",
        extension.ExtensionID,
        rental.RentalID,
        additional_days,
    )
    publish_event(db, "extension.requested", rental.RentalID, renter_id)
    return extension


def approve_extension(db: Session, extension_id: int, owner_id: str) -> ExtensionRequest:
    with atomic(db, stale_message=STALE_EXTENSION_MESSAGE):
        extension = load_extension(db, extension_id)
        rental = load_rental(db, extension.RentalID)
        _require_owner(rental, owner_id)
        _require_pending(extension, "approved")
        _require_active(rental)

        booking_ledger.extend(db, rental, extension.NewEndTime)
        now = utc_now()
        rental.EndTime = extension.NewEndTime
        rental.UpdatedDate = now
        extension.Status = ExtensionStatus.APPROVED
        extension.ResolvedAt = now

    LOGGER.info(
        "Extension approved extension_id=%s rental_id=%s new_end=%s",
        extension.ExtensionID,
        rental.RentalID,
        extension.NewEndTime,
    )
    publish_event(db, "extension.approved", rental.RentalID, owner_id)
    return extension


def reject_extension(db: Session, extension_id: int, owner_id: str, notes: str | None = None) -> ExtensionRequest:
    with atomic(db, stale_message=STALE_EXTENSION_MESSAGE):
        extension = load_extension(db, extension_id)
        rental = load_rental(db, extension.RentalID)
        _require_owner(rental, owner_id)
        _require_pending(extension, "rejected")
        extension.Status = ExtensionStatus.REJECTED
        extension.ResolvedAt = utc_now()
        if notes and notes.strip():
            extension.Notes = notes.strip()

    LOGGER.info("Extension rejected extension_id=%s rental_id=%s", extension.ExtensionID, rental.RentalID)
    publish_event(db, "extension.rejected", rental.RentalID, owner_id)
    return extension


def serialize_extension(extension: ExtensionRequest) -> dict:
    return {
        "extensionID": extension.ExtensionID,
        "rentalID": extension.RentalID,
        "requesterID": extension.RequesterID,
        "additionalDays": extension.AdditionalDays,
        "newEndTime": extension.NewEndTime,
        "extensionCost": float(to_money(extension.ExtensionCost)),
        "status": ExtensionStatus(extension.Status).value,
        "notes": extension.Notes,
        "requestedAt": extension.RequestedAt,
        "resolvedAt": extension.ResolvedAt,
    }


def _require_active(rental: RentalRequest) -> None:
    status = RentalStatus(rental.Status)
    if status != RentalStatus.ACTIVE:
        raise StateError(f"Extensions are only possible for active rentals, not {status.value}.")


def _require_owner(rental: RentalRequest, owner_id: str) -> None:
    if rental.OwnerID != owner_id:
        raise AuthorizationError("Only the gear owner can answer an extension request.")


def _require_pending(extension: ExtensionRequest, verb: str) -> None:
    status = ExtensionStatus(extension.Status)
    if status != ExtensionStatus.PENDING:
        raise StateError(f"Extension request cannot be {verb} while {status.value}.")
