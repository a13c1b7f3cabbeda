from __future__ import annotations

from datetime import datetime
import json
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.settlement_models import (
    ProtectionType,
    Rating,
    RentalRequest,
    RentalStatus,
    ReturnStatus,
)
from services import booking_ledger, deposit_service
from services.date_utils import normalize_timestamp, rental_days, utc_now
from services.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from services.extension_service import list_extensions, serialize_extension
from services.listing_service import get_listing
from services.notification_service import publish_event
from services.pricing import ZERO, checkout_total, rental_cost, to_money
from services.unit_of_work import atomic, load_rental

LOGGER = logging.getLogger("gear_settlement.rentals")


def create_rental_request(
    db: Session,
    renter_id: str,
    gear_id: int,
    start: datetime,
    end: datetime,
    location: str | None = None,
    protection_type: str = ProtectionType.STANDARD.value,
    insurance_cost=0,
) -> RentalRequest:
    renter = (renter_id or "").strip()
    if not renter:
        raise ValidationError("renterID is required.")
    start = normalize_timestamp(start)
    end = normalize_timestamp(end)
    if end <= start:
        raise ValidationError("End time must be after start time.")
    try:
        protection = ProtectionType(protection_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown protection type: {protection_type}") from exc
    insurance = to_money(insurance_cost)
    if insurance < ZERO:
        raise ValidationError("insuranceCost must not be negative.")

    with atomic(db):
        gear = get_listing(db, gear_id)
        if gear.OwnerID == renter:
            raise ValidationError("You cannot rent your own gear.")

        deposit_amount = to_money(gear.DepositAmount)
        rental = RentalRequest(
            RenterID=renter,
            GearID=gear.GearID,
            OwnerID=gear.OwnerID,
            StartTime=start,
            EndTime=end,
            Location=(location or "").strip() or None,
            ProtectionType=protection,
            InsuranceCost=insurance,
            DailyRate=to_money(gear.DailyRate),
            Status=RentalStatus.PENDING,
            DepositAmount=deposit_amount,
            DepositStatus=deposit_service.initial_deposit_status(protection, deposit_amount),
            DepositChargedAmount=ZERO,
            CreatedDate=utc_now(),
            UpdatedDate=utc_now(),
        )
        db.add(rental)
        booking_ledger.reserve(db, rental)

    LOGGER.info(
        "Rental requested rental_id=%s gear_id=%s renter=%s start=%s end=%s",
        rental.RentalID,
        rental.GearID,
        renter,
        start,
        end,
    )
    publish_event(db, "rental.requested", rental.RentalID, renter)
    return rental


def get_rental(db: Session, rental_id: int) -> RentalRequest:
    rental = db.get(RentalRequest, int(rental_id), populate_existing=True)
    if not rental:
        raise NotFoundError(f"Rental {rental_id} not found.")
    return rental


def approve_rental(db: Session, rental_id: int, owner_id: str) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        _require_owner(rental, owner_id)
        _require_status(rental, RentalStatus.PENDING, "approved")
        rental.Status = RentalStatus.ACTIVE
        rental.UpdatedDate = utc_now()
        if (
            ProtectionType(rental.ProtectionType) == ProtectionType.STANDARD
            and to_money(rental.DepositAmount) > ZERO
        ):
            deposit_service.apply_hold(db, rental, owner_id)

    LOGGER.info("Rental approved rental_id=%s owner=%s", rental.RentalID, owner_id)
    publish_event(db, "rental.approved", rental.RentalID, owner_id)
    return rental


def decline_rental(db: Session, rental_id: int, owner_id: str) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        _require_owner(rental, owner_id)
        _require_status(rental, RentalStatus.PENDING, "declined")
        rental.Status = RentalStatus.DECLINED
        rental.UpdatedDate = utc_now()
        booking_ledger.release(db, rental)

    LOGGER.info("Rental declined rental_id=%s owner=%s", rental.RentalID, owner_id)
    publish_event(db, "rental.declined", rental.RentalID, owner_id)
    return rental


def cancel_rental(db: Session, rental_id: int, renter_id: str) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        if rental.RenterID != renter_id:
            raise AuthorizationError("Only the renter can cancel this request.")
        _require_status(rental, RentalStatus.PENDING, "cancelled")
        rental.Status = RentalStatus.CANCELLED
        rental.UpdatedDate = utc_now()
        booking_ledger.release(db, rental)

    LOGGER.info("Rental cancelled rental_id=%s renter=%s", rental.RentalID, renter_id)
    publish_event(db, "rental.cancelled", rental.RentalID, renter_id)
    return rental


def apply_complete(db: Session, rental: RentalRequest) -> bool:
    """Mark an active rental completed without committing. False if it already was."""
    status = RentalStatus(rental.Status)
    if status == RentalStatus.COMPLETED:
        return False
    if status != RentalStatus.ACTIVE:
        raise StateError(f"Rental cannot be completed while {status.value}.")
    now = utc_now()
    rental.Status = RentalStatus.COMPLETED
    rental.CompletedAt = now
    rental.UpdatedDate = now
    booking_ledger.release(db, rental)
    return True


def complete_rental(db: Session, rental_id: int, actor_id: str | None = None) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        changed = apply_complete(db, rental)

    if changed:
        LOGGER.info("Rental completed rental_id=%s", rental.RentalID)
        publish_event(db, "rental.completed", rental.RentalID, actor_id)
    return rental


def list_ratings(db: Session, rental_id: int) -> list[Rating]:
    return list(
        db.execute(
            select(Rating).where(Rating.RentalID == int(rental_id)).order_by(Rating.RatingID)
        ).scalars().all()
    )


def parse_photos(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(item) for item in value] if isinstance(value, list) else []


def serialize_rental(db: Session, rental: RentalRequest) -> dict:
    transactions = deposit_service.list_transactions(db, rental.RentalID)
    extensions = list_extensions(db, rental.RentalID)
    ratings = list_ratings(db, rental.RentalID)
    return_status = ReturnStatus(rental.ReturnStatus).value if rental.ReturnStatus else None
    amount = rental_cost(rental.DailyRate, rental.StartTime, rental.EndTime)
    deposit_due = ZERO if ProtectionType(rental.ProtectionType) == ProtectionType.PREMIUM else rental.DepositAmount
    return {
        "rentalID": rental.RentalID,
        "renterID": rental.RenterID,
        "ownerID": rental.OwnerID,
        "gearID": rental.GearID,
        "startTime": rental.StartTime,
        "endTime": rental.EndTime,
        "location": rental.Location,
        "protectionType": ProtectionType(rental.ProtectionType).value,
        "insuranceCost": float(to_money(rental.InsuranceCost)),
        "dailyRate": float(to_money(rental.DailyRate)),
        "rentalDays": rental_days(rental.StartTime, rental.EndTime),
        "rentalCost": float(amount),
        "totalCost": float(checkout_total(amount, rental.InsuranceCost, deposit_due)),
        "status": RentalStatus(rental.Status).value,
        "returnStatus": return_status,
        "meetingTime": rental.MeetingTime,
        "meetingProposedBy": rental.MeetingProposedBy,
        "inspectionNotes": rental.InspectionNotes,
        "damageDescription": rental.DamageDescription,
        "damagePhotos": parse_photos(rental.DamagePhotos),
        "disputeNotes": rental.DisputeNotes,
        "disputeOutcome": rental.DisputeOutcome.value if rental.DisputeOutcome else None,
        "deposit": deposit_service.deposit_summary(rental, transactions),
        "extensions": [serialize_extension(ext) for ext in extensions],
        "ratings": [
            {
                "ratingID": rating.RatingID,
                "raterID": rating.RaterID,
                "rating": rating.Rating,
                "review": rating.Review,
                "createdAt": rating.CreatedAt,
            }
            for rating in ratings
        ],
        "payoutID": rental.PayoutID,
        "completedAt": rental.CompletedAt,
        "createdDate": rental.CreatedDate,
        "updatedDate": rental.UpdatedDate,
    }


def _require_owner(rental: RentalRequest, owner_id: str) -> None:
    if rental.OwnerID != owner_id:
        raise AuthorizationError("Only the gear owner can act on this request.")


def _require_status(rental: RentalRequest, expected: RentalStatus, verb: str) -> None:
    status = RentalStatus(rental.Status)
    if status != expected:
        raise StateError(f"Rental cannot be {verb} while {status.value}.")
