"""
Booking ledger: which date ranges of a piece of gear are held by open rentals.

Ranges are half-open, [start, end), so a rental ending at 10:00 does not
collide with one starting at 10:00. Every change for a gear bumps
GearListing.ReservationVersion with a compare-and-set UPDATE; two writers
that read the same version cannot both succeed.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.settlement_models import GearListing, RentalRequest, Reservation
from services.date_utils import utc_now
from services.errors import BOOKING_CONFLICT_MESSAGE, ConflictError, ValidationError
from services.listing_service import lock_listing

LOGGER = logging.getLogger("gear_settlement.booking")


def find_overlaps(
    db: Session,
    gear_id: int,
    start: datetime,
    end: datetime,
    exclude_rental_id: int | None = None,
) -> list[Reservation]:
    stmt = (
        select(Reservation)
        .where(Reservation.GearID == int(gear_id))
        .where(Reservation.IsActive.is_(True))
        .where(Reservation.StartTime < end)
        .where(Reservation.EndTime > start)
        .order_by(Reservation.StartTime)
    )
    if exclude_rental_id is not None:
        stmt = stmt.where(Reservation.RentalID != int(exclude_rental_id))
    return list(db.execute(stmt).scalars().all())


def is_range_available(
    db: Session,
    gear_id: int,
    start: datetime,
    end: datetime,
    exclude_rental_id: int | None = None,
) -> bool:
    return not find_overlaps(db, gear_id, start, end, exclude_rental_id)


def claim_gear(db: Session, gear_id: int, expected_version: int, is_available: bool) -> int:
    result = db.execute(
        update(GearListing)
        .where(GearListing.GearID == int(gear_id))
        .where(GearListing.ReservationVersion == int(expected_version))
        .values(
            ReservationVersion=int(expected_version) + 1,
            IsAvailable=is_available,
            UpdatedDate=utc_now(),
        )
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount != 1:
        LOGGER.info("Reservation race lost gear_id=%s expected_version=%s", gear_id, expected_version)
        raise ConflictError(BOOKING_CONFLICT_MESSAGE)
    return int(expected_version) + 1


def reserve(db: Session, rental: RentalRequest) -> Reservation:
    if rental.EndTime <= rental.StartTime:
        raise ValidationError("End time must be after start time.")

    gear = lock_listing(db, rental.GearID)
    version = int(gear.ReservationVersion or 0)
    if find_overlaps(db, gear.GearID, rental.StartTime, rental.EndTime, rental.RentalID):
        raise ConflictError(BOOKING_CONFLICT_MESSAGE)

    claim_gear(db, gear.GearID, version, is_available=False)
    reservation = Reservation(
        GearID=gear.GearID,
        Rental=rental,
        StartTime=rental.StartTime,
        EndTime=rental.EndTime,
        IsActive=True,
        CreatedDate=utc_now(),
    )
    db.add(reservation)
    return reservation


def extend(db: Session, rental: RentalRequest, new_end: datetime) -> Reservation:
    reservation = _active_reservation(db, rental)
    if reservation is None:
        raise ConflictError("Rental has no active reservation to extend.")
    if new_end <= reservation.StartTime:
        raise ValidationError("New end time must be after the start time.")

    gear = lock_listing(db, rental.GearID)
    version = int(gear.ReservationVersion or 0)
    if find_overlaps(db, gear.GearID, reservation.StartTime, new_end, rental.RentalID):
        raise ConflictError(BOOKING_CONFLICT_MESSAGE)

    claim_gear(db, gear.GearID, version, is_available=False)
    reservation.EndTime = new_end
    return reservation


def release(db: Session, rental: RentalRequest) -> bool:
    """Free the rental's range. Returns False when there was nothing to release."""
    reservation = _active_reservation(db, rental)
    if reservation is None:
        return False

    gear = lock_listing(db, rental.GearID)
    version = int(gear.ReservationVersion or 0)
    reservation.IsActive = False
    reservation.ReleasedAt = utc_now()

    still_booked = db.execute(
        select(Reservation.ReservationID)
        .where(Reservation.GearID == gear.GearID)
        .where(Reservation.IsActive.is_(True))
        .where(Reservation.RentalID != rental.RentalID)
        .limit(1)
    ).first()
    claim_gear(db, gear.GearID, version, is_available=still_booked is None)
    LOGGER.info("Reservation released gear_id=%s rental_id=%s", gear.GearID, rental.RentalID)
    return True


def _active_reservation(db: Session, rental: RentalRequest) -> Reservation | None:
    if rental.RentalID is None:
        return None
    return db.execute(
        select(Reservation)
        .where(Reservation.RentalID == rental.RentalID)
        .where(Reservation.IsActive.is_(True))
    ).scalars().first()
