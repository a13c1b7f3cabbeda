from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.settlement_models import GearListing
from services.date_utils import utc_now
from services.errors import NotFoundError, ValidationError
from services.pricing import to_money


def get_listing(db: Session, gear_id: int) -> GearListing:
    gear = db.get(GearListing, int(gear_id))
    if not gear:
        raise NotFoundError(f"Gear {gear_id} not found.")
    return gear


def lock_listing(db: Session, gear_id: int) -> GearListing:
    gear = db.execute(
        select(GearListing)
        .where(GearListing.GearID == int(gear_id))
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not gear:
        raise NotFoundError(f"Gear {gear_id} not found.")
    return gear


def upsert_listing(
    db: Session,
    gear_id: int,
    *,
    owner_id: str,
    title: str | None = None,
    daily_rate=None,
    deposit_amount=None,
) -> GearListing:
    """Store the listing snapshot pushed by the listing collaborator."""
    owner = (owner_id or "").strip()
    if not owner:
        raise ValidationError("ownerID is required.")
    rate = to_money(daily_rate)
    deposit = to_money(deposit_amount)
    if rate < 0 or deposit < 0:
        raise ValidationError("dailyRate and depositAmount must not be negative.")

    gear = db.get(GearListing, int(gear_id))
    if not gear:
        gear = GearListing(
            GearID=int(gear_id),
            IsAvailable=True,
            ReservationVersion=0,
            CreatedDate=utc_now(),
        )
        db.add(gear)
    elif gear.OwnerID != owner:
        raise ValidationError("Listing owner cannot be changed.")

    gear.OwnerID = owner
    gear.Title = title if title is not None else gear.Title
    gear.DailyRate = rate
    gear.DepositAmount = deposit
    gear.UpdatedDate = utc_now()
    db.commit()
    db.refresh(gear)
    return gear


def serialize_listing(gear: GearListing) -> dict:
    return {
        "gearID": gear.GearID,
        "ownerID": gear.OwnerID,
        "title": gear.Title,
        "dailyRate": float(to_money(gear.DailyRate)),
        "depositAmount": float(to_money(gear.DepositAmount)),
        "isAvailable": bool(gear.IsAvailable),
        "updatedDate": gear.UpdatedDate,
    }
