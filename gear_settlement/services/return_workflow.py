"""
Return and pickup negotiation for active rentals.

Every action goes through one transition table keyed by
(current return status, action, role). A key that exists for some other role
is an authorization failure; a key that exists for no role is a state
failure. A completing action commits the return status, the rental
completion and the deposit ledger entry together.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy.orm import Session

import config
from models.settlement_models import (
    DisputeOutcome,
    Rating,
    RentalRequest,
    RentalStatus,
    ReturnStatus,
)
from services import deposit_service, rental_service
from services.date_utils import normalize_timestamp, utc_now
from services.errors import AuthorizationError, ConflictError, StateError, ValidationError
from services.notification_service import publish_event
from services.unit_of_work import atomic, load_rental

LOGGER = logging.getLogger("gear_settlement.returns")

RENTER = "renter"
OWNER = "owner"
ADMIN = "admin"

SCHEDULE = "schedule"
CONFIRM_MEETING = "confirm_meeting"
REQUEST_DIFFERENT_TIME = "request_different_time"
SUBMIT_INSPECTION = "submit_inspection"
MARK_READY_FOR_PICKUP = "mark_ready_for_pickup"
CONFIRM_RECEIPT = "confirm_receipt"
OPEN_DISPUTE = "open_dispute"
RESOLVE_DISPUTE = "resolve_dispute"

MAX_PHOTOS = 10

_CLOSING = (ReturnStatus.COMPLETED, ReturnStatus.DAMAGE_REPORTED)


def _build_transitions() -> dict:
    rows = [
        ((None, ReturnStatus.TIME_CHANGE_REQUESTED), SCHEDULE, (RENTER, OWNER), (ReturnStatus.SCHEDULED,)),
        ((ReturnStatus.SCHEDULED,), CONFIRM_MEETING, (RENTER, OWNER), (ReturnStatus.MEETING_CONFIRMED,)),
        (
            (ReturnStatus.SCHEDULED, ReturnStatus.MEETING_CONFIRMED),
            REQUEST_DIFFERENT_TIME,
            (RENTER, OWNER),
            (ReturnStatus.TIME_CHANGE_REQUESTED,),
        ),
        ((ReturnStatus.MEETING_CONFIRMED,), SUBMIT_INSPECTION, (OWNER,), _CLOSING),
        ((ReturnStatus.MEETING_CONFIRMED,), MARK_READY_FOR_PICKUP, (RENTER,), (ReturnStatus.READY_FOR_PICKUP,)),
        ((ReturnStatus.READY_FOR_PICKUP, ReturnStatus.MEETING_CONFIRMED), CONFIRM_RECEIPT, (OWNER,), _CLOSING),
        ((ReturnStatus.DAMAGE_REPORTED,), OPEN_DISPUTE, (RENTER, OWNER), (ReturnStatus.DISPUTE_OPEN,)),
        ((ReturnStatus.DISPUTE_OPEN,), RESOLVE_DISPUTE, (ADMIN,), (ReturnStatus.RESOLVED,)),
    ]
    table = {}
    for states, action, roles, targets in rows:
        for state in states:
            for role in roles:
                table[(state, action, role)] = targets
    return table


TRANSITIONS = _build_transitions()


def actor_roles(rental: RentalRequest, actor_id: str | None) -> set[str]:
    roles = set()
    if not actor_id:
        return roles
    if actor_id == rental.RenterID:
        roles.add(RENTER)
    if actor_id == rental.OwnerID:
        roles.add(OWNER)
    if config.is_administrator(actor_id):
        roles.add(ADMIN)
    return roles


def allowed_actions(rental: RentalRequest, actor_id: str | None) -> list[str]:
    if RentalStatus(rental.Status) != RentalStatus.ACTIVE:
        return []
    state = _current_state(rental)
    roles = actor_roles(rental, actor_id)
    return sorted({action for (key_state, action, role) in TRANSITIONS if key_state == state and role in roles})


def resolve_transition(rental: RentalRequest, action: str, actor_id: str | None) -> tuple[ReturnStatus, ...]:
    """
    Look up the targets an actor may move the return workflow to.

    Args:
        rental: Rental being returned
        action: Workflow action name
        actor_id: Caller identity

    Returns:
        tuple: Allowed next return states
    """
    status = RentalStatus(rental.Status)
    if status != RentalStatus.ACTIVE:
        raise StateError(f"Return workflow requires an active rental, not {status.value}.")

    roles = actor_roles(rental, actor_id)
    if not roles:
        raise AuthorizationError("Only the renter, the owner or an administrator can act on this return.")

    state = _current_state(rental)
    for role in sorted(roles):
        targets = TRANSITIONS.get((state, action, role))
        if targets:
            return targets

    if any(key_state == state and key_action == action for (key_state, key_action, _role) in TRANSITIONS):
        raise AuthorizationError(f"You are not allowed to {action.replace('_', ' ')} at this step.")
    label = state.value if state else "not started"
    raise StateError(f"Cannot {action.replace('_', ' ')} while the return is {label}.")


def validate_photos(photos: Iterable[str] | None) -> list[str]:
    if photos is None:
        return []
    if isinstance(photos, str):
        raise ValidationError("photos must be a list of storage references.")
    cleaned = []
    for photo in photos:
        if not isinstance(photo, str) or not photo.strip():
            raise ValidationError("Photo references must be non-empty strings.")
        cleaned.append(photo.strip())
    if len(cleaned) > MAX_PHOTOS:
        raise ValidationError(f"At most {MAX_PHOTOS} photos can be attached.")
    return cleaned


def schedule(db: Session, rental_id: int, actor_id: str, meeting_time: datetime) -> RentalRequest:
    if meeting_time is None:
        raise ValidationError("meetingTime is required.")
    with atomic(db):
        rental = load_rental(db, rental_id)
        (target,) = resolve_transition(rental, SCHEDULE, actor_id)
        rental.MeetingTime = normalize_timestamp(meeting_time)
        rental.MeetingProposedBy = actor_id
        _move(rental, target)
    return _committed(db, rental, SCHEDULE, actor_id)


def confirm_meeting(db: Session, rental_id: int, actor_id: str) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        (target,) = resolve_transition(rental, CONFIRM_MEETING, actor_id)
        _require_counterparty(rental, actor_id, "confirm")
        _move(rental, target)
    return _committed(db, rental, CONFIRM_MEETING, actor_id)


def request_different_time(db: Session, rental_id: int, actor_id: str) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        (target,) = resolve_transition(rental, REQUEST_DIFFERENT_TIME, actor_id)
        _require_counterparty(rental, actor_id, "reject")
        rental.MeetingTime = None
        _move(rental, target)
    return _committed(db, rental, REQUEST_DIFFERENT_TIME, actor_id)


def submit_inspection(
    db: Session,
    rental_id: int,
    actor_id: str,
    notes: str | None,
    has_damage: bool,
    damage_description: str | None = None,
    photos: Iterable[str] | None = None,
) -> RentalRequest:
    cleaned_photos = validate_photos(photos)
    description = _damage_description(has_damage, damage_description)
    with atomic(db):
        rental = load_rental(db, rental_id)
        resolve_transition(rental, SUBMIT_INSPECTION, actor_id)
        rental.InspectionNotes = (notes or "").strip() or None
        if has_damage:
            _report_damage(rental, description, cleaned_photos)
        else:
            _close_without_damage(db, rental, actor_id)
    return _committed(db, rental, SUBMIT_INSPECTION, actor_id)


def mark_ready_for_pickup(db: Session, rental_id: int, renter_id: str, notes: str | None = None) -> RentalRequest:
    with atomic(db):
        rental = load_rental(db, rental_id)
        (target,) = resolve_transition(rental, MARK_READY_FOR_PICKUP, renter_id)
        if notes and notes.strip():
            rental.InspectionNotes = notes.strip()
        _move(rental, target)
    return _committed(db, rental, MARK_READY_FOR_PICKUP, renter_id)


def confirm_receipt(
    db: Session,
    rental_id: int,
    owner_id: str,
    has_damage: bool,
    description: str | None = None,
    photos: Iterable[str] | None = None,
) -> RentalRequest:
    cleaned_photos = validate_photos(photos)
    damage_text = _damage_description(has_damage, description)
    with atomic(db):
        rental = load_rental(db, rental_id)
        resolve_transition(rental, CONFIRM_RECEIPT, owner_id)
        if has_damage:
            _report_damage(rental, damage_text, cleaned_photos)
        else:
            _close_without_damage(db, rental, owner_id)
    return _committed(db, rental, CONFIRM_RECEIPT, owner_id)


def open_dispute(
    db: Session,
    rental_id: int,
    actor_id: str,
    description: str,
    photos: Iterable[str] | None = None,
) -> RentalRequest:
    cleaned_photos = validate_photos(photos)
    text = (description or "").strip()
    if not text:
        raise ValidationError("A dispute description is required.")
    with atomic(db):
        rental = load_rental(db, rental_id)
        (target,) = resolve_transition(rental, OPEN_DISPUTE, actor_id)
        rental.DisputeNotes = text
        if cleaned_photos:
            combined = rental_service.parse_photos(rental.DamagePhotos) + cleaned_photos
            rental.DamagePhotos = json.dumps(validate_photos(combined))
        _move(rental, target)
    return _committed(db, rental, OPEN_DISPUTE, actor_id)


def resolve_dispute(
    db: Session,
    rental_id: int,
    admin_id: str,
    outcome: str,
    amount=None,
    reason: str | None = None,
    notes: str | None = None,
) -> RentalRequest:
    try:
        resolved = DisputeOutcome(outcome)
    except ValueError as exc:
        raise ValidationError(f"Unknown dispute outcome: {outcome}") from exc
    if resolved == DisputeOutcome.PARTIAL_CHARGE and amount is None:
        raise ValidationError("amount is required for a partial charge.")

    with atomic(db):
        rental = load_rental(db, rental_id)
        (target,) = resolve_transition(rental, RESOLVE_DISPUTE, admin_id)
        charge_reason = (reason or "").strip() or f"Dispute resolved: {resolved.value}"
        if deposit_service.is_in_escrow(rental):
            if resolved == DisputeOutcome.CLEARED:
                deposit_service.apply_release(db, rental, admin_id, notes)
            elif resolved == DisputeOutcome.PARTIAL_CHARGE:
                deposit_service.apply_charge(db, rental, admin_id, amount, charge_reason, notes)
            else:
                remaining = deposit_service.remaining_deposit(rental)
                deposit_service.apply_charge(db, rental, admin_id, remaining, charge_reason, notes)
        elif resolved == DisputeOutcome.PARTIAL_CHARGE:
            raise StateError("There is no deposit in escrow to charge.")
        rental.DisputeOutcome = resolved
        if notes and notes.strip():
            rental.DisputeNotes = "\n".join(filter(None, [rental.DisputeNotes, notes.strip()]))
        _move(rental, target)
        rental_service.apply_complete(db, rental)
    return _committed(db, rental, RESOLVE_DISPUTE, admin_id)


def rate(db: Session, rental_id: int, rater_id: str, rating: int, review: str | None = None) -> Rating:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("rating must be a whole number from 1 to 5.")
    with atomic(db):
        rental = load_rental(db, rental_id)
        if rater_id not in {rental.RenterID, rental.OwnerID}:
            raise AuthorizationError("Only the renter or the owner can rate this rental.")
        if RentalStatus(rental.Status) != RentalStatus.COMPLETED:
            raise StateError("Only completed rentals can be rated.")
        already = any(existing.RaterID == rater_id for existing in rental_service.list_ratings(db, rental.RentalID))
        if already:
            raise ConflictError("You have already rated this rental.")
        entry = Rating(
            RentalID=rental.RentalID,
            RaterID=rater_id,
            Rating=rating,
            Review=(review or "").strip() or None,
            CreatedAt=utc_now(),
        )
        db.add(entry)
    LOGGER.info("Rental rated rental_id=%s rater=%s rating=%s", rental.RentalID, rater_id, rating)
    publish_event(db, "rental.rated", rental.RentalID, rater_id)
    return entry


def _current_state(rental: RentalRequest) -> ReturnStatus | None:
    return ReturnStatus(rental.ReturnStatus) if rental.ReturnStatus else None


def _move(rental: RentalRequest, target: ReturnStatus) -> None:
    rental.ReturnStatus = target
    rental.UpdatedDate = utc_now()


def _require_counterparty(rental: RentalRequest, actor_id: str, verb: str) -> None:
    if rental.MeetingProposedBy and rental.MeetingProposedBy == actor_id:
        raise AuthorizationError(f"You cannot {verb} a meeting time you proposed.")


def _damage_description(has_damage: bool, description: str | None) -> str | None:
    text = (description or "").strip()
    if has_damage and not text:
        raise ValidationError("A damage description is required when damage is reported.")
    return text or None


def _report_damage(rental: RentalRequest, description: str | None, photos: list[str]) -> None:
    rental.DamageDescription = description
    rental.DamagePhotos = json.dumps(photos) if photos else None
    _move(rental, ReturnStatus.DAMAGE_REPORTED)


def _close_without_damage(db: Session, rental: RentalRequest, actor_id: str) -> None:
    _move(rental, ReturnStatus.COMPLETED)
    if deposit_service.is_in_escrow(rental):
        deposit_service.apply_release(db, rental, actor_id)
    rental_service.apply_complete(db, rental)


def _committed(db: Session, rental: RentalRequest, action: str, actor_id: str) -> RentalRequest:
    state = _current_state(rental)
    LOGGER.info(
        "Return transition rental_id=%s action=%s actor=%s return_status=%s",
        rental.RentalID,
        action,
        actor_id,
        state.value if state else None,
    )
    publish_event(db, f"return.{action}", rental.RentalID, actor_id)
    if RentalStatus(rental.Status) == RentalStatus.COMPLETED:
        publish_event(db, "rental.completed", rental.RentalID, actor_id)
    return rental
