import logging
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

import config
from db.deps import get_settlement_db
from models.settlement_models import AuditLog
from schemas.listings import ListingUpsert
from schemas.rentals import (
    ConfirmReceiptRequest,
    CreateRentalDto,
    ExtensionDecisionRequest,
    ExtensionRequestDto,
    InspectionRequest,
    OpenDisputeRequest,
    RatingRequest,
    ReadyForPickupRequest,
    ResolveDisputeRequest,
    ScheduleReturnRequest,
)
from schemas.settlement import (
    CreatePayoutRequest,
    DepositChargeRequest,
    DepositReleaseRequest,
    PayoutBatchRequest,
    PayoutStatusRequest,
)
from services import (
    booking_ledger,
    deposit_service,
    extension_service,
    payout_service,
    rental_service,
    return_workflow,
)
from services.date_utils import normalize_timestamp, utc_now
from services.errors import SettlementError
from services.listing_service import get_listing, serialize_listing, upsert_listing
from services.session_service import remove_session, session_actor

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

API_LOGGER = logging.getLogger("gear_settlement.api")


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    if exc.status_code >= 500:
        API_LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, actor_id: str | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            ActorID=actor_id,
            CreatedAt=utc_now(),
        )
    )


def _audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, actor_id: str | None = None) -> None:
    try:
        log_audit(db, entity_type, int(entity_id or 0), action, details, actor_id=actor_id)
        db.commit()
    except Exception:
        db.rollback()
        API_LOGGER.exception("Audit write failed entity=%s id=%s action=%s", entity_type, entity_id, action)


def _require_actor_or_401(session_token: str | None) -> str:
    actor_id = session_actor(session_token)
    if actor_id is None:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return actor_id


def _require_admin_or_403(session_token: str | None) -> str:
    actor_id = _require_actor_or_401(session_token)
    if not config.is_administrator(actor_id):
        raise HTTPException(status_code=403, detail="Administrator required.")
    return actor_id


def _require_participant_or_403(db: Session, rental_id: int, actor_id: str):
    rental = rental_service.get_rental(db, rental_id)
    if actor_id not in {rental.RenterID, rental.OwnerID} and not config.is_administrator(actor_id):
        raise HTTPException(status_code=403, detail="You are not a party to this rental.")
    return rental


def _rental_response(db: Session, rental, actor_id: str) -> dict:
    payload = rental_service.serialize_rental(db, rental)
    payload["allowedReturnActions"] = return_workflow.allowed_actions(rental, actor_id)
    return payload


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_settlement_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/auth/me")
def auth_me(x_session_token: str | None = Header(None, alias="X-Session-Token")):
    actor_id = _require_actor_or_401(x_session_token)
    return {"actorID": actor_id, "isAdministrator": config.is_administrator(actor_id)}


@app.post("/api/auth/logout")
def auth_logout(x_session_token: str | None = Header(None, alias="X-Session-Token")):
    remove_session(x_session_token)
    return {"ok": True}


@app.put("/api/listings/{gear_id}")
def put_listing(
    gear_id: int,
    payload: ListingUpsert,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    if actor_id != payload.ownerID and not config.is_administrator(actor_id):
        raise HTTPException(status_code=403, detail="Only the owner can publish this listing.")
    gear = upsert_listing(
        db,
        gear_id,
        owner_id=payload.ownerID,
        title=payload.title,
        daily_rate=payload.dailyRate,
        deposit_amount=payload.depositAmount,
    )
    _audit(db, "Gear", gear.GearID, "UpsertListing", f"dailyRate={gear.DailyRate} deposit={gear.DepositAmount}", actor_id)
    return serialize_listing(gear)


@app.get("/api/listings/{gear_id}")
def get_listing_snapshot(gear_id: int, db: Session = Depends(get_settlement_db)):
    return serialize_listing(get_listing(db, gear_id))


@app.get("/api/gear/{gear_id}/availability")
def gear_availability(
    gear_id: int,
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_settlement_db),
):
    start_ts = normalize_timestamp(start)
    end_ts = normalize_timestamp(end)
    if end_ts <= start_ts:
        raise HTTPException(status_code=400, detail="end must be after start.")
    gear = get_listing(db, gear_id)
    overlaps = booking_ledger.find_overlaps(db, gear.GearID, start_ts, end_ts)
    return {
        "gearID": gear.GearID,
        "start": start_ts,
        "end": end_ts,
        "available": not overlaps,
        "conflicts": [
            {"rentalID": item.RentalID, "startTime": item.StartTime, "endTime": item.EndTime}
            for item in overlaps
        ],
    }


@app.post("/api/rentals")
def create_rental(
    payload: CreateRentalDto,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = rental_service.create_rental_request(
        db,
        actor_id,
        payload.gearID,
        payload.startTime,
        payload.endTime,
        payload.location,
        payload.protectionType,
        payload.insuranceCost,
    )
    _audit(db, "Rental", rental.RentalID, "CreateRental", f"gear={rental.GearID} {rental.StartTime}..{rental.EndTime}", actor_id)
    return _rental_response(db, rental, actor_id)


@app.get("/api/rentals/{rental_id}")
def get_rental(
    rental_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = _require_participant_or_403(db, rental_id, actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/approve")
def approve_rental(
    rental_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = rental_service.approve_rental(db, rental_id, actor_id)
    _audit(db, "Rental", rental.RentalID, "ApproveRental", f"deposit={rental.DepositStatus.value}", actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/decline")
def decline_rental(
    rental_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = rental_service.decline_rental(db, rental_id, actor_id)
    _audit(db, "Rental", rental.RentalID, "DeclineRental", None, actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/cancel")
def cancel_rental(
    rental_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = rental_service.cancel_rental(db, rental_id, actor_id)
    _audit(db, "Rental", rental.RentalID, "CancelRental", None, actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/return/schedule")
def schedule_return(
    rental_id: int,
    payload: ScheduleReturnRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = return_workflow.schedule(db, rental_id, actor_id, payload.meetingTime)
    _audit(db, "Rental", rental.RentalID, "ScheduleReturn", f"meeting={rental.MeetingTime}", actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/return/confirm-meeting")
def confirm_return_meeting(
    rental_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = return_workflow.confirm_meeting(db, rental_id, actor_id)
    _audit(db, "Rental", rental.RentalID, "ConfirmReturnMeeting", None, actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/return/request-different-time")
def request_different_return_time(
    rental_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = return_workflow.request_different_time(db, rental_id, actor_id)
    _audit(db, "Rental", rental.RentalID, "RequestDifferentReturnTime", None, actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/return/inspection")
def submit_return_inspection(
    rental_id: int,
    payload: InspectionRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = return_workflow.submit_inspection(
        db,
        rental_id,
        actor_id,
        payload.notes,
        payload.hasDamage,
        payload.damageDescription,
        payload.photos,
    )
    _audit(db, "Rental", rental.RentalID, "SubmitInspection", f"hasDamage={payload.hasDamage}", actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/return/ready-for-pickup")
def mark_ready_for_pickup(
    rental_id: int,
    payload: ReadyForPickupRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = return_workflow.mark_ready_for_pickup(db, rental_id, actor_id, payload.notes)
    _audit(db, "Rental", rental.RentalID, "ReadyForPickup", None, actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/return/confirm-receipt")
def confirm_return_receipt(
    rental_id: int,
    payload: ConfirmReceiptRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = return_workflow.confirm_receipt(
        db,
        rental_id,
        actor_id,
        payload.hasDamage,
        payload.description,
        payload.photos,
    )
    _audit(db, "Rental", rental.RentalID, "ConfirmReceipt", f"hasDamage={payload.hasDamage}", actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/return/dispute")
def open_return_dispute(
    rental_id: int,
    payload: OpenDisputeRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = return_workflow.open_dispute(db, rental_id, actor_id, payload.description, payload.photos)
    _audit(db, "Rental", rental.RentalID, "OpenDispute", None, actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/return/resolve")
def resolve_return_dispute(
    rental_id: int,
    payload: ResolveDisputeRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = return_workflow.resolve_dispute(
        db,
        rental_id,
        actor_id,
        payload.outcome,
        payload.amount,
        payload.reason,
        payload.notes,
    )
    _audit(db, "Rental", rental.RentalID, "ResolveDispute", f"outcome={payload.outcome} amount={payload.amount}", actor_id)
    return _rental_response(db, rental, actor_id)


@app.post("/api/rentals/{rental_id}/ratings")
def rate_rental(
    rental_id: int,
    payload: RatingRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    entry = return_workflow.rate(db, rental_id, actor_id, payload.rating, payload.review)
    _audit(db, "Rental", rental_id, "RateRental", f"rating={entry.Rating}", actor_id)
    return {
        "ratingID": entry.RatingID,
        "rentalID": entry.RentalID,
        "raterID": entry.RaterID,
        "rating": entry.Rating,
        "review": entry.Review,
        "createdAt": entry.CreatedAt,
    }


@app.get("/api/rentals/{rental_id}/deposit")
def get_deposit(
    rental_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = _require_participant_or_403(db, rental_id, actor_id)
    transactions = deposit_service.list_transactions(db, rental.RentalID)
    return deposit_service.deposit_summary(rental, transactions)


@app.post("/api/rentals/{rental_id}/deposit/charge")
def charge_deposit(
    rental_id: int,
    payload: DepositChargeRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = deposit_service.charge_deposit(db, rental_id, actor_id, payload.amount, payload.reason, payload.notes)
    _audit(db, "Rental", rental.RentalID, "ChargeDeposit", f"amount={payload.amount} reason={payload.reason}", actor_id)
    return deposit_service.deposit_summary(rental, deposit_service.list_transactions(db, rental.RentalID))


@app.post("/api/rentals/{rental_id}/deposit/release")
def release_deposit(
    rental_id: int,
    payload: DepositReleaseRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = deposit_service.release_deposit(db, rental_id, actor_id, payload.notes)
    _audit(db, "Rental", rental.RentalID, "ReleaseDeposit", None, actor_id)
    return deposit_service.deposit_summary(rental, deposit_service.list_transactions(db, rental.RentalID))


@app.post("/api/rentals/{rental_id}/extensions")
def request_extension(
    rental_id: int,
    payload: ExtensionRequestDto,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    extension = extension_service.request_extension(db, rental_id, actor_id, payload.additionalDays, payload.notes)
    _audit(db, "Extension", extension.ExtensionID, "RequestExtension", f"rental={rental_id} days={payload.additionalDays}", actor_id)
    return extension_service.serialize_extension(extension)


@app.get("/api/rentals/{rental_id}/extensions")
def list_extensions(
    rental_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    rental = _require_participant_or_403(db, rental_id, actor_id)
    return [extension_service.serialize_extension(item) for item in extension_service.list_extensions(db, rental.RentalID)]


@app.post("/api/extensions/{extension_id}/approve")
def approve_extension(
    extension_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    extension = extension_service.approve_extension(db, extension_id, actor_id)
    _audit(db, "Extension", extension.ExtensionID, "ApproveExtension", f"newEnd={extension.NewEndTime}", actor_id)
    return extension_service.serialize_extension(extension)


@app.post("/api/extensions/{extension_id}/reject")
def reject_extension(
    extension_id: int,
    payload: ExtensionDecisionRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    extension = extension_service.reject_extension(db, extension_id, actor_id, payload.notes)
    _audit(db, "Extension", extension.ExtensionID, "RejectExtension", None, actor_id)
    return extension_service.serialize_extension(extension)


@app.get("/api/extensions/{extension_id}")
def get_extension(
    extension_id: int,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    extension = extension_service.get_extension(db, extension_id)
    _require_participant_or_403(db, extension.RentalID, actor_id)
    return extension_service.serialize_extension(extension)


@app.get("/api/owners/me/pending-earnings")
def owner_pending_earnings(
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    earnings = payout_service.pending_earnings(db, actor_id)
    earnings["totalAmount"] = float(earnings["totalAmount"])
    return earnings


@app.post("/api/payouts")
def create_payout(
    payload: CreatePayoutRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    if payload.feeRate is not None and not config.is_administrator(actor_id):
        raise HTTPException(status_code=403, detail="Only administrators can override the platform fee.")
    payout = payout_service.create_payout(db, actor_id, payload.feeRate)
    _audit(db, "Payout", payout.PayoutID, "CreatePayout", f"total={payout.TotalAmount} fee={payout.FeeAmount}", actor_id)
    return payout_service.serialize_payout(db, payout)


@app.get("/api/payouts")
def list_payouts(
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_actor_or_401(x_session_token)
    return [payout_service.serialize_payout(db, item) for item in payout_service.list_payouts(db, actor_id, limit)]


@app.post("/api/payouts/batch")
def run_payout_batch(
    payload: PayoutBatchRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_admin_or_403(x_session_token)
    results = payout_service.run_payout_batch(db, payload.threshold, payload.feeRate)
    created = [item for item in results if item["result"] == "created"]
    _audit(db, "Payout", 0, "RunPayoutBatch", f"owners={len(results)} created={len(created)}", actor_id)
    return {"results": results, "created": len(created)}


@app.post("/api/payouts/{payout_id}/status")
def update_payout_status(
    payout_id: int,
    payload: PayoutStatusRequest,
    db: Session = Depends(get_settlement_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _require_admin_or_403(x_session_token)
    payout = payout_service.update_payout_status(db, payout_id, payload.status, payload.notes)
    _audit(db, "Payout", payout.PayoutID, "UpdatePayoutStatus", f"status={payload.status}", actor_id)
    return payout_service.serialize_payout(db, payout)
