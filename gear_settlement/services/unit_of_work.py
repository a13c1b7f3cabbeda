from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.settlement_models import ExtensionRequest, Payout, RentalRequest
from services.errors import ConflictError, NotFoundError, StateError

LOGGER = logging.getLogger("gear_settlement.persistence")

STALE_RENTAL_MESSAGE = "Rental was changed by another request. Reload and try again."


@contextmanager
def atomic(db: Session, stale_message: str = STALE_RENTAL_MESSAGE) -> Iterator[Session]:
    """Run a block as one transaction; any failure rolls the whole block back."""
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        LOGGER.warning("Concurrent modification rejected: %s", exc)
        raise StateError(stale_message) from exc
    except IntegrityError as exc:
        db.rollback()
        LOGGER.warning("Integrity violation rejected: %s", exc.orig)
        raise ConflictError("The change conflicts with existing data.") from exc
    except BaseException:
        db.rollback()
        raise


def load_rental(db: Session, rental_id: int) -> RentalRequest:
    rental = db.get(RentalRequest, int(rental_id), with_for_update=True, populate_existing=True)
    if not rental:
        raise NotFoundError(f"Rental {rental_id} not found.")
    return rental


def load_extension(db: Session, extension_id: int) -> ExtensionRequest:
    extension = db.get(ExtensionRequest, int(extension_id), with_for_update=True, populate_existing=True)
    if not extension:
        raise NotFoundError(f"Extension request {extension_id} not found.")
    return extension


def load_payout(db: Session, payout_id: int) -> Payout:
    payout = db.get(Payout, int(payout_id), with_for_update=True, populate_existing=True)
    if not payout:
        raise NotFoundError(f"Payout {payout_id} not found.")
    return payout
