"""
Outbound notification queue.

Events are appended after the business transaction has committed, in their
own commit. A failure here is logged and swallowed: a notification outage
must never undo a rental transition. Delivery is at-least-once; rows stay in
the queue with Attempts/LastError until a sender accepts them.
"""

from __future__ import annotations

import json
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.settlement_models import NotificationQueue
from services.date_utils import utc_now

LOGGER = logging.getLogger("gear_settlement.notifications")

MAX_ATTEMPTS = 5


def publish_event(db: Session, event_type: str, rental_id: int | None, actor_id: str | None = None) -> bool:
    payload = {
        "type": event_type,
        "rentalID": rental_id,
        "actorID": actor_id,
        "timestamp": utc_now().isoformat(),
    }
    try:
        db.add(
            NotificationQueue(
                RentalID=rental_id,
                NotificationType=event_type,
                Payload=json.dumps(payload),
                Attempts=0,
                CreatedAt=utc_now(),
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        LOGGER.exception("Notification enqueue failed type=%s rental_id=%s", event_type, rental_id)
        return False
    return True


def pending_notifications(db: Session, limit: int = 100) -> list[NotificationQueue]:
    return list(
        db.execute(
            select(NotificationQueue)
            .where(NotificationQueue.SentAt.is_(None))
            .where(NotificationQueue.Attempts < MAX_ATTEMPTS)
            .order_by(NotificationQueue.NotificationID)
            .limit(int(limit))
        ).scalars().all()
    )


def dispatch_pending_notifications(db: Session, sender: Callable[[dict], None], limit: int = 100) -> dict:
    """Hand queued events to ``sender``; rows it raises on are kept for retry."""
    sent = 0
    failed = 0
    for row in pending_notifications(db, limit):
        row.Attempts = int(row.Attempts or 0) + 1
        try:
            sender(json.loads(row.Payload or "{}"))
        except Exception as exc:
            failed += 1
            row.LastError = str(exc)[:500]
            LOGGER.warning(
                "Notification delivery failed id=%s type=%s attempts=%s: %s",
                row.NotificationID,
                row.NotificationType,
                row.Attempts,
                exc,
            )
        else:
            sent += 1
            row.SentAt = utc_now()
            row.LastError = None
        db.commit()
    if sent or failed:
        LOGGER.info("Notification dispatch sent=%s failed=%s", sent, failed)
    return {"sent": sent, "failed": failed}
