"""In-app notifications for booking events.

``notify`` is the fire-and-forget dispatcher the booking flow calls after its
transaction commits. It opens its own session so a failure here can never
touch the booking that triggered it.
"""

import enum
import logging
from typing import Any, Dict

from sqlalchemy.orm import Session, sessionmaker

from clinic_booking.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationEvent(str, enum.Enum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_QUEUED = "BOOKING_QUEUED"
    QUEUE_PROMOTED = "QUEUE_PROMOTED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_STATUS_CHANGED = "BOOKING_STATUS_CHANGED"
    REMINDER = "REMINDER"


def build_notification(event: NotificationEvent, payload: Dict[str, Any]) -> Notification:
    when = f"{payload['date']} {payload['start_time']}"

    if event == NotificationEvent.BOOKING_CREATED:
        title = "Booking Received"
        message = f"Your booking for {when} has been created and is awaiting confirmation."
    elif event == NotificationEvent.BOOKING_QUEUED:
        title = "Added to Queue"
        message = (
            f"The {when} slot is full. You are number {payload['queue_position']} in the queue "
            f"(estimated wait {payload['estimated_wait_minutes']} minutes). "
            "You will be notified when a slot becomes available."
        )
    elif event == NotificationEvent.QUEUE_PROMOTED:
        title = "Booking Confirmed"
        message = f"A slot opened up: your booking for {when} is now confirmed."
    elif event == NotificationEvent.BOOKING_CANCELLED:
        title = "Booking Cancelled"
        message = f"Your booking for {when} has been cancelled."
        if payload.get("reason"):
            message += f" Reason: {payload['reason']}"
    elif event == NotificationEvent.REMINDER:
        title = "Appointment Reminder"
        message = f"Your appointment is scheduled for {when}."
    else:
        title = "Booking Updated"
        message = f"Your booking for {when} is now {payload['status']}."

    return Notification(
        user_id=payload["patient_id"],
        title=title,
        message=message,
        type=event.value,
        booking_id=payload.get("booking_id"),
    )


def notify(bind, event: NotificationEvent, payload: Dict[str, Any]) -> None:
    db: Session = sessionmaker(bind=bind, autoflush=False)()
    try:
        db.add(build_notification(event, payload))
        db.commit()
        logger.info(f"Notification {event.value} stored for patient {payload['patient_id']}")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
