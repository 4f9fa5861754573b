"""Booking status state machine.

This module is the only place that assigns ``Booking.status``. Every change
appends a BookingStatusHistory row in the caller's transaction.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from clinic_booking.core.exceptions import InvalidTransitionError
from clinic_booking.models.booking import Booking, BookingStatus, BookingStatusHistory

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CHECKED_IN, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}),
    BookingStatus.CHECKED_IN: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED}),
    BookingStatus.QUEUED: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Entering one of these frees a seat, so the slot's queue gets a promotion attempt
PROMOTION_TRIGGERS = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED})


def decide_initial_status(has_capacity: bool) -> BookingStatus:
    return BookingStatus.PENDING if has_capacity else BookingStatus.QUEUED


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def triggers_promotion(target: BookingStatus) -> bool:
    return target in PROMOTION_TRIGGERS


def record_creation(db: Session, booking: Booking, initial_status: BookingStatus, actor: str,
                    reason: str = "Booking created") -> BookingStatusHistory:
    if initial_status not in (BookingStatus.PENDING, BookingStatus.QUEUED):
        raise InvalidTransitionError(initial_status, initial_status)

    booking.status = initial_status
    entry = BookingStatusHistory(
        booking=booking,
        old_status=None,
        new_status=initial_status,
        changed_by=str(actor),
        reason=reason,
    )
    db.add(entry)
    db.flush()
    return entry


def apply_transition(db: Session, booking: Booking, target: BookingStatus, actor: str,
                     reason: Optional[str] = None) -> BookingStatusHistory:
    """Move ``booking`` to ``target`` and log it; the status is untouched on failure."""
    current = booking.status
    validate_transition(current, target)

    booking.status = target
    entry = BookingStatusHistory(
        booking=booking,
        old_status=current,
        new_status=target,
        changed_by=str(actor),
        reason=reason,
    )
    db.add(entry)
    db.flush()
    logger.info(f"Booking {booking.id}: {current.value} -> {target.value} by {actor}")
    return entry
