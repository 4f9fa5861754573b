"""Per-slot capacity checks and the slot lock that makes them race-free.

Capacity is keyed on an exact (doctor, date, start time) match: a service
allowing N bookings per slot accepts N occupying bookings that all start at the
same minute, regardless of how their intervals overlap neighbouring slots.
"""

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from clinic_booking.models.booking import Booking, BookingStatus
from clinic_booking.models.queue import SlotLock

logger = logging.getLogger(__name__)

OCCUPYING_STATUSES = frozenset({
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.CHECKED_IN,
    BookingStatus.IN_PROGRESS,
})


@dataclass(frozen=True)
class Availability:
    available: bool
    remaining: int


def count_occupying(db: Session, doctor_id: int, booking_date: date, start_time: str) -> int:
    return db.query(Booking).filter(
        Booking.doctor_id == doctor_id,
        Booking.booking_date == booking_date,
        Booking.start_time == start_time,
        Booking.status.in_(OCCUPYING_STATUSES),
    ).count()


def check_availability(db: Session, doctor_id: int, booking_date: date, start_time: str, max_per_slot: int) -> Availability:
    occupied = count_occupying(db, doctor_id, booking_date, start_time)
    remaining = max(max_per_slot - occupied, 0)
    return Availability(available=occupied < max_per_slot, remaining=remaining)


def occupancy_by_start(db: Session, doctor_id: int, booking_date: date) -> dict:
    """Occupying booking count for every start time the doctor has on a date."""
    rows = db.query(Booking.start_time).filter(
        Booking.doctor_id == doctor_id,
        Booking.booking_date == booking_date,
        Booking.status.in_(OCCUPYING_STATUSES),
    ).all()
    counts = {}
    for (start_time,) in rows:
        counts[start_time] = counts.get(start_time, 0) + 1
    return counts


def lock_slot(db: Session, doctor_id: int, booking_date: date, start_time: str) -> SlotLock:
    """Take the per-slot lock for the rest of the current transaction.

    The marker row is created on first use, selected FOR UPDATE and its
    version bumped. The write is what serialises SQLite (database write lock);
    on PostgreSQL the row lock does. Two transactions racing to create the
    same marker make one of them fail with an IntegrityError, which the
    transaction wrapper reports as a retryable conflict.
    """
    lock = db.query(SlotLock).filter(
        SlotLock.doctor_id == doctor_id,
        SlotLock.booking_date == booking_date,
        SlotLock.start_time == start_time,
    ).with_for_update().first()

    if lock is None:
        lock = SlotLock(doctor_id=doctor_id, booking_date=booking_date, start_time=start_time, version=0)
        db.add(lock)
        db.flush()

    lock.version = SlotLock.version + 1
    db.flush()
    logger.debug(f"Locked slot doctor={doctor_id} date={booking_date} start={start_time}")
    return lock
