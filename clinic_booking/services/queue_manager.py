"""FIFO waiting lists for full slots.

A queue group is every QueueEntry whose booking shares (doctor, date, start
time). Positions inside a group are kept contiguous (1..N) in enqueue order:
new entries go to N + 1, and removing an entry at position p moves every
later entry up by one. All mutations run under the slot lock of their group
so concurrent promotions cannot interleave a shift.
"""

import logging
import math
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from clinic_booking.core.exceptions import NotFoundError, NotQueuedError, SlotFullError
from clinic_booking.models.booking import Booking, BookingStatus
from clinic_booking.models.queue import QueueEntry
from clinic_booking.models.service import Service
from clinic_booking.services import lifecycle
from clinic_booking.services.availability import check_availability, lock_slot

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

# Shifting subtracts a flat half hour whatever the service duration; enqueue
# uses position * duration. The two only agree for 30 minute services.
WAIT_DECREMENT_MINUTES = 30


class QueueManager:
    def __init__(self, db: Session):
        self.db = db

    def _group_query(self, doctor_id: int, booking_date: date, start_time: str):
        return self.db.query(QueueEntry).join(Booking, QueueEntry.booking_id == Booking.id).filter(
            Booking.doctor_id == doctor_id,
            Booking.booking_date == booking_date,
            Booking.start_time == start_time,
        )

    def group_entries(self, doctor_id: int, booking_date: date, start_time: str) -> List[QueueEntry]:
        return self._group_query(doctor_id, booking_date, start_time).order_by(
            QueueEntry.queue_position, QueueEntry.id
        ).all()

    def enqueue(self, booking: Booking, service: Service) -> QueueEntry:
        """Append a freshly QUEUED booking to the end of its group.

        Must run in the transaction that created the booking, under its slot lock.
        """
        if booking.status != BookingStatus.QUEUED:
            raise NotQueuedError(booking.id, booking.status)

        position = self._group_query(booking.doctor_id, booking.booking_date, booking.start_time).count() + 1
        entry = QueueEntry(
            booking=booking,
            queue_position=position,
            estimated_wait_minutes=position * service.duration_minutes,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(f"Booking {booking.id} queued at position {position} for {booking.booking_date} {booking.start_time}")
        return entry

    def _shift_after(self, doctor_id: int, booking_date: date, start_time: str, removed_position: int) -> None:
        later = self._group_query(doctor_id, booking_date, start_time).filter(
            QueueEntry.queue_position > removed_position
        ).order_by(QueueEntry.queue_position).all()

        for entry in later:
            entry.queue_position -= 1
            entry.estimated_wait_minutes -= WAIT_DECREMENT_MINUTES
        self.db.flush()

    def _detach(self, booking: Booking) -> int:
        entry = booking.queue_entry
        removed_position = entry.queue_position
        # delete-orphan cascade removes the row
        booking.queue_entry = None
        self.db.flush()
        self._shift_after(booking.doctor_id, booking.booking_date, booking.start_time, removed_position)
        return removed_position

    def _load_booking(self, booking_id: int) -> Booking:
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking:
            raise NotFoundError("Booking", booking_id)
        return booking

    def _promote_locked(self, booking: Booking, actor: str, reason: str) -> Booking:
        if booking.status != BookingStatus.QUEUED:
            raise NotQueuedError(booking.id, booking.status)
        if booking.queue_entry is None:
            raise NotFoundError("Queue record", booking.id)

        availability = check_availability(
            self.db,
            booking.doctor_id,
            booking.booking_date,
            booking.start_time,
            booking.service.max_slots_per_hour,
        )
        if not availability.available:
            raise SlotFullError(
                "Slot is still full. Cannot promote at this time.",
                {
                    "booking_id": booking.id,
                    "doctor_id": booking.doctor_id,
                    "date": booking.booking_date.isoformat(),
                    "start_time": booking.start_time,
                },
            )

        lifecycle.apply_transition(self.db, booking, BookingStatus.CONFIRMED, actor, reason)
        position = self._detach(booking)
        logger.info(f"Booking {booking.id} promoted from queue position {position} by {actor}")
        return booking

    def promote(self, booking_id: int, actor: str, reason: Optional[str] = None) -> Booking:
        booking = self._load_booking(booking_id)
        lock_slot(self.db, booking.doctor_id, booking.booking_date, booking.start_time)
        # Re-read under the lock so a concurrent promotion or cancel is seen
        self.db.refresh(booking)
        return self._promote_locked(booking, actor, reason or "Manual promotion by staff")

    def auto_promote(self, doctor_id: int, booking_date: date, start_time: str) -> Optional[Booking]:
        """Promote the head of the group if the slot has a free seat.

        Promotes at most one booking per call. Returns it, or None when the
        queue is empty or the slot is still full.
        """
        if self._group_query(doctor_id, booking_date, start_time).first() is None:
            return None

        lock_slot(self.db, doctor_id, booking_date, start_time)
        head = self._group_query(doctor_id, booking_date, start_time).order_by(
            QueueEntry.queue_position, QueueEntry.id
        ).first()
        if head is None:
            return None

        booking = head.booking
        availability = check_availability(
            self.db, doctor_id, booking_date, start_time, booking.service.max_slots_per_hour
        )
        if not availability.available:
            logger.info(f"Slot {booking_date} {start_time} for doctor {doctor_id} still full, queue left as is")
            return None

        return self._promote_locked(booking, SYSTEM_ACTOR, "Auto-promoted from queue")

    def remove_from_queue(self, booking_id: int) -> bool:
        """Drop a booking's entry and close the gap. The booking status is not touched."""
        entry = self.db.query(QueueEntry).filter(QueueEntry.booking_id == booking_id).first()
        if entry is None:
            return False

        booking = entry.booking
        lock_slot(self.db, booking.doctor_id, booking.booking_date, booking.start_time)
        self.db.refresh(entry)
        position = self._detach(booking)
        logger.info(f"Booking {booking_id} removed from queue position {position}")
        return True

    def get_entry(self, booking_id: int) -> QueueEntry:
        entry = self.db.query(QueueEntry).filter(QueueEntry.booking_id == booking_id).first()
        if not entry:
            raise NotFoundError("Queue record", booking_id)
        return entry

    def _filtered(self, doctor_id: Optional[int], booking_date: Optional[date], start_time: Optional[str] = None):
        query = self.db.query(QueueEntry).join(Booking, QueueEntry.booking_id == Booking.id).filter(
            Booking.status == BookingStatus.QUEUED
        )
        if doctor_id:
            query = query.filter(Booking.doctor_id == doctor_id)
        if booking_date:
            query = query.filter(Booking.booking_date == booking_date)
        if start_time:
            query = query.filter(Booking.start_time == start_time)
        return query

    def list_queue(
        self,
        doctor_id: Optional[int] = None,
        booking_date: Optional[date] = None,
        start_time: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[QueueEntry], int]:
        query = self._filtered(doctor_id, booking_date, start_time)
        total = query.count()
        entries = query.order_by(
            Booking.booking_date, Booking.start_time, QueueEntry.queue_position
        ).offset((page - 1) * limit).limit(limit).all()
        return entries, total

    def statistics(self, doctor_id: Optional[int] = None, booking_date: Optional[date] = None) -> dict:
        query = self._filtered(doctor_id, booking_date)
        total = query.count()
        average = query.with_entities(func.avg(QueueEntry.estimated_wait_minutes)).scalar()
        longest = query.with_entities(func.max(QueueEntry.queue_position)).scalar()
        return {
            "total_queued": total,
            "average_wait_minutes": int(math.floor(float(average or 0) + 0.5)),
            "longest_queue_position": longest or 0,
        }
