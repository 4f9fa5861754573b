"""Transactional booking operations.

Each public method is one unit of work: it opens a transaction, takes the
slot lock where capacity matters, commits, and only then hands notifications
and queue promotion to the deferred-task dispatcher.
"""

import logging
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from clinic_booking.core.exceptions import DuplicateBookingError, InvalidInputError, NotFoundError
from clinic_booking.core.scheduler import defer
from clinic_booking.database import transaction
from clinic_booking.models.booking import Booking, BookingStatus
from clinic_booking.models.service import Service
from clinic_booking.models.user import User, UserRole
from clinic_booking.services import lifecycle
from clinic_booking.services.availability import (
    Availability,
    check_availability,
    lock_slot,
    occupancy_by_start,
)
from clinic_booking.services.notifications import NotificationEvent, notify
from clinic_booking.services.queue_manager import QueueManager
from clinic_booking.services.time_grid import (
    add_minutes,
    compute_slots,
    format_time,
    parse_time,
    validate_requested_slot,
)

logger = logging.getLogger(__name__)


def promote_next_in_queue(bind, doctor_id: int, booking_date: date, start_time: str) -> bool:
    """Deferred job run after a cancellation or completion frees a seat."""
    db = sessionmaker(bind=bind, autoflush=False)()
    try:
        return BookingService(db).auto_promote(doctor_id, booking_date, start_time)
    finally:
        db.close()


def _payload(booking: Booking, reason: Optional[str] = None) -> dict:
    entry = booking.queue_entry
    return {
        "booking_id": booking.id,
        "patient_id": booking.patient_id,
        "doctor_id": booking.doctor_id,
        "date": booking.booking_date.isoformat(),
        "start_time": booking.start_time,
        "end_time": booking.end_time,
        "status": booking.status.value,
        "queue_position": entry.queue_position if entry else None,
        "estimated_wait_minutes": entry.estimated_wait_minutes if entry else None,
        "reason": reason,
    }


class BookingService:
    def __init__(self, db: Session, today: Optional[date] = None):
        self.db = db
        self.today = today
        self.queue = QueueManager(db)

    def _today(self) -> date:
        return self.today or date.today()

    def _notify(self, event: NotificationEvent, payload: dict) -> None:
        defer(notify, self.db.get_bind(), event, payload)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_user(self, user_id: int, role: UserRole) -> User:
        label = role.value.capitalize()
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError(label, user_id)
        if user.role != role:
            raise InvalidInputError(f"User is not a {role.value.lower()}", {"user_id": user_id, "role": user.role.value})
        return user

    def get_service(self, service_id: int) -> Service:
        service = self.db.query(Service).filter(Service.id == service_id).first()
        if not service or not service.is_active:
            raise NotFoundError("Service", service_id)
        return service

    def get_booking(self, booking_id: int) -> Booking:
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking:
            raise NotFoundError("Booking", booking_id)
        return booking

    def _lock_booking(self, booking_id: int) -> Booking:
        """Take the booking's slot lock, then re-read it so a change committed meanwhile is seen."""
        booking = self.get_booking(booking_id)
        lock_slot(self.db, booking.doctor_id, booking.booking_date, booking.start_time)
        return self.db.query(Booking).filter(Booking.id == booking_id).populate_existing().one()

    def get_doctor(self, doctor_id: int) -> User:
        doctor = self._get_user(doctor_id, UserRole.DOCTOR)
        if not doctor.is_active:
            raise InvalidInputError("Doctor is not active", {"doctor_id": doctor_id})
        return doctor

    def list_bookings(
        self,
        patient_id: Optional[int] = None,
        doctor_id: Optional[int] = None,
        service_id: Optional[int] = None,
        status: Optional[BookingStatus] = None,
        booking_date: Optional[date] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Booking], int]:
        query = self.db.query(Booking)
        if patient_id:
            query = query.filter(Booking.patient_id == patient_id)
        if doctor_id:
            query = query.filter(Booking.doctor_id == doctor_id)
        if service_id:
            query = query.filter(Booking.service_id == service_id)
        if status:
            query = query.filter(Booking.status == status)
        if booking_date:
            query = query.filter(Booking.booking_date == booking_date)

        total = query.count()
        bookings = query.order_by(Booking.booking_date.desc(), Booking.start_time.desc()).offset(
            (page - 1) * limit
        ).limit(limit).all()
        return bookings, total

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def check_availability(self, doctor_id: int, booking_date: date, start_time: str, max_per_slot: int) -> Availability:
        return check_availability(self.db, doctor_id, booking_date, format_time(parse_time(start_time)), max_per_slot)

    def available_slots(self, doctor_id: int, booking_date: date, service_id: int,
                        patient_id: Optional[int] = None) -> List[dict]:
        """Grid points that still have a free seat, skipping ones the patient already holds."""
        service = self.get_service(service_id)
        counts = occupancy_by_start(self.db, doctor_id, booking_date)

        held = set()
        if patient_id:
            held = {
                start for (start,) in self.db.query(Booking.start_time).filter(
                    Booking.patient_id == patient_id,
                    Booking.doctor_id == doctor_id,
                    Booking.booking_date == booking_date,
                    Booking.status.notin_(lifecycle.TERMINAL_STATUSES),
                ).all()
            }

        slots = []
        for minute in compute_slots(self.db, doctor_id, booking_date, service.duration_minutes):
            start_time = format_time(minute)
            if start_time in held:
                continue
            remaining = service.max_slots_per_hour - counts.get(start_time, 0)
            if remaining > 0:
                slots.append({
                    "start_time": start_time,
                    "end_time": format_time(minute + service.duration_minutes),
                    "remaining": remaining,
                })
        return slots

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _check_duplicate(self, patient_id: int, doctor_id: int, booking_date: date) -> None:
        existing = self.db.query(Booking).filter(
            Booking.patient_id == patient_id,
            Booking.doctor_id == doctor_id,
            Booking.booking_date == booking_date,
            Booking.status.notin_(lifecycle.TERMINAL_STATUSES),
        ).first()
        if existing:
            raise DuplicateBookingError(
                "You already have a booking with this doctor on this date",
                {"existing_booking_id": existing.id, "date": booking_date.isoformat()},
            )

    def create_booking(
        self,
        patient_id: int,
        doctor_id: int,
        service_id: int,
        booking_date: date,
        start_time: str,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Booking:
        start_time = format_time(parse_time(start_time))
        if booking_date < self._today():
            raise InvalidInputError(
                "Booking date must be today or in the future", {"date": booking_date.isoformat()}
            )

        with transaction(self.db):
            self._get_user(patient_id, UserRole.PATIENT)
            self.get_doctor(doctor_id)
            service = self.get_service(service_id)
            validate_requested_slot(self.db, doctor_id, booking_date, start_time, service.duration_minutes)

            lock_slot(self.db, doctor_id, booking_date, start_time)
            self._check_duplicate(patient_id, doctor_id, booking_date)
            availability = check_availability(
                self.db, doctor_id, booking_date, start_time, service.max_slots_per_hour
            )
            initial_status = lifecycle.decide_initial_status(availability.available)

            booking = Booking(
                patient_id=patient_id,
                doctor_id=doctor_id,
                service_id=service.id,
                booking_date=booking_date,
                start_time=start_time,
                end_time=add_minutes(start_time, service.duration_minutes),
                patient_notes=notes,
            )
            self.db.add(booking)
            lifecycle.record_creation(self.db, booking, initial_status, actor or str(patient_id))
            if initial_status == BookingStatus.QUEUED:
                self.queue.enqueue(booking, service)
            payload = _payload(booking)

        if initial_status == BookingStatus.QUEUED:
            self._notify(NotificationEvent.BOOKING_QUEUED, payload)
        else:
            logger.info(f"Booking {payload['booking_id']} created for {booking_date} {start_time}")
            self._notify(NotificationEvent.BOOKING_CREATED, payload)
        return booking

    def transition_status(
        self,
        booking_id: int,
        new_status: BookingStatus,
        actor: str,
        reason: Optional[str] = None,
        doctor_notes: Optional[str] = None,
    ) -> Booking:
        with transaction(self.db):
            booking = self._lock_booking(booking_id)
            current = booking.status
            lifecycle.validate_transition(current, new_status)

            if current == BookingStatus.QUEUED and new_status == BookingStatus.CONFIRMED:
                # Leaving the queue needs a free seat, same as a promotion
                self.queue.promote(booking.id, actor, reason or "Confirmed from queue")
                event = NotificationEvent.QUEUE_PROMOTED
            else:
                if current == BookingStatus.QUEUED:
                    self.queue.remove_from_queue(booking.id)
                lifecycle.apply_transition(self.db, booking, new_status, actor, reason)
                event = (
                    NotificationEvent.BOOKING_CANCELLED
                    if new_status == BookingStatus.CANCELLED
                    else NotificationEvent.BOOKING_STATUS_CHANGED
                )

            if doctor_notes:
                booking.doctor_notes = doctor_notes
            payload = _payload(booking, reason)
            group = (booking.doctor_id, booking.booking_date, booking.start_time)

        self._notify(event, payload)
        # A queued booking never held a seat, so there is nothing to hand on
        if lifecycle.triggers_promotion(new_status) and current != BookingStatus.QUEUED:
            defer(promote_next_in_queue, self.db.get_bind(), *group)
        return booking

    def cancel_booking(self, booking_id: int, actor: str, reason: Optional[str] = None) -> Booking:
        return self.transition_status(booking_id, BookingStatus.CANCELLED, actor, reason or "Cancelled by user")

    def promote_queue_entry(self, booking_id: int, actor: str, reason: Optional[str] = None) -> Booking:
        with transaction(self.db):
            booking = self.queue.promote(booking_id, actor, reason)
            payload = _payload(booking, reason)

        self._notify(NotificationEvent.QUEUE_PROMOTED, payload)
        return booking

    def auto_promote(self, doctor_id: int, booking_date: date, start_time: str) -> bool:
        with transaction(self.db):
            promoted = self.queue.auto_promote(doctor_id, booking_date, start_time)
            payload = _payload(promoted) if promoted else None

        if payload:
            self._notify(NotificationEvent.QUEUE_PROMOTED, payload)
        return payload is not None
