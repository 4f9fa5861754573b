"""Tests for the FIFO waiting list and queue promotion."""

import pytest

from clinic_booking.core.exceptions import NotFoundError, NotQueuedError, SlotFullError
from clinic_booking.models.booking import Booking, BookingStatus
from clinic_booking.models.queue import QueueEntry
from clinic_booking.services.queue_manager import QueueManager
from conftest import MONDAY


def positions(db, doctor_id, start_time="10:00"):
    """(booking_id, position, wait) for a queue group, in position order."""
    db.expire_all()
    entries = QueueManager(db).group_entries(doctor_id, MONDAY, start_time)
    return [(e.booking_id, e.queue_position, e.estimated_wait_minutes) for e in entries]


def status_of(db, booking_id):
    db.expire_all()
    return db.get(Booking, booking_id).status


@pytest.fixture
def full_slot(book):
    """Two seated bookings at 10:00 and three waiting behind them."""
    return [book(i) for i in range(5)]


class TestEnqueue:
    def test_overflow_is_queued_in_arrival_order(self, db, clinic, full_slot):
        """Positions are contiguous from 1 and waits are position x duration."""
        statuses = [b.status for b in full_slot]
        assert statuses[:2] == [BookingStatus.PENDING, BookingStatus.PENDING]
        assert statuses[2:] == [BookingStatus.QUEUED] * 3

        ids = [b.id for b in full_slot]
        assert positions(db, clinic.doctor.id) == [
            (ids[2], 1, 30),
            (ids[3], 2, 60),
            (ids[4], 3, 90),
        ]

    def test_groups_are_independent(self, db, clinic, book):
        """Queues at different start times number separately."""
        book(0, catalog_service=clinic.extended)
        book(1, catalog_service=clinic.extended)
        book(2, "11:00", catalog_service=clinic.extended)
        book(3, "11:00", catalog_service=clinic.extended)

        assert [p for _, p, _ in positions(db, clinic.doctor.id, "10:00")] == [1]
        assert [p for _, p, _ in positions(db, clinic.doctor.id, "11:00")] == [1]

    def test_wait_uses_service_duration(self, db, clinic, book):
        book(0, catalog_service=clinic.extended)
        second = book(1, catalog_service=clinic.extended)
        third = book(2, catalog_service=clinic.extended)
        assert positions(db, clinic.doctor.id) == [(second.id, 1, 45), (third.id, 2, 90)]


class TestQueueShift:
    def test_cancelling_a_queued_booking_closes_the_gap(self, db, clinic, service, full_slot):
        ids = [b.id for b in full_slot]
        service.cancel_booking(ids[3], "desk")

        assert status_of(db, ids[3]) == BookingStatus.CANCELLED
        assert positions(db, clinic.doctor.id) == [(ids[2], 1, 30), (ids[4], 2, 60)]
        assert db.query(QueueEntry).filter(QueueEntry.booking_id == ids[3]).first() is None

    def test_shift_subtracts_flat_half_hour(self, db, clinic, service, book):
        """Later entries lose 30 minutes each, whatever the service duration."""
        book(0, catalog_service=clinic.extended)
        queued = [book(i, catalog_service=clinic.extended) for i in range(1, 4)]
        service.cancel_booking(queued[0].id, "desk")

        assert positions(db, clinic.doctor.id) == [
            (queued[1].id, 1, 60),
            (queued[2].id, 2, 105),
        ]

    def test_remove_from_queue_ignores_non_queued(self, db, full_slot):
        assert QueueManager(db).remove_from_queue(full_slot[0].id) is False

    def test_cancelling_a_queued_booking_schedules_no_promotion(self, db, clinic, service, full_slot, monkeypatch):
        """Only a booking that held a seat hands one on when cancelled."""
        calls = []
        monkeypatch.setattr(
            "clinic_booking.services.bookings.promote_next_in_queue",
            lambda bind, *group: calls.append(group),
        )
        ids = [b.id for b in full_slot]

        service.cancel_booking(ids[3], "desk")
        assert calls == []

        service.cancel_booking(ids[0], "desk")
        assert calls == [(clinic.doctor.id, MONDAY, "10:00")]


class TestAutoPromotion:
    def test_cancellation_promotes_head_of_queue(self, db, clinic, service, full_slot):
        """Freeing a seat confirms the first waiter and renumbers the rest."""
        ids = [b.id for b in full_slot]
        service.cancel_booking(ids[0], "desk")

        assert status_of(db, ids[0]) == BookingStatus.CANCELLED
        assert status_of(db, ids[2]) == BookingStatus.CONFIRMED
        assert positions(db, clinic.doctor.id) == [(ids[3], 1, 30), (ids[4], 2, 60)]

        history = db.get(Booking, ids[2]).status_history
        assert history[-1].old_status == BookingStatus.QUEUED
        assert history[-1].new_status == BookingStatus.CONFIRMED
        assert history[-1].changed_by == "system"
        assert history[-1].reason == "Auto-promoted from queue"

    def test_completion_promotes_head_of_queue(self, db, clinic, service, full_slot):
        ids = [b.id for b in full_slot]
        for target in (BookingStatus.CONFIRMED, BookingStatus.CHECKED_IN,
                       BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
            service.transition_status(ids[1], target, "doctor")

        assert status_of(db, ids[2]) == BookingStatus.CONFIRMED

    def test_no_show_does_not_promote(self, db, clinic, service, full_slot):
        ids = [b.id for b in full_slot]
        service.transition_status(ids[0], BookingStatus.CONFIRMED, "desk")
        service.transition_status(ids[0], BookingStatus.NO_SHOW, "desk")

        assert status_of(db, ids[2]) == BookingStatus.QUEUED
        assert len(positions(db, clinic.doctor.id)) == 3

    def test_auto_promote_when_full_does_nothing(self, db, clinic, service, full_slot):
        assert service.auto_promote(clinic.doctor.id, MONDAY, "10:00") is False
        assert len(positions(db, clinic.doctor.id)) == 3

    def test_auto_promote_with_empty_queue(self, clinic, service):
        assert service.auto_promote(clinic.doctor.id, MONDAY, "10:00") is False

    def test_auto_promote_promotes_one_per_call(self, db, clinic, service, full_slot):
        """After two no-shows free two seats, each call promotes exactly one waiter."""
        ids = [b.id for b in full_slot]
        for booking_id in ids[:2]:
            service.transition_status(booking_id, BookingStatus.CONFIRMED, "desk")
            service.transition_status(booking_id, BookingStatus.NO_SHOW, "desk")

        assert service.auto_promote(clinic.doctor.id, MONDAY, "10:00") is True
        assert status_of(db, ids[2]) == BookingStatus.CONFIRMED
        assert status_of(db, ids[3]) == BookingStatus.QUEUED

        assert service.auto_promote(clinic.doctor.id, MONDAY, "10:00") is True
        assert status_of(db, ids[3]) == BookingStatus.CONFIRMED
        assert positions(db, clinic.doctor.id) == [(ids[4], 1, 30)]


class TestManualPromotion:
    def test_promotion_blocked_while_full(self, db, clinic, service, full_slot):
        with pytest.raises(SlotFullError, match="Slot is still full"):
            service.promote_queue_entry(full_slot[3].id, "desk")

        assert status_of(db, full_slot[3].id) == BookingStatus.QUEUED
        assert len(positions(db, clinic.doctor.id)) == 3

    def test_staff_can_jump_the_queue(self, db, clinic, service, full_slot):
        """Manual promotion may pick any waiter, not only the head."""
        ids = [b.id for b in full_slot]
        service.transition_status(ids[0], BookingStatus.CONFIRMED, "desk")
        service.transition_status(ids[0], BookingStatus.NO_SHOW, "desk")

        promoted = service.promote_queue_entry(ids[4], "desk")
        assert promoted.status == BookingStatus.CONFIRMED
        assert promoted.status_history[-1].reason == "Manual promotion by staff"
        assert positions(db, clinic.doctor.id) == [(ids[2], 1, 30), (ids[3], 2, 60)]

    def test_confirming_queued_booking_goes_through_promotion(self, db, clinic, service, full_slot):
        ids = [b.id for b in full_slot]
        with pytest.raises(SlotFullError):
            service.transition_status(ids[2], BookingStatus.CONFIRMED, "desk")

        service.transition_status(ids[0], BookingStatus.CONFIRMED, "desk")
        service.transition_status(ids[0], BookingStatus.NO_SHOW, "desk")
        service.transition_status(ids[2], BookingStatus.CONFIRMED, "desk")

        assert status_of(db, ids[2]) == BookingStatus.CONFIRMED
        assert positions(db, clinic.doctor.id) == [(ids[3], 1, 30), (ids[4], 2, 60)]

    def test_promoting_a_non_queued_booking(self, service, full_slot):
        with pytest.raises(NotQueuedError):
            service.promote_queue_entry(full_slot[0].id, "desk")

    def test_promoting_unknown_booking(self, service, clinic):
        with pytest.raises(NotFoundError):
            service.promote_queue_entry(999, "desk")


class TestQueueQueries:
    def test_list_queue_paginates_in_position_order(self, db, clinic, full_slot):
        manager = QueueManager(db)
        entries, total = manager.list_queue(doctor_id=clinic.doctor.id, page=1, limit=2)
        assert total == 3
        assert [e.queue_position for e in entries] == [1, 2]

        entries, _ = manager.list_queue(doctor_id=clinic.doctor.id, page=2, limit=2)
        assert [e.queue_position for e in entries] == [3]

    def test_get_entry(self, db, full_slot):
        entry = QueueManager(db).get_entry(full_slot[4].id)
        assert entry.queue_position == 3
        with pytest.raises(NotFoundError):
            QueueManager(db).get_entry(full_slot[0].id)

    def test_statistics(self, db, clinic, full_slot):
        stats = QueueManager(db).statistics(clinic.doctor.id, MONDAY)
        assert stats == {"total_queued": 3, "average_wait_minutes": 60, "longest_queue_position": 3}

    def test_statistics_rounds_half_up(self, db, clinic, book):
        """Waits of 45 and 90 minutes average to 67.5, reported as 68."""
        for i in range(3):
            book(i, catalog_service=clinic.extended)
        stats = QueueManager(db).statistics(clinic.doctor.id, MONDAY)
        assert stats["average_wait_minutes"] == 68
        assert stats["longest_queue_position"] == 2

    def test_statistics_on_empty_queue(self, db, clinic):
        stats = QueueManager(db).statistics(clinic.doctor.id, MONDAY)
        assert stats == {"total_queued": 0, "average_wait_minutes": 0, "longest_queue_position": 0}
