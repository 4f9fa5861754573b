"""Tests for deferred side effects and appointment reminders."""

import logging
from datetime import datetime

from clinic_booking.core import scheduler
from clinic_booking.models.booking import Booking, BookingStatus
from clinic_booking.models.notification import Notification
from clinic_booking.services.notifications import NotificationEvent
from conftest import MONDAY


class TestDefer:
    def test_runs_inline_when_scheduler_is_stopped(self):
        calls = []
        scheduler.defer(calls.append, "done")
        assert calls == ["done"]

    def test_failures_are_logged_not_raised(self, caplog):
        def explode():
            raise RuntimeError("mail server down")

        with caplog.at_level(logging.ERROR):
            scheduler.defer(explode)
        assert "explode failed" in caplog.text

    def test_notification_failure_does_not_undo_booking(self, db, book, monkeypatch):
        """A broken notifier must not roll back the committed booking."""
        def broken_notify(*args, **kwargs):
            raise RuntimeError("notifier down")

        monkeypatch.setattr("clinic_booking.services.bookings.notify", broken_notify)
        booking = book(0)

        db.expire_all()
        assert db.get(Booking, booking.id).status == BookingStatus.PENDING
        assert db.query(Notification).count() == 0


class TestReminders:
    def test_reminds_confirmed_bookings_in_next_day(self, db, engine, service, book):
        confirmed = book(0, "10:00")
        service.transition_status(confirmed.id, BookingStatus.CONFIRMED, "desk")
        book(1, "11:00")

        sent = scheduler.send_upcoming_reminders(bind=engine, now=datetime(2030, 1, 7, 8, 0))
        assert sent == 1

        reminders = db.query(Notification).filter(Notification.type == NotificationEvent.REMINDER.value).all()
        assert len(reminders) == 1
        assert reminders[0].booking_id == confirmed.id
        assert reminders[0].title == "Appointment Reminder"

    def test_reminders_are_not_repeated(self, engine, service, book):
        booking = book(0, "10:00")
        service.transition_status(booking.id, BookingStatus.CONFIRMED, "desk")

        now = datetime(2030, 1, 7, 8, 0)
        assert scheduler.send_upcoming_reminders(bind=engine, now=now) == 1
        assert scheduler.send_upcoming_reminders(bind=engine, now=now) == 0

    def test_far_and_past_bookings_are_ignored(self, engine, service, book):
        booking = book(0, "10:00", booking_date=MONDAY)
        service.transition_status(booking.id, BookingStatus.CONFIRMED, "desk")

        assert scheduler.send_upcoming_reminders(bind=engine, now=datetime(2030, 1, 5, 9, 0)) == 0
        assert scheduler.send_upcoming_reminders(bind=engine, now=datetime(2030, 1, 7, 10, 30)) == 0
