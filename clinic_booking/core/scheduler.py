import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from clinic_booking.config import REMINDER_INTERVAL_HOURS
from clinic_booking.database import engine
from clinic_booking.models.booking import Booking, BookingStatus
from clinic_booking.models.notification import Notification
from clinic_booking.services.notifications import NotificationEvent, build_notification

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def run_safely(func, *args, **kwargs):
    try:
        func(*args, **kwargs)
    except Exception:
        logger.exception(f"Deferred task {getattr(func, '__name__', func)} failed")


def defer(func, *args, **kwargs):
    """Hand ``func`` off to run after the caller's transaction has committed.

    With the scheduler running it becomes a one-shot job on the scheduler's
    thread pool; otherwise (tests, scripts) it runs inline. Either way its
    exceptions are logged and never reach the caller.
    """
    if scheduler.running:
        scheduler.add_job(run_safely, args=[func, *args], kwargs=kwargs, misfire_grace_time=None)
    else:
        run_safely(func, *args, **kwargs)


def send_upcoming_reminders(bind=None, now=None) -> int:
    """Remind patients of CONFIRMED bookings starting within the next 24 hours."""
    now = now or datetime.now()
    horizon = now + timedelta(days=1)
    db = sessionmaker(bind=bind or engine, autoflush=False)()
    sent = 0
    try:
        bookings = db.query(Booking).filter(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.booking_date >= now.date(),
            Booking.booking_date <= horizon.date(),
        ).all()

        for booking in bookings:
            starts_at = datetime.combine(booking.booking_date, datetime.strptime(booking.start_time, "%H:%M").time())
            if not (now < starts_at <= horizon):
                continue

            already_sent = db.query(Notification).filter(
                Notification.booking_id == booking.id,
                Notification.type == NotificationEvent.REMINDER.value,
            ).first()
            if already_sent:
                continue

            db.add(build_notification(NotificationEvent.REMINDER, {
                "booking_id": booking.id,
                "patient_id": booking.patient_id,
                "date": booking.booking_date.isoformat(),
                "start_time": booking.start_time,
            }))
            sent += 1

        db.commit()
    finally:
        db.close()

    if sent:
        logger.info(f"Sent {sent} appointment reminders")
    return sent


def start_scheduler():
    scheduler.add_job(
        send_upcoming_reminders,
        trigger=IntervalTrigger(hours=REMINDER_INTERVAL_HOURS),
        id='booking_reminders',
        replace_existing=True
    )
    scheduler.start()


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
