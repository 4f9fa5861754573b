"""Candidate slot generation from a doctor's weekly template.

Times travel as "HH:MM" strings at the edges and as minute-of-day integers
inside the grid arithmetic.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from clinic_booking.core.exceptions import InvalidInputError, ScheduleConflictError
from clinic_booking.models.schedule import BreakTime, DayOfWeek, OffDay, WorkingHours


SLOT_STRIDE_MINUTES = 30
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
_TIME_RE = re.compile(TIME_PATTERN)

TimeBound = Union[str, int, None]


def parse_time(value: str) -> int:
    """Convert "HH:MM" (24h) to minutes after midnight."""
    if not isinstance(value, str) or not _TIME_RE.match(value):
        raise InvalidInputError(f"Invalid time '{value}', expected HH:MM", {"value": value})
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def format_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def add_minutes(value: str, minutes: int) -> str:
    return format_time(parse_time(value) + minutes)


def _to_minutes(bound: TimeBound) -> Optional[int]:
    if bound is None:
        return None
    if isinstance(bound, int):
        return bound
    return parse_time(bound)


def overlaps_break(slot_start: int, duration: int, break_start: int, break_end: int) -> bool:
    # Half-open intervals: touching a break at either edge is not a conflict
    return slot_start < break_end and slot_start + duration > break_start


def generate_grid(
    window_start: int,
    window_end: int,
    duration: int,
    breaks: Iterable[tuple] = (),
    earliest: Optional[int] = None,
    latest: Optional[int] = None,
) -> List[int]:
    """Step through the working window in 30 minute strides.

    A candidate is kept when the whole service fits before the (bounded)
    window end and does not intrude into any of ``breaks`` (minute pairs).
    """
    if duration <= 0:
        raise InvalidInputError("Service duration must be positive", {"duration_minutes": duration})

    current = window_start if earliest is None else max(window_start, earliest)
    end = window_end if latest is None else min(window_end, latest)
    breaks = list(breaks)

    slots = []
    while current + duration <= end:
        if not any(overlaps_break(current, duration, b_start, b_end) for b_start, b_end in breaks):
            slots.append(current)
        current += SLOT_STRIDE_MINUTES
    return slots


@dataclass
class DaySchedule:
    working_hours: Optional[WorkingHours]
    off_day: Optional[OffDay]
    breaks: List[BreakTime] = field(default_factory=list)

    def break_windows(self) -> List[tuple]:
        return [(parse_time(b.start_time), parse_time(b.end_time)) for b in self.breaks]


def load_day_schedule(db: Session, doctor_id: int, day: date) -> DaySchedule:
    working_hours = db.query(WorkingHours).filter(
        WorkingHours.doctor_id == doctor_id,
        WorkingHours.day_of_week == DayOfWeek.from_date(day),
    ).first()
    off_day = db.query(OffDay).filter(
        OffDay.doctor_id == doctor_id,
        OffDay.date == day,
    ).first()
    breaks = db.query(BreakTime).filter(
        BreakTime.doctor_id == doctor_id,
        BreakTime.date == day,
    ).all()
    return DaySchedule(working_hours=working_hours, off_day=off_day, breaks=breaks)


def slots_for_schedule(
    schedule: DaySchedule,
    duration_minutes: int,
    earliest: TimeBound = None,
    latest: TimeBound = None,
) -> List[int]:
    if schedule.off_day is not None or schedule.working_hours is None:
        return []
    return generate_grid(
        parse_time(schedule.working_hours.start_time),
        parse_time(schedule.working_hours.end_time),
        duration_minutes,
        schedule.break_windows(),
        _to_minutes(earliest),
        _to_minutes(latest),
    )


def compute_slots(
    db: Session,
    doctor_id: int,
    day: date,
    duration_minutes: int,
    earliest: TimeBound = None,
    latest: TimeBound = None,
) -> List[int]:
    """Ordered slot starts (minute of day) the doctor can take on ``day``."""
    return slots_for_schedule(load_day_schedule(db, doctor_id, day), duration_minutes, earliest, latest)


def validate_requested_slot(db: Session, doctor_id: int, day: date, start_time: str, duration_minutes: int) -> int:
    """Raise ScheduleConflictError unless ``start_time`` is one of the day's grid points.

    Returns the start as minute of day.
    """
    start = parse_time(start_time)
    end = start + duration_minutes
    schedule = load_day_schedule(db, doctor_id, day)

    if schedule.off_day is not None:
        raise ScheduleConflictError(
            f"Doctor is not available on {day.isoformat()}: {schedule.off_day.reason or 'Off day'}",
            date=day.isoformat(),
        )

    hours = schedule.working_hours
    if hours is None:
        raise ScheduleConflictError(
            f"Doctor does not work on {DayOfWeek.from_date(day).value}",
            day_of_week=DayOfWeek.from_date(day).value,
        )

    if start < parse_time(hours.start_time) or end > parse_time(hours.end_time):
        raise ScheduleConflictError(
            f"Time slot is outside doctor's working hours ({hours.start_time} - {hours.end_time})",
            window_start=hours.start_time,
            window_end=hours.end_time,
        )

    for brk in schedule.breaks:
        if overlaps_break(start, duration_minutes, parse_time(brk.start_time), parse_time(brk.end_time)):
            raise ScheduleConflictError(
                f"Time slot conflicts with doctor's break time ({brk.start_time} - {brk.end_time})",
                window_start=brk.start_time,
                window_end=brk.end_time,
            )

    if (start - parse_time(hours.start_time)) % SLOT_STRIDE_MINUTES:
        raise ScheduleConflictError(
            f"Time slot must start on a {SLOT_STRIDE_MINUTES} minute boundary from {hours.start_time}",
            window_start=hours.start_time,
            window_end=hours.end_time,
        )

    return start
