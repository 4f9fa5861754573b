"""Ranks open slots over a date range for "best time" recommendations.

The weights are product heuristics; keep them as they are.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from clinic_booking.core.exceptions import InvalidInputError, NotFoundError
from clinic_booking.models.schedule import DayOfWeek, WorkingHours
from clinic_booking.models.service import Service
from clinic_booking.models.user import User, UserRole
from clinic_booking.services.availability import occupancy_by_start
from clinic_booking.services.time_grid import format_time, load_day_schedule, slots_for_schedule

MORNING = (8 * 60, 11 * 60)
AFTERNOON = (14 * 60, 16 * 60)
NEAR_LUNCH = (11 * 60 + 30, 13 * 60)
LATE_DAY_FROM = 16 * 60 + 30
EARLY_MORNING = (8 * 60, 9 * 60)
MID_MORNING = (9 * 60, 10 * 60)
SOON_WITHIN_DAYS = 3


@dataclass
class SlotPreferences:
    prefer_morning: bool = False
    prefer_afternoon: bool = False
    earliest_time: Optional[str] = None
    latest_time: Optional[str] = None


@dataclass
class ScoredSlot:
    date: str
    day_of_week: str
    time: str
    available_slots: int
    score: int = 0
    reasons: List[str] = field(default_factory=list)


def _within(minute: int, window: tuple) -> bool:
    return window[0] <= minute < window[1]


def score_slot(minute: int, day: date, available: int, max_slots: int,
               preferences: SlotPreferences, today: date):
    score = 0
    reasons = []

    if available == max_slots:
        score += 10
        reasons.append("Fully available")
    elif available >= max_slots / 2:
        score += 5
        reasons.append("Good availability")
    else:
        score += 2
        reasons.append("Limited availability")

    if _within(minute, MORNING):
        if preferences.prefer_morning:
            score += 5
            reasons.append("Morning slot (preferred)")
        else:
            score += 3
            reasons.append("Morning slot")

    if _within(minute, AFTERNOON):
        if preferences.prefer_afternoon:
            score += 5
            reasons.append("Afternoon slot (preferred)")
        else:
            score += 2
            reasons.append("Afternoon slot")

    if _within(minute, NEAR_LUNCH):
        score -= 2
        reasons.append("Near lunch time")

    if minute >= LATE_DAY_FROM:
        score -= 2
        reasons.append("Late in the day")

    if _within(minute, EARLY_MORNING):
        score += 1
        reasons.append("Early morning")

    if _within(minute, MID_MORNING):
        score += 2
        reasons.append("Mid-morning (optimal)")

    if DayOfWeek.from_date(day).is_weekday:
        score += 1

    if (day - today).days <= SOON_WITHIN_DAYS:
        score += 2
        reasons.append("Available soon")

    return score, reasons


def score_all(
    db: Session,
    doctor_id: int,
    service_id: int,
    start_date: date,
    end_date: date,
    preferences: Optional[SlotPreferences] = None,
    today: Optional[date] = None,
) -> List[ScoredSlot]:
    """Every open slot in the range, best first (ties keep chronological order)."""
    preferences = preferences or SlotPreferences()
    today = today or date.today()

    if start_date < today:
        raise InvalidInputError("Start date cannot be in the past", {"start_date": start_date.isoformat()})
    if end_date < start_date:
        raise InvalidInputError(
            "End date must be after start date",
            {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )

    doctor = db.query(User).filter(User.id == doctor_id, User.role == UserRole.DOCTOR).first()
    if not doctor:
        raise NotFoundError("Doctor", doctor_id)
    service = db.query(Service).filter(Service.id == service_id).first()
    if not service:
        raise NotFoundError("Service", service_id)

    if not db.query(WorkingHours).filter(WorkingHours.doctor_id == doctor_id).first():
        return []

    candidates = []
    day = start_date
    while day <= end_date:
        schedule = load_day_schedule(db, doctor_id, day)
        minutes = slots_for_schedule(
            schedule, service.duration_minutes, preferences.earliest_time, preferences.latest_time
        )
        counts = occupancy_by_start(db, doctor_id, day) if minutes else {}

        for minute in minutes:
            time_str = format_time(minute)
            available = service.max_slots_per_hour - counts.get(time_str, 0)
            if available <= 0:
                continue
            score, reasons = score_slot(minute, day, available, service.max_slots_per_hour, preferences, today)
            candidates.append(ScoredSlot(
                date=day.isoformat(),
                day_of_week=DayOfWeek.from_date(day).value,
                time=time_str,
                available_slots=available,
                score=score,
                reasons=reasons,
            ))
        day += timedelta(days=1)

    # sorted() is stable, so equal scores stay in generation order
    return sorted(candidates, key=lambda slot: -slot.score)


def suggest_slots(
    db: Session,
    doctor_id: int,
    service_id: int,
    start_date: date,
    end_date: date,
    preferences: Optional[SlotPreferences] = None,
    limit: int = 5,
    today: Optional[date] = None,
) -> List[ScoredSlot]:
    return score_all(db, doctor_id, service_id, start_date, end_date, preferences, today)[:limit]
