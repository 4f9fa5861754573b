from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date
from clinic_booking.database import get_db
from clinic_booking.models.schedule import BreakTime, DayOfWeek, OffDay, WorkingHours
from clinic_booking.models.user import UserRole
from clinic_booking.core.security import Actor, get_current_actor
from clinic_booking.services.bookings import BookingService
from clinic_booking.services.time_grid import TIME_PATTERN, compute_slots, format_time, parse_time
from pydantic import BaseModel, Field

router = APIRouter(prefix="/api/doctors", tags=["schedules"])


class WorkingHoursCreate(BaseModel):
    day_of_week: DayOfWeek
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)


class WorkingHoursResponse(WorkingHoursCreate):
    id: int
    doctor_id: int

    class Config:
        from_attributes = True


class BreakTimeCreate(BaseModel):
    date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    reason: Optional[str] = None


class BreakTimeResponse(BreakTimeCreate):
    id: int
    doctor_id: int

    class Config:
        from_attributes = True


class OffDayCreate(BaseModel):
    date: date
    reason: Optional[str] = None


class OffDayResponse(OffDayCreate):
    id: int
    doctor_id: int

    class Config:
        from_attributes = True


class AvailableSlot(BaseModel):
    start_time: str
    end_time: str
    remaining: int


class AvailabilityResponse(BaseModel):
    doctor_id: int
    date: date
    start_time: str
    available: bool
    remaining: int


def ensure_can_manage(actor: Actor, doctor_id: int):
    # A doctor manages their own schedule; front desk and admins manage anyone's
    if actor.is_staff or (actor.role == UserRole.DOCTOR and actor.id == doctor_id):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not authorized to manage this schedule"
    )


def ensure_not_past(day: date):
    if day < date.today():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot change the schedule of past dates"
        )


@router.post("/{doctor_id}/working-hours", response_model=WorkingHoursResponse, status_code=status.HTTP_201_CREATED)
async def save_working_hours(
    doctor_id: int,
    working_hours: WorkingHoursCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    ensure_can_manage(actor, doctor_id)
    BookingService(db).get_doctor(doctor_id)

    if parse_time(working_hours.start_time) >= parse_time(working_hours.end_time):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Start time must be before end time"
        )

    # One template row per weekday: saving again replaces it
    db_working_hours = db.query(WorkingHours).filter(
        WorkingHours.doctor_id == doctor_id,
        WorkingHours.day_of_week == working_hours.day_of_week
    ).first()
    if db_working_hours:
        db_working_hours.start_time = working_hours.start_time
        db_working_hours.end_time = working_hours.end_time
    else:
        db_working_hours = WorkingHours(doctor_id=doctor_id, **working_hours.model_dump())
        db.add(db_working_hours)

    db.commit()
    db.refresh(db_working_hours)
    return db_working_hours


@router.get("/{doctor_id}/working-hours", response_model=List[WorkingHoursResponse])
async def get_working_hours(
    doctor_id: int,
    db: Session = Depends(get_db)
):
    working_hours = db.query(WorkingHours).filter(WorkingHours.doctor_id == doctor_id).all()
    order = list(DayOfWeek)
    return sorted(working_hours, key=lambda wh: order.index(wh.day_of_week))


@router.delete("/{doctor_id}/working-hours/{day_of_week}")
async def delete_working_hours(
    doctor_id: int,
    day_of_week: DayOfWeek,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    ensure_can_manage(actor, doctor_id)

    db_working_hours = db.query(WorkingHours).filter(
        WorkingHours.doctor_id == doctor_id,
        WorkingHours.day_of_week == day_of_week
    ).first()

    if not db_working_hours:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Working hours not found"
        )

    db.delete(db_working_hours)
    db.commit()
    return {"message": "Working hours deleted successfully"}


@router.post("/{doctor_id}/break-times", response_model=BreakTimeResponse, status_code=status.HTTP_201_CREATED)
async def create_break_time(
    doctor_id: int,
    break_time: BreakTimeCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    ensure_can_manage(actor, doctor_id)
    BookingService(db).get_doctor(doctor_id)
    ensure_not_past(break_time.date)

    if parse_time(break_time.start_time) >= parse_time(break_time.end_time):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Break start time must be before break end time"
        )

    db_break_time = BreakTime(doctor_id=doctor_id, **break_time.model_dump())
    db.add(db_break_time)
    db.commit()
    db.refresh(db_break_time)
    return db_break_time


@router.get("/{doctor_id}/break-times", response_model=List[BreakTimeResponse])
async def get_break_times(
    doctor_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db)
):
    query = db.query(BreakTime).filter(BreakTime.doctor_id == doctor_id)
    if start_date:
        query = query.filter(BreakTime.date >= start_date)
    if end_date:
        query = query.filter(BreakTime.date <= end_date)
    return query.order_by(BreakTime.date, BreakTime.start_time).all()


@router.delete("/{doctor_id}/break-times/{break_time_id}")
async def delete_break_time(
    doctor_id: int,
    break_time_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    ensure_can_manage(actor, doctor_id)

    db_break_time = db.query(BreakTime).filter(
        BreakTime.id == break_time_id,
        BreakTime.doctor_id == doctor_id
    ).first()

    if not db_break_time:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Break time not found"
        )

    db.delete(db_break_time)
    db.commit()
    return {"message": "Break time deleted successfully"}


@router.post("/{doctor_id}/off-days", response_model=OffDayResponse, status_code=status.HTTP_201_CREATED)
async def create_off_day(
    doctor_id: int,
    off_day: OffDayCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    ensure_can_manage(actor, doctor_id)
    BookingService(db).get_doctor(doctor_id)
    ensure_not_past(off_day.date)

    existing = db.query(OffDay).filter(
        OffDay.doctor_id == doctor_id,
        OffDay.date == off_day.date
    ).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Off day already exists for this date"
        )

    db_off_day = OffDay(doctor_id=doctor_id, **off_day.model_dump())
    db.add(db_off_day)
    db.commit()
    db.refresh(db_off_day)
    return db_off_day


@router.get("/{doctor_id}/off-days", response_model=List[OffDayResponse])
async def get_off_days(
    doctor_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db)
):
    query = db.query(OffDay).filter(OffDay.doctor_id == doctor_id)
    if start_date:
        query = query.filter(OffDay.date >= start_date)
    if end_date:
        query = query.filter(OffDay.date <= end_date)
    return query.order_by(OffDay.date).all()


@router.delete("/{doctor_id}/off-days/{off_date}")
async def delete_off_day(
    doctor_id: int,
    off_date: date,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    ensure_can_manage(actor, doctor_id)

    db_off_day = db.query(OffDay).filter(
        OffDay.doctor_id == doctor_id,
        OffDay.date == off_date
    ).first()

    if not db_off_day:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Off day not found"
        )

    db.delete(db_off_day)
    db.commit()
    return {"message": "Off day deleted successfully"}


@router.get("/{doctor_id}/slots", response_model=List[str])
async def get_slot_grid(
    doctor_id: int,
    date_value: date = Query(..., alias="date"),
    duration_minutes: int = Query(..., gt=0),
    earliest: Optional[str] = Query(None, pattern=TIME_PATTERN),
    latest: Optional[str] = Query(None, pattern=TIME_PATTERN),
    db: Session = Depends(get_db)
):
    """
    Returns every slot start on the doctor's grid for a date, ignoring bookings.
    """
    return [format_time(minute) for minute in compute_slots(db, doctor_id, date_value, duration_minutes, earliest, latest)]


@router.get("/{doctor_id}/available-slots", response_model=List[AvailableSlot])
async def get_available_slots(
    doctor_id: int,
    date_value: date = Query(..., alias="date"),
    service_id: int = Query(...),
    patient_id: Optional[int] = None,
    db: Session = Depends(get_db)
):
    """
    Returns the slots that still have room for the given service on a date.
    """
    return BookingService(db).available_slots(doctor_id, date_value, service_id, patient_id)


@router.get("/{doctor_id}/availability", response_model=AvailabilityResponse)
async def get_slot_availability(
    doctor_id: int,
    date_value: date = Query(..., alias="date"),
    start_time: str = Query(..., pattern=TIME_PATTERN),
    service_id: int = Query(...),
    db: Session = Depends(get_db)
):
    service = BookingService(db)
    catalog_service = service.get_service(service_id)
    availability = service.check_availability(doctor_id, date_value, start_time, catalog_service.max_slots_per_hour)
    return {
        "doctor_id": doctor_id,
        "date": date_value,
        "start_time": start_time,
        "available": availability.available,
        "remaining": availability.remaining,
    }
