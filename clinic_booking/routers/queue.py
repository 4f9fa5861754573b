from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date, datetime
from clinic_booking.database import get_db, retry_on_conflict
from clinic_booking.models.user import UserRole
from clinic_booking.core.security import Actor, get_current_actor, require_roles
from clinic_booking.routers.bookings import BookingResponse, PageMeta, page_meta
from clinic_booking.services.bookings import BookingService
from clinic_booking.services.queue_manager import QueueManager
from clinic_booking.services.time_grid import TIME_PATTERN
from pydantic import BaseModel, Field

router = APIRouter(prefix="/api/queue", tags=["queue"])


class QueuedBooking(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    service_id: int
    booking_date: date
    start_time: str
    end_time: str

    class Config:
        from_attributes = True


class QueueRecordResponse(BaseModel):
    id: int
    booking_id: int
    queue_position: int
    estimated_wait_minutes: int
    enqueued_at: Optional[datetime] = None
    booking: QueuedBooking

    class Config:
        from_attributes = True


class QueuePage(BaseModel):
    data: List[QueueRecordResponse]
    meta: PageMeta


class QueueStatistics(BaseModel):
    total_queued: int
    average_wait_minutes: int
    longest_queue_position: int


class PromoteRequest(BaseModel):
    booking_id: int
    reason: Optional[str] = None


class AutoPromoteRequest(BaseModel):
    doctor_id: int
    booking_date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)


def scope_to_actor(actor: Actor, doctor_id: Optional[int]) -> Optional[int]:
    # Doctors only see their own waiting lists; patients see none
    if actor.is_staff:
        return doctor_id
    if actor.role == UserRole.DOCTOR:
        return actor.id
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not authorized to view the queue"
    )


@router.get("", response_model=QueuePage)
async def list_queue(
    doctor_id: Optional[int] = None,
    booking_date: Optional[date] = Query(None, alias="date"),
    start_time: Optional[str] = Query(None, pattern=TIME_PATTERN),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    doctor_id = scope_to_actor(actor, doctor_id)
    entries, total = QueueManager(db).list_queue(doctor_id, booking_date, start_time, page, limit)
    return {"data": entries, "meta": page_meta(total, page, limit)}


@router.get("/statistics", response_model=QueueStatistics)
async def get_queue_statistics(
    doctor_id: Optional[int] = None,
    booking_date: Optional[date] = Query(None, alias="date"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    doctor_id = scope_to_actor(actor, doctor_id)
    return QueueManager(db).statistics(doctor_id, booking_date)


@router.get("/booking/{booking_id}", response_model=QueueRecordResponse)
async def get_queue_record(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    entry = QueueManager(db).get_entry(booking_id)
    if not actor.is_staff and actor.id not in (entry.booking.patient_id, entry.booking.doctor_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view this queue record"
        )
    return entry


@router.post("/promote", response_model=BookingResponse)
async def promote_queue_entry(
    request: PromoteRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(UserRole.RECEPTIONIST, UserRole.ADMIN))
):
    service = BookingService(db)
    return retry_on_conflict(lambda: service.promote_queue_entry(request.booking_id, actor.audit_name, request.reason))


@router.post("/auto-promote")
async def auto_promote(
    request: AutoPromoteRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(UserRole.RECEPTIONIST, UserRole.ADMIN))
):
    service = BookingService(db)
    promoted = retry_on_conflict(lambda: service.auto_promote(
        request.doctor_id, request.booking_date, request.start_time
    ))
    return {"promoted": promoted}
