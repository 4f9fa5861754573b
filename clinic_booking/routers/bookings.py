from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date, datetime
import qrcode
from io import BytesIO
import json
from clinic_booking.database import get_db, retry_on_conflict
from clinic_booking.models.booking import Booking, BookingStatus
from clinic_booking.models.user import UserRole
from clinic_booking.core.security import Actor, get_current_actor
from clinic_booking.services.bookings import BookingService
from clinic_booking.services.time_grid import TIME_PATTERN
from pydantic import BaseModel, Field

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


class BookingCreate(BaseModel):
    patient_id: Optional[int] = None
    doctor_id: int
    service_id: int
    booking_date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)
    patient_notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: BookingStatus
    reason: Optional[str] = None
    doctor_notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class QueueEntryResponse(BaseModel):
    queue_position: int
    estimated_wait_minutes: int
    enqueued_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StatusHistoryResponse(BaseModel):
    old_status: Optional[BookingStatus] = None
    new_status: BookingStatus
    changed_by: str
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    service_id: int
    booking_date: date
    start_time: str
    end_time: str
    status: BookingStatus
    patient_notes: Optional[str] = None
    doctor_notes: Optional[str] = None
    queue_entry: Optional[QueueEntryResponse] = None

    class Config:
        from_attributes = True


class BookingCreatedResponse(BookingResponse):
    message: str


class BookingDetailResponse(BookingResponse):
    status_history: List[StatusHistoryResponse] = []


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class BookingPage(BaseModel):
    data: List[BookingResponse]
    meta: PageMeta


def page_meta(total: int, page: int, limit: int) -> PageMeta:
    return PageMeta(total=total, page=page, limit=limit, total_pages=(total + limit - 1) // limit)


def ensure_can_access(actor: Actor, booking: Booking):
    if actor.is_staff:
        return
    if actor.id not in (booking.patient_id, booking.doctor_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this booking"
        )


def generate_qr_code(booking: Booking) -> bytes:
    verification_data = {
        "booking_id": booking.id,
        "patient_id": booking.patient_id,
        "doctor_id": booking.doctor_id,
        "booking_date": booking.booking_date.isoformat(),
        "start_time": booking.start_time,
        "status": booking.status.value
    }

    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(json.dumps(verification_data))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = BytesIO()
    img.save(buffered, format="PNG")
    return buffered.getvalue()


@router.post("", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking: BookingCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    if actor.role == UserRole.DOCTOR:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Doctors cannot create bookings"
        )

    patient_id = booking.patient_id
    if actor.role == UserRole.PATIENT:
        if patient_id not in (None, actor.id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Patients can only book for themselves"
            )
        patient_id = actor.id
    elif patient_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="patient_id is required when booking on behalf of a patient"
        )

    service = BookingService(db)
    created = retry_on_conflict(lambda: service.create_booking(
        patient_id=patient_id,
        doctor_id=booking.doctor_id,
        service_id=booking.service_id,
        booking_date=booking.booking_date,
        start_time=booking.start_time,
        notes=booking.patient_notes,
        actor=actor.audit_name,
    ))

    if created.status == BookingStatus.QUEUED:
        message = "Booking added to queue. You will be notified when a slot becomes available."
    else:
        message = "Booking created successfully."
    return {**BookingResponse.model_validate(created).model_dump(), "message": message}


@router.get("", response_model=BookingPage)
async def list_bookings(
    patient_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    service_id: Optional[int] = None,
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    booking_date: Optional[date] = Query(None, alias="date"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    # Non-staff only ever see their own side of a booking
    if actor.role == UserRole.PATIENT:
        patient_id = actor.id
    elif actor.role == UserRole.DOCTOR:
        doctor_id = actor.id

    bookings, total = BookingService(db).list_bookings(
        patient_id=patient_id,
        doctor_id=doctor_id,
        service_id=service_id,
        status=booking_status,
        booking_date=booking_date,
        page=page,
        limit=limit,
    )
    return {"data": bookings, "meta": page_meta(total, page, limit)}


@router.get("/{booking_id}", response_model=BookingDetailResponse)
async def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    booking = BookingService(db).get_booking(booking_id)
    ensure_can_access(actor, booking)
    return booking


@router.put("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: int,
    update: StatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    service = BookingService(db)
    booking = service.get_booking(booking_id)
    ensure_can_access(actor, booking)

    if actor.role == UserRole.PATIENT and update.status != BookingStatus.CANCELLED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Patients can only cancel their bookings"
        )

    return retry_on_conflict(lambda: service.transition_status(
        booking_id,
        update.status,
        actor.audit_name,
        reason=update.reason,
        doctor_notes=update.doctor_notes,
    ))


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: int,
    request: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    service = BookingService(db)
    booking = service.get_booking(booking_id)
    ensure_can_access(actor, booking)

    reason = request.reason if request else None
    return retry_on_conflict(lambda: service.cancel_booking(booking_id, actor.audit_name, reason))


@router.get("/{booking_id}/qr-code")
async def get_booking_qr_code(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    booking = BookingService(db).get_booking(booking_id)
    ensure_can_access(actor, booking)

    if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Check-in code is only available for pending or confirmed bookings"
        )

    return Response(content=generate_qr_code(booking), media_type="image/png")
