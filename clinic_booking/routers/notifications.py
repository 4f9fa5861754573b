from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from clinic_booking.database import get_db
from clinic_booking.models.notification import Notification
from clinic_booking.core.security import Actor, get_current_actor
from pydantic import BaseModel
from datetime import datetime

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    type: str
    is_read: bool
    created_at: Optional[datetime] = None
    booking_id: Optional[int] = None

    class Config:
        from_attributes = True


@router.get("", response_model=List[NotificationResponse])
async def get_notifications(
    unread_only: bool = Query(False),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    query = db.query(Notification).filter(Notification.user_id == actor.id)
    if unread_only:
        query = query.filter(Notification.is_read == False)  # noqa: E712
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


@router.put("/read-all")
async def mark_all_notifications_read(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    db.query(Notification).filter(
        Notification.user_id == actor.id,
        Notification.is_read == False  # noqa: E712
    ).update({"is_read": True})
    db.commit()
    return {"message": "All notifications marked as read"}


@router.put("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == actor.id
    ).first()

    if not notification:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found"
        )

    notification.is_read = True
    db.commit()
    return {"message": "Notification marked as read"}
