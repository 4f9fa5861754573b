from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date
from clinic_booking.database import get_db
from clinic_booking.services.suggestions import SlotPreferences, score_all
from clinic_booking.services.time_grid import TIME_PATTERN
from pydantic import BaseModel

router = APIRouter(prefix="/api/suggestions", tags=["suggestions"])


class SuggestedSlot(BaseModel):
    date: date
    day_of_week: str
    time: str
    available_slots: int
    score: int
    reasons: List[str]

    class Config:
        from_attributes = True


class SuggestionsResponse(BaseModel):
    suggestions: List[SuggestedSlot]
    total_found: int


@router.get("", response_model=SuggestionsResponse)
async def get_suggestions(
    doctor_id: int,
    service_id: int,
    start_date: date,
    end_date: date,
    prefer_morning: bool = False,
    prefer_afternoon: bool = False,
    earliest_time: Optional[str] = Query(None, pattern=TIME_PATTERN),
    latest_time: Optional[str] = Query(None, pattern=TIME_PATTERN),
    limit: int = Query(5, ge=1, le=20),
    db: Session = Depends(get_db)
):
    """
    Ranks the open slots between two dates, best first.
    """
    preferences = SlotPreferences(
        prefer_morning=prefer_morning,
        prefer_afternoon=prefer_afternoon,
        earliest_time=earliest_time,
        latest_time=latest_time,
    )
    # total_found counts every open slot, not just the page returned
    scored = score_all(db, doctor_id, service_id, start_date, end_date, preferences)
    return {"suggestions": scored[:limit], "total_found": len(scored)}
