from sqlalchemy import Boolean, CheckConstraint, Column, Integer, String, Text, DateTime
from sqlalchemy.sql import func
from clinic_booking.database import Base


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_service_duration_positive"),
        CheckConstraint("max_slots_per_hour >= 1", name="ck_service_capacity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    # Max concurrent bookings starting at the same slot, not per clock hour
    max_slots_per_hour = Column(Integer, nullable=False, default=2)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
