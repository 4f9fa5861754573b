from sqlalchemy import Column, Integer, String, ForeignKey, Date, DateTime, Enum, Text, Index
from sqlalchemy.orm import relationship
import enum
from clinic_booking.database import Base
from sqlalchemy.sql import func


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    QUEUED = "QUEUED"


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_slot", "doctor_id", "booking_date", "start_time"),
        Index("ix_bookings_patient_day", "patient_id", "doctor_id", "booking_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    booking_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    # Fixed at creation; later service duration changes do not move it
    end_time = Column(String(5), nullable=False)
    status = Column(Enum(BookingStatus), nullable=False)
    patient_notes = Column(Text, nullable=True)
    doctor_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    service = relationship("Service")
    queue_entry = relationship(
        "QueueEntry", back_populates="booking", uselist=False, cascade="all, delete-orphan"
    )
    status_history = relationship(
        "BookingStatusHistory",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingStatusHistory.id",
    )


class BookingStatusHistory(Base):
    """Append-only audit log, one row per status transition."""

    __tablename__ = "booking_status_history"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    old_status = Column(Enum(BookingStatus), nullable=True)
    new_status = Column(Enum(BookingStatus), nullable=False)
    changed_by = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    booking = relationship("Booking", back_populates="status_history")
