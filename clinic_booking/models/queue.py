from sqlalchemy import Column, Integer, String, ForeignKey, Date, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from clinic_booking.database import Base


class QueueEntry(Base):
    """Waiting-list position of a QUEUED booking.

    Positions within one (doctor, date, start time) group are always 1..N.
    """

    __tablename__ = "booking_queue"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False)
    queue_position = Column(Integer, nullable=False)
    estimated_wait_minutes = Column(Integer, nullable=False)
    enqueued_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    booking = relationship("Booking", back_populates="queue_entry")


class SlotLock(Base):
    """Marker row locked by every transaction that books or promotes into a slot."""

    __tablename__ = "slot_locks"
    __table_args__ = (
        UniqueConstraint("doctor_id", "booking_date", "start_time", name="uq_slot_lock"),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, nullable=False)
    booking_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    version = Column(Integer, nullable=False, default=0)
