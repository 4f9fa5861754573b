from sqlalchemy import Column, Integer, String, ForeignKey, Date, DateTime, Enum, UniqueConstraint
from sqlalchemy.sql import func
import enum
from clinic_booking.database import Base


class DayOfWeek(str, enum.Enum):
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"

    @classmethod
    def from_date(cls, value):
        # date.weekday() is 0 for Monday, matching declaration order
        return list(cls)[value.weekday()]

    @property
    def is_weekday(self) -> bool:
        return self not in (DayOfWeek.SATURDAY, DayOfWeek.SUNDAY)


class WorkingHours(Base):
    __tablename__ = "doctor_working_hours"
    __table_args__ = (UniqueConstraint("doctor_id", "day_of_week", name="uq_working_hours_doctor_day"),)

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day_of_week = Column(Enum(DayOfWeek), nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class BreakTime(Base):
    __tablename__ = "doctor_break_times"

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class OffDay(Base):
    __tablename__ = "doctor_off_days"
    __table_args__ = (UniqueConstraint("doctor_id", "date", name="uq_off_day_doctor_date"),)

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
