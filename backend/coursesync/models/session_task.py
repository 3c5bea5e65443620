from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Time, JSON,
    Index, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum
from datetime import datetime
from typing import List

from coursesync.core.database import Base


PERIOD_SEPARATOR = "/"


class TimeBand(str, enum.Enum):
    MORNING = "am"
    AFTERNOON = "pm"


class SessionTask(Base):
    """One consolidated (course, date, time band, term) class session."""

    __tablename__ = "session_tasks"

    id = Column(Integer, primary_key=True, index=True)

    course_code = Column(String(64), nullable=False)
    course_name = Column(String(255), nullable=True)
    term = Column(String(32), nullable=False)
    teaching_week = Column(Integer, nullable=False)
    weekday = Column(Integer, nullable=False)
    session_date = Column(Date, nullable=False)
    time_band = Column(SQLEnum(TimeBand), nullable=False)

    # Merged period data, "/"-joined and aligned by position
    periods = Column(String(255), nullable=False)
    rooms = Column(String(1024), nullable=False)
    building = Column(String(64), nullable=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    # Merged people, deduplicated in first-seen order
    teacher_ids = Column(JSON, nullable=False, default=list)
    teacher_names = Column(JSON, nullable=False, default=list)
    student_ids = Column(JSON, nullable=False, default=list)

    checkin_required = Column(Boolean, default=True)

    # Set when every contributing row has been withdrawn upstream
    withdrawn = Column(Boolean, default=False, nullable=False)
    withdrawn_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    attendance_record = relationship(
        "AttendanceRecord",
        back_populates="session",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint('course_code', 'session_date', 'time_band', 'term', name='uq_session_task_key'),
        Index('idx_session_task_term_date', 'term', 'session_date'),
    )

    @property
    def period_list(self) -> List[int]:
        if not self.periods:
            return []
        return [int(p) for p in self.periods.split(PERIOD_SEPARATOR)]

    @property
    def room_list(self) -> List[str]:
        if not self.rooms:
            return []
        return self.rooms.split(PERIOD_SEPARATOR)

    @property
    def start_datetime(self) -> datetime:
        return datetime.combine(self.session_date, self.start_time)

    @property
    def end_datetime(self) -> datetime:
        return datetime.combine(self.session_date, self.end_time)
