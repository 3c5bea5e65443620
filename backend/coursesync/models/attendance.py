from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum
from datetime import datetime

from coursesync.core.database import Base


class RecordStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class AttendanceStatus(str, enum.Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LEAVE = "leave"
    PENDING_APPROVAL = "pending_approval"
    LEAVE_PENDING = "leave_pending"
    LEAVE_REJECTED = "leave_rejected"


# Statuses counted towards each bucket of the session statistics
PRESENT_STATUSES = (AttendanceStatus.PRESENT, AttendanceStatus.PENDING_APPROVAL)
LEAVE_STATUSES = (AttendanceStatus.LEAVE, AttendanceStatus.LEAVE_PENDING)


class AttendanceRecord(Base):
    """Check-in state of one session, keyed by the session id."""

    __tablename__ = "attendance_records"

    id = Column(Integer, ForeignKey("session_tasks.id", ondelete="CASCADE"), primary_key=True)

    total_count = Column(Integer, default=0, nullable=False)
    checkin_count = Column(Integer, default=0, nullable=False)
    leave_count = Column(Integer, default=0, nullable=False)
    absent_count = Column(Integer, default=0, nullable=False)

    status = Column(SQLEnum(RecordStatus), default=RecordStatus.ACTIVE, nullable=False)
    auto_start_at = Column(DateTime(timezone=True), nullable=True)
    auto_close_at = Column(DateTime(timezone=True), nullable=True)
    checkin_token = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    session = relationship("SessionTask", back_populates="attendance_record")
    students = relationship(
        "StudentAttendance",
        back_populates="record",
        cascade="all, delete-orphan",
    )

    @property
    def checkin_rate(self) -> int:
        if not self.total_count:
            return 0
        return round(self.checkin_count / self.total_count * 100)


class StudentAttendance(Base):
    __tablename__ = "student_attendance"

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(Integer, ForeignKey("attendance_records.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(String(64), nullable=False)

    status = Column(SQLEnum(AttendanceStatus), nullable=False)
    checkin_time = Column(DateTime(timezone=True), nullable=True)
    remark = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    record = relationship("AttendanceRecord", back_populates="students")

    __table_args__ = (
        UniqueConstraint('record_id', 'student_id', name='uq_student_attendance_record_student'),
    )
