from pydantic import BaseModel
from datetime import date, datetime, time
from typing import Optional, List
from enum import Enum

from coursesync.models.attendance import AttendanceStatus, RecordStatus
from coursesync.models.session_task import TimeBand


class SessionStatus(str, Enum):
    """Wall-clock status of a session, derived on every read."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class AttendanceStats(BaseModel):
    session_id: int
    total_count: int
    present_count: int
    leave_count: int
    absent_count: int
    checkin_rate: int
    present_rate: float


class SessionResponse(BaseModel):
    id: int
    course_code: str
    course_name: Optional[str] = None
    term: str
    teaching_week: int
    weekday: int
    session_date: date
    time_band: TimeBand
    periods: str
    rooms: str
    building: Optional[str] = None
    start_time: time
    end_time: time
    teacher_ids: List[str] = []
    teacher_names: List[str] = []
    student_ids: List[str] = []
    checkin_required: bool
    withdrawn: bool
    withdrawn_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status: Optional[SessionStatus] = None

    class Config:
        from_attributes = True


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
    total: int
    page: int
    page_size: int


class AttendanceRecordResponse(BaseModel):
    id: int
    total_count: int
    checkin_count: int
    leave_count: int
    absent_count: int
    checkin_rate: int
    status: RecordStatus
    auto_start_at: Optional[datetime] = None
    auto_close_at: Optional[datetime] = None
    checkin_token: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StudentAttendanceResponse(BaseModel):
    id: int
    record_id: int
    student_id: str
    status: AttendanceStatus
    checkin_time: Optional[datetime] = None
    remark: Optional[str] = None

    class Config:
        from_attributes = True
