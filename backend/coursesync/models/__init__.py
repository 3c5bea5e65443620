from .schedule import RawScheduleRow, SyncMarker, MarkerType, MARKER_TRANSITIONS
from .session_task import SessionTask, TimeBand
from .attendance import AttendanceRecord, StudentAttendance, AttendanceStatus, RecordStatus
from .task_node import TaskNode, TaskStatus, TaskType, TERMINAL_STATUSES, ACTIVE_STATUSES

__all__ = [
    "RawScheduleRow",
    "SyncMarker",
    "MarkerType",
    "MARKER_TRANSITIONS",
    "SessionTask",
    "TimeBand",
    "AttendanceRecord",
    "StudentAttendance",
    "AttendanceStatus",
    "RecordStatus",
    "TaskNode",
    "TaskStatus",
    "TaskType",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
]
