"""
Error taxonomy for the course session sync service.

- transition errors: an orchestration operation requested from an illegal
  state; carries the observed status, nothing is mutated
- merge errors: one aggregation group could not be merged; contained to
  that group
- recovery errors: a running task could not be reconciled at startup
- not-found errors: unknown task or session id; surfaced to the caller
"""
from typing import Any, Dict, Optional


class CourseSyncError(Exception):
    """Base exception for the service."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TaskNotFoundError(CourseSyncError):
    """Raised when a task node id does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found", {"task_id": task_id})
        self.task_id = task_id


class SessionNotFoundError(CourseSyncError):
    """Raised when a session task id does not exist."""

    def __init__(self, session_id: int):
        super().__init__(f"Session {session_id} not found", {"session_id": session_id})
        self.session_id = session_id


class InvalidTransitionError(CourseSyncError):
    """Raised when a task status transition is not legal from the current status."""

    def __init__(self, task_id: str, current_status: Any, target_status: Any, reason: Optional[str] = None):
        message = reason or (
            f"Task {task_id} cannot move from {_value(current_status)} to {_value(target_status)}"
        )
        super().__init__(message, {
            "task_id": task_id,
            "current_status": _value(current_status),
            "target_status": _value(target_status),
        })
        self.task_id = task_id
        self.current_status = current_status
        self.target_status = target_status


class InvalidMarkerTransitionError(CourseSyncError):
    """Raised when a schedule row sync marker transition is not legal."""

    def __init__(self, current_marker: Any, target_marker: Any):
        super().__init__(
            f"Sync marker cannot move from {_value(current_marker)} to {_value(target_marker)}",
            {"current_marker": _value(current_marker), "target_marker": _value(target_marker)},
        )
        self.current_marker = current_marker
        self.target_marker = target_marker


class MarkerConflictError(CourseSyncError):
    """Raised when a conditional marker update matched fewer rows than expected."""

    def __init__(self, expected: int, updated: int):
        super().__init__(
            f"Marker update matched {updated} of {expected} rows",
            {"expected": expected, "updated": updated},
        )
        self.expected = expected
        self.updated = updated


class MergeError(CourseSyncError):
    """Raised when an aggregation group cannot be merged into a session."""
    pass


class RecoveryError(CourseSyncError):
    """Raised when a task left running cannot be reconciled."""
    pass


def _value(status: Any) -> Any:
    return getattr(status, "value", status)
