"""
Task node lifecycle.

    pending  -> running, cancelled
    running  -> paused, success, failed, cancelled
    paused   -> running, cancelled
    failed   -> running (retry)
    success, cancelled: terminal
"""
import enum
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Tuple

from coursesync.core.exceptions import InvalidTransitionError
from coursesync.models.task_node import TaskStatus


class TaskOperation(str, enum.Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    RETRY = "retry"
    SUCCESS = "success"
    FAIL = "fail"


# operation -> (statuses it may be applied from, resulting status)
OPERATIONS: Dict[TaskOperation, Tuple[FrozenSet[TaskStatus], TaskStatus]] = {
    TaskOperation.START: (frozenset({TaskStatus.PENDING}), TaskStatus.RUNNING),
    TaskOperation.PAUSE: (frozenset({TaskStatus.RUNNING}), TaskStatus.PAUSED),
    TaskOperation.RESUME: (frozenset({TaskStatus.PAUSED}), TaskStatus.RUNNING),
    TaskOperation.CANCEL: (
        frozenset({TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.PAUSED}),
        TaskStatus.CANCELLED,
    ),
    TaskOperation.RETRY: (frozenset({TaskStatus.FAILED}), TaskStatus.RUNNING),
    TaskOperation.SUCCESS: (frozenset({TaskStatus.RUNNING}), TaskStatus.SUCCESS),
    TaskOperation.FAIL: (frozenset({TaskStatus.RUNNING}), TaskStatus.FAILED),
}

# operations that put a node back to work; refused under a finished parent
REACTIVATING = frozenset({TaskOperation.START, TaskOperation.RESUME, TaskOperation.RETRY})


def validate_operation(task_id: str, operation: TaskOperation, current: TaskStatus) -> TaskStatus:
    """Return the target status of `operation`, or raise InvalidTransitionError."""
    sources, target = OPERATIONS[operation]
    if current not in sources:
        raise InvalidTransitionError(task_id, current, target)
    return target


@dataclass
class TaskStateChangeResult:
    success: bool
    task_id: str
    operation: TaskOperation
    from_status: Optional[TaskStatus]
    to_status: Optional[TaskStatus]
    execution_time_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "task_id": self.task_id,
            "operation": self.operation.value,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value if self.to_status else None,
            "execution_time_ms": self.execution_time_ms,
            "error": self.error,
        }
