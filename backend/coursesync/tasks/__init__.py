"""
Background task management for sync runs.
"""

from .sync_tasks import (
    SyncTaskManager,
    RunParameters,
    RUN_STEPS,
)

__all__ = [
    "SyncTaskManager",
    "RunParameters",
    "RUN_STEPS",
]
