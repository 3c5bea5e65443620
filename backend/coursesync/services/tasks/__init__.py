"""
Task Orchestration Engine

Parent/child task nodes for sync runs and their steps, with a strict
lifecycle, progress rollup and crash recovery.
"""

from .state_machine import (
    OPERATIONS,
    TaskOperation,
    TaskStateChangeResult,
    validate_operation,
)
from .task_tree import TaskTreeService, TreeOptions, serialize_task

__all__ = [
    'OPERATIONS',
    'TaskOperation',
    'TaskStateChangeResult',
    'validate_operation',
    'TaskTreeService',
    'TreeOptions',
    'serialize_task',
]
