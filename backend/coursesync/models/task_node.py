"""
Persisted orchestration tree: sync runs and their steps.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON, Float, ForeignKey, Index, Enum as SQLEnum
)
import enum
import uuid
from datetime import datetime

from coursesync.core.database import Base


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.CANCELLED)
ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.PAUSED)


class TaskType(str, enum.Enum):
    SYNC_RUN = "sync_run"
    RESET_MARKERS = "reset_markers"
    AGGREGATE_SOFT_DELETED = "aggregate_soft_deleted"
    AGGREGATE_UNSYNCED = "aggregate_unsynced"
    AGGREGATE_ALL = "aggregate_all"
    STUDENT_PHASE = "student_phase"


def _new_task_id() -> str:
    return str(uuid.uuid4())


class TaskNode(Base):
    __tablename__ = "task_nodes"

    id = Column(String(36), primary_key=True, default=_new_task_id)
    parent_id = Column(String(36), ForeignKey("task_nodes.id", ondelete="CASCADE"), nullable=True, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    task_type = Column(SQLEnum(TaskType), nullable=False)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.PENDING, nullable=False)
    progress = Column(Float, default=0.0, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    executor = Column(String(100), nullable=True)
    # Position among siblings; steps run in this order
    sequence = Column(Integer, default=0, nullable=False)

    task_metadata = Column(JSON, nullable=True)

    attempt_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_task_node_status', 'status'),
        Index('idx_task_node_parent_sequence', 'parent_id', 'sequence'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
