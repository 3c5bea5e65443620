from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional

from coursesync.models.task_node import TaskStatus, TaskType


class TaskNodeResponse(BaseModel):
    id: str
    parent_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    task_type: TaskType
    status: TaskStatus
    progress: float
    priority: int
    executor: Optional[str] = None
    sequence: int
    task_metadata: Optional[Dict[str, Any]] = None
    attempt_count: int
    error_message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskChildrenResponse(BaseModel):
    items: List[TaskNodeResponse]
    total: int
    page: int
    page_size: int


class TaskTreeResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int
    max_depth: int


class TaskActionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class TaskStateChangeResponse(BaseModel):
    success: bool
    task_id: str
    operation: str
    from_status: Optional[TaskStatus] = None
    to_status: Optional[TaskStatus] = None
    execution_time_ms: float
    error: Optional[str] = None


class TaskStatisticsResponse(BaseModel):
    total: int
    root_count: int
    by_status: Dict[str, int]


class PurgeResponse(BaseModel):
    task_id: str
    deleted: int
