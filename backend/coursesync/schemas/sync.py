"""
Pydantic schemas for sync runs
"""

from pydantic import BaseModel, Field, validator
from datetime import date
from typing import Any, Dict, Optional
from enum import Enum


class SyncKind(str, Enum):
    """Sync run kinds"""
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncRunRequest(BaseModel):
    """Request for one sync run over a term"""
    xnxq: str = Field(..., min_length=1, description="Term identifier")
    kind: SyncKind = SyncKind.INCREMENTAL
    batch_size: Optional[int] = Field(default=None, ge=1, le=10000)
    retry_count: Optional[int] = Field(default=None, ge=0, le=10)
    timeout_seconds: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    course_code: Optional[str] = None

    @validator("end_date")
    def validate_date_range(cls, v, values):
        start = values.get("start_date")
        if v is not None and start is not None and v < start:
            raise ValueError("end_date must not be before start_date")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "xnxq": "2024-2025-2",
                "kind": "incremental",
                "batch_size": 50,
                "retry_count": 1,
                "timeout_seconds": 600,
            }
        }


class SyncRunResponse(BaseModel):
    """Returned as soon as a run is queued"""
    task_id: str
    xnxq: str
    kind: SyncKind
    status: str


class ResyncRequest(BaseModel):
    """Explicit request to send merged rows back through aggregation"""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    course_code: Optional[str] = None


class ResyncResponse(BaseModel):
    xnxq: str
    rows_reset: int


class MarkerStatsResponse(BaseModel):
    xnxq: str
    total: int
    unsynced: int
    teacher_synced: int
    student_synced: int
    soft_deleted: int
    soft_delete_processed: int


class ClearTermResponse(BaseModel):
    xnxq: str
    deleted: Dict[str, Any]
