"""
API endpoints for sync runs and raw row markers
"""

from fastapi import APIRouter, HTTPException, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from coursesync.core.database import get_db
from coursesync.services.sync import ChangeTracker
from coursesync.tasks.sync_tasks import SyncTaskManager
from coursesync.schemas.sync import (
    SyncRunRequest,
    SyncRunResponse,
    ResyncRequest,
    ResyncResponse,
    MarkerStatsResponse,
    ClearTermResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def get_sync_task_manager(request: Request) -> SyncTaskManager:
    manager = getattr(request.app.state, "sync_task_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync task manager is not running"
        )
    return manager


@router.post("/runs", response_model=SyncRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_sync_run(
    run_request: SyncRunRequest,
    manager: SyncTaskManager = Depends(get_sync_task_manager),
):
    """Queue a full or incremental sync; poll the returned task id for progress"""
    task_id = await manager.submit_sync(run_request)
    logger.info(f"Queued {run_request.kind.value} sync for {run_request.xnxq}: {task_id}")

    return SyncRunResponse(
        task_id=task_id,
        xnxq=run_request.xnxq,
        kind=run_request.kind,
        status="pending",
    )


@router.get("/terms/{xnxq}/markers", response_model=MarkerStatsResponse)
async def get_marker_stats(xnxq: str, db: AsyncSession = Depends(get_db)):
    stats = await ChangeTracker(db).get_marker_stats(xnxq)
    return MarkerStatsResponse(xnxq=xnxq, **stats)


@router.post("/terms/{xnxq}/resync", response_model=ResyncResponse)
async def resync_term(
    xnxq: str,
    body: Optional[ResyncRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """Send merged rows back through aggregation on the next run"""
    body = body or ResyncRequest()
    if body.start_date and body.end_date and body.end_date < body.start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="end_date must not be before start_date"
        )

    rows_reset = await ChangeTracker(db).reset_markers(
        xnxq, body.start_date, body.end_date, course_code=body.course_code
    )
    return ResyncResponse(xnxq=xnxq, rows_reset=rows_reset)


@router.delete("/terms/{xnxq}", response_model=ClearTermResponse)
async def clear_term(
    xnxq: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Physically delete all schedule, session and attendance data of a term"""
    manager = getattr(request.app.state, "sync_task_manager", None)
    if manager is not None and await manager.has_active_run(xnxq):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A sync run for {xnxq} is still active"
        )

    deleted = await ChangeTracker(db).clear_term(xnxq)
    return ClearTermResponse(xnxq=xnxq, deleted=deleted)
