"""
API endpoints for the task tree: reads and control operations
"""

from fastapi import APIRouter, HTTPException, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import logging

from coursesync.core.database import get_db
from coursesync.core.exceptions import InvalidTransitionError, TaskNotFoundError
from coursesync.models.task_node import TaskStatus
from coursesync.services.tasks import TaskTreeService, TreeOptions
from coursesync.services.tasks.task_tree import MAX_TREE_DEPTH
from coursesync.schemas.tasks import (
    TaskActionRequest,
    TaskChildrenResponse,
    TaskNodeResponse,
    TaskStateChangeResponse,
    TaskStatisticsResponse,
    TaskTreeResponse,
    PurgeResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _tree_options(
    max_depth: int = Query(3, ge=0, le=MAX_TREE_DEPTH),
    include_placeholders: bool = Query(True),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    children_limit: int = Query(50, ge=1, le=500),
    status_filter: Optional[List[TaskStatus]] = Query(None),
) -> TreeOptions:
    return TreeOptions(
        max_depth=max_depth,
        include_placeholders=include_placeholders,
        page=page,
        page_size=page_size,
        children_limit=children_limit,
        status_filter=status_filter,
    )


@router.get("/tree", response_model=TaskTreeResponse)
async def get_task_tree(
    options: TreeOptions = Depends(_tree_options),
    db: AsyncSession = Depends(get_db),
):
    """Paginated root tasks with their subtrees, layer by layer"""
    return await TaskTreeService(db).get_task_tree(options)


@router.get("/statistics", response_model=TaskStatisticsResponse)
async def get_statistics(db: AsyncSession = Depends(get_db)):
    return await TaskTreeService(db).get_statistics()


@router.get("/{task_id}", response_model=TaskNodeResponse)
async def get_task(task_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await TaskTreeService(db).get_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.get("/{task_id}/tree", response_model=TaskTreeResponse)
async def get_subtree(
    task_id: str,
    options: TreeOptions = Depends(_tree_options),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await TaskTreeService(db).get_layered_tree(task_id, options)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.get("/{task_id}/children", response_model=TaskChildrenResponse)
async def get_children(
    task_id: str,
    status_filter: Optional[List[TaskStatus]] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    try:
        items, total = await TaskTreeService(db).get_children(task_id, status_filter, page, page_size)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    return TaskChildrenResponse(
        items=[TaskNodeResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


async def _control(db: AsyncSession, action: str, task_id: str, reason: Optional[str]):
    service = TaskTreeService(db)
    try:
        result = await getattr(service, action)(task_id, reason)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return result.to_dict()


async def _run_control(request: Request, db: AsyncSession, action: str, task_id: str, reason: Optional[str]):
    """Route root-level resume/retry through the run manager so the run gets an executor."""
    manager = getattr(request.app.state, "sync_task_manager", None)
    try:
        task = await TaskTreeService(db).get_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    if manager is not None and task.parent_id is None:
        result = await getattr(manager, f"{action}_run")(task_id, reason)
        return result.to_dict()
    return await _control(db, action, task_id, reason)


@router.post("/{task_id}/pause", response_model=TaskStateChangeResponse)
async def pause_task(task_id: str, body: Optional[TaskActionRequest] = None, db: AsyncSession = Depends(get_db)):
    return await _control(db, "pause", task_id, body.reason if body else None)


@router.post("/{task_id}/resume", response_model=TaskStateChangeResponse)
async def resume_task(
    task_id: str,
    request: Request,
    body: Optional[TaskActionRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """Resume a paused task; a sync run left without an executor is relaunched"""
    return await _run_control(request, db, "resume", task_id, body.reason if body else None)


@router.post("/{task_id}/cancel", response_model=TaskStateChangeResponse)
async def cancel_task(task_id: str, body: Optional[TaskActionRequest] = None, db: AsyncSession = Depends(get_db)):
    return await _control(db, "cancel", task_id, body.reason if body else None)


@router.post("/{task_id}/retry", response_model=TaskStateChangeResponse)
async def retry_task(
    task_id: str,
    request: Request,
    body: Optional[TaskActionRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """Retry a failed task; a failed sync run is re-executed in the background"""
    return await _run_control(request, db, "retry", task_id, body.reason if body else None)


@router.delete("/{task_id}", response_model=PurgeResponse)
async def purge_task(task_id: str, db: AsyncSession = Depends(get_db)):
    """Delete a finished task and its subtree"""
    try:
        deleted = await TaskTreeService(db).purge(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    return PurgeResponse(task_id=task_id, deleted=deleted)
