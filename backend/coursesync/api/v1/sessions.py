"""
Read-only session endpoints for check-in and report surfaces
"""

from fastapi import APIRouter, HTTPException, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import date, datetime
from typing import List, Optional
import logging

from coursesync.core.database import get_db
from coursesync.core.exceptions import SessionNotFoundError
from coursesync.services.attendance_service import AttendanceService, get_session_status
from coursesync.schemas.attendance import (
    AttendanceRecordResponse,
    AttendanceStats,
    SessionListResponse,
    SessionResponse,
    StudentAttendanceResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _session_response(session, now: datetime) -> SessionResponse:
    response = SessionResponse.model_validate(session)
    response.status = get_session_status(session, now)
    return response


@router.get("/", response_model=SessionListResponse)
async def list_sessions(
    xnxq: Optional[str] = Query(None),
    session_date: Optional[date] = Query(None),
    course_code: Optional[str] = Query(None),
    include_withdrawn: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    sessions, total = await AttendanceService(db).list_sessions(
        term=xnxq,
        session_date=session_date,
        course_code=course_code,
        include_withdrawn=include_withdrawn,
        page=page,
        page_size=page_size,
    )
    now = datetime.now()
    return SessionListResponse(
        items=[_session_response(s, now) for s in sessions],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: int, db: AsyncSession = Depends(get_db)):
    try:
        session = await AttendanceService(db).get_session(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return _session_response(session, datetime.now())


@router.get("/{session_id}/stats", response_model=AttendanceStats)
async def get_attendance_stats(session_id: int, db: AsyncSession = Depends(get_db)):
    """Counts with rostered students lacking a row reported as absent"""
    try:
        return await AttendanceService(db).get_attendance_stats(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.get("/{session_id}/attendance", response_model=AttendanceRecordResponse)
async def get_attendance_record(session_id: int, db: AsyncSession = Depends(get_db)):
    service = AttendanceService(db)
    try:
        await service.get_session(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    record = await service.get_attendance_record(session_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} has no attendance record"
        )
    return record


@router.get("/{session_id}/students", response_model=List[StudentAttendanceResponse])
async def list_student_attendance(session_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await AttendanceService(db).list_student_attendance(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
