"""
Session and attendance store operations.

Statistics follow a default-absent policy: every rostered student without a
recorded row counts as absent, so no per-student rows are written up front.
"""
import logging
import secrets
from datetime import date, datetime, timedelta
from typing import Any, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from coursesync.core.config import settings
from coursesync.core.exceptions import SessionNotFoundError
from coursesync.models.attendance import (
    AttendanceRecord, StudentAttendance, AttendanceStatus, RecordStatus,
    PRESENT_STATUSES, LEAVE_STATUSES,
)
from coursesync.models.session_task import SessionTask
from coursesync.schemas.attendance import AttendanceStats, SessionStatus

logger = logging.getLogger(__name__)


def get_session_status(session: SessionTask, now: Optional[datetime] = None) -> SessionStatus:
    """Status of a session relative to wall-clock time. Never persisted."""
    now = now or datetime.now()
    if now < session.start_datetime:
        return SessionStatus.NOT_STARTED
    if now > session.end_datetime:
        return SessionStatus.FINISHED
    return SessionStatus.IN_PROGRESS


class AttendanceService:
    """Reads and writes of sessions, attendance records and student rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_session(self, session_id: int) -> SessionTask:
        session = await self.db.get(SessionTask, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def list_sessions(
        self,
        term: Optional[str] = None,
        session_date: Optional[date] = None,
        course_code: Optional[str] = None,
        include_withdrawn: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[SessionTask], int]:
        query = select(SessionTask)
        if term is not None:
            query = query.where(SessionTask.term == term)
        if session_date is not None:
            query = query.where(SessionTask.session_date == session_date)
        if course_code is not None:
            query = query.where(SessionTask.course_code == course_code)
        if not include_withdrawn:
            query = query.where(SessionTask.withdrawn.is_(False))

        total = (await self.db.execute(
            select(func.count()).select_from(query.subquery())
        )).scalar_one()

        query = query.order_by(
            SessionTask.session_date, SessionTask.start_time, SessionTask.course_code
        ).offset((page - 1) * page_size).limit(page_size)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def get_attendance_stats(self, session_id: int) -> AttendanceStats:
        """
        Per-session counts joined against the session roster.

        present = present + pending_approval, leave = leave + leave_pending,
        absent = roster - present - leave.
        """
        session = await self.get_session(session_id)
        roster = set(session.student_ids or [])

        result = await self.db.execute(
            select(StudentAttendance.student_id, StudentAttendance.status)
            .where(StudentAttendance.record_id == session_id)
        )

        present = 0
        leave = 0
        for student_id, status in result.all():
            if student_id not in roster:
                continue
            if status in PRESENT_STATUSES:
                present += 1
            elif status in LEAVE_STATUSES:
                leave += 1

        total = len(roster)
        absent = max(total - present - leave, 0)

        return AttendanceStats(
            session_id=session_id,
            total_count=total,
            present_count=present,
            leave_count=leave,
            absent_count=absent,
            checkin_rate=round(present / total * 100) if total else 0,
            present_rate=round(present / total * 100, 2) if total else 0.0,
        )

    async def get_attendance_record(self, session_id: int) -> Optional[AttendanceRecord]:
        return await self.db.get(AttendanceRecord, session_id)

    async def upsert_attendance_record(
        self,
        session: SessionTask,
        commit: bool = True,
        **fields: Any
    ) -> AttendanceRecord:
        """Update the session's record in place, keeping created_at, or insert it."""
        fields.pop("id", None)
        fields.pop("created_at", None)

        record = await self.db.get(AttendanceRecord, session.id)
        if record is None:
            record = AttendanceRecord(
                id=session.id,
                total_count=len(session.student_ids or []),
                checkin_count=0,
                leave_count=0,
                absent_count=len(session.student_ids or []),
                status=RecordStatus.ACTIVE,
                auto_start_at=session.start_datetime,
                auto_close_at=session.end_datetime + timedelta(hours=settings.ATTENDANCE_AUTO_CLOSE_HOURS),
                checkin_token=secrets.token_hex(8),
            )
            for key, value in fields.items():
                setattr(record, key, value)
            self.db.add(record)
            logger.debug(f"Created attendance record for session {session.id}")
        else:
            for key, value in fields.items():
                setattr(record, key, value)

        await self.db.flush()
        if commit:
            await self.db.commit()
        return record

    async def record_student_status(
        self,
        session_id: int,
        student_id: str,
        status: AttendanceStatus,
        checkin_time: Optional[datetime] = None,
        remark: Optional[str] = None,
    ) -> StudentAttendance:
        """Upsert one student's row, then refresh the record's counts."""
        session = await self.get_session(session_id)
        await self.upsert_attendance_record(session, commit=False)

        result = await self.db.execute(
            select(StudentAttendance).where(
                StudentAttendance.record_id == session_id,
                StudentAttendance.student_id == student_id,
            )
        )
        row = result.scalar_one_or_none()

        if checkin_time is None and status == AttendanceStatus.PRESENT:
            checkin_time = datetime.utcnow()

        if row is None:
            row = StudentAttendance(
                record_id=session_id,
                student_id=student_id,
                status=status,
                checkin_time=checkin_time,
                remark=remark,
            )
            self.db.add(row)
        else:
            row.status = status
            if checkin_time is not None:
                row.checkin_time = checkin_time
            if remark is not None:
                row.remark = remark

        await self.db.flush()
        await self.refresh_attendance_counts(session_id, commit=False)
        await self.db.commit()
        return row

    async def list_student_attendance(self, session_id: int) -> List[StudentAttendance]:
        await self.get_session(session_id)
        result = await self.db.execute(
            select(StudentAttendance)
            .where(StudentAttendance.record_id == session_id)
            .order_by(StudentAttendance.student_id)
        )
        return list(result.scalars().all())

    async def refresh_attendance_counts(self, session_id: int, commit: bool = True) -> AttendanceRecord:
        """Write the current statistics into the session's attendance record."""
        stats = await self.get_attendance_stats(session_id)
        session = await self.get_session(session_id)

        return await self.upsert_attendance_record(
            session,
            commit=commit,
            total_count=stats.total_count,
            checkin_count=stats.present_count,
            leave_count=stats.leave_count,
            absent_count=stats.absent_count,
        )

    async def close_attendance_record(self, session_id: int) -> AttendanceRecord:
        record = await self.refresh_attendance_counts(session_id, commit=False)
        record.status = RecordStatus.CLOSED
        await self.db.commit()

        logger.info(f"Closed attendance record for session {session_id}")
        return record

