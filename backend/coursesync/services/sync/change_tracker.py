"""
Change Tracker

Per-row sync markers on the raw schedule table:
- conditional (compare-and-set) marker transitions scoped to a batch
- candidate queries by marker, term and date range
- explicit resync (marker reset) and term clearing
"""

import logging
from datetime import date
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func

from coursesync.core.exceptions import InvalidMarkerTransitionError, MarkerConflictError
from coursesync.models.schedule import RawScheduleRow, SyncMarker, MARKER_TRANSITIONS, marker_sources
from coursesync.models.session_task import SessionTask
from coursesync.models.attendance import AttendanceRecord, StudentAttendance

logger = logging.getLogger(__name__)

MarkerFilter = Union[SyncMarker, Iterable[SyncMarker], None]

# Markers an explicit resync moves back to UNSYNCED
RESETTABLE_MARKERS = (SyncMarker.TEACHER_SYNCED, SyncMarker.STUDENT_SYNCED)

# Markers of rows that still contribute to a session
LIVE_MARKERS = (SyncMarker.UNSYNCED, SyncMarker.TEACHER_SYNCED, SyncMarker.STUDENT_SYNCED)


def validate_marker_transition(current: SyncMarker, target: SyncMarker) -> None:
    """Raise InvalidMarkerTransitionError unless current -> target is legal."""
    if target not in MARKER_TRANSITIONS[SyncMarker(current)]:
        raise InvalidMarkerTransitionError(current, target)


def _as_marker_set(markers: MarkerFilter) -> set:
    if markers is None:
        return {SyncMarker.UNSYNCED}
    if isinstance(markers, SyncMarker):
        return {markers}
    return set(markers)


class ChangeTracker:
    """Marker bookkeeping for raw schedule rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def mark_after_aggregation(
        self,
        row_ids: List[int],
        new_marker: SyncMarker,
        expected: Optional[SyncMarker] = None,
    ) -> int:
        """
        Move every row in `row_ids` to `new_marker` in one conditional update.

        With `expected` the update only matches rows still carrying the marker
        the caller observed, and `expected -> new_marker` must be legal.
        Without it any marker that may legally reach `new_marker` matches.
        When fewer rows match than were requested the batch is reported as a
        conflict; the caller owns the transaction and rolls it back, so either
        all rows of the batch move or none do.
        """
        if expected is not None:
            validate_marker_transition(expected, new_marker)
            sources = {expected}
        else:
            sources = marker_sources(new_marker)
            if not sources:
                raise InvalidMarkerTransitionError(None, new_marker)

        row_ids = list(dict.fromkeys(row_ids))
        if not row_ids:
            return 0

        result = await self.db.execute(
            update(RawScheduleRow)
            .where(
                RawScheduleRow.id.in_(row_ids),
                RawScheduleRow.marker_in(sources),
            )
            .values(sync_marker=new_marker)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != len(row_ids):
            logger.warning(
                f"Marker update to {new_marker.name} matched {result.rowcount} of {len(row_ids)} rows"
            )
            raise MarkerConflictError(expected=len(row_ids), updated=result.rowcount)

        return result.rowcount

    async def find_by_marker(
        self,
        term: str,
        markers: MarkerFilter = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        course_code: Optional[str] = None,
    ) -> List[RawScheduleRow]:
        """Candidate rows for the next pass, ordered by date, start time and period."""
        query = select(RawScheduleRow).where(
            RawScheduleRow.term == term,
            RawScheduleRow.marker_in(_as_marker_set(markers)),
        )
        if start_date is not None:
            query = query.where(RawScheduleRow.session_date >= start_date)
        if end_date is not None:
            query = query.where(RawScheduleRow.session_date <= end_date)
        if course_code is not None:
            query = query.where(RawScheduleRow.course_code == course_code)

        query = query.order_by(
            RawScheduleRow.session_date,
            RawScheduleRow.start_time,
            RawScheduleRow.period,
            RawScheduleRow.id,
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def mark_soft_deleted(self, row_ids: List[int]) -> int:
        """Withdraw rows upstream. Rows already withdrawn are left alone."""
        row_ids = list(dict.fromkeys(row_ids))
        if not row_ids:
            return 0

        result = await self.db.execute(
            update(RawScheduleRow)
            .where(
                RawScheduleRow.id.in_(row_ids),
                RawScheduleRow.marker_in(marker_sources(SyncMarker.SOFT_DELETED)),
            )
            .values(sync_marker=SyncMarker.SOFT_DELETED)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(f"Soft-deleted {result.rowcount} of {len(row_ids)} schedule rows")
        return result.rowcount

    async def reset_markers(
        self,
        term: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        course_code: Optional[str] = None,
    ) -> int:
        """
        Explicit resync request: rows already merged go back to UNSYNCED.

        Scoped to the term and, when given, the date range and course.
        Withdrawn rows are not touched. The aggregation engine never calls
        this on its own.
        """
        query = (
            update(RawScheduleRow)
            .where(
                RawScheduleRow.term == term,
                RawScheduleRow.marker_in(RESETTABLE_MARKERS),
            )
            .values(sync_marker=SyncMarker.UNSYNCED)
            .execution_options(synchronize_session=False)
        )
        if start_date is not None:
            query = query.where(RawScheduleRow.session_date >= start_date)
        if end_date is not None:
            query = query.where(RawScheduleRow.session_date <= end_date)
        if course_code is not None:
            query = query.where(RawScheduleRow.course_code == course_code)

        result = await self.db.execute(query)
        await self.db.commit()

        logger.info(f"Reset {result.rowcount} schedule rows to unsynced for term {term}")
        return result.rowcount

    async def get_marker_stats(self, term: str) -> Dict[str, int]:
        """Row counts per marker for one term."""
        result = await self.db.execute(
            select(RawScheduleRow.sync_marker, func.count(RawScheduleRow.id))
            .where(RawScheduleRow.term == term)
            .group_by(RawScheduleRow.sync_marker)
        )

        stats = {marker.name.lower(): 0 for marker in SyncMarker}
        for marker, count in result.all():
            stats[SyncMarker(marker).name.lower()] += count
        stats["total"] = sum(stats.values())
        return stats

    async def clear_term(self, term: str) -> Dict[str, int]:
        """Physically delete a term's raw rows, sessions and attendance data."""
        session_ids = select(SessionTask.id).where(SessionTask.term == term)

        students = await self.db.execute(
            delete(StudentAttendance)
            .where(StudentAttendance.record_id.in_(session_ids))
            .execution_options(synchronize_session=False)
        )
        records = await self.db.execute(
            delete(AttendanceRecord)
            .where(AttendanceRecord.id.in_(session_ids))
            .execution_options(synchronize_session=False)
        )
        sessions = await self.db.execute(
            delete(SessionTask)
            .where(SessionTask.term == term)
            .execution_options(synchronize_session=False)
        )
        rows = await self.db.execute(
            delete(RawScheduleRow)
            .where(RawScheduleRow.term == term)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        counts = {
            "raw_rows": rows.rowcount,
            "sessions": sessions.rowcount,
            "attendance_records": records.rowcount,
            "student_attendance": students.rowcount,
        }
        logger.info(f"Cleared term {term}: {counts}")
        return counts
