"""
Aggregation Engine

Consolidates per-period raw schedule rows into class sessions:
- partitions rows into morning/afternoon bands by period number
- groups them by course, term, week, weekday, date and band
- merges periods, rooms, teachers and students of each group
- upserts one session per (course, date, band, term)
- advances the change tracker markers of every contributing row

Each group is merged and committed in its own transaction, so a failing
group never blocks the rest of the run and its rows keep their marker for
the next invocation.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as clock_time
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from coursesync.core.config import settings
from coursesync.core.exceptions import MergeError
from coursesync.core.metrics import AGGREGATION_DURATION, record_group_outcome
from coursesync.models.schedule import RawScheduleRow, SyncMarker
from coursesync.models.session_task import SessionTask, TimeBand, PERIOD_SEPARATOR
from coursesync.services.sync.change_tracker import ChangeTracker, LIVE_MARKERS
from coursesync.services.attendance_service import AttendanceService

logger = logging.getLogger(__name__)

# Awaited before each group with (groups done, groups total); a falsy
# return value stops the run.
Checkpoint = Callable[[int, int], Awaitable[bool]]


class MarkerSelection(str, enum.Enum):
    """Which rows an aggregation pass picks up."""
    UNSYNCED = "unsynced"
    SOFT_DELETED = "soft_deleted"
    BOTH = "both"


@dataclass
class AggregationCriteria:
    """Typed filter for one aggregation pass. Each optional field adds one predicate."""
    markers: MarkerSelection = MarkerSelection.UNSYNCED
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    course_code: Optional[str] = None
    rebuild: bool = False

    def marker_set(self) -> Tuple[SyncMarker, ...]:
        if self.markers == MarkerSelection.SOFT_DELETED:
            return (SyncMarker.SOFT_DELETED,)
        if self.markers == MarkerSelection.BOTH:
            return (SyncMarker.UNSYNCED, SyncMarker.SOFT_DELETED)
        return (SyncMarker.UNSYNCED,)


@dataclass
class AggregationResult:
    morning_sessions_written: int = 0
    afternoon_sessions_written: int = 0
    sessions_withdrawn: int = 0
    groups_succeeded: int = 0
    groups_failed: int = 0
    failed_groups: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_sessions_written(self) -> int:
        return self.morning_sessions_written + self.afternoon_sessions_written

    def count_written(self, band: TimeBand) -> None:
        if band == TimeBand.MORNING:
            self.morning_sessions_written += 1
        else:
            self.afternoon_sessions_written += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "morning_sessions_written": self.morning_sessions_written,
            "afternoon_sessions_written": self.afternoon_sessions_written,
            "total_sessions_written": self.total_sessions_written,
            "sessions_withdrawn": self.sessions_withdrawn,
            "groups_succeeded": self.groups_succeeded,
            "groups_failed": self.groups_failed,
            "failed_groups": list(self.failed_groups),
            "cancelled": self.cancelled,
        }


@dataclass
class ScheduleSlot:
    """Detached snapshot of a raw row, safe to use across rollbacks."""
    id: int
    course_code: str
    course_name: Optional[str]
    term: str
    teaching_week: int
    weekday: int
    session_date: date
    period: int
    start_time: clock_time
    end_time: clock_time
    building: Optional[str]
    room: Optional[str]
    teacher_ids: List[str]
    teacher_names: List[str]
    student_ids: List[str]
    checkin_required: bool
    marker: SyncMarker

    @classmethod
    def from_row(cls, row: RawScheduleRow) -> "ScheduleSlot":
        return cls(
            id=row.id,
            course_code=row.course_code,
            course_name=row.course_name,
            term=row.term,
            teaching_week=row.teaching_week,
            weekday=row.weekday,
            session_date=row.session_date,
            period=row.period,
            start_time=row.start_time,
            end_time=row.end_time,
            building=row.building,
            room=row.room,
            teacher_ids=list(row.teacher_ids or []),
            teacher_names=list(row.teacher_names or []),
            student_ids=list(row.student_ids or []),
            checkin_required=bool(row.checkin_required),
            marker=row.sync_marker,
        )


class GroupKey(NamedTuple):
    course_code: str
    term: str
    teaching_week: int
    weekday: int
    session_date: date
    time_band: TimeBand

    def label(self) -> str:
        return f"{self.course_code}@{self.session_date.isoformat()}/{self.time_band.value}"


def _dedupe(values) -> List[str]:
    return list(dict.fromkeys(v for v in values if v not in (None, "")))


@dataclass
class MergedSession:
    """Merged view of one group; `rooms` is keyed by period."""
    rooms: Dict[int, str]
    building: Optional[str]
    building_period: int
    start_time: clock_time
    end_time: clock_time
    teacher_ids: List[str]
    teacher_names: List[str]
    student_ids: List[str]
    course_name: Optional[str]
    checkin_required: bool

    @property
    def periods(self) -> List[int]:
        return sorted(self.rooms)

    @property
    def period_string(self) -> str:
        return PERIOD_SEPARATOR.join(str(p) for p in self.periods)

    @property
    def room_string(self) -> str:
        return PERIOD_SEPARATOR.join(self.rooms[p] for p in self.periods)

    @classmethod
    def from_slots(cls, slots: List[ScheduleSlot], placeholder: str) -> "MergedSession":
        if not slots:
            raise MergeError("Cannot merge an empty group")

        ordered = sorted(slots, key=lambda s: (s.period, s.start_time, s.id))
        for slot in ordered:
            if slot.start_time is None or slot.end_time is None:
                raise MergeError(f"Row {slot.id} has no start or end time", {"row_id": slot.id})
            if slot.start_time > slot.end_time:
                raise MergeError(
                    f"Row {slot.id} ends before it starts",
                    {"row_id": slot.id, "period": slot.period},
                )

        rooms: Dict[int, str] = {}
        for slot in ordered:
            rooms[slot.period] = slot.room or placeholder

        first = ordered[0]
        return cls(
            rooms=rooms,
            building=first.building,
            building_period=first.period,
            start_time=min(s.start_time for s in ordered),
            end_time=max(s.end_time for s in ordered),
            teacher_ids=_dedupe(t for s in ordered for t in s.teacher_ids),
            teacher_names=_dedupe(t for s in ordered for t in s.teacher_names),
            student_ids=_dedupe(t for s in ordered for t in s.student_ids),
            course_name=next((s.course_name for s in ordered if s.course_name), None),
            checkin_required=any(s.checkin_required for s in ordered),
        )

    def union_with(self, session: SessionTask) -> "MergedSession":
        """Union with an already stored session; this merge wins on a shared period."""
        existing_periods = session.period_list
        existing_rooms = session.room_list
        if len(existing_periods) != len(existing_rooms):
            raise MergeError(
                f"Session {session.id} has {len(existing_periods)} periods but {len(existing_rooms)} rooms",
                {"session_id": session.id},
            )

        rooms = dict(zip(existing_periods, existing_rooms))
        rooms.update(self.rooms)

        building, building_period = self.building, self.building_period
        if existing_periods and existing_periods[0] < self.building_period:
            building, building_period = session.building, existing_periods[0]

        return MergedSession(
            rooms=rooms,
            building=building,
            building_period=building_period,
            start_time=min(self.start_time, session.start_time),
            end_time=max(self.end_time, session.end_time),
            teacher_ids=_dedupe(list(session.teacher_ids or []) + self.teacher_ids),
            teacher_names=_dedupe(list(session.teacher_names or []) + self.teacher_names),
            student_ids=_dedupe(list(session.student_ids or []) + self.student_ids),
            course_name=self.course_name or session.course_name,
            checkin_required=self.checkin_required or bool(session.checkin_required),
        )

    def apply_to(self, session: SessionTask) -> None:
        session.periods = self.period_string
        session.rooms = self.room_string
        session.building = self.building
        session.start_time = self.start_time
        session.end_time = self.end_time
        session.teacher_ids = list(self.teacher_ids)
        session.teacher_names = list(self.teacher_names)
        session.student_ids = list(self.student_ids)
        session.checkin_required = self.checkin_required
        if self.course_name:
            session.course_name = self.course_name


class AggregationEngine:
    """Turns raw schedule rows into consolidated sessions."""

    def __init__(
        self,
        db: AsyncSession,
        morning_last_period: Optional[int] = None,
        room_placeholder: Optional[str] = None,
    ):
        self.db = db
        self.tracker = ChangeTracker(db)
        self.attendance = AttendanceService(db)
        self.morning_last_period = morning_last_period or settings.MORNING_LAST_PERIOD
        self.room_placeholder = room_placeholder if room_placeholder is not None else settings.ROOM_PLACEHOLDER

    def band_for(self, period: int) -> TimeBand:
        return TimeBand.MORNING if period <= self.morning_last_period else TimeBand.AFTERNOON

    def group_slots(self, slots: List[ScheduleSlot]) -> List[Tuple[GroupKey, List[ScheduleSlot]]]:
        """Group slots and order the groups by date, then earliest start time."""
        groups: Dict[GroupKey, List[ScheduleSlot]] = {}
        for slot in slots:
            key = GroupKey(
                course_code=slot.course_code,
                term=slot.term,
                teaching_week=slot.teaching_week,
                weekday=slot.weekday,
                session_date=slot.session_date,
                time_band=self.band_for(slot.period),
            )
            groups.setdefault(key, []).append(slot)

        return sorted(
            groups.items(),
            key=lambda item: (
                item[0].session_date,
                min(s.start_time for s in item[1]),
                item[0].course_code,
                item[0].time_band.value,
            ),
        )

    async def aggregate(
        self,
        term: str,
        criteria: Optional[AggregationCriteria] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> AggregationResult:
        """
        Merge candidate rows of `term` into sessions.

        Args:
            term: Term identifier (xnxq)
            criteria: Which rows to pick up; unsynced rows by default
            checkpoint: Awaited between groups, returning False cancels the run

        Returns:
            Per-run counts; committed groups stay committed when cancelled
        """
        criteria = criteria or AggregationCriteria()
        phase = criteria.markers.value
        started = time.monotonic()

        rows = await self.tracker.find_by_marker(
            term,
            criteria.marker_set(),
            start_date=criteria.start_date,
            end_date=criteria.end_date,
            course_code=criteria.course_code,
        )
        slots = [ScheduleSlot.from_row(row) for row in rows]
        groups = self.group_slots(slots)

        logger.info(
            f"Aggregating {len(slots)} rows in {len(groups)} groups for term {term} "
            f"(markers={phase}, rebuild={criteria.rebuild})"
        )

        result = AggregationResult()
        for index, (key, group) in enumerate(groups):
            if checkpoint and not await checkpoint(index, len(groups)):
                result.cancelled = True
                logger.info(f"Aggregation for term {term} stopped after {index} of {len(groups)} groups")
                break

            try:
                await self._process_group(key, group, criteria, result)
                await self.db.commit()
                result.groups_succeeded += 1
                record_group_outcome(phase, True)
            except Exception as e:
                await self.db.rollback()
                result.groups_failed += 1
                result.failed_groups.append(key.label())
                record_group_outcome(phase, False)
                logger.error(f"Failed to aggregate group {key.label()}: {e}")

        if checkpoint and not result.cancelled:
            await checkpoint(len(groups), len(groups))

        AGGREGATION_DURATION.labels(phase=phase).observe(time.monotonic() - started)
        logger.info(
            f"Aggregation for term {term} finished: {result.groups_succeeded} groups succeeded, "
            f"{result.groups_failed} failed, {result.total_sessions_written} sessions written"
        )
        return result

    async def _process_group(
        self,
        key: GroupKey,
        group: List[ScheduleSlot],
        criteria: AggregationCriteria,
        result: AggregationResult,
    ) -> None:
        unsynced = [s.id for s in group if s.marker == SyncMarker.UNSYNCED]
        withdrawn = [s.id for s in group if s.marker == SyncMarker.SOFT_DELETED]

        if withdrawn:
            await self._rebuild_from_live_rows(key, result)
        else:
            merged = MergedSession.from_slots(group, self.room_placeholder)
            session = await self._upsert_session(key, merged, overwrite=criteria.rebuild)
            await self._ensure_attendance_record(session)
            result.count_written(key.time_band)

        # Rows picked up by the soft-delete rebuild are merged too
        await self.tracker.mark_after_aggregation(
            unsynced, SyncMarker.TEACHER_SYNCED, expected=SyncMarker.UNSYNCED
        )
        await self.tracker.mark_after_aggregation(
            withdrawn, SyncMarker.SOFT_DELETE_PROCESSED, expected=SyncMarker.SOFT_DELETED
        )

    async def _rebuild_from_live_rows(self, key: GroupKey, result: AggregationResult) -> None:
        """Recompute a session from its remaining rows, or flag it withdrawn."""
        query = select(RawScheduleRow).where(
            RawScheduleRow.course_code == key.course_code,
            RawScheduleRow.term == key.term,
            RawScheduleRow.teaching_week == key.teaching_week,
            RawScheduleRow.weekday == key.weekday,
            RawScheduleRow.session_date == key.session_date,
            RawScheduleRow.marker_in(LIVE_MARKERS),
        )
        if key.time_band == TimeBand.MORNING:
            query = query.where(RawScheduleRow.period <= self.morning_last_period)
        else:
            query = query.where(RawScheduleRow.period > self.morning_last_period)

        live = [ScheduleSlot.from_row(row) for row in (await self.db.execute(query)).scalars().all()]
        session = await self.find_session(key)

        if live:
            merged = MergedSession.from_slots(live, self.room_placeholder)
            session = await self._upsert_session(key, merged, overwrite=True, existing=session)
            await self._ensure_attendance_record(session)
            result.count_written(key.time_band)
            return

        if session is not None and not session.withdrawn:
            session.withdrawn = True
            session.withdrawn_at = datetime.utcnow()
            await self.db.flush()
            result.sessions_withdrawn += 1
            logger.info(f"Session {session.id} ({key.label()}) withdrawn, no live rows remain")

    async def _ensure_attendance_record(self, session: SessionTask) -> bool:
        """Open the check-in record of a session on its first pass, refresh its counts afterwards."""
        if not session.checkin_required or session.withdrawn:
            return False
        await self.attendance.upsert_attendance_record(
            session,
            commit=False,
            total_count=len(session.student_ids or []),
        )
        await self.attendance.refresh_attendance_counts(session.id, commit=False)
        return True

    async def find_session(self, key: GroupKey) -> Optional[SessionTask]:
        result = await self.db.execute(
            select(SessionTask).where(
                SessionTask.course_code == key.course_code,
                SessionTask.session_date == key.session_date,
                SessionTask.time_band == key.time_band,
                SessionTask.term == key.term,
            )
        )
        return result.scalar_one_or_none()

    async def _upsert_session(
        self,
        key: GroupKey,
        merged: MergedSession,
        overwrite: bool = False,
        existing: Optional[SessionTask] = None,
    ) -> SessionTask:
        session = existing if existing is not None else await self.find_session(key)

        if session is None:
            session = SessionTask(
                course_code=key.course_code,
                term=key.term,
                teaching_week=key.teaching_week,
                weekday=key.weekday,
                session_date=key.session_date,
                time_band=key.time_band,
                withdrawn=False,
            )
            merged.apply_to(session)
            self.db.add(session)
        else:
            # A withdrawn session keeps nothing worth merging with
            if not overwrite and not session.withdrawn:
                merged = merged.union_with(session)
            merged.apply_to(session)
            session.teaching_week = key.teaching_week
            session.weekday = key.weekday
            session.withdrawn = False
            session.withdrawn_at = None

        await self.db.flush()
        return session

    async def sync_student_phase(
        self,
        term: str,
        criteria: Optional[AggregationCriteria] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> AggregationResult:
        """
        Second pass: rows already merged into sessions (marker 1) get their
        session's attendance record prepared, then move to marker 2.
        """
        criteria = criteria or AggregationCriteria()
        started = time.monotonic()

        rows = await self.tracker.find_by_marker(
            term,
            SyncMarker.TEACHER_SYNCED,
            start_date=criteria.start_date,
            end_date=criteria.end_date,
            course_code=criteria.course_code,
        )
        groups = self.group_slots([ScheduleSlot.from_row(row) for row in rows])

        logger.info(f"Student phase for term {term}: {len(rows)} rows in {len(groups)} groups")

        result = AggregationResult()
        for index, (key, group) in enumerate(groups):
            if checkpoint and not await checkpoint(index, len(groups)):
                result.cancelled = True
                break

            try:
                session = await self.find_session(key)
                if session is None:
                    raise MergeError(f"No session exists for merged group {key.label()}")

                if await self._ensure_attendance_record(session):
                    result.count_written(key.time_band)

                await self.tracker.mark_after_aggregation(
                    [s.id for s in group], SyncMarker.STUDENT_SYNCED, expected=SyncMarker.TEACHER_SYNCED
                )
                await self.db.commit()
                result.groups_succeeded += 1
                record_group_outcome("student", True)
            except Exception as e:
                await self.db.rollback()
                result.groups_failed += 1
                result.failed_groups.append(key.label())
                record_group_outcome("student", False)
                logger.error(f"Student phase failed for group {key.label()}: {e}")

        if checkpoint and not result.cancelled:
            await checkpoint(len(groups), len(groups))

        AGGREGATION_DURATION.labels(phase="student").observe(time.monotonic() - started)
        logger.info(
            f"Student phase for term {term} finished: {result.groups_succeeded} groups succeeded, "
            f"{result.groups_failed} failed"
        )
        return result
