"""
Raw per-period schedule rows and their sync marker.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Time, JSON, Index, false, or_
)
from sqlalchemy.types import TypeDecorator
import enum
from datetime import datetime
from typing import Iterable

from coursesync.core.database import Base


class SyncMarker(int, enum.Enum):
    """Synchronization phase of one raw schedule row.

    UNSYNCED is stored as NULL to stay compatible with the upstream table
    layout; the other members are stored as their integer value.
    """
    UNSYNCED = 0
    TEACHER_SYNCED = 1
    STUDENT_SYNCED = 2
    SOFT_DELETED = 3
    SOFT_DELETE_PROCESSED = 4


# Legal forward transitions; a reset to UNSYNCED only happens through an
# explicit resync request and is handled separately.
MARKER_TRANSITIONS = {
    SyncMarker.UNSYNCED: {SyncMarker.TEACHER_SYNCED, SyncMarker.SOFT_DELETED},
    SyncMarker.TEACHER_SYNCED: {SyncMarker.STUDENT_SYNCED, SyncMarker.SOFT_DELETED},
    SyncMarker.STUDENT_SYNCED: {SyncMarker.SOFT_DELETED},
    SyncMarker.SOFT_DELETED: {SyncMarker.SOFT_DELETE_PROCESSED},
    SyncMarker.SOFT_DELETE_PROCESSED: set(),
}


def marker_sources(target: SyncMarker) -> set:
    """Markers from which `target` may be reached."""
    return {source for source, targets in MARKER_TRANSITIONS.items() if target in targets}


class MarkerType(TypeDecorator):
    """Nullable integer column exposed as SyncMarker."""

    impl = Integer
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        marker = SyncMarker(value)
        if marker == SyncMarker.UNSYNCED:
            return None
        return int(marker)

    def process_result_value(self, value, dialect):
        if value is None:
            return SyncMarker.UNSYNCED
        return SyncMarker(value)


class RawScheduleRow(Base):
    """One (course, date, period) teaching slot as delivered upstream."""

    __tablename__ = "raw_schedule_rows"

    id = Column(Integer, primary_key=True, index=True)

    # Course identity
    course_code = Column(String(64), nullable=False)  # kkh
    course_name = Column(String(255), nullable=True)  # kcmc
    term = Column(String(32), nullable=False)  # xnxq

    # Calendar position
    teaching_week = Column(Integer, nullable=False)  # jxz
    weekday = Column(Integer, nullable=False)  # zc
    session_date = Column(Date, nullable=False)  # rq
    period = Column(Integer, nullable=False)  # jc
    start_time = Column(Time, nullable=False)  # st
    end_time = Column(Time, nullable=False)  # ed

    # Location
    building = Column(String(64), nullable=True)  # lq
    room = Column(String(64), nullable=True)

    # People
    teacher_ids = Column(JSON, nullable=False, default=list)  # ghs
    teacher_names = Column(JSON, nullable=False, default=list)  # xms
    student_ids = Column(JSON, nullable=False, default=list)

    checkin_required = Column(Boolean, default=True)  # sfdk

    # Change tracking
    sync_marker = Column(MarkerType(), nullable=True, default=None)  # gx_zt
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)  # gx_sj

    __table_args__ = (
        Index('idx_raw_schedule_term_marker', 'term', 'sync_marker'),
        Index('idx_raw_schedule_group', 'course_code', 'term', 'session_date'),
    )

    @classmethod
    def marker_in(cls, markers: Iterable[SyncMarker]):
        """SQL predicate matching rows whose marker is one of `markers`."""
        markers = set(markers)
        clauses = []
        if SyncMarker.UNSYNCED in markers:
            clauses.append(cls.sync_marker.is_(None))
        stored = sorted(m for m in markers if m != SyncMarker.UNSYNCED)
        if stored:
            clauses.append(cls.sync_marker.in_(stored))
        if not clauses:
            return false()
        return or_(*clauses)
