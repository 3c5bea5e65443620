"""
Shared fixtures: a throwaway SQLite database per test and raw row builders.
"""

import pytest
from datetime import date, time

from coursesync.core.database import create_engine, create_session_factory, init_db
from coursesync.models import RawScheduleRow, SyncMarker
import coursesync.models  # noqa: F401

TERM = "2024-2025-2"

# Default clock times per period
PERIOD_TIMES = {
    1: (time(8, 0), time(8, 45)),
    2: (time(8, 55), time(9, 40)),
    3: (time(10, 0), time(10, 45)),
    4: (time(10, 55), time(11, 40)),
    5: (time(14, 0), time(14, 45)),
    6: (time(14, 55), time(15, 40)),
    7: (time(16, 0), time(16, 45)),
    8: (time(16, 55), time(17, 40)),
}


def make_row(
    period: int,
    course_code: str = "CS101",
    session_date: date = date(2025, 3, 3),
    room: str = "A101",
    teacher_ids=("T1",),
    teacher_names=("Teacher One",),
    student_ids=("S1", "S2", "S3"),
    marker: SyncMarker = SyncMarker.UNSYNCED,
    term: str = TERM,
    building: str = "North",
    **overrides
) -> RawScheduleRow:
    start, end = PERIOD_TIMES[period]
    values = dict(
        course_code=course_code,
        course_name=f"Course {course_code}",
        term=term,
        teaching_week=1,
        weekday=session_date.isoweekday(),
        session_date=session_date,
        period=period,
        start_time=start,
        end_time=end,
        building=building,
        room=room,
        teacher_ids=list(teacher_ids),
        teacher_names=list(teacher_names),
        student_ids=list(student_ids),
        checkin_required=True,
        sync_marker=marker,
    )
    values.update(overrides)
    return RawScheduleRow(**values)


@pytest.fixture
async def engine(tmp_path):
    """File-backed database so several sessions can share it."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'coursesync_test.db'}", echo=False)
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def add_rows(db):
    """Persist raw rows and return their ids in insertion order."""
    async def _add(*rows):
        db.add_all(rows)
        await db.commit()
        return [row.id for row in rows]
    return _add
