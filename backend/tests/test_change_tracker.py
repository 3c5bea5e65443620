"""
Tests for the change tracker: marker transitions, queries, resync and term clearing.
"""

import pytest
from datetime import date

from sqlalchemy import select

from coursesync.core.exceptions import InvalidMarkerTransitionError, MarkerConflictError
from coursesync.models import RawScheduleRow, SyncMarker, SessionTask
from coursesync.services.sync import ChangeTracker, validate_marker_transition
from coursesync.services.sync.aggregation_engine import AggregationEngine

from conftest import TERM, make_row


async def markers_of(db, ids):
    result = await db.execute(
        select(RawScheduleRow.id, RawScheduleRow.sync_marker).where(RawScheduleRow.id.in_(ids))
    )
    return dict(result.all())


class TestMarkerTransitions:
    """Legal and illegal marker transitions."""

    @pytest.mark.parametrize("current,target", [
        (SyncMarker.UNSYNCED, SyncMarker.TEACHER_SYNCED),
        (SyncMarker.TEACHER_SYNCED, SyncMarker.STUDENT_SYNCED),
        (SyncMarker.UNSYNCED, SyncMarker.SOFT_DELETED),
        (SyncMarker.TEACHER_SYNCED, SyncMarker.SOFT_DELETED),
        (SyncMarker.STUDENT_SYNCED, SyncMarker.SOFT_DELETED),
        (SyncMarker.SOFT_DELETED, SyncMarker.SOFT_DELETE_PROCESSED),
    ])
    def test_legal_transitions(self, current, target):
        validate_marker_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (SyncMarker.UNSYNCED, SyncMarker.STUDENT_SYNCED),
        (SyncMarker.STUDENT_SYNCED, SyncMarker.TEACHER_SYNCED),
        (SyncMarker.TEACHER_SYNCED, SyncMarker.UNSYNCED),
        (SyncMarker.SOFT_DELETED, SyncMarker.TEACHER_SYNCED),
        (SyncMarker.SOFT_DELETE_PROCESSED, SyncMarker.SOFT_DELETED),
        (SyncMarker.UNSYNCED, SyncMarker.SOFT_DELETE_PROCESSED),
    ])
    def test_illegal_transitions(self, current, target):
        with pytest.raises(InvalidMarkerTransitionError):
            validate_marker_transition(current, target)


class TestChangeTracker:
    """Database-backed change tracker operations."""

    @pytest.mark.asyncio
    async def test_unsynced_is_stored_as_null(self, db, add_rows):
        ids = await add_rows(make_row(1))

        raw = await db.execute(
            select(RawScheduleRow.__table__.c.sync_marker).where(RawScheduleRow.id == ids[0])
        )
        assert raw.scalar_one() is SyncMarker.UNSYNCED

        null_rows = await db.execute(
            select(RawScheduleRow.id).where(RawScheduleRow.sync_marker.is_(None))
        )
        assert null_rows.scalars().all() == ids

    @pytest.mark.asyncio
    async def test_mark_after_aggregation_moves_whole_batch(self, db, add_rows):
        ids = await add_rows(make_row(1), make_row(2))
        tracker = ChangeTracker(db)

        updated = await tracker.mark_after_aggregation(ids, SyncMarker.TEACHER_SYNCED)
        await db.commit()

        assert updated == 2
        assert set((await markers_of(db, ids)).values()) == {SyncMarker.TEACHER_SYNCED}

    @pytest.mark.asyncio
    async def test_mark_after_aggregation_conflict_changes_nothing(self, db, add_rows):
        ids = await add_rows(make_row(1), make_row(2, marker=SyncMarker.STUDENT_SYNCED))
        tracker = ChangeTracker(db)

        with pytest.raises(MarkerConflictError) as exc_info:
            await tracker.mark_after_aggregation(ids, SyncMarker.TEACHER_SYNCED)
        await db.rollback()

        assert exc_info.value.expected == 2
        assert exc_info.value.updated == 1
        assert await markers_of(db, ids) == {
            ids[0]: SyncMarker.UNSYNCED,
            ids[1]: SyncMarker.STUDENT_SYNCED,
        }

    @pytest.mark.asyncio
    async def test_second_pass_over_same_rows_does_not_double_process(self, db, add_rows):
        ids = await add_rows(make_row(1))
        tracker = ChangeTracker(db)

        await tracker.mark_after_aggregation(ids, SyncMarker.TEACHER_SYNCED)
        await db.commit()

        with pytest.raises(MarkerConflictError):
            await tracker.mark_after_aggregation(ids, SyncMarker.TEACHER_SYNCED)
        await db.rollback()

        assert await markers_of(db, ids) == {ids[0]: SyncMarker.TEACHER_SYNCED}

    @pytest.mark.asyncio
    async def test_reset_target_is_rejected(self, db, add_rows):
        ids = await add_rows(make_row(1, marker=SyncMarker.TEACHER_SYNCED))

        with pytest.raises(InvalidMarkerTransitionError):
            await ChangeTracker(db).mark_after_aggregation(ids, SyncMarker.UNSYNCED)

    @pytest.mark.asyncio
    async def test_expected_marker_must_lead_to_target(self, db, add_rows):
        ids = await add_rows(make_row(1))

        with pytest.raises(InvalidMarkerTransitionError):
            await ChangeTracker(db).mark_after_aggregation(
                ids, SyncMarker.STUDENT_SYNCED, expected=SyncMarker.UNSYNCED
            )
        await db.rollback()

        assert await markers_of(db, ids) == {ids[0]: SyncMarker.UNSYNCED}

    @pytest.mark.asyncio
    async def test_expected_marker_only_matches_observed_rows(self, db, add_rows):
        ids = await add_rows(make_row(1), make_row(2, marker=SyncMarker.TEACHER_SYNCED))
        tracker = ChangeTracker(db)

        with pytest.raises(MarkerConflictError):
            await tracker.mark_after_aggregation(ids, SyncMarker.SOFT_DELETED, expected=SyncMarker.UNSYNCED)
        await db.rollback()

        updated = await tracker.mark_after_aggregation(ids[:1], SyncMarker.SOFT_DELETED, expected=SyncMarker.UNSYNCED)
        await db.commit()

        assert updated == 1
        assert await markers_of(db, ids) == {
            ids[0]: SyncMarker.SOFT_DELETED,
            ids[1]: SyncMarker.TEACHER_SYNCED,
        }

    @pytest.mark.asyncio
    async def test_find_by_marker_filters_and_orders(self, db, add_rows):
        await add_rows(
            make_row(3, session_date=date(2025, 3, 4)),
            make_row(1, session_date=date(2025, 3, 4)),
            make_row(5, session_date=date(2025, 3, 3)),
            make_row(2, session_date=date(2025, 3, 3), marker=SyncMarker.TEACHER_SYNCED),
            make_row(1, session_date=date(2025, 3, 10)),
            make_row(1, term="2023-2024-1"),
        )
        tracker = ChangeTracker(db)

        rows = await tracker.find_by_marker(TERM, None, end_date=date(2025, 3, 5))
        assert [(r.session_date.day, r.period) for r in rows] == [(3, 5), (4, 1), (4, 3)]

        merged = await tracker.find_by_marker(TERM, SyncMarker.TEACHER_SYNCED)
        assert [r.period for r in merged] == [2]

        both = await tracker.find_by_marker(TERM, [SyncMarker.UNSYNCED, SyncMarker.TEACHER_SYNCED])
        assert len(both) == 5

    @pytest.mark.asyncio
    async def test_mark_soft_deleted_skips_already_withdrawn_rows(self, db, add_rows):
        ids = await add_rows(
            make_row(1, marker=SyncMarker.STUDENT_SYNCED),
            make_row(2, marker=SyncMarker.SOFT_DELETE_PROCESSED),
        )

        updated = await ChangeTracker(db).mark_soft_deleted(ids)

        assert updated == 1
        assert await markers_of(db, ids) == {
            ids[0]: SyncMarker.SOFT_DELETED,
            ids[1]: SyncMarker.SOFT_DELETE_PROCESSED,
        }

    @pytest.mark.asyncio
    async def test_reset_markers_only_touches_merged_rows(self, db, add_rows):
        ids = await add_rows(
            make_row(1, marker=SyncMarker.TEACHER_SYNCED),
            make_row(2, marker=SyncMarker.STUDENT_SYNCED),
            make_row(3, marker=SyncMarker.SOFT_DELETED),
            make_row(4, marker=SyncMarker.STUDENT_SYNCED, session_date=date(2025, 4, 1)),
        )

        reset = await ChangeTracker(db).reset_markers(TERM, end_date=date(2025, 3, 31))

        assert reset == 2
        assert await markers_of(db, ids) == {
            ids[0]: SyncMarker.UNSYNCED,
            ids[1]: SyncMarker.UNSYNCED,
            ids[2]: SyncMarker.SOFT_DELETED,
            ids[3]: SyncMarker.STUDENT_SYNCED,
        }

    @pytest.mark.asyncio
    async def test_reset_markers_scoped_to_course(self, db, add_rows):
        ids = await add_rows(
            make_row(1, marker=SyncMarker.STUDENT_SYNCED),
            make_row(2, marker=SyncMarker.STUDENT_SYNCED, course_code="MA201"),
        )

        reset = await ChangeTracker(db).reset_markers(TERM, course_code="CS101")

        assert reset == 1
        assert await markers_of(db, ids) == {
            ids[0]: SyncMarker.UNSYNCED,
            ids[1]: SyncMarker.STUDENT_SYNCED,
        }

    @pytest.mark.asyncio
    async def test_get_marker_stats(self, db, add_rows):
        await add_rows(
            make_row(1),
            make_row(2),
            make_row(3, marker=SyncMarker.TEACHER_SYNCED),
            make_row(4, marker=SyncMarker.SOFT_DELETED),
        )

        stats = await ChangeTracker(db).get_marker_stats(TERM)

        assert stats == {
            "unsynced": 2,
            "teacher_synced": 1,
            "student_synced": 0,
            "soft_deleted": 1,
            "soft_delete_processed": 0,
            "total": 4,
        }

    @pytest.mark.asyncio
    async def test_clear_term_removes_term_data_only(self, db, add_rows):
        await add_rows(make_row(1), make_row(2), make_row(1, term="2023-2024-1"))
        await AggregationEngine(db).aggregate(TERM)
        await AggregationEngine(db).sync_student_phase(TERM)

        counts = await ChangeTracker(db).clear_term(TERM)

        assert counts["raw_rows"] == 2
        assert counts["sessions"] == 1
        assert counts["attendance_records"] == 1
        remaining = (await db.execute(select(RawScheduleRow.term))).scalars().all()
        assert remaining == ["2023-2024-1"]
        assert (await db.execute(select(SessionTask))).scalars().all() == []
