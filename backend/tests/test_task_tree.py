"""
Tests for the task tree: lifecycle transitions, rollup, layered reads, recovery and purge.
"""

import pytest

from coursesync.core.exceptions import InvalidTransitionError, RecoveryError, TaskNotFoundError
from coursesync.models import TaskStatus, TaskType
from coursesync.services.tasks import TaskTreeService, TreeOptions
from coursesync.services.tasks.state_machine import (
    OPERATIONS, TaskOperation, validate_operation
)


@pytest.fixture
def service(db):
    return TaskTreeService(db)


async def make_task(service, status=TaskStatus.PENDING, parent_id=None, name="task"):
    """Create a node and drive it into `status` through legal operations."""
    task = await service.create_task(
        name=name,
        task_type=TaskType.SYNC_RUN if parent_id is None else TaskType.AGGREGATE_UNSYNCED,
        parent_id=parent_id,
    )
    steps = {
        TaskStatus.PENDING: [],
        TaskStatus.RUNNING: [service.start],
        TaskStatus.PAUSED: [service.start, service.pause],
        TaskStatus.SUCCESS: [service.start, service.success],
        TaskStatus.FAILED: [service.start, service.fail],
        TaskStatus.CANCELLED: [service.cancel],
    }[status]
    for step in steps:
        result = await step(task.id)
        assert result.success, result.error
    return task.id


OPERATION_METHODS = {
    TaskOperation.START: "start",
    TaskOperation.PAUSE: "pause",
    TaskOperation.RESUME: "resume",
    TaskOperation.CANCEL: "cancel",
    TaskOperation.RETRY: "retry",
    TaskOperation.SUCCESS: "success",
    TaskOperation.FAIL: "fail",
}

LEGAL = {
    (TaskStatus.PENDING, TaskOperation.START): TaskStatus.RUNNING,
    (TaskStatus.PENDING, TaskOperation.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.RUNNING, TaskOperation.PAUSE): TaskStatus.PAUSED,
    (TaskStatus.RUNNING, TaskOperation.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.RUNNING, TaskOperation.SUCCESS): TaskStatus.SUCCESS,
    (TaskStatus.RUNNING, TaskOperation.FAIL): TaskStatus.FAILED,
    (TaskStatus.PAUSED, TaskOperation.RESUME): TaskStatus.RUNNING,
    (TaskStatus.PAUSED, TaskOperation.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.FAILED, TaskOperation.RETRY): TaskStatus.RUNNING,
}


class TestStateMachine:
    """Transition table checks without a database."""

    def test_terminal_statuses_have_no_exits(self):
        for operation in TaskOperation:
            for terminal in (TaskStatus.SUCCESS, TaskStatus.CANCELLED):
                with pytest.raises(InvalidTransitionError):
                    validate_operation("t", operation, terminal)

    def test_failed_only_goes_back_to_running(self):
        assert validate_operation("t", TaskOperation.RETRY, TaskStatus.FAILED) == TaskStatus.RUNNING
        for operation in set(TaskOperation) - {TaskOperation.RETRY}:
            with pytest.raises(InvalidTransitionError):
                validate_operation("t", operation, TaskStatus.FAILED)

    def test_operation_table_matches_lifecycle(self):
        for (status, operation), target in LEGAL.items():
            assert OPERATIONS[operation][1] == target
            assert status in OPERATIONS[operation][0]
        legal_pairs = {(s, op) for op, (sources, _) in OPERATIONS.items() for s in sources}
        assert legal_pairs == set(LEGAL)

    def test_validate_operation(self):
        assert validate_operation("t", TaskOperation.RESUME, TaskStatus.PAUSED) == TaskStatus.RUNNING
        with pytest.raises(InvalidTransitionError):
            validate_operation("t", TaskOperation.RESUME, TaskStatus.RUNNING)


class TestLifecycle:
    """Operations applied to persisted nodes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("start_status", list(TaskStatus))
    @pytest.mark.parametrize("operation", list(TaskOperation))
    async def test_transition_grid(self, service, start_status, operation):
        task_id = await make_task(service, start_status)

        result = await getattr(service, OPERATION_METHODS[operation])(task_id)

        expected = LEGAL.get((start_status, operation))
        current = await service.get_status(task_id)
        assert result.from_status == start_status
        if expected is None:
            assert result.success is False
            assert result.error
            assert current == start_status
        else:
            assert result.success is True
            assert result.to_status == expected
            assert current == expected

    @pytest.mark.asyncio
    async def test_second_pause_is_rejected(self, service):
        task_id = await make_task(service, TaskStatus.RUNNING)

        first = await service.pause(task_id)
        second = await service.pause(task_id)

        assert first.success is True
        assert second.success is False
        assert second.from_status == TaskStatus.PAUSED
        assert await service.get_status(task_id) == TaskStatus.PAUSED

    @pytest.mark.asyncio
    async def test_transition_is_recorded_in_metadata(self, service):
        task_id = await make_task(service, TaskStatus.RUNNING)

        await service.pause(task_id, reason="operator request")

        task = await service.get_task(task_id)
        last = task.task_metadata["last_transition"]
        assert last["operation"] == "pause"
        assert last["from"] == "running"
        assert last["to"] == "paused"
        assert last["reason"] == "operator request"

    @pytest.mark.asyncio
    async def test_retry_keeps_history(self, service):
        task = await service.create_task("step", TaskType.STUDENT_PHASE)
        await service.start(task.id)
        await service.fail(task.id, error="database locked")

        result = await service.retry(task.id, reason="second try")

        assert result.success
        refreshed = await service.get_task(task.id)
        assert refreshed.status == TaskStatus.RUNNING
        assert refreshed.attempt_count == 1
        assert refreshed.error_message is None
        history = refreshed.task_metadata["retry_history"]
        assert history == [{
            "attempt": 1,
            "reason": "second try",
            "previous_error": "database locked",
            "at": history[0]["at"],
        }]

    @pytest.mark.asyncio
    async def test_success_refused_while_children_active(self, service):
        root_id = await make_task(service, TaskStatus.RUNNING, name="root")
        child_id = await make_task(service, TaskStatus.RUNNING, parent_id=root_id, name="child")

        refused = await service.success(root_id)
        assert refused.success is False
        assert "unfinished children" in refused.error

        await service.success(child_id)
        accepted = await service.success(root_id, result={"sessions": 3})
        assert accepted.success is True

        root = await service.get_task(root_id)
        assert root.result == {"sessions": 3}
        assert root.progress == 100.0

    @pytest.mark.asyncio
    async def test_cancel_cascades_to_unfinished_descendants(self, service):
        root_id = await make_task(service, TaskStatus.RUNNING, name="root")
        done_id = await make_task(service, TaskStatus.SUCCESS, parent_id=root_id, name="done")
        running_id = await make_task(service, TaskStatus.RUNNING, parent_id=root_id, name="running")
        grandchild_id = await make_task(service, TaskStatus.PENDING, parent_id=running_id, name="queued")

        result = await service.cancel(root_id, reason="stop")

        assert result.success
        assert await service.get_status(root_id) == TaskStatus.CANCELLED
        assert await service.get_status(done_id) == TaskStatus.SUCCESS
        assert await service.get_status(running_id) == TaskStatus.CANCELLED
        assert await service.get_status(grandchild_id) == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parent_status", [TaskStatus.SUCCESS, TaskStatus.CANCELLED])
    async def test_child_cannot_restart_under_finished_parent(self, service, parent_status):
        root_id = await make_task(service, TaskStatus.RUNNING, name="root")
        child_id = await make_task(service, TaskStatus.FAILED, parent_id=root_id, name="child")
        if parent_status == TaskStatus.SUCCESS:
            assert (await service.success(root_id)).success
        else:
            assert (await service.cancel(root_id)).success

        result = await service.retry(child_id, reason="late retry")

        assert result.success is False
        assert f"Parent task {root_id} is {parent_status.value}" == result.error
        assert await service.get_status(child_id) == TaskStatus.FAILED
        assert await service.get_status(root_id) == parent_status

    @pytest.mark.asyncio
    async def test_no_new_children_under_finished_parent(self, service):
        root_id = await make_task(service, TaskStatus.RUNNING, name="root")
        await service.success(root_id)

        with pytest.raises(InvalidTransitionError) as excinfo:
            await service.create_task("late step", TaskType.STUDENT_PHASE, parent_id=root_id)

        assert "no new children" in excinfo.value.message
        _, total = await service.get_children(root_id)
        assert total == 0

    @pytest.mark.asyncio
    async def test_child_can_retry_under_running_parent(self, service):
        root_id = await make_task(service, TaskStatus.RUNNING, name="root")
        child_id = await make_task(service, TaskStatus.FAILED, parent_id=root_id, name="child")

        assert (await service.retry(child_id)).success
        assert await service.get_status(child_id) == TaskStatus.RUNNING

    @pytest.mark.asyncio
    async def test_unknown_task_raises(self, service):
        with pytest.raises(TaskNotFoundError):
            await service.start("missing")
        with pytest.raises(TaskNotFoundError):
            await service.get_task("missing")
        with pytest.raises(TaskNotFoundError):
            await service.create_task("orphan", TaskType.RESET_MARKERS, parent_id="missing")


class TestProgressRollup:
    """Ancestor progress follows the children."""

    @pytest.mark.asyncio
    async def test_progress_rolls_up_through_every_ancestor(self, service):
        root_id = await make_task(service, TaskStatus.RUNNING, name="root")
        step_a = await make_task(service, TaskStatus.RUNNING, parent_id=root_id, name="a")
        step_b = await make_task(service, TaskStatus.PENDING, parent_id=root_id, name="b")
        leaf = await make_task(service, TaskStatus.RUNNING, parent_id=step_a, name="leaf")

        await service.update_progress(leaf, 50)

        assert (await service.get_task(step_a)).progress == 50.0
        assert (await service.get_task(root_id)).progress == 25.0

        await service.success(leaf)
        await service.success(step_a)

        assert (await service.get_task(step_a)).progress == 100.0
        assert (await service.get_task(root_id)).progress == 50.0
        assert await service.get_status(root_id) == TaskStatus.RUNNING
        assert await service.get_status(step_b) == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_progress_is_clamped(self, service):
        task_id = await make_task(service, TaskStatus.RUNNING)

        assert (await service.update_progress(task_id, 140)).progress == 100.0
        assert (await service.update_progress(task_id, -5)).progress == 0.0

    @pytest.mark.asyncio
    async def test_update_progress_of_unknown_task(self, service):
        with pytest.raises(TaskNotFoundError):
            await service.update_progress("missing", 10)


class TestTreeReads:
    """Layered reads, children pages and statistics."""

    @pytest.fixture
    async def tree(self, service):
        root_id = await make_task(service, TaskStatus.RUNNING, name="root")
        first = await make_task(service, TaskStatus.RUNNING, parent_id=root_id, name="first")
        second = await make_task(service, TaskStatus.SUCCESS, parent_id=root_id, name="second")
        third = await make_task(service, TaskStatus.PENDING, parent_id=root_id, name="third")
        leaf = await make_task(service, TaskStatus.PENDING, parent_id=first, name="leaf")
        return {"root": root_id, "first": first, "second": second, "third": third, "leaf": leaf}

    @pytest.mark.asyncio
    async def test_children_limit_and_placeholders(self, service, tree):
        data = await service.get_layered_tree(
            tree["root"], TreeOptions(max_depth=2, children_limit=2)
        )

        root = data["items"][0]
        assert data["total"] == 1
        assert root["children_count"] == 3
        assert root["has_more_children"] is True
        assert [child["name"] for child in root["children"]] == ["first", "second"]

        first, second = root["children"]
        assert first["placeholder"] is False
        assert [child["name"] for child in first["children"]] == ["leaf"]
        assert second["placeholder"] is True
        assert second["children"] == []

    @pytest.mark.asyncio
    async def test_terminal_children_dropped_without_placeholders(self, service, tree):
        data = await service.get_layered_tree(
            tree["root"], TreeOptions(include_placeholders=False)
        )

        root = data["items"][0]
        assert [child["name"] for child in root["children"]] == ["first", "third"]
        assert root["children_count"] == 2

    @pytest.mark.asyncio
    async def test_depth_limit(self, service, tree):
        data = await service.get_layered_tree(tree["root"], TreeOptions(max_depth=1))

        first = data["items"][0]["children"][0]
        assert first["name"] == "first"
        assert first["children"] == []

        shallow = await service.get_layered_tree(tree["root"], TreeOptions(max_depth=0))
        assert shallow["items"][0]["children"] == []

    @pytest.mark.asyncio
    async def test_depth_is_capped(self, service, tree):
        data = await service.get_layered_tree(tree["root"], TreeOptions(max_depth=99))
        assert data["max_depth"] == 10

    @pytest.mark.asyncio
    async def test_forest_pages_roots(self, service, tree):
        await make_task(service, TaskStatus.PENDING, name="other root")

        data = await service.get_task_tree(TreeOptions(page=1, page_size=1, max_depth=0))

        assert data["total"] == 2
        assert len(data["items"]) == 1
        assert data["items"][0]["parent_id"] is None

    @pytest.mark.asyncio
    async def test_get_children_filters_by_status(self, service, tree):
        children, total = await service.get_children(tree["root"])
        assert total == 3
        assert [child.name for child in children] == ["first", "second", "third"]

        pending, total = await service.get_children(tree["root"], status_filter=[TaskStatus.PENDING])
        assert total == 1
        assert pending[0].name == "third"

    @pytest.mark.asyncio
    async def test_statistics(self, service, tree):
        stats = await service.get_statistics()

        assert stats["total"] == 5
        assert stats["root_count"] == 1
        assert stats["by_status"]["running"] == 2
        assert stats["by_status"]["pending"] == 2
        assert stats["by_status"]["success"] == 1
        assert stats["by_status"]["failed"] == 0


class TestRecoveryAndPurge:
    """Startup recovery and explicit deletion of finished subtrees."""

    @pytest.mark.asyncio
    async def test_fail_policy(self, service):
        running = await make_task(service, TaskStatus.RUNNING)
        paused = await make_task(service, TaskStatus.PAUSED)

        outcome = await service.recover_running_tasks("fail")

        assert outcome == {"policy": "fail", "recovered": [running]}
        task = await service.get_task(running)
        assert task.status == TaskStatus.FAILED
        assert task.error_message == "Interrupted by process restart"
        assert task.task_metadata["recovery"]["policy"] == "fail"
        assert await service.get_status(paused) == TaskStatus.PAUSED

        assert (await service.retry(running)).success

    @pytest.mark.asyncio
    async def test_requeue_policy(self, service):
        running = await make_task(service, TaskStatus.RUNNING)

        outcome = await service.recover_running_tasks("requeue")

        assert outcome["recovered"] == [running]
        task = await service.get_task(running)
        assert task.status == TaskStatus.PENDING
        assert task.started_at is None

    @pytest.mark.asyncio
    async def test_unknown_policy(self, service):
        with pytest.raises(RecoveryError):
            await service.recover_running_tasks("ignore")

    @pytest.mark.asyncio
    async def test_purge_removes_subtree(self, service):
        root_id = await make_task(service, TaskStatus.RUNNING, name="root")
        child_id = await make_task(service, TaskStatus.SUCCESS, parent_id=root_id)
        await service.fail(root_id, error="boom")

        deleted = await service.purge(root_id)

        assert deleted == 2
        with pytest.raises(TaskNotFoundError):
            await service.get_task(child_id)

    @pytest.mark.asyncio
    async def test_purge_refuses_active_tasks(self, service):
        root_id = await make_task(service, TaskStatus.RUNNING)

        with pytest.raises(InvalidTransitionError):
            await service.purge(root_id)
        assert await service.get_status(root_id) == TaskStatus.RUNNING
