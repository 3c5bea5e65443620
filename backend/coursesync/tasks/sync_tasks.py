"""
Background tasks for sync runs.

Runs full and incremental syncs as task trees on the event loop, recovers
runs interrupted by a restart, and triggers runs from cron expressions.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from croniter import croniter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursesync.core.config import settings
from coursesync.core.database import AsyncSessionLocal
from coursesync.core.exceptions import InvalidTransitionError
from coursesync.models.task_node import TaskStatus, TaskType, ACTIVE_STATUSES
from coursesync.schemas.sync import SyncKind, SyncRunRequest
from coursesync.services.sync.aggregation_engine import (
    AggregationCriteria, AggregationEngine, MarkerSelection
)
from coursesync.services.sync.change_tracker import ChangeTracker
from coursesync.services.tasks.state_machine import TaskStateChangeResult
from coursesync.services.tasks.task_tree import TaskTreeService

logger = logging.getLogger(__name__)

EXECUTOR_NAME = "SyncTaskManager"

RUN_STEPS: Dict[SyncKind, List[Tuple[TaskType, str]]] = {
    SyncKind.INCREMENTAL: [
        (TaskType.AGGREGATE_SOFT_DELETED, "Process withdrawn rows"),
        (TaskType.AGGREGATE_UNSYNCED, "Merge new rows"),
        (TaskType.STUDENT_PHASE, "Prepare attendance records"),
    ],
    SyncKind.FULL: [
        (TaskType.RESET_MARKERS, "Reset merged rows"),
        (TaskType.AGGREGATE_ALL, "Rebuild sessions"),
        (TaskType.STUDENT_PHASE, "Prepare attendance records"),
    ],
}


@dataclass
class RunParameters:
    xnxq: str
    kind: SyncKind
    batch_size: int
    retry_count: int
    timeout_seconds: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    course_code: Optional[str] = None

    @classmethod
    def from_request(cls, request: SyncRunRequest) -> "RunParameters":
        return cls(
            xnxq=request.xnxq,
            kind=request.kind,
            batch_size=request.batch_size or settings.DEFAULT_BATCH_SIZE,
            retry_count=request.retry_count if request.retry_count is not None else settings.DEFAULT_RETRY_COUNT,
            timeout_seconds=request.timeout_seconds or settings.DEFAULT_STEP_TIMEOUT_SECONDS,
            start_date=request.start_date,
            end_date=request.end_date,
            course_code=request.course_code,
        )

    @classmethod
    def from_metadata(cls, metadata: Dict[str, Any]) -> "RunParameters":
        return cls(
            xnxq=metadata["xnxq"],
            kind=SyncKind(metadata["kind"]),
            batch_size=metadata.get("batch_size") or settings.DEFAULT_BATCH_SIZE,
            retry_count=metadata.get("retry_count") or 0,
            timeout_seconds=metadata.get("timeout_seconds") or settings.DEFAULT_STEP_TIMEOUT_SECONDS,
            start_date=date.fromisoformat(metadata["start_date"]) if metadata.get("start_date") else None,
            end_date=date.fromisoformat(metadata["end_date"]) if metadata.get("end_date") else None,
            course_code=metadata.get("course_code"),
        )

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "xnxq": self.xnxq,
            "kind": self.kind.value,
            "batch_size": self.batch_size,
            "retry_count": self.retry_count,
            "timeout_seconds": self.timeout_seconds,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "course_code": self.course_code,
        }

    def criteria(self, markers: MarkerSelection, rebuild: bool = False) -> AggregationCriteria:
        return AggregationCriteria(
            markers=markers,
            start_date=self.start_date,
            end_date=self.end_date,
            course_code=self.course_code,
            rebuild=rebuild,
        )


@dataclass
class StepRef:
    """Plain snapshot of a step node, independent of any session state."""
    id: str
    name: str
    task_type: TaskType
    status: TaskStatus


class RunCancelled(Exception):
    """The run's root was cancelled while a step was executing."""
    pass


class StepFailed(Exception):
    """A step failed after its last allowed attempt."""
    pass


class SyncTaskManager:
    """
    Manages background sync runs and scheduling.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory
        self._running_tasks: Dict[str, asyncio.Task] = {}
        self._shutdown_event = asyncio.Event()
        self._next_runs: Dict[SyncKind, datetime] = {}

    async def start(self) -> Dict[str, Any]:
        """Recover interrupted runs, relaunch requeued ones, start the scheduler."""
        logger.info("Starting sync task manager")
        self._shutdown_event.clear()

        async with self.session_factory() as db:
            tree = TaskTreeService(db)
            recovery = await tree.recover_running_tasks(settings.TASK_RECOVERY_POLICY)
            requeued = []
            if recovery["policy"] == "requeue":
                requeued = [
                    root.id for root in await tree.find_roots([TaskStatus.PENDING], TaskType.SYNC_RUN)
                ]
            paused = [root.id for root in await tree.find_roots([TaskStatus.PAUSED], TaskType.SYNC_RUN)]

        for root_id in requeued:
            logger.info(f"Relaunching requeued sync run {root_id}")
            self._launch(root_id)

        if paused:
            logger.info(f"{len(paused)} paused sync runs will be relaunched on resume: {paused}")

        if settings.SCHEDULER_ENABLED and settings.SCHEDULER_TERM:
            self._running_tasks['scheduler'] = asyncio.create_task(self._scheduler_loop())

        logger.info("Sync task manager started")
        return {**recovery, "relaunched": requeued, "paused": paused}

    async def stop(self) -> None:
        """Stop the scheduler and every in-flight run."""
        logger.info("Stopping sync task manager")
        self._shutdown_event.set()

        for task_name, task in list(self._running_tasks.items()):
            if not task.done():
                logger.info(f"Cancelling task: {task_name}")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._running_tasks.clear()
        logger.info("Sync task manager stopped")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_sync(self, request: SyncRunRequest) -> str:
        """Create the run's task tree and start it in the background. Returns the root id."""
        params = RunParameters.from_request(request)

        async with self.session_factory() as db:
            tree = TaskTreeService(db)
            root = await tree.create_task(
                name=f"{params.kind.value} sync {params.xnxq}",
                task_type=TaskType.SYNC_RUN,
                executor=EXECUTOR_NAME,
                metadata=params.to_metadata(),
                commit=False,
            )
            for sequence, (step_type, step_name) in enumerate(RUN_STEPS[params.kind]):
                await tree.create_task(
                    name=step_name,
                    task_type=step_type,
                    parent_id=root.id,
                    executor=EXECUTOR_NAME,
                    sequence=sequence,
                    commit=False,
                )
            await db.commit()
            root_id = root.id

        logger.info(f"Submitted {params.kind.value} sync for term {params.xnxq} as task {root_id}")
        self._launch(root_id)
        return root_id

    async def retry_run(self, root_id: str, reason: Optional[str] = None) -> TaskStateChangeResult:
        """Re-execute the unfinished steps of a failed run."""
        async with self.session_factory() as db:
            result = await TaskTreeService(db).retry(root_id, reason or "run retry requested")

        if result.success:
            self._launch(root_id)
        return result

    async def resume_run(self, root_id: str, reason: Optional[str] = None) -> TaskStateChangeResult:
        """Resume a paused run; relaunch it when no executor holds it any more."""
        async with self.session_factory() as db:
            result = await TaskTreeService(db).resume(root_id, reason or "run resume requested")

        if result.success and not self.is_executing(root_id):
            logger.info(f"Relaunching resumed sync run {root_id}")
            self._launch(root_id)
        return result

    def _launch(self, root_id: str) -> asyncio.Task:
        task_name = f"run_{root_id}"
        task = asyncio.create_task(self._execute_run(root_id))
        self._running_tasks[task_name] = task
        task.add_done_callback(lambda _: self._running_tasks.pop(task_name, None))
        return task

    async def wait_for_run(self, root_id: str, timeout: Optional[float] = None) -> None:
        """Wait until the background execution of a run finishes."""
        task = self._running_tasks.get(f"run_{root_id}")
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    def is_executing(self, root_id: str) -> bool:
        task = self._running_tasks.get(f"run_{root_id}")
        return task is not None and not task.done()

    async def has_active_run(self, xnxq: str) -> bool:
        async with self.session_factory() as db:
            roots = await TaskTreeService(db).find_roots(list(ACTIVE_STATUSES), TaskType.SYNC_RUN)
        return any((root.task_metadata or {}).get("xnxq") == xnxq for root in roots)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_run(self, root_id: str) -> None:
        async with self.session_factory() as control_db, self.session_factory() as work_db:
            tree = TaskTreeService(control_db)

            root = await tree.get_task(root_id)
            params = RunParameters.from_metadata(root.task_metadata or {})
            status = root.status

            if status == TaskStatus.PENDING:
                started = await tree.start(root_id, "run started")
                if not started.success:
                    logger.warning(f"Sync run {root_id} could not start: {started.error}")
                    return
            elif status != TaskStatus.RUNNING:
                logger.warning(f"Sync run {root_id} is {status.value}, nothing to execute")
                return

            children, _ = await tree.get_children(root_id, page_size=len(RUN_STEPS[params.kind]) + 10)
            steps = [StepRef(c.id, c.name, c.task_type, c.status) for c in children]

            summary: Dict[str, Any] = {}
            try:
                for step in steps:
                    if step.status in (TaskStatus.SUCCESS, TaskStatus.CANCELLED):
                        continue
                    summary[step.task_type.value] = await self._run_step(
                        tree, work_db, root_id, step, params
                    )
            except RunCancelled:
                logger.info(f"Sync run {root_id} cancelled")
                return
            except Exception as e:
                logger.error(f"Sync run {root_id} failed: {e}")
                await self._fail_run(tree, root_id, str(e))
                return

            result = await tree.success(root_id, "all steps finished", result=summary)
            if not result.success:
                logger.warning(f"Sync run {root_id} could not complete: {result.error}")
            else:
                logger.info(f"Sync run {root_id} for term {params.xnxq} finished: {summary}")

    async def _fail_run(self, tree: TaskTreeService, root_id: str, error: str) -> None:
        """Mark the root failed, taking it out of `paused` first if needed."""
        await tree.db.rollback()
        if await tree.get_status(root_id) == TaskStatus.PAUSED:
            await tree.resume(root_id, "resumed to record failure")
        failed = await tree.fail(root_id, "step failed", error=error)
        if not failed.success:
            logger.warning(f"Sync run {root_id} could not be marked failed: {failed.error}")

    async def _enter_step(self, tree: TaskTreeService, step: StepRef) -> bool:
        """Move a step to running. Returns False when it was cancelled in the meantime."""
        if step.status == TaskStatus.FAILED:
            entered = await tree.retry(step.id, "run retried")
        elif step.status == TaskStatus.PENDING:
            entered = await tree.start(step.id, "step started")
        elif step.status == TaskStatus.PAUSED:
            entered = await tree.resume(step.id, "run relaunched")
        else:
            return True

        if entered.success:
            return True
        current = await tree.get_status(step.id)
        if current == TaskStatus.CANCELLED:
            return False
        if current != TaskStatus.RUNNING:
            raise InvalidTransitionError(step.id, current, TaskStatus.RUNNING, reason=entered.error)
        return True

    async def _skip_cancelled_step(
        self,
        tree: TaskTreeService,
        root_id: str,
        step: StepRef,
        outcome: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        A step cancelled on its own is skipped and the run carries on with
        the next step. Anything else stops the run.
        """
        if not self._shutdown_event.is_set():
            root_status = await tree.get_status(root_id)
            step_status = await tree.get_status(step.id)
            if step_status == TaskStatus.CANCELLED and root_status in (TaskStatus.RUNNING, TaskStatus.PAUSED):
                logger.info(f"Step {step.name} of run {root_id} was cancelled, skipping it")
                return {**outcome, "cancelled": True, "skipped": True}
        raise RunCancelled(root_id)

    async def _run_step(
        self,
        tree: TaskTreeService,
        work_db: AsyncSession,
        root_id: str,
        step: StepRef,
        params: RunParameters,
    ) -> Dict[str, Any]:
        if not await self._enter_step(tree, step):
            return await self._skip_cancelled_step(tree, root_id, step, {})

        attempts = 0
        while True:
            try:
                outcome = await asyncio.wait_for(
                    self._perform_step(tree, work_db, root_id, step, params),
                    timeout=params.timeout_seconds,
                )
            except RunCancelled:
                await work_db.rollback()
                raise
            except Exception as e:
                await work_db.rollback()
                await tree.db.rollback()
                error = (
                    f"Step timed out after {params.timeout_seconds}s"
                    if isinstance(e, asyncio.TimeoutError) else str(e)
                )
                logger.error(f"Step {step.name} of run {root_id} failed: {error}")

                if await tree.get_status(step.id) == TaskStatus.PAUSED:
                    await tree.resume(step.id, "resumed to record failure")
                failed = await tree.fail(step.id, "step failed", error=error)
                if not failed.success:
                    if await tree.get_status(step.id) == TaskStatus.CANCELLED:
                        return await self._skip_cancelled_step(tree, root_id, step, {"error": error})
                    raise StepFailed(failed.error) from e

                if attempts < params.retry_count:
                    attempts += 1
                    await tree.retry(step.id, f"automatic retry {attempts} of {params.retry_count}")
                    continue
                raise StepFailed(error) from e

            if outcome.get("cancelled"):
                return await self._skip_cancelled_step(tree, root_id, step, outcome)

            finished = await tree.success(step.id, "step finished", result=outcome)
            if not finished.success:
                current = await tree.get_status(step.id)
                if current == TaskStatus.CANCELLED:
                    return await self._skip_cancelled_step(tree, root_id, step, outcome)
                raise InvalidTransitionError(step.id, current, TaskStatus.SUCCESS, reason=finished.error)
            return outcome

    async def _perform_step(
        self,
        tree: TaskTreeService,
        work_db: AsyncSession,
        root_id: str,
        step: StepRef,
        params: RunParameters,
    ) -> Dict[str, Any]:
        checkpoint = self._make_checkpoint(tree, root_id, step.id, params.batch_size)
        engine = AggregationEngine(work_db)

        if step.task_type == TaskType.RESET_MARKERS:
            if not await checkpoint(0, 1):
                return {"cancelled": True}
            rows_reset = await ChangeTracker(work_db).reset_markers(
                params.xnxq, params.start_date, params.end_date, course_code=params.course_code
            )
            return {"rows_reset": rows_reset, "cancelled": not await checkpoint(1, 1)}

        if step.task_type == TaskType.AGGREGATE_SOFT_DELETED:
            result = await engine.aggregate(params.xnxq, params.criteria(MarkerSelection.SOFT_DELETED), checkpoint)
        elif step.task_type == TaskType.AGGREGATE_UNSYNCED:
            result = await engine.aggregate(params.xnxq, params.criteria(MarkerSelection.UNSYNCED), checkpoint)
        elif step.task_type == TaskType.AGGREGATE_ALL:
            result = await engine.aggregate(
                params.xnxq, params.criteria(MarkerSelection.BOTH, rebuild=True), checkpoint
            )
        elif step.task_type == TaskType.STUDENT_PHASE:
            result = await engine.sync_student_phase(
                params.xnxq, params.criteria(MarkerSelection.UNSYNCED), checkpoint
            )
        else:
            raise ValueError(f"Unsupported step type: {step.task_type}")

        outcome = result.to_dict()
        # the step only counts as done once it is running again after the last group
        if not outcome["cancelled"] and not await checkpoint(0, 0):
            outcome["cancelled"] = True
        return outcome

    def _make_checkpoint(self, tree: TaskTreeService, root_id: str, step_id: str, batch_size: int):
        """
        Between groups: persist progress every `batch_size` groups, wait
        while the run or the step is paused, report False once either of
        them is no longer running.
        """
        async def checkpoint(done: int, total: int) -> bool:
            if total and (done % batch_size == 0 or done == total):
                await tree.update_progress(step_id, done / total * 100)

            paused_by_run = False
            while True:
                run_status = await tree.get_status(root_id)
                step_status = await tree.get_status(step_id)

                if run_status == TaskStatus.RUNNING and step_status == TaskStatus.RUNNING:
                    return True
                if run_status == TaskStatus.PAUSED and step_status == TaskStatus.RUNNING:
                    paused = await tree.pause(step_id, "run paused")
                    paused_by_run = paused_by_run or paused.success
                    continue
                if run_status == TaskStatus.RUNNING and step_status == TaskStatus.PAUSED and paused_by_run:
                    await tree.resume(step_id, "run resumed")
                    paused_by_run = False
                    continue
                if (run_status in (TaskStatus.RUNNING, TaskStatus.PAUSED)
                        and step_status in (TaskStatus.RUNNING, TaskStatus.PAUSED)
                        and not self._shutdown_event.is_set()):
                    await asyncio.sleep(settings.TASK_PAUSE_POLL_SECONDS)
                    continue
                return False

        return checkpoint

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _scheduler_loop(self) -> None:
        """Submit runs for the configured term when a cron expression fires."""
        logger.info("Started sync scheduler loop")

        while not self._shutdown_event.is_set():
            try:
                await self.check_scheduled_syncs(datetime.now())

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=settings.SCHEDULER_CHECK_INTERVAL_SECONDS
                    )
                    break  # Shutdown event was set
                except asyncio.TimeoutError:
                    pass  # Continue with next check

            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
                await asyncio.sleep(settings.SCHEDULER_CHECK_INTERVAL_SECONDS)

        logger.info("Sync scheduler loop stopped")

    async def check_scheduled_syncs(self, current_time: datetime) -> Optional[str]:
        """Submit at most one due run. Returns the new root id, if any."""
        term = settings.SCHEDULER_TERM
        schedules = (
            (SyncKind.FULL, settings.FULL_SYNC_CRON),
            (SyncKind.INCREMENTAL, settings.INCREMENTAL_SYNC_CRON),
        )

        due = None
        for kind, expression in schedules:
            if not expression:
                continue
            next_run = self._next_runs.get(kind)
            if next_run is None:
                self._next_runs[kind] = croniter(expression, current_time).get_next(datetime)
                continue
            if current_time >= next_run:
                self._next_runs[kind] = croniter(expression, current_time).get_next(datetime)
                due = due or kind

        if due is None:
            return None

        if await self.has_active_run(term):
            logger.debug(f"Skipping scheduled {due.value} sync for {term} - run already active")
            return None

        return await self.submit_sync(SyncRunRequest(xnxq=term, kind=due))
