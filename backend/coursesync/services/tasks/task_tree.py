"""
Task Tree Service

Persisted parent/child task nodes for sync runs and their steps:
- lifecycle operations applied as compare-and-set updates per node
- progress rollup from children into every ancestor
- bounded, layer-by-layer tree reads with pagination and placeholders
- crash recovery of nodes left running and explicit purge
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func

from coursesync.core.config import settings
from coursesync.core.exceptions import InvalidTransitionError, RecoveryError, TaskNotFoundError
from coursesync.core.metrics import RECOVERED_TASKS, record_transition
from coursesync.models.task_node import (
    TaskNode, TaskStatus, TaskType, TERMINAL_STATUSES, ACTIVE_STATUSES
)
from coursesync.services.tasks.state_machine import (
    OPERATIONS, REACTIVATING, TaskOperation, TaskStateChangeResult, validate_operation
)

logger = logging.getLogger(__name__)

MAX_TREE_DEPTH = 10
CLOSED_PARENT_STATUSES = (TaskStatus.SUCCESS, TaskStatus.CANCELLED)
RECOVERY_POLICIES = ("fail", "requeue")


@dataclass
class TreeOptions:
    max_depth: int = 3
    include_placeholders: bool = True
    page: int = 1
    page_size: int = 20
    children_limit: int = 50
    status_filter: Optional[List[TaskStatus]] = field(default=None)


def serialize_task(node: TaskNode) -> Dict[str, Any]:
    return {
        "id": node.id,
        "parent_id": node.parent_id,
        "name": node.name,
        "description": node.description,
        "task_type": node.task_type.value if node.task_type else None,
        "status": node.status.value,
        "progress": node.progress,
        "priority": node.priority,
        "executor": node.executor,
        "sequence": node.sequence,
        "metadata": node.task_metadata or {},
        "attempt_count": node.attempt_count,
        "error_message": node.error_message,
        "result": node.result,
        "created_at": node.created_at.isoformat() if node.created_at else None,
        "updated_at": node.updated_at.isoformat() if node.updated_at else None,
        "started_at": node.started_at.isoformat() if node.started_at else None,
        "completed_at": node.completed_at.isoformat() if node.completed_at else None,
    }


def _placeholder(node: TaskNode) -> Dict[str, Any]:
    return {
        "id": node.id,
        "parent_id": node.parent_id,
        "name": node.name,
        "status": node.status.value,
        "progress": node.progress,
        "placeholder": True,
        "children": [],
        "children_count": None,
        "has_more_children": False,
    }


class TaskTreeService:
    """Lifecycle, rollup and read operations on the task tree."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def create_task(
        self,
        name: str,
        task_type: TaskType,
        parent_id: Optional[str] = None,
        description: Optional[str] = None,
        priority: int = 0,
        executor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        sequence: Optional[int] = None,
        commit: bool = True,
    ) -> TaskNode:
        if parent_id is not None:
            parent_status = await self._get_status(parent_id)
            if parent_status in CLOSED_PARENT_STATUSES:
                raise InvalidTransitionError(
                    parent_id, parent_status, "child created",
                    reason=f"Task {parent_id} is {parent_status.value}; no new children can be added",
                )
            if sequence is None:
                sequence = (await self.db.execute(
                    select(func.count(TaskNode.id)).where(TaskNode.parent_id == parent_id)
                )).scalar_one()

        task = TaskNode(
            parent_id=parent_id,
            name=name,
            description=description,
            task_type=task_type,
            status=TaskStatus.PENDING,
            progress=0.0,
            priority=priority,
            executor=executor,
            sequence=sequence or 0,
            task_metadata=metadata or {},
            attempt_count=0,
        )
        self.db.add(task)
        await self.db.flush()
        if commit:
            await self.db.commit()

        logger.debug(f"Created task {task.id} ({name}) under {parent_id}")
        return task

    async def get_task(self, task_id: str) -> TaskNode:
        task = await self.db.get(TaskNode, task_id, populate_existing=True)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def _get_status(self, task_id: str) -> TaskStatus:
        status = (await self.db.execute(
            select(TaskNode.status).where(TaskNode.id == task_id)
        )).scalar_one_or_none()
        if status is None:
            raise TaskNotFoundError(task_id)
        return status

    async def get_status(self, task_id: str) -> TaskStatus:
        """Fresh status read straight from the database."""
        return await self._get_status(task_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, task_id: str, reason: Optional[str] = None) -> TaskStateChangeResult:
        return await self._transition(task_id, TaskOperation.START, reason)

    async def pause(self, task_id: str, reason: Optional[str] = None) -> TaskStateChangeResult:
        return await self._transition(task_id, TaskOperation.PAUSE, reason)

    async def resume(self, task_id: str, reason: Optional[str] = None) -> TaskStateChangeResult:
        return await self._transition(task_id, TaskOperation.RESUME, reason)

    async def cancel(self, task_id: str, reason: Optional[str] = None, cascade: bool = True) -> TaskStateChangeResult:
        """Cancel a node; with `cascade` its unfinished descendants are cancelled too."""
        result = await self._transition(task_id, TaskOperation.CANCEL, reason)
        if result.success and cascade:
            await self._cancel_descendants(task_id, reason)
        return result

    async def retry(self, task_id: str, reason: Optional[str] = None) -> TaskStateChangeResult:
        return await self._transition(task_id, TaskOperation.RETRY, reason)

    async def success(
        self,
        task_id: str,
        reason: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> TaskStateChangeResult:
        return await self._transition(task_id, TaskOperation.SUCCESS, reason, result=result)

    async def fail(
        self,
        task_id: str,
        reason: Optional[str] = None,
        error: Optional[str] = None,
    ) -> TaskStateChangeResult:
        return await self._transition(task_id, TaskOperation.FAIL, reason, error=error)

    async def _transition(
        self,
        task_id: str,
        operation: TaskOperation,
        reason: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> TaskStateChangeResult:
        started = time.perf_counter()

        row = (await self.db.execute(
            select(TaskNode.status, TaskNode.task_metadata, TaskNode.attempt_count,
                   TaskNode.parent_id, TaskNode.error_message)
            .where(TaskNode.id == task_id)
        )).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        current, metadata, attempts, parent_id, previous_error = row

        target = OPERATIONS[operation][1]

        def rejected(message: str) -> TaskStateChangeResult:
            record_transition(target.value, False)
            logger.info(f"Rejected {operation.value} on task {task_id}: {message}")
            return TaskStateChangeResult(
                success=False,
                task_id=task_id,
                operation=operation,
                from_status=current,
                to_status=target,
                execution_time_ms=round((time.perf_counter() - started) * 1000, 3),
                error=message,
            )

        try:
            validate_operation(task_id, operation, current)
        except InvalidTransitionError as e:
            return rejected(e.message)

        if operation in REACTIVATING and parent_id is not None:
            parent_status = await self._get_status(parent_id)
            if parent_status in CLOSED_PARENT_STATUSES:
                return rejected(f"Parent task {parent_id} is {parent_status.value}")

        if operation == TaskOperation.SUCCESS:
            unfinished = (await self.db.execute(
                select(func.count(TaskNode.id)).where(
                    TaskNode.parent_id == task_id,
                    TaskNode.status.in_(ACTIVE_STATUSES),
                )
            )).scalar_one()
            if unfinished:
                return rejected(f"Task {task_id} has {unfinished} unfinished children")

        now = datetime.utcnow()
        metadata = dict(metadata or {})
        metadata["last_transition"] = {
            "operation": operation.value,
            "from": current.value,
            "to": target.value,
            "reason": reason,
            "at": now.isoformat(),
        }

        values: Dict[str, Any] = {"status": target}
        if operation == TaskOperation.START:
            values["started_at"] = now
        elif operation == TaskOperation.RETRY:
            history = list(metadata.get("retry_history", []))
            history.append({
                "attempt": attempts + 1,
                "reason": reason,
                "previous_error": previous_error,
                "at": now.isoformat(),
            })
            metadata["retry_history"] = history
            values.update(
                attempt_count=TaskNode.attempt_count + 1,
                error_message=None,
                completed_at=None,
                started_at=now,
            )
        elif operation == TaskOperation.SUCCESS:
            values.update(progress=100.0, completed_at=now, result=result)
        elif operation == TaskOperation.FAIL:
            values.update(completed_at=now, error_message=error or reason)
        elif operation == TaskOperation.CANCEL:
            values["completed_at"] = now
        values["task_metadata"] = metadata

        updated = await self.db.execute(
            update(TaskNode)
            .where(TaskNode.id == task_id, TaskNode.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 0:
            await self.db.rollback()
            return rejected(f"Task {task_id} changed status concurrently")

        await self.db.commit()
        record_transition(target.value, True)

        if parent_id is not None:
            await self._rollup_ancestors(parent_id)

        logger.info(f"Task {task_id}: {current.value} -> {target.value} ({operation.value})")
        return TaskStateChangeResult(
            success=True,
            task_id=task_id,
            operation=operation,
            from_status=current,
            to_status=target,
            execution_time_ms=round((time.perf_counter() - started) * 1000, 3),
        )

    async def _cancel_descendants(self, task_id: str, reason: Optional[str]) -> int:
        descendants = await self._collect_subtree(task_id)
        descendants.remove(task_id)
        if not descendants:
            return 0

        now = datetime.utcnow()
        updated = await self.db.execute(
            update(TaskNode)
            .where(TaskNode.id.in_(descendants), TaskNode.status.in_(ACTIVE_STATUSES))
            .values(status=TaskStatus.CANCELLED, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if updated.rowcount:
            record_transition(TaskStatus.CANCELLED.value, True)
            logger.info(f"Cancelled {updated.rowcount} descendants of task {task_id}: {reason}")
        return updated.rowcount

    # ------------------------------------------------------------------
    # Progress rollup
    # ------------------------------------------------------------------

    async def update_progress(self, task_id: str, progress: float) -> TaskNode:
        """Set a node's progress and roll it up into every ancestor."""
        progress = max(0.0, min(100.0, float(progress)))

        updated = await self.db.execute(
            update(TaskNode)
            .where(TaskNode.id == task_id)
            .values(progress=progress)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 0:
            raise TaskNotFoundError(task_id)
        await self.db.commit()

        parent_id = (await self.db.execute(
            select(TaskNode.parent_id).where(TaskNode.id == task_id)
        )).scalar_one_or_none()
        if parent_id is not None:
            await self._rollup_ancestors(parent_id)

        return await self.get_task(task_id)

    async def _rollup_ancestors(self, parent_id: str) -> None:
        """
        Recompute progress from the children upwards. A successful child
        counts as 100. Only progress is written, never status.
        """
        seen = set()
        current = parent_id
        while current is not None and current not in seen:
            seen.add(current)
            children = (await self.db.execute(
                select(TaskNode.status, TaskNode.progress).where(TaskNode.parent_id == current)
            )).all()
            if children:
                values = [100.0 if status == TaskStatus.SUCCESS else (progress or 0.0)
                          for status, progress in children]
                await self.db.execute(
                    update(TaskNode)
                    .where(TaskNode.id == current)
                    .values(progress=round(sum(values) / len(values), 2))
                    .execution_options(synchronize_session=False)
                )
            current = (await self.db.execute(
                select(TaskNode.parent_id).where(TaskNode.id == current)
            )).scalar_one_or_none()
        await self.db.commit()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_children(
        self,
        task_id: str,
        status_filter: Optional[List[TaskStatus]] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[TaskNode], int]:
        await self._get_status(task_id)

        query = select(TaskNode).where(TaskNode.parent_id == task_id)
        if status_filter:
            query = query.where(TaskNode.status.in_(status_filter))

        total = (await self.db.execute(
            select(func.count()).select_from(query.subquery())
        )).scalar_one()

        query = query.order_by(TaskNode.sequence, TaskNode.created_at, TaskNode.id)
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def get_layered_tree(
        self,
        root_id: Optional[str] = None,
        options: Optional[TreeOptions] = None,
    ) -> Dict[str, Any]:
        """
        Read the tree one layer at a time, down to `max_depth`.

        Each layer costs one count query and one fetch, whatever its width;
        every node lists at most `children_limit` children. Terminal
        children are collapsed into placeholders, or left out entirely when
        placeholders are disabled.
        """
        options = options or TreeOptions()
        max_depth = max(0, min(options.max_depth, MAX_TREE_DEPTH))

        if root_id is not None:
            roots = [await self.get_task(root_id)]
            total = 1
        else:
            roots_query = select(TaskNode).where(TaskNode.parent_id.is_(None))
            if options.status_filter:
                roots_query = roots_query.where(TaskNode.status.in_(options.status_filter))
            total = (await self.db.execute(
                select(func.count()).select_from(roots_query.subquery())
            )).scalar_one()
            roots_query = roots_query.order_by(TaskNode.created_at.desc(), TaskNode.id)
            roots_query = roots_query.offset((options.page - 1) * options.page_size).limit(options.page_size)
            roots = list((await self.db.execute(roots_query)).scalars().all())

        items = []
        frontier: Dict[str, Dict[str, Any]] = {}
        for root in roots:
            node = serialize_task(root)
            node.update(placeholder=False, depth=0, children=[], children_count=0, has_more_children=False)
            items.append(node)
            frontier[root.id] = node

        depth = 0
        while frontier and depth < max_depth:
            depth += 1
            frontier = await self._expand_layer(frontier, depth, options)

        return {
            "items": items,
            "total": total,
            "page": options.page if root_id is None else 1,
            "page_size": options.page_size if root_id is None else 1,
            "max_depth": max_depth,
        }

    async def _expand_layer(
        self,
        frontier: Dict[str, Dict[str, Any]],
        depth: int,
        options: TreeOptions,
    ) -> Dict[str, Dict[str, Any]]:
        filters = [TaskNode.parent_id.in_(list(frontier))]
        if options.status_filter:
            filters.append(TaskNode.status.in_(options.status_filter))
        elif not options.include_placeholders:
            filters.append(TaskNode.status.not_in(TERMINAL_STATUSES))

        counts = dict((await self.db.execute(
            select(TaskNode.parent_id, func.count(TaskNode.id))
            .where(*filters)
            .group_by(TaskNode.parent_id)
        )).all())

        ranked = (
            select(
                TaskNode.id.label("node_id"),
                func.row_number().over(
                    partition_by=TaskNode.parent_id,
                    order_by=(TaskNode.sequence, TaskNode.created_at, TaskNode.id),
                ).label("position"),
            )
            .where(*filters)
            .subquery()
        )
        children = (await self.db.execute(
            select(TaskNode)
            .join(ranked, ranked.c.node_id == TaskNode.id)
            .where(ranked.c.position <= options.children_limit)
            .order_by(TaskNode.parent_id, TaskNode.sequence, TaskNode.created_at, TaskNode.id)
        )).scalars().all()

        for parent_id, parent in frontier.items():
            parent["children_count"] = counts.get(parent_id, 0)
            parent["has_more_children"] = counts.get(parent_id, 0) > options.children_limit

        next_frontier: Dict[str, Dict[str, Any]] = {}
        for child in children:
            parent = frontier[child.parent_id]
            if child.status in TERMINAL_STATUSES and options.include_placeholders and not options.status_filter:
                node = _placeholder(child)
                node["depth"] = depth
            else:
                node = serialize_task(child)
                node.update(placeholder=False, depth=depth, children=[], children_count=0, has_more_children=False)
                next_frontier[child.id] = node
            parent["children"].append(node)

        return next_frontier

    async def get_task_tree(self, options: Optional[TreeOptions] = None) -> Dict[str, Any]:
        return await self.get_layered_tree(None, options)

    async def get_statistics(self) -> Dict[str, Any]:
        rows = (await self.db.execute(
            select(TaskNode.status, func.count(TaskNode.id)).group_by(TaskNode.status)
        )).all()
        by_status = {status.value: 0 for status in TaskStatus}
        for status, count in rows:
            by_status[status.value] = count

        root_count = (await self.db.execute(
            select(func.count(TaskNode.id)).where(TaskNode.parent_id.is_(None))
        )).scalar_one()

        return {
            "total": sum(by_status.values()),
            "root_count": root_count,
            "by_status": by_status,
        }

    async def find_roots(
        self,
        statuses: Optional[List[TaskStatus]] = None,
        task_type: Optional[TaskType] = None,
    ) -> List[TaskNode]:
        query = select(TaskNode).where(TaskNode.parent_id.is_(None))
        if statuses:
            query = query.where(TaskNode.status.in_(statuses))
        if task_type is not None:
            query = query.where(TaskNode.task_type == task_type)
        result = await self.db.execute(query.order_by(TaskNode.created_at))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Recovery and purge
    # ------------------------------------------------------------------

    async def recover_running_tasks(self, policy: Optional[str] = None) -> Dict[str, Any]:
        """
        Reconcile nodes left `running` by a non-graceful shutdown.

        `requeue` moves them back to pending, `fail` marks them failed so
        they can be retried explicitly. This bypasses the transition table on
        purpose: nothing can still be executing them.
        """
        policy = policy or settings.TASK_RECOVERY_POLICY
        if policy not in RECOVERY_POLICIES:
            raise RecoveryError(f"Unknown recovery policy: {policy}", {"policy": policy})

        rows = (await self.db.execute(
            select(TaskNode.id, TaskNode.task_metadata).where(TaskNode.status == TaskStatus.RUNNING)
        )).all()

        now = datetime.utcnow()
        target = TaskStatus.PENDING if policy == "requeue" else TaskStatus.FAILED
        recovered = []
        for task_id, metadata in rows:
            metadata = dict(metadata or {})
            metadata["recovery"] = {"policy": policy, "at": now.isoformat()}

            values: Dict[str, Any] = {"status": target, "task_metadata": metadata}
            if target == TaskStatus.FAILED:
                values.update(completed_at=now, error_message="Interrupted by process restart")
            else:
                values["started_at"] = None

            updated = await self.db.execute(
                update(TaskNode)
                .where(TaskNode.id == task_id, TaskNode.status == TaskStatus.RUNNING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount:
                recovered.append(task_id)

        await self.db.commit()

        if recovered:
            RECOVERED_TASKS.labels(policy=policy).inc(len(recovered))
            logger.info(f"Recovered {len(recovered)} running tasks with policy '{policy}'")

        return {"policy": policy, "recovered": recovered}

    async def _collect_subtree(self, task_id: str) -> List[str]:
        collected = [task_id]
        frontier = [task_id]
        while frontier:
            frontier = list((await self.db.execute(
                select(TaskNode.id).where(TaskNode.parent_id.in_(frontier))
            )).scalars().all())
            collected.extend(frontier)
        return collected

    async def purge(self, task_id: str) -> int:
        """Delete a terminal node together with its whole subtree."""
        status = await self._get_status(task_id)
        if status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                task_id, status, "purged",
                reason=f"Task {task_id} is {status.value}; only finished tasks can be purged",
            )

        subtree = await self._collect_subtree(task_id)
        running = (await self.db.execute(
            select(func.count(TaskNode.id)).where(
                TaskNode.id.in_(subtree), TaskNode.status == TaskStatus.RUNNING
            )
        )).scalar_one()
        if running:
            raise InvalidTransitionError(
                task_id, status, "purged",
                reason=f"Task {task_id} still has {running} running descendants",
            )

        deleted = await self.db.execute(
            delete(TaskNode)
            .where(TaskNode.id.in_(subtree))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(f"Purged task {task_id} and {len(subtree) - 1} descendants")
        return deleted.rowcount
