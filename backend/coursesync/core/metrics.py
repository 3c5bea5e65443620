"""
Prometheus metrics for aggregation runs and task orchestration.
"""
from prometheus_client import Counter, Histogram

AGGREGATION_GROUPS = Counter(
    'coursesync_aggregation_groups_total',
    'Aggregation groups processed',
    ['phase', 'outcome']
)
AGGREGATION_DURATION = Histogram(
    'coursesync_aggregation_duration_seconds',
    'Duration of an aggregation pass',
    ['phase']
)
TASK_TRANSITIONS = Counter(
    'coursesync_task_transitions_total',
    'Task status transitions',
    ['to_status', 'outcome']
)
RECOVERED_TASKS = Counter(
    'coursesync_recovered_tasks_total',
    'Tasks reconciled at startup',
    ['policy']
)


def record_group_outcome(phase: str, success: bool) -> None:
    AGGREGATION_GROUPS.labels(phase=phase, outcome="success" if success else "failed").inc()


def record_transition(to_status: str, success: bool) -> None:
    TASK_TRANSITIONS.labels(to_status=to_status, outcome="success" if success else "rejected").inc()
