"""
Incremental Aggregation Engine

Components:
- Change tracker for per-row sync markers on the raw schedule table
- Aggregation engine merging per-period rows into class sessions
- Student phase preparing attendance records for merged sessions
"""

from .change_tracker import ChangeTracker, validate_marker_transition, LIVE_MARKERS, RESETTABLE_MARKERS
from .aggregation_engine import (
    AggregationEngine,
    AggregationCriteria,
    AggregationResult,
    MarkerSelection,
    MergedSession,
    ScheduleSlot,
    GroupKey,
)

__all__ = [
    'ChangeTracker',
    'validate_marker_transition',
    'LIVE_MARKERS',
    'RESETTABLE_MARKERS',
    'AggregationEngine',
    'AggregationCriteria',
    'AggregationResult',
    'MarkerSelection',
    'MergedSession',
    'ScheduleSlot',
    'GroupKey',
]
