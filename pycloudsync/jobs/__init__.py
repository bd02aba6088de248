"""Job execution: engine, cancellation control and retry policy."""

from .control import JobControl
from .engine import ItemKind, JobEngine, JobRun, WorkItem
from .retry import calculate_retry_delay, call_with_retry

__all__ = [
    "ItemKind",
    "JobControl",
    "JobEngine",
    "JobRun",
    "WorkItem",
    "calculate_retry_delay",
    "call_with_retry",
]
