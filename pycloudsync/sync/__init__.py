"""Tree scanning and reconciliation planning for sync runs."""

from .comparator import (
    PlanAction,
    PlanItem,
    ReconciliationPlan,
    TreeDiffer,
    directories_to_create,
)
from .scanner import TreeScanner, files_only, snapshot_map

__all__ = [
    "PlanAction",
    "PlanItem",
    "ReconciliationPlan",
    "TreeDiffer",
    "TreeScanner",
    "directories_to_create",
    "files_only",
    "snapshot_map",
]
