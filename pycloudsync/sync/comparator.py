"""Tree comparison logic for sync runs."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..models import ConflictPolicy, FileEntry, SyncDirection, SyncState
from ..utils import MTIME_TOLERANCE, is_hidden_path, parent_path

logger = logging.getLogger(__name__)


class PlanAction(str, Enum):
    """Actions a reconciliation plan can contain."""

    COPY_TO_DESTINATION = "copy_to_destination"
    """Copy source entry to destination"""

    COPY_TO_SOURCE = "copy_to_source"
    """Copy destination entry to source"""

    DELETE_ON_DESTINATION = "delete_on_destination"
    """Delete orphaned destination entry"""

    DELETE_ON_SOURCE = "delete_on_source"
    """Delete orphaned source entry"""

    CONFLICT = "conflict"
    """Entry differs on both sides and is not resolved automatically"""

    SKIP = "skip"
    """No action (direction or options prevent one)"""

    @property
    def is_copy(self) -> bool:
        return self in (PlanAction.COPY_TO_DESTINATION, PlanAction.COPY_TO_SOURCE)

    @property
    def is_delete(self) -> bool:
        return self in (PlanAction.DELETE_ON_DESTINATION, PlanAction.DELETE_ON_SOURCE)


@dataclass
class PlanItem:
    """One decision about a relative path."""

    path: str
    """Path relative to both sync roots"""

    action: PlanAction

    reason: str
    """Human-readable reason for this decision"""

    source_entry: Optional[FileEntry] = None

    destination_entry: Optional[FileEntry] = None

    requires_resolution: bool = False
    """True for conflicts that must be resolved by the user"""

    @property
    def is_folder(self) -> bool:
        entry = self.source_entry or self.destination_entry
        return entry is not None and entry.is_folder

    @property
    def is_executable(self) -> bool:
        return self.action.is_copy or self.action.is_delete


@dataclass
class ReconciliationPlan:
    """Ordered decisions needed to align two trees.

    Paths that are identical on both sides are not listed; only their
    count is kept in ``unchanged``.
    """

    items: list[PlanItem] = field(default_factory=list)
    unchanged: int = 0
    in_sync: dict[str, tuple[FileEntry, FileEntry]] = field(default_factory=dict)
    """Unchanged files with their (source, destination) entries"""

    @property
    def actions(self) -> list[PlanItem]:
        """Items the job engine executes."""
        return [i for i in self.items if i.is_executable]

    @property
    def conflicts(self) -> list[PlanItem]:
        return [i for i in self.items if i.action == PlanAction.CONFLICT]

    @property
    def unresolved(self) -> list[PlanItem]:
        """Conflicts flagged for manual resolution."""
        return [i for i in self.conflicts if i.requires_resolution]

    @property
    def skipped(self) -> list[PlanItem]:
        return [i for i in self.items if i.action == PlanAction.SKIP]

    @property
    def is_empty(self) -> bool:
        """True if executing the plan would change nothing."""
        return not self.actions and not self.conflicts

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in PlanAction}
        for item in self.items:
            counts[item.action.value] += 1
        counts["unchanged"] = self.unchanged
        return counts


class TreeDiffer:
    """Compares two tree snapshots and builds a reconciliation plan.

    Conflict tiebreaks are fixed policy:

    - ``newest``: later modified-at wins, then larger size, then source.
    - ``largest``: larger size wins, then later modified-at, then source.

    Timestamps closer than ``MTIME_TOLERANCE`` seconds count as equal.

    With a ``state`` from the previous run, a file whose two sides both
    still match what that run synced is unchanged even when the copies
    disagree on mtime (an upload that could not keep the timestamp). Under
    ``newest`` and ``largest``, a file changed on one side only is copied
    from that side.
    """

    def __init__(
        self,
        direction: SyncDirection,
        conflict_policy: ConflictPolicy = ConflictPolicy.NEWEST,
        delete_orphaned: bool = False,
        skip_hidden: bool = False,
        mtime_tolerance: float = MTIME_TOLERANCE,
        state: Optional[SyncState] = None,
    ):
        """Initialize tree differ.

        Args:
            direction: Which way changes may propagate
            conflict_policy: How entries differing on both sides are resolved
            delete_orphaned: Delete entries missing on the other side when the
                direction is one-way towards that side
            skip_hidden: Ignore entries with a dot-prefixed path segment
            mtime_tolerance: Seconds within which timestamps are equal
            state: What the previous run of the same sync job left in sync
        """
        self.direction = SyncDirection(direction)
        self.conflict_policy = ConflictPolicy(conflict_policy)
        self.delete_orphaned = delete_orphaned
        self.skip_hidden = skip_hidden
        self.mtime_tolerance = mtime_tolerance
        self.synced_files = state.synced_files if state else {}

    def diff(
        self,
        source: list[tuple[FileEntry, str]],
        destination: list[tuple[FileEntry, str]],
    ) -> ReconciliationPlan:
        """Compare two snapshots.

        Args:
            source: (FileEntry, relative_path) pairs of the source tree
            destination: (FileEntry, relative_path) pairs of the destination tree

        Returns:
            ReconciliationPlan with items sorted by path
        """
        source_map = self._index(source)
        dest_map = self._index(destination)

        plan = ReconciliationPlan()
        deleted_folders: list[str] = []

        for path in sorted(set(source_map) | set(dest_map)):
            # Contents of a folder that is deleted as a whole
            if any(path.startswith(f + "/") for f in deleted_folders):
                continue

            source_entry, dest_entry = source_map.get(path), dest_map.get(path)
            item = self._compare_single(path, source_entry, dest_entry)
            if item is None:
                plan.unchanged += 1
                if source_entry and not source_entry.is_folder:
                    plan.in_sync[path] = (source_entry, dest_entry)
                continue
            if item.action.is_delete and item.is_folder:
                deleted_folders.append(path)
            plan.items.append(item)

        logger.debug(
            f"Plan: {len(plan.actions)} action(s), {len(plan.conflicts)} conflict(s), "
            f"{len(plan.skipped)} skipped, {plan.unchanged} unchanged"
        )
        return plan

    def _index(self, snapshot: list[tuple[FileEntry, str]]) -> dict[str, FileEntry]:
        index = {}
        for entry, rel in snapshot:
            if rel == "/":
                continue
            if self.skip_hidden and is_hidden_path(rel):
                continue
            index[rel] = entry
        return index

    def _compare_single(
        self,
        path: str,
        source: Optional[FileEntry],
        destination: Optional[FileEntry],
    ) -> Optional[PlanItem]:
        # Case 1: Entry exists on both sides
        if source and destination:
            return self._compare_existing(path, source, destination)

        # Case 2: Entry only exists on the source
        if source:
            if self.direction.allows_copy_to_destination:
                return PlanItem(
                    path, PlanAction.COPY_TO_DESTINATION, "New source entry", source
                )
            if self.delete_orphaned and self.direction.allows_delete_on_source:
                return PlanItem(
                    path, PlanAction.DELETE_ON_SOURCE, "Missing on destination", source
                )
            return PlanItem(
                path,
                PlanAction.SKIP,
                f"Source-only entry but direction {self.direction.value} "
                "prevents action",
                source,
            )

        # Case 3: Entry only exists on the destination
        if self.direction.allows_copy_to_source:
            return PlanItem(
                path,
                PlanAction.COPY_TO_SOURCE,
                "New destination entry",
                destination_entry=destination,
            )
        if self.delete_orphaned and self.direction.allows_delete_on_destination:
            return PlanItem(
                path,
                PlanAction.DELETE_ON_DESTINATION,
                "Missing on source",
                destination_entry=destination,
            )
        return PlanItem(
            path,
            PlanAction.SKIP,
            f"Destination-only entry but direction {self.direction.value} "
            "prevents action",
            destination_entry=destination,
        )

    def _compare_existing(
        self, path: str, source: FileEntry, destination: FileEntry
    ) -> Optional[PlanItem]:
        if source.is_folder and destination.is_folder:
            return None

        if source.is_folder != destination.is_folder:
            return PlanItem(
                path,
                PlanAction.CONFLICT,
                "File on one side, folder on the other",
                source,
                destination,
                requires_resolution=True,
            )

        if self._identical(source, destination):
            return None

        record = self.synced_files.get(path)
        if record is not None:
            source_changed = not self._matches_record(
                source, record.size, record.source_modified_at, record.source_checksum
            )
            dest_changed = not self._matches_record(
                destination,
                record.size,
                record.destination_modified_at,
                record.destination_checksum,
            )
            if not source_changed and not dest_changed:
                return None
            if source_changed != dest_changed and self.conflict_policy in (
                ConflictPolicy.NEWEST,
                ConflictPolicy.LARGEST,
            ):
                item = self._one_sided_change(path, source, destination, source_changed)
                if item is not None:
                    return item

        if self.conflict_policy == ConflictPolicy.SKIP:
            return PlanItem(
                path,
                PlanAction.CONFLICT,
                "Entries differ, left diverged by skip policy",
                source,
                destination,
            )
        if self.conflict_policy == ConflictPolicy.MANUAL:
            return PlanItem(
                path,
                PlanAction.CONFLICT,
                "Entries differ, manual resolution required",
                source,
                destination,
                requires_resolution=True,
            )

        source_wins, reason = self._resolve(source, destination)
        if source_wins and self.direction.allows_copy_to_destination:
            return PlanItem(
                path, PlanAction.COPY_TO_DESTINATION, reason, source, destination
            )
        if not source_wins and self.direction.allows_copy_to_source:
            return PlanItem(
                path, PlanAction.COPY_TO_SOURCE, reason, source, destination
            )
        return PlanItem(
            path,
            PlanAction.SKIP,
            f"{reason} but direction {self.direction.value} prevents action",
            source,
            destination,
        )

    def _identical(self, source: FileEntry, destination: FileEntry) -> bool:
        """Check if two file entries hold the same content."""
        if source.checksum and destination.checksum:
            return source.checksum == destination.checksum
        if source.size != destination.size:
            return False
        return self._compare_mtime(source, destination) == 0

    def _matches_record(
        self,
        entry: FileEntry,
        size: int,
        modified_at: Optional[datetime],
        checksum: Optional[str],
    ) -> bool:
        """Check if one side still looks as it did after the last sync."""
        if entry.size != size:
            return False
        if entry.checksum and checksum:
            return entry.checksum == checksum
        if entry.modified_at and modified_at:
            diff = (entry.modified_at - modified_at).total_seconds()
            return abs(diff) < self.mtime_tolerance
        return True

    def _one_sided_change(
        self,
        path: str,
        source: FileEntry,
        destination: FileEntry,
        source_changed: bool,
    ) -> Optional[PlanItem]:
        if source_changed and self.direction.allows_copy_to_destination:
            return PlanItem(
                path,
                PlanAction.COPY_TO_DESTINATION,
                "Changed on source since last sync",
                source,
                destination,
            )
        if not source_changed and self.direction.allows_copy_to_source:
            return PlanItem(
                path,
                PlanAction.COPY_TO_SOURCE,
                "Changed on destination since last sync",
                source,
                destination,
            )
        return None

    def _compare_mtime(self, source: FileEntry, destination: FileEntry) -> int:
        """Return 1 if source is newer, -1 if destination is newer, else 0."""
        if source.mtime is None or destination.mtime is None:
            return 0
        diff = source.mtime - destination.mtime
        if abs(diff) < self.mtime_tolerance:
            return 0
        return 1 if diff > 0 else -1

    @staticmethod
    def _compare_size(source: FileEntry, destination: FileEntry) -> int:
        if source.size == destination.size:
            return 0
        return 1 if source.size > destination.size else -1

    def _resolve(self, source: FileEntry, destination: FileEntry) -> tuple[bool, str]:
        """Pick the winning side of a conflict.

        Returns:
            Tuple of (source wins, reason)
        """
        by_time = self._compare_mtime(source, destination)
        by_size = self._compare_size(source, destination)

        if self.conflict_policy == ConflictPolicy.LARGEST:
            order = [(by_size, "larger"), (by_time, "newer")]
        else:
            order = [(by_time, "newer"), (by_size, "larger")]

        for result, label in order:
            if result > 0:
                return True, f"Source is {label} ({self.conflict_policy.value} policy)"
            if result < 0:
                return (
                    False,
                    f"Destination is {label} ({self.conflict_policy.value} policy)",
                )
        return True, f"Tie, source wins ({self.conflict_policy.value} policy)"


def directories_to_create(paths: list[str]) -> list[str]:
    """All ancestor directories of ``paths``, parents before children."""
    dirs: set[str] = set()
    for path in paths:
        parent = parent_path(path)
        while parent != "/" and parent not in dirs:
            dirs.add(parent)
            parent = parent_path(parent)
    return sorted(dirs, key=lambda p: (p.count("/"), p))
