"""Data models for connections, file entries, jobs and progress events."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .utils import normalize_path, parse_iso_timestamp, utcnow

# =============================================================================
# Provider connections and file entries
# =============================================================================


class ConnectionStatus(str, Enum):
    """Health of a provider connection."""

    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


@dataclass
class ProviderConnection:
    """A configured connection to one remote storage account."""

    id: str
    """Connection id (UUID string)"""

    provider_type: str
    """Registry key of the adapter type (e.g. "webdav")"""

    config: dict[str, Any] = field(default_factory=dict)
    """Opaque credentials/config map interpreted only by the adapter"""

    session_token: Optional[str] = None
    """Cached session token, if the adapter exposes one"""

    session_expires_at: Optional[datetime] = None
    """Expiry of the cached session token"""

    last_verified_at: Optional[datetime] = None
    """Last successful authentication or connection test"""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED

    error_message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderConnection:
        """Create a connection from a ``connections.json`` record."""
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            provider_type=str(data["provider_type"]).lower(),
            config=dict(data.get("config") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the persistent part of the connection."""
        return {
            "id": self.id,
            "provider_type": self.provider_type,
            "config": self.config,
        }


class EntryKind(str, Enum):
    """Kind of a file entry."""

    FILE = "file"
    FOLDER = "folder"


@dataclass(frozen=True)
class FileEntry:
    """A file or folder as presented by a provider adapter.

    ``path`` is always rebuilt by the adapter from the listed directory and
    the entry name, so all providers present the same tree shape.
    """

    id: str
    """Provider-native identifier"""

    name: str

    kind: EntryKind

    path: str
    """Normalized posix path starting with '/'"""

    size: int = 0
    """Size in bytes (0 for folders)"""

    modified_at: Optional[datetime] = None

    mime_type: Optional[str] = None

    checksum: Optional[str] = None
    """Content hash or ETag when the provider exposes one"""

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))
        if self.kind == EntryKind.FOLDER:
            object.__setattr__(self, "size", 0)

    @property
    def is_folder(self) -> bool:
        return self.kind == EntryKind.FOLDER

    @property
    def mtime(self) -> Optional[float]:
        """Modification time as a Unix timestamp."""
        return self.modified_at.timestamp() if self.modified_at else None

    def with_path(self, path: str) -> FileEntry:
        """Return a copy of the entry with a different path."""
        return replace(self, path=path)


@dataclass
class ProviderCapabilities:
    """Static capability flags declared by an adapter type."""

    supports_concurrent_requests: bool = True
    """False if one session cannot serve parallel requests"""

    supports_range_requests: bool = False
    """True if downloads can resume from a byte offset"""

    supports_checksums: bool = False

    supports_timestamps: bool = False
    """True if uploads can set the remote modification time"""

    max_file_size: Optional[int] = None


@dataclass
class Quota:
    """Storage usage of an account (all values in bytes, 0 if unknown)."""

    total: int = 0
    used: int = 0

    @property
    def available(self) -> int:
        return max(self.total - self.used, 0)


# =============================================================================
# Jobs
# =============================================================================


class JobKind(str, Enum):
    TRANSFER = "transfer"
    SYNC = "sync"


class JobStatus(str, Enum):
    """Run state shared by transfer jobs and sync runs."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def can_transition_to(self, target: JobStatus, kind: JobKind) -> bool:
        """Check a state machine transition.

        ``running -> paused -> running`` is only allowed for transfer jobs.
        """
        if JobStatus.PAUSED in (self, target) and kind != JobKind.TRANSFER:
            return False
        return target in _TRANSITIONS.get(self, ())


_TRANSITIONS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.PENDING: (JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED),
    JobStatus.RUNNING: (
        JobStatus.PAUSED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    ),
    JobStatus.PAUSED: (JobStatus.RUNNING, JobStatus.CANCELLED),
}


class SyncJobStatus(str, Enum):
    """Lifecycle state of a recurring sync job."""

    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"
    RUNNING = "running"
    ERROR = "error"


class SyncDirection(str, Enum):
    """Which way changes may propagate during a sync run."""

    BIDIRECTIONAL = "bidirectional"
    SOURCE_TO_DESTINATION = "source_to_destination"
    DESTINATION_TO_SOURCE = "destination_to_source"

    @property
    def allows_copy_to_destination(self) -> bool:
        return self in (
            SyncDirection.BIDIRECTIONAL,
            SyncDirection.SOURCE_TO_DESTINATION,
        )

    @property
    def allows_copy_to_source(self) -> bool:
        return self in (
            SyncDirection.BIDIRECTIONAL,
            SyncDirection.DESTINATION_TO_SOURCE,
        )

    @property
    def allows_delete_on_destination(self) -> bool:
        """Orphans on the destination may be deleted (one-way towards it)."""
        return self == SyncDirection.SOURCE_TO_DESTINATION

    @property
    def allows_delete_on_source(self) -> bool:
        return self == SyncDirection.DESTINATION_TO_SOURCE


class ConflictPolicy(str, Enum):
    """How a path that differs on both sides is resolved."""

    NEWEST = "newest"
    LARGEST = "largest"
    MANUAL = "manual"
    SKIP = "skip"


@dataclass
class FilterSpec:
    """Selects which source files a transfer copies."""

    include_patterns: list[str] = field(default_factory=list)
    """Glob patterns matched against the file name or relative path"""

    exclude_patterns: list[str] = field(default_factory=list)

    min_size: Optional[int] = None

    max_size: Optional[int] = None

    mime_types: list[str] = field(default_factory=list)
    """Allowlist; entries may be exact ("image/png") or wildcards ("image/*")"""

    modified_after: Optional[datetime] = None

    modified_before: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> FilterSpec:
        data = data or {}
        after = data.get("modified_after")
        before = data.get("modified_before")
        return cls(
            include_patterns=list(data.get("include_patterns") or []),
            exclude_patterns=list(data.get("exclude_patterns") or []),
            min_size=data.get("min_size"),
            max_size=data.get("max_size"),
            mime_types=list(data.get("mime_types") or []),
            modified_after=(
                parse_iso_timestamp(after) if isinstance(after, str) else after
            ),
            modified_before=(
                parse_iso_timestamp(before) if isinstance(before, str) else before
            ),
        )


@dataclass
class TransferOptions:
    overwrite_existing: bool = False
    preserve_timestamps: bool = False
    verify_integrity: bool = False
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> TransferOptions:
        data = data or {}
        return cls(
            overwrite_existing=bool(data.get("overwrite_existing", False)),
            preserve_timestamps=bool(data.get("preserve_timestamps", False)),
            verify_integrity=bool(data.get("verify_integrity", False)),
            dry_run=bool(data.get("dry_run", False)),
        )


@dataclass
class JobCounters:
    """Aggregate progress of one job run."""

    files_total: int = 0
    files_done: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    bytes_total: int = 0
    bytes_done: int = 0

    def copy(self) -> JobCounters:
        return replace(self)

    @property
    def files_processed(self) -> int:
        return self.files_done + self.files_failed + self.files_skipped

    @property
    def percentage(self) -> int:
        if self.files_total == 0:
            return 100
        return round(self.files_processed * 100 / self.files_total)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class TransferJob:
    """A one-shot copy of a subtree from one connection to another."""

    source_connection_id: str
    source_path: str
    destination_connection_id: str
    destination_path: str
    filters: FilterSpec = field(default_factory=FilterSpec)
    options: TransferOptions = field(default_factory=TransferOptions)
    id: str = field(default_factory=_new_id)
    status: JobStatus = JobStatus.PENDING
    counters: JobCounters = field(default_factory=JobCounters)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def __post_init__(self) -> None:
        self.source_path = normalize_path(self.source_path)
        self.destination_path = normalize_path(self.destination_path)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransferJob:
        """Create a transfer job from a request payload."""
        return cls(
            source_connection_id=data["source_connection_id"],
            source_path=data.get("source_path") or "/",
            destination_connection_id=data["destination_connection_id"],
            destination_path=data.get("destination_path") or "/",
            filters=FilterSpec.from_dict(data.get("filters")),
            options=TransferOptions.from_dict(data.get("options")),
        )


class ScheduleKind(str, Enum):
    MANUAL = "manual"
    INTERVAL = "interval"
    CRON = "cron"


@dataclass
class Schedule:
    """When a sync job runs automatically."""

    kind: ScheduleKind = ScheduleKind.MANUAL
    interval_minutes: Optional[int] = None
    cron: Optional[str] = None

    @classmethod
    def manual(cls) -> Schedule:
        return cls()

    @classmethod
    def every(cls, minutes: int) -> Schedule:
        return cls(kind=ScheduleKind.INTERVAL, interval_minutes=minutes)

    @classmethod
    def from_cron(cls, expression: str) -> Schedule:
        return cls(kind=ScheduleKind.CRON, cron=expression)

    @classmethod
    def parse(cls, value: Any) -> Schedule:
        """Parse a schedule from a string or dictionary.

        Examples:
            >>> Schedule.parse("interval:15").interval_minutes
            15
            >>> Schedule.parse("cron:0 3 * * *").cron
            '0 3 * * *'
        """
        if isinstance(value, Schedule):
            return value
        if value is None or value == "manual":
            return cls.manual()
        if isinstance(value, dict):
            return cls(
                kind=ScheduleKind(value.get("kind", "manual")),
                interval_minutes=value.get("interval_minutes"),
                cron=value.get("cron"),
            )
        kind, _, arg = str(value).partition(":")
        kind = kind.strip().lower()
        if kind == ScheduleKind.INTERVAL.value:
            return cls.every(int(arg))
        if kind == ScheduleKind.CRON.value:
            return cls.from_cron(arg.strip())
        raise ValueError(f"Invalid schedule: {value}")

    def __str__(self) -> str:
        if self.kind == ScheduleKind.INTERVAL:
            return f"interval:{self.interval_minutes}"
        if self.kind == ScheduleKind.CRON:
            return f"cron:{self.cron}"
        return "manual"


@dataclass
class SyncOptions:
    delete_orphaned: bool = False
    preserve_timestamps: bool = False
    skip_hidden: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> SyncOptions:
        data = data or {}
        return cls(
            delete_orphaned=bool(data.get("delete_orphaned", False)),
            preserve_timestamps=bool(data.get("preserve_timestamps", False)),
            skip_hidden=bool(data.get("skip_hidden", False)),
        )


@dataclass
class SyncedFile:
    """Both copies of a file as they were right after it was last synced."""

    size: int
    source_modified_at: Optional[datetime] = None
    destination_modified_at: Optional[datetime] = None
    source_checksum: Optional[str] = None
    destination_checksum: Optional[str] = None

    @classmethod
    def from_entries(cls, source: FileEntry, destination: FileEntry) -> SyncedFile:
        return cls(
            size=source.size,
            source_modified_at=source.modified_at,
            destination_modified_at=destination.modified_at,
            source_checksum=source.checksum,
            destination_checksum=destination.checksum,
        )


@dataclass
class SyncState:
    """Files the last run of a sync job left in sync.

    A copy made by a provider that cannot keep timestamps or report
    checksums only looks like its original through this record, so the
    next run compares each side against what it last synced.
    """

    synced_files: dict[str, SyncedFile] = field(default_factory=dict)
    """Relative path -> state of both sides after the last sync"""

    last_sync: Optional[datetime] = None


@dataclass
class SyncJob:
    """A recurring reconciliation between two directory trees."""

    name: str
    source_connection_id: str
    source_path: str
    destination_connection_id: str
    destination_path: str
    direction: SyncDirection = SyncDirection.SOURCE_TO_DESTINATION
    conflict_policy: ConflictPolicy = ConflictPolicy.NEWEST
    options: SyncOptions = field(default_factory=SyncOptions)
    schedule: Schedule = field(default_factory=Schedule)
    enabled: bool = True
    id: str = field(default_factory=_new_id)
    status: SyncJobStatus = SyncJobStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_run_id: Optional[str] = None
    last_error: Optional[str] = None
    pending_conflicts: list[str] = field(default_factory=list)
    """Paths flagged by the manual conflict policy in the last run"""

    state: SyncState = field(default_factory=SyncState)

    def __post_init__(self) -> None:
        self.source_path = normalize_path(self.source_path)
        self.destination_path = normalize_path(self.destination_path)
        self.direction = SyncDirection(self.direction)
        self.conflict_policy = ConflictPolicy(self.conflict_policy)
        self.schedule = Schedule.parse(self.schedule)
        if not self.enabled and self.status == SyncJobStatus.ACTIVE:
            self.status = SyncJobStatus.DISABLED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncJob:
        """Create a sync job from a request payload."""
        return cls(
            name=data.get("name") or "sync",
            source_connection_id=data["source_connection_id"],
            source_path=data.get("source_path") or "/",
            destination_connection_id=data["destination_connection_id"],
            destination_path=data.get("destination_path") or "/",
            direction=SyncDirection(data.get("direction", "source_to_destination")),
            conflict_policy=ConflictPolicy(data.get("conflict_policy", "newest")),
            options=SyncOptions.from_dict(data.get("options")),
            schedule=Schedule.parse(data.get("schedule")),
            enabled=bool(data.get("enabled", True)),
        )


# =============================================================================
# Progress
# =============================================================================


class EventType(str, Enum):
    STATUS_CHANGED = "status_changed"
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"
    ITEM_SKIPPED = "item_skipped"
    BYTES_TRANSFERRED = "bytes_transferred"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class JobSnapshot:
    """Consistent read-only view of a job run."""

    job_id: str
    kind: JobKind
    status: JobStatus
    counters: JobCounters
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    parent_id: Optional[str] = None
    """Sync job id for sync runs"""

    conflicts: tuple[str, ...] = ()

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.completed_at or utcnow()
        return max((end - self.started_at).total_seconds(), 0.0)

    @property
    def transfer_speed(self) -> float:
        """Average bytes per second since the run started."""
        elapsed = self.elapsed
        return self.counters.bytes_done / elapsed if elapsed > 0 else 0.0

    @property
    def estimated_time_remaining(self) -> Optional[float]:
        speed = self.transfer_speed
        if speed <= 0:
            return None
        remaining = max(self.counters.bytes_total - self.counters.bytes_done, 0)
        return remaining / speed


@dataclass(frozen=True)
class ProgressEvent:
    """One progress delta or status change of a job run."""

    job_id: str
    job_kind: JobKind
    event_type: EventType
    snapshot: JobSnapshot
    path: Optional[str] = None
    bytes: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def status(self) -> JobStatus:
        return self.snapshot.status
