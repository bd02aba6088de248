"""Job engine: drives transfer and sync runs through a bounded worker pool."""

import logging
import threading
import time
import uuid
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..config import EngineSettings
from ..events import EventPublisher
from ..exceptions import (
    AuthenticationError,
    CloudSyncError,
    ConfigError,
    ConflictUnresolved,
    IntegrityMismatch,
    JobCancelled,
    JobNotFoundError,
    NotRunningError,
)
from ..filters import apply_filter
from ..models import (
    EventType,
    FileEntry,
    JobCounters,
    JobKind,
    JobSnapshot,
    JobStatus,
    ProgressEvent,
    SyncedFile,
    SyncJob,
    SyncState,
    TransferJob,
)
from ..providers.base import ProviderAdapter
from ..registry import ProviderRegistry
from ..sync.comparator import (
    PlanAction,
    PlanItem,
    ReconciliationPlan,
    TreeDiffer,
    directories_to_create,
)
from ..sync.scanner import TreeScanner, files_only
from ..utils import (
    DEFAULT_MAX_CONCURRENT_JOBS,
    base_name,
    join_path,
    parent_path,
    path_depth,
    utcnow,
)
from .control import JobControl
from .retry import call_with_retry

logger = logging.getLogger(__name__)


def _close_stream(stream: Iterator[bytes]) -> None:
    """Release a download stream, including one that was never read."""
    close = getattr(stream, "close", None)
    if close is not None:
        close()


class ItemKind(str, Enum):
    """File-level operations a worker performs."""

    CREATE_DIRECTORY = "create_directory"
    COPY = "copy"
    DELETE = "delete"


@dataclass
class WorkItem:
    """One unit of work in a job's queue."""

    kind: ItemKind

    relative_path: str
    """Path relative to the job roots (used in events and logs)"""

    target_connection_id: str
    """Connection that is written to"""

    target_path: str
    """Absolute path on the target connection"""

    entry: Optional[FileEntry] = None
    """Entry being copied or deleted"""

    source_connection_id: Optional[str] = None

    source_path: Optional[str] = None

    preserve_timestamps: bool = False

    towards_source: bool = False
    """True for sync copies from the destination back to the source"""

    uploaded: Optional[FileEntry] = None
    """Entry reported by the target once the copy succeeded"""

    @property
    def size(self) -> int:
        if self.kind == ItemKind.COPY and self.entry is not None:
            return self.entry.size
        return 0

    @property
    def counted(self) -> bool:
        """Directory creation is bookkeeping and not counted as an item."""
        return self.kind != ItemKind.CREATE_DIRECTORY


@dataclass
class _RunOptions:
    dry_run: bool = False
    verify_integrity: bool = False


class JobRun:
    """Live state of one transfer job or sync run.

    Counters are only mutated by the engine under ``lock``; readers use
    :meth:`snapshot`.
    """

    def __init__(
        self,
        job_id: str,
        kind: JobKind,
        parent_id: Optional[str] = None,
    ):
        self.job_id = job_id
        self.kind = kind
        self.parent_id = parent_id
        self.status = JobStatus.PENDING
        self.counters = JobCounters()
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.error_message: Optional[str] = None
        self.conflicts: list[str] = []
        self.plan: Optional[ReconciliationPlan] = None
        self.control = JobControl()
        self.lock = threading.RLock()
        self.done = threading.Event()
        self.future: Optional[Future] = None

    def snapshot(self) -> JobSnapshot:
        with self.lock:
            return JobSnapshot(
                job_id=self.job_id,
                kind=self.kind,
                status=self.status,
                counters=self.counters.copy(),
                started_at=self.started_at,
                completed_at=self.completed_at,
                error_message=self.error_message,
                parent_id=self.parent_id,
                conflicts=tuple(self.conflicts),
            )


class JobEngine:
    """Executes transfer jobs and sync runs.

    Every run goes through the same pipeline: build a flat list of work
    items, create directories first (parents before children), then drain
    the file items through a bounded thread pool. Item failures are counted
    and never abort the run; the run fails only when every item failed, on
    an unrecoverable authentication error or when planning fails.

    Examples:
        >>> engine = JobEngine(registry, publisher)
        >>> run = engine.start_transfer(job)
        >>> snapshot = engine.wait(run.job_id)
        >>> print(snapshot.counters.files_done)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[EngineSettings] = None,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the job engine.

        Args:
            registry: Provider registry that supplies the adapters
            publisher: Event publisher for progress events (optional)
            settings: Worker, retry and scan settings
            max_concurrent_jobs: Runs executed at the same time
            sleep: Sleep function used for retry backoff
        """
        self.registry = registry
        self.publisher = publisher
        self.settings = settings or EngineSettings()
        self._sleep = sleep
        self._runs: dict[str, JobRun] = {}
        self._lock = threading.Lock()
        self._connection_locks: dict[str, threading.RLock] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_jobs, thread_name_prefix="pycloudsync-job"
        )

    # =========================
    # Public API
    # =========================

    def start_transfer(self, job: TransferJob) -> JobRun:
        """Start a transfer job in the background."""
        run = self._new_run(job.id, JobKind.TRANSFER)
        run.future = self._executor.submit(self._execute_transfer, run, job)
        return run

    def run_transfer(self, job: TransferJob) -> JobSnapshot:
        """Run a transfer job in the calling thread and return its final state."""
        run = self._new_run(job.id, JobKind.TRANSFER)
        self._execute_transfer(run, job)
        return run.snapshot()

    def start_sync(
        self,
        sync_job: SyncJob,
        on_finished: Optional[Callable[[JobSnapshot], None]] = None,
    ) -> JobRun:
        """Start one run of a sync job in the background.

        Args:
            sync_job: Sync job definition
            on_finished: Called with the final snapshot when the run ends
        """
        run = self._new_run(str(uuid.uuid4()), JobKind.SYNC, parent_id=sync_job.id)
        run.future = self._executor.submit(
            self._execute_sync, run, sync_job, on_finished
        )
        return run

    def run_sync(
        self,
        sync_job: SyncJob,
        on_finished: Optional[Callable[[JobSnapshot], None]] = None,
    ) -> JobSnapshot:
        """Run one sync run in the calling thread and return its final state."""
        run = self._new_run(str(uuid.uuid4()), JobKind.SYNC, parent_id=sync_job.id)
        self._execute_sync(run, sync_job, on_finished)
        return run.snapshot()

    def plan_sync(self, sync_job: SyncJob) -> ReconciliationPlan:
        """Scan both trees and compute the plan without executing it."""
        source = self._adapter(sync_job.source_connection_id)
        destination = self._adapter(sync_job.destination_connection_id)
        return self._build_plan(sync_job, source, destination)

    def pause(self, job_id: str) -> None:
        """Pause a running transfer between items.

        Raises:
            JobNotFoundError: If the job is unknown
            NotRunningError: If the job is not a running transfer
        """
        run = self._get_run(job_id)
        with run.lock:
            if not run.status.can_transition_to(JobStatus.PAUSED, run.kind):
                raise NotRunningError(
                    f"Cannot pause {run.kind.value} job {job_id} "
                    f"in state {run.status.value}"
                )
            run.control.pause()
            self._transition(run, JobStatus.PAUSED)

    def resume(self, job_id: str) -> None:
        run = self._get_run(job_id)
        with run.lock:
            if run.status != JobStatus.PAUSED:
                raise NotRunningError(
                    f"Cannot resume job {job_id} in state {run.status.value}"
                )
            self._transition(run, JobStatus.RUNNING)
            run.control.resume()

    def cancel(self, job_id: str) -> None:
        """Request cancellation; running items finish first.

        Raises:
            JobNotFoundError: If the job is unknown
            NotRunningError: If the job already reached a terminal state
        """
        run = self._get_run(job_id)
        with run.lock:
            if run.status.is_terminal:
                raise NotRunningError(
                    f"Job {job_id} already {run.status.value}"
                )
            run.control.cancel()
            if run.status == JobStatus.PENDING:
                self._transition(run, JobStatus.CANCELLED)
                run.done.set()

    def get_snapshot(self, job_id: str) -> JobSnapshot:
        return self._get_run(job_id).snapshot()

    def get_run(self, job_id: str) -> Optional[JobRun]:
        with self._lock:
            return self._runs.get(job_id)

    def list_runs(self, kind: Optional[JobKind] = None) -> list[JobSnapshot]:
        with self._lock:
            runs = list(self._runs.values())
        return [r.snapshot() for r in runs if kind is None or r.kind == kind]

    def active_runs(self, parent_id: str) -> list[JobRun]:
        """Non-terminal runs belonging to a sync job."""
        with self._lock:
            runs = list(self._runs.values())
        return [
            r for r in runs if r.parent_id == parent_id and not r.status.is_terminal
        ]

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobSnapshot:
        """Block until a run reaches a terminal state (or timeout)."""
        run = self._get_run(job_id)
        run.done.wait(timeout)
        return run.snapshot()

    def shutdown(self, wait: bool = True) -> None:
        """Cancel all active runs and stop the executor."""
        with self._lock:
            runs = list(self._runs.values())
        for run in runs:
            with run.lock:
                if not run.status.is_terminal:
                    run.control.cancel()
        self._executor.shutdown(wait=wait)

    # =========================
    # Run bookkeeping
    # =========================

    def _new_run(
        self, job_id: str, kind: JobKind, parent_id: Optional[str] = None
    ) -> JobRun:
        with self._lock:
            if job_id in self._runs:
                raise NotRunningError(f"Job {job_id} was already started")
            run = JobRun(job_id, kind, parent_id)
            self._runs[job_id] = run
        return run

    def _get_run(self, job_id: str) -> JobRun:
        run = self.get_run(job_id)
        if run is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return run

    def _transition(
        self, run: JobRun, target: JobStatus, error: Optional[str] = None
    ) -> None:
        with run.lock:
            if not run.status.can_transition_to(target, run.kind):
                raise NotRunningError(
                    f"Invalid transition {run.status.value} -> {target.value} "
                    f"for job {run.job_id}"
                )
            previous = run.status
            run.status = target
            if target == JobStatus.RUNNING and run.started_at is None:
                run.started_at = utcnow()
            if target.is_terminal:
                run.completed_at = utcnow()
                run.error_message = error
        logger.info(
            f"{run.kind.value.capitalize()} job {run.job_id}: "
            f"{previous.value} -> {target.value}"
            + (f" ({error})" if error else "")
        )
        self._publish(run, EventType.STATUS_CHANGED, error=error)

    def _publish(
        self,
        run: JobRun,
        event_type: EventType,
        path: Optional[str] = None,
        nbytes: int = 0,
        error: Optional[str] = None,
    ) -> None:
        if self.publisher is None:
            return
        self.publisher.publish(
            ProgressEvent(
                job_id=run.job_id,
                job_kind=run.kind,
                event_type=event_type,
                snapshot=run.snapshot(),
                path=path,
                bytes=nbytes,
                error=error,
            )
        )

    def _begin(self, run: JobRun) -> bool:
        """Move a run to RUNNING unless it was cancelled while pending."""
        with run.lock:
            if run.status != JobStatus.PENDING:
                return False
            self._transition(run, JobStatus.RUNNING)
            return True

    def _finish(self, run: JobRun, error: Optional[BaseException] = None) -> None:
        with run.lock:
            counters = run.counters
            failure = run.control.failure or error
            if failure is not None:
                target, message = JobStatus.FAILED, str(failure)
            elif run.control.is_cancelled:
                target, message = JobStatus.CANCELLED, None
            elif counters.files_failed and not (
                counters.files_done or counters.files_skipped
            ):
                target = JobStatus.FAILED
                message = f"All {counters.files_failed} item(s) failed"
            else:
                target, message = JobStatus.COMPLETED, None

            if run.status == JobStatus.PAUSED and target != JobStatus.CANCELLED:
                # Paused after the last item had already been taken
                self._transition(run, JobStatus.RUNNING)
            self._transition(run, target, message)

    # =========================
    # Adapters
    # =========================

    def _adapter(self, connection_id: str) -> ProviderAdapter:
        adapter = self.registry.get_provider(connection_id)
        if adapter is None:
            raise ConfigError(f"Unknown connection: {connection_id}")
        return adapter

    def _connection_lock(self, connection_id: str) -> threading.RLock:
        with self._lock:
            lock = self._connection_locks.get(connection_id)
            if lock is None:
                lock = self._connection_locks[connection_id] = threading.RLock()
            return lock

    @contextmanager
    def _connection_guard(self, *connection_ids: Optional[str]) -> Iterator[None]:
        """Serialize calls on adapters that cannot serve parallel requests.

        Locks are taken in sorted order so two jobs copying in opposite
        directions cannot deadlock.
        """
        with ExitStack() as stack:
            for connection_id in sorted({c for c in connection_ids if c}):
                adapter = self._adapter(connection_id)
                if not adapter.capabilities.supports_concurrent_requests:
                    stack.enter_context(self._connection_lock(connection_id))
            yield

    # =========================
    # Transfer jobs
    # =========================

    def _execute_transfer(self, run: JobRun, job: TransferJob) -> None:
        try:
            if not self._begin(run):
                return
            try:
                items = self._build_transfer_items(run, job)
            except CloudSyncError as e:
                logger.warning(f"Transfer job {job.id} failed during planning: {e}")
                self._finish(run, e)
                return
            except Exception as e:
                logger.exception(f"Unexpected error planning transfer job {job.id}")
                self._finish(run, e)
                return
            options = _RunOptions(
                dry_run=job.options.dry_run,
                verify_integrity=job.options.verify_integrity,
            )
            self._execute_items(run, items, options)
            self._finish(run)
        finally:
            run.done.set()

    def _list_transfer_source(
        self, job: TransferJob, source: ProviderAdapter
    ) -> list[tuple[FileEntry, str]]:
        """List the files to copy as (entry, relative_path) pairs."""
        with self._connection_guard(job.source_connection_id):
            if job.source_path != "/":
                info = source.get_file_info(job.source_path)
                if not info.is_folder:
                    # Single file transfer
                    return [(info, "/" + base_name(job.source_path))]
            scanner = TreeScanner(source, max_depth=self.settings.max_scan_depth)
            return files_only(scanner.scan(job.source_path))

    def _build_transfer_items(self, run: JobRun, job: TransferJob) -> list[WorkItem]:
        source = self._adapter(job.source_connection_id)
        destination = self._adapter(job.destination_connection_id)

        files = apply_filter(self._list_transfer_source(job, source), job.filters)

        existing: set[str] = set()
        if not job.options.overwrite_existing:
            scanner = TreeScanner(destination, max_depth=self.settings.max_scan_depth)
            with self._connection_guard(job.destination_connection_id):
                snapshot = scanner.scan(job.destination_path, missing_ok=True)
            existing = {rel for entry, rel in snapshot if not entry.is_folder}

        to_copy = [(e, rel) for e, rel in files if rel not in existing]
        with run.lock:
            run.counters.files_total = len(files)
            run.counters.bytes_total = sum(e.size for e, _ in to_copy)

        for entry, rel in files:
            if rel in existing:
                self._record_skip(run, rel, "exists on destination")

        items = [
            WorkItem(
                kind=ItemKind.CREATE_DIRECTORY,
                relative_path=rel_dir,
                target_connection_id=job.destination_connection_id,
                target_path=join_path(job.destination_path, rel_dir),
            )
            for rel_dir in ["/"] + directories_to_create([rel for _, rel in to_copy])
        ]
        items.extend(
            WorkItem(
                kind=ItemKind.COPY,
                relative_path=rel,
                target_connection_id=job.destination_connection_id,
                target_path=join_path(job.destination_path, rel),
                entry=entry,
                source_connection_id=job.source_connection_id,
                source_path=entry.path,
                preserve_timestamps=job.options.preserve_timestamps,
            )
            for entry, rel in to_copy
        )
        logger.debug(
            f"Transfer job {job.id}: {len(to_copy)} file(s) to copy, "
            f"{len(files) - len(to_copy)} already on destination"
        )
        return items

    # =========================
    # Sync runs
    # =========================

    def _build_plan(
        self, sync_job: SyncJob, source: ProviderAdapter, destination: ProviderAdapter
    ) -> ReconciliationPlan:
        skip_hidden = sync_job.options.skip_hidden
        source_scanner = TreeScanner(
            source, max_depth=self.settings.max_scan_depth, skip_hidden=skip_hidden
        )
        dest_scanner = TreeScanner(
            destination, max_depth=self.settings.max_scan_depth, skip_hidden=skip_hidden
        )
        with self._connection_guard(sync_job.source_connection_id):
            source_snapshot = source_scanner.scan(sync_job.source_path, missing_ok=True)
        with self._connection_guard(sync_job.destination_connection_id):
            dest_snapshot = dest_scanner.scan(
                sync_job.destination_path, missing_ok=True
            )

        differ = TreeDiffer(
            direction=sync_job.direction,
            conflict_policy=sync_job.conflict_policy,
            delete_orphaned=sync_job.options.delete_orphaned,
            skip_hidden=skip_hidden,
            state=sync_job.state,
        )
        return differ.diff(source_snapshot, dest_snapshot)

    @staticmethod
    def _update_sync_state(
        sync_job: SyncJob, plan: ReconciliationPlan, items: list[WorkItem]
    ) -> None:
        """Remember what this run left in sync for the next comparison.

        Unresolved paths keep their previous record; paths that vanished
        from both sides or were deleted are forgotten.
        """
        previous = sync_job.state.synced_files
        synced = {
            path: SyncedFile.from_entries(source, destination)
            for path, (source, destination) in plan.in_sync.items()
        }
        for plan_item in plan.items:
            record = previous.get(plan_item.path)
            if record and plan_item.source_entry and plan_item.destination_entry:
                synced[plan_item.path] = record
        for item in items:
            if item.kind != ItemKind.COPY or item.uploaded is None:
                continue
            if item.towards_source:
                pair = (item.uploaded, item.entry)
            else:
                pair = (item.entry, item.uploaded)
            synced[item.relative_path] = SyncedFile.from_entries(*pair)
        sync_job.state = SyncState(synced_files=synced, last_sync=utcnow())

    def _execute_sync(
        self,
        run: JobRun,
        sync_job: SyncJob,
        on_finished: Optional[Callable[[JobSnapshot], None]],
    ) -> None:
        try:
            if not self._begin(run):
                return
            try:
                source = self._adapter(sync_job.source_connection_id)
                destination = self._adapter(sync_job.destination_connection_id)
                plan = self._build_plan(sync_job, source, destination)
            except CloudSyncError as e:
                logger.warning(f"Sync job {sync_job.id} failed during planning: {e}")
                self._finish(run, e)
                return
            except Exception as e:
                logger.exception(f"Unexpected error planning sync job {sync_job.id}")
                self._finish(run, e)
                return

            run.plan = plan
            items = self._plan_to_items(sync_job, plan)
            counted = [i for i in items if i.counted]
            with run.lock:
                run.counters.files_total = len(counted)
                run.counters.bytes_total = sum(i.size for i in counted)
                run.conflicts = [c.path for c in plan.unresolved]

            for conflict in plan.conflicts:
                error = (
                    str(ConflictUnresolved([conflict.path]))
                    if conflict.requires_resolution
                    else conflict.reason
                )
                self._publish(run, EventType.CONFLICT, path=conflict.path, error=error)

            self._execute_items(run, items, _RunOptions())
            self._update_sync_state(sync_job, plan, items)
            self._finish(run)
        finally:
            if on_finished is not None:
                try:
                    on_finished(run.snapshot())
                except Exception:
                    logger.exception(
                        f"Completion handler for sync run {run.job_id} failed"
                    )
            run.done.set()

    def _plan_to_items(
        self, sync_job: SyncJob, plan: ReconciliationPlan
    ) -> list[WorkItem]:
        src_id, src_root = sync_job.source_connection_id, sync_job.source_path
        dst_id, dst_root = sync_job.destination_connection_id, sync_job.destination_path
        preserve = sync_job.options.preserve_timestamps

        items: list[WorkItem] = []
        roots_needed: dict[str, str] = {}

        for plan_item in plan.actions:
            rel = plan_item.path
            if plan_item.action == PlanAction.COPY_TO_DESTINATION:
                roots_needed[dst_id] = dst_root
                items.append(
                    self._copy_item(
                        plan_item,
                        plan_item.source_entry,
                        from_id=src_id,
                        to_id=dst_id,
                        target_path=join_path(dst_root, rel),
                        preserve=preserve,
                    )
                )
            elif plan_item.action == PlanAction.COPY_TO_SOURCE:
                roots_needed[src_id] = src_root
                items.append(
                    self._copy_item(
                        plan_item,
                        plan_item.destination_entry,
                        from_id=dst_id,
                        to_id=src_id,
                        target_path=join_path(src_root, rel),
                        preserve=preserve,
                        towards_source=True,
                    )
                )
            elif plan_item.action == PlanAction.DELETE_ON_DESTINATION:
                items.append(
                    WorkItem(
                        kind=ItemKind.DELETE,
                        relative_path=rel,
                        target_connection_id=dst_id,
                        target_path=join_path(dst_root, rel),
                        entry=plan_item.destination_entry,
                    )
                )
            elif plan_item.action == PlanAction.DELETE_ON_SOURCE:
                items.append(
                    WorkItem(
                        kind=ItemKind.DELETE,
                        relative_path=rel,
                        target_connection_id=src_id,
                        target_path=join_path(src_root, rel),
                        entry=plan_item.source_entry,
                    )
                )

        # Roots may not exist yet on the receiving side
        root_items = [
            WorkItem(ItemKind.CREATE_DIRECTORY, "/", connection_id, root)
            for connection_id, root in roots_needed.items()
        ]
        return root_items + items

    @staticmethod
    def _copy_item(
        plan_item: PlanItem,
        entry: Optional[FileEntry],
        from_id: str,
        to_id: str,
        target_path: str,
        preserve: bool,
        towards_source: bool = False,
    ) -> WorkItem:
        if plan_item.is_folder:
            return WorkItem(
                ItemKind.CREATE_DIRECTORY, plan_item.path, to_id, target_path
            )
        return WorkItem(
            kind=ItemKind.COPY,
            relative_path=plan_item.path,
            target_connection_id=to_id,
            target_path=target_path,
            entry=entry,
            source_connection_id=from_id,
            source_path=entry.path if entry else None,
            preserve_timestamps=preserve,
            towards_source=towards_source,
        )

    # =========================
    # Item execution
    # =========================

    def _execute_items(
        self, run: JobRun, items: list[WorkItem], options: _RunOptions
    ) -> None:
        """Create directories first (parents before children), then the rest."""
        directories = sorted(
            (i for i in items if i.kind == ItemKind.CREATE_DIRECTORY),
            key=lambda i: (path_depth(i.target_path), i.target_path),
        )
        others = [i for i in items if i.kind != ItemKind.CREATE_DIRECTORY]

        for item in directories:
            self._run_item(run, item, options)

        if not others or run.control.is_cancelled:
            return

        max_workers = max(1, self.settings.max_workers)
        logger.debug(
            f"Job {run.job_id}: executing {len(others)} item(s) "
            f"with {max_workers} worker(s)"
        )
        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"worker-{run.job_id[:8]}"
        ) as executor:
            futures = {
                executor.submit(self._run_item, run, item, options): item
                for item in others
            }
            for future in as_completed(futures):
                try:
                    path, elapsed, success = future.result()
                    if success:
                        logger.debug(f"Completed {path} in {elapsed:.2f}s")
                    elif success is False:
                        logger.debug(f"Failed {path} in {elapsed:.2f}s")
                except Exception:
                    logger.exception(
                        f"Unexpected error executing {futures[future].relative_path}"
                    )

    def _run_item(
        self, run: JobRun, item: WorkItem, options: _RunOptions
    ) -> tuple[str, float, Optional[bool]]:
        """Execute one item with retries.

        Returns:
            Tuple of (relative path, elapsed seconds, success); success is
            None if the item was not attempted because of cancellation
        """
        start = time.time()
        try:
            run.control.checkpoint()
            call_with_retry(
                lambda: self._perform(run, item, options),
                max_attempts=max(1, self.settings.max_retries),
                base_delay=self.settings.retry_delay,
                description=item.relative_path,
                sleep=self._sleep,
                before_retry=run.control.checkpoint,
            )
        except JobCancelled:
            return item.relative_path, time.time() - start, None
        except AuthenticationError as e:
            self._record_failure(run, item, e)
            run.control.fail(e)
            return item.relative_path, time.time() - start, False
        except CloudSyncError as e:
            self._record_failure(run, item, e)
            return item.relative_path, time.time() - start, False
        except Exception as e:
            logger.exception(f"Unexpected error processing {item.relative_path}")
            self._record_failure(run, item, e)
            return item.relative_path, time.time() - start, False

        self._record_success(run, item)
        return item.relative_path, time.time() - start, True

    def _perform(self, run: JobRun, item: WorkItem, options: _RunOptions) -> None:
        if options.dry_run:
            logger.debug(f"[dry run] {item.kind.value} {item.relative_path}")
            return

        target = self._adapter(item.target_connection_id)

        if item.kind == ItemKind.CREATE_DIRECTORY:
            with self._connection_guard(item.target_connection_id):
                target.create_directory(item.target_path)
            return

        if item.kind == ItemKind.DELETE:
            with self._connection_guard(item.target_connection_id):
                target.delete_file(item.target_path)
            return

        entry = item.entry
        if entry is None or item.source_connection_id is None:
            raise CloudSyncError(f"Copy of {item.relative_path} has no source entry")
        source = self._adapter(item.source_connection_id)
        with self._connection_guard(
            item.source_connection_id, item.target_connection_id
        ):
            stream = source.download_file(item.source_path or entry.path)
            try:
                uploaded = target.upload_file(
                    parent_path(item.target_path),
                    base_name(item.target_path),
                    self._track_bytes(run, item, stream),
                    entry.size,
                    entry.modified_at if item.preserve_timestamps else None,
                )
            finally:
                _close_stream(stream)
            if options.verify_integrity:
                uploaded = self._verify(source, target, item, entry)
        item.uploaded = uploaded

    def _track_bytes(
        self, run: JobRun, item: WorkItem, stream: Iterator[bytes]
    ) -> Iterator[bytes]:
        for chunk in stream:
            yield chunk
            self._publish(
                run,
                EventType.BYTES_TRANSFERRED,
                path=item.relative_path,
                nbytes=len(chunk),
            )

    def _verify(
        self,
        source: ProviderAdapter,
        target: ProviderAdapter,
        item: WorkItem,
        expected: FileEntry,
    ) -> FileEntry:
        """Re-list the uploaded entry and compare it with the source.

        Returns:
            The uploaded entry as listed by the target

        Raises:
            IntegrityMismatch: If size or checksum differ
        """
        uploaded = target.get_file_info(item.target_path)

        compare_checksums = (
            source.capabilities.supports_checksums
            and target.capabilities.supports_checksums
            and expected.checksum is not None
            and uploaded.checksum is not None
        )
        if uploaded.size != expected.size or (
            compare_checksums and uploaded.checksum != expected.checksum
        ):
            raise IntegrityMismatch(
                f"Integrity check failed for {item.relative_path}: "
                f"expected {expected.size} bytes"
                + (f" ({expected.checksum})" if compare_checksums else "")
                + f", got {uploaded.size} bytes"
                + (f" ({uploaded.checksum})" if compare_checksums else ""),
                target.provider_type,
                expected_size=expected.size,
                actual_size=uploaded.size,
                expected_checksum=expected.checksum,
                actual_checksum=uploaded.checksum,
            )
        return uploaded

    def _record_success(self, run: JobRun, item: WorkItem) -> None:
        if item.counted:
            with run.lock:
                run.counters.files_done += 1
                run.counters.bytes_done += item.size
        self._publish(
            run, EventType.ITEM_COMPLETED, path=item.relative_path, nbytes=item.size
        )

    def _record_failure(
        self, run: JobRun, item: WorkItem, error: BaseException
    ) -> None:
        if item.counted:
            with run.lock:
                run.counters.files_failed += 1
        logger.warning(f"Failed to {item.kind.value} {item.relative_path}: {error}")
        self._publish(
            run, EventType.ITEM_FAILED, path=item.relative_path, error=str(error)
        )

    def _record_skip(self, run: JobRun, path: str, reason: str) -> None:
        with run.lock:
            run.counters.files_skipped += 1
        logger.debug(f"Skipping {path}: {reason}")
        self._publish(run, EventType.ITEM_SKIPPED, path=path, error=reason)
