"""Collaborator-facing operations of the transfer and sync core.

CloudSyncService wires the provider registry, job engine, event publisher,
job store and scheduler together and is the single entry point used by
the command line (or an HTTP layer).
"""

import logging
import time
from typing import Any, Callable, Optional, Union

from .config import Config, EngineSettings
from .events import EventPublisher, Subscription
from .exceptions import JobNotFoundError, NotRunningError
from .jobs.engine import JobEngine
from .models import (
    JobCounters,
    JobKind,
    JobSnapshot,
    JobStatus,
    ProviderConnection,
    SyncJob,
    TransferJob,
)
from .registry import ProviderRegistry
from .scheduler import SyncScheduler
from .store import InMemoryJobStore, JobStore, StoreProjector
from .validation import raise_for_errors, validate_sync, validate_transfer

logger = logging.getLogger(__name__)

JobRecord = Union[TransferJob, SyncJob]


class CloudSyncService:
    """Create, run and observe transfer and sync jobs.

    Examples:
        >>> service = CloudSyncService()
        >>> service.add_connection(ProviderConnection("webdav", {...}))
        >>> job_id = service.create_transfer_job({
        ...     "source_connection_id": "a", "source_path": "/src",
        ...     "destination_connection_id": "b", "destination_path": "/dst",
        ... })
        >>> service.wait(job_id).counters.files_done
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        store: Optional[JobStore] = None,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[EngineSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the service.

        Args:
            registry: Provider registry (a new one with the built-in
                adapter types if None)
            store: Job store (in-memory if None)
            publisher: Event publisher (a new one if None)
            settings: Engine and scheduler settings (defaults if None)
            sleep: Sleep function used for retry backoff
        """
        self.settings = settings or EngineSettings()
        self.registry = registry or ProviderRegistry(
            adapter_options={
                "session_ttl": self.settings.session_ttl,
                "timeout": self.settings.request_timeout,
            }
        )
        self.store = store or InMemoryJobStore()
        self.publisher = publisher or EventPublisher(self.settings.event_buffer_size)
        self.engine = JobEngine(
            self.registry, self.publisher, self.settings, sleep=sleep
        )
        self.scheduler = SyncScheduler(
            self.engine, self.store, tick=self.settings.scheduler_tick
        )
        self._projection = self.publisher.subscribe_callback(
            StoreProjector(self.store), name="store-projector"
        )

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None) -> "CloudSyncService":
        """Build a service from configuration and saved connections.

        Raises:
            ConfigError: If the configuration or connections file is invalid
        """
        if cfg is None:
            from .config import config as cfg
        service = cls(settings=cfg.engine_settings())
        for connection in cfg.load_connections():
            service.add_connection(connection)
        return service

    # =========================
    # Connections
    # =========================

    def add_connection(self, connection: ProviderConnection) -> None:
        """Register a connection; the adapter authenticates on first use."""
        self.registry.add_connection(connection)

    def connect(self, connection: ProviderConnection) -> None:
        """Register a connection and authenticate it now."""
        self.registry.connect(connection)

    # =========================
    # Transfer jobs
    # =========================

    def validate_transfer(
        self, spec: Union[dict[str, Any], TransferJob]
    ) -> dict[str, Any]:
        """Structural check of a transfer spec without creating the job."""
        return validate_transfer(spec, self.registry)

    def create_transfer_job(
        self, spec: Union[dict[str, Any], TransferJob], start: bool = True
    ) -> str:
        """Validate, store and (by default) start a transfer job.

        Args:
            spec: Request payload or a TransferJob
            start: Start executing immediately

        Returns:
            The job id

        Raises:
            ValidationError: If the job definition has errors
        """
        raise_for_errors(self.validate_transfer(spec))
        job = spec if isinstance(spec, TransferJob) else TransferJob.from_dict(spec)
        self.store.save_transfer_job(job)
        logger.info(
            f"Created transfer job {job.id}: "
            f"{job.source_connection_id}:{job.source_path} -> "
            f"{job.destination_connection_id}:{job.destination_path}"
        )
        if start:
            self.start_transfer(job.id)
        return job.id

    def start_transfer(self, job_id: str) -> None:
        """Start a stored transfer job.

        Raises:
            JobNotFoundError: If no transfer job has this id
            NotRunningError: If the job was already started
        """
        job = self.store.get_transfer_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Transfer job {job_id} not found")
        self.engine.start_transfer(job)

    # =========================
    # Sync jobs
    # =========================

    def validate_sync(self, spec: Union[dict[str, Any], SyncJob]) -> dict[str, Any]:
        return validate_sync(spec, self.registry)

    def create_sync_job(self, spec: Union[dict[str, Any], SyncJob]) -> str:
        """Validate and store a sync job and compute its first run time.

        Raises:
            ValidationError: If the job definition has errors
        """
        raise_for_errors(self.validate_sync(spec))
        job = spec if isinstance(spec, SyncJob) else SyncJob.from_dict(spec)
        self.scheduler.schedule_job(job)
        logger.info(
            f"Created sync job {job.name} ({job.id}), "
            f"{job.direction.value}, schedule {job.schedule}"
        )
        return job.id

    def get_sync_job(self, sync_id: str) -> SyncJob:
        job = self.store.get_sync_job(sync_id)
        if job is None:
            raise JobNotFoundError(f"Sync job {sync_id} not found")
        return job

    def run_sync_now(self, sync_id: str) -> str:
        """Start a run of a sync job outside its schedule.

        Returns:
            The run id

        Raises:
            JobNotFoundError: If the sync job is unknown
            NotRunningError: If it is disabled or already running
        """
        return self.scheduler.trigger(self.get_sync_job(sync_id))

    def enable_sync(self, sync_id: str) -> None:
        self.scheduler.set_enabled(self.get_sync_job(sync_id), True)

    def disable_sync(self, sync_id: str) -> None:
        """Disable a sync job; a run in progress is allowed to finish."""
        self.scheduler.set_enabled(self.get_sync_job(sync_id), False)

    def pending_conflicts(self, sync_id: str) -> list[str]:
        """Paths left for manual resolution by the last run."""
        return list(self.get_sync_job(sync_id).pending_conflicts)

    # =========================
    # Control and status
    # =========================

    def _resolve_run_id(self, job_id: str) -> str:
        """Map a sync job id to its active run; other ids pass through."""
        if self.engine.get_run(job_id) is not None:
            return job_id
        sync_job = self.store.get_sync_job(job_id)
        if sync_job is None:
            if self.store.get_transfer_job(job_id) is not None:
                raise NotRunningError(f"Transfer job {job_id} has not been started")
            raise JobNotFoundError(f"Job {job_id} not found")
        active = self.engine.active_runs(sync_job.id)
        if not active:
            raise NotRunningError(f"Sync job {sync_job.name} has no active run")
        return active[0].job_id

    def pause(self, job_id: str) -> None:
        """Pause a running transfer job.

        Raises:
            JobNotFoundError: If the job is unknown
            NotRunningError: If the job cannot be paused in its state
        """
        self.engine.pause(self._resolve_run_id(job_id))

    def resume(self, job_id: str) -> None:
        self.engine.resume(self._resolve_run_id(job_id))

    def cancel(self, job_id: str) -> None:
        """Cancel a transfer job, a sync run, or a sync job's active run."""
        self.engine.cancel(self._resolve_run_id(job_id))

    def get_job_status(self, job_id: str) -> JobSnapshot:
        """Return a consistent status snapshot of a job or run.

        For a sync job id the active run is reported, else its last run,
        else a pending snapshot.

        Raises:
            JobNotFoundError: If the id is unknown
        """
        run = self.engine.get_run(job_id)
        if run is not None:
            return run.snapshot()

        stored = self.store.get_run(job_id)
        if stored is not None:
            return stored

        transfer = self.store.get_transfer_job(job_id)
        if transfer is not None:
            return JobSnapshot(
                job_id=transfer.id,
                kind=JobKind.TRANSFER,
                status=transfer.status,
                counters=transfer.counters.copy(),
                started_at=transfer.started_at,
                completed_at=transfer.completed_at,
                error_message=transfer.error_message,
            )

        sync_job = self.store.get_sync_job(job_id)
        if sync_job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        active = self.engine.active_runs(sync_job.id)
        if active:
            return active[0].snapshot()
        if sync_job.last_run_id:
            return self.get_job_status(sync_job.last_run_id)
        return JobSnapshot(
            job_id=sync_job.id,
            kind=JobKind.SYNC,
            status=JobStatus.PENDING,
            counters=JobCounters(),
            conflicts=tuple(sync_job.pending_conflicts),
        )

    def list_jobs(self, kind: Optional[JobKind] = None) -> list[JobRecord]:
        """Stored transfer and sync jobs, oldest first."""
        jobs: list[JobRecord] = []
        if kind in (None, JobKind.TRANSFER):
            jobs.extend(self.store.list_transfer_jobs())
        if kind in (None, JobKind.SYNC):
            jobs.extend(self.store.list_sync_jobs())
        return sorted(jobs, key=lambda j: j.created_at)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobSnapshot:
        """Block until a transfer job or sync run reaches a terminal state."""
        return self.engine.wait(self._resolve_run_id(job_id), timeout)

    def subscribe(
        self, job_id: Optional[str] = None, maxsize: Optional[int] = None
    ) -> Subscription:
        """Event stream of one job (a sync job id covers all its runs)."""
        return self.publisher.subscribe(job_id, maxsize)

    # =========================
    # Lifecycle
    # =========================

    def start(self) -> None:
        """Start the background scheduler sweep."""
        self.scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        """Stop scheduling, cancel active runs and release adapters."""
        self.scheduler.stop(wait=False)
        self.engine.shutdown(wait=wait)
        self.publisher.close()
        self.registry.close()
        logger.debug("Service shut down")

    def __enter__(self) -> "CloudSyncService":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()
