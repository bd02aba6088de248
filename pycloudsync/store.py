"""Persistence boundary for jobs and the projector that keeps it current."""

import logging
import threading
from dataclasses import replace
from typing import Optional, Protocol

from .models import (
    EventType,
    JobKind,
    JobSnapshot,
    ProgressEvent,
    SyncJob,
    TransferJob,
)

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    """Durable create/read/update-by-id storage for job records."""

    def save_transfer_job(self, job: TransferJob) -> None: ...

    def get_transfer_job(self, job_id: str) -> Optional[TransferJob]: ...

    def list_transfer_jobs(self) -> list[TransferJob]: ...

    def save_sync_job(self, job: SyncJob) -> None: ...

    def get_sync_job(self, job_id: str) -> Optional[SyncJob]: ...

    def list_sync_jobs(self) -> list[SyncJob]: ...

    def save_run(self, snapshot: JobSnapshot) -> None: ...

    def get_run(self, run_id: str) -> Optional[JobSnapshot]: ...


class InMemoryJobStore:
    """Thread-safe JobStore kept in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._transfers: dict[str, TransferJob] = {}
        self._syncs: dict[str, SyncJob] = {}
        self._runs: dict[str, JobSnapshot] = {}

    def save_transfer_job(self, job: TransferJob) -> None:
        with self._lock:
            self._transfers[job.id] = job

    def get_transfer_job(self, job_id: str) -> Optional[TransferJob]:
        with self._lock:
            return self._transfers.get(job_id)

    def list_transfer_jobs(self) -> list[TransferJob]:
        with self._lock:
            return sorted(self._transfers.values(), key=lambda j: j.created_at)

    def save_sync_job(self, job: SyncJob) -> None:
        with self._lock:
            self._syncs[job.id] = job

    def get_sync_job(self, job_id: str) -> Optional[SyncJob]:
        with self._lock:
            return self._syncs.get(job_id)

    def list_sync_jobs(self) -> list[SyncJob]:
        with self._lock:
            return sorted(self._syncs.values(), key=lambda j: j.created_at)

    def save_run(self, snapshot: JobSnapshot) -> None:
        with self._lock:
            self._runs[snapshot.job_id] = snapshot

    def get_run(self, run_id: str) -> Optional[JobSnapshot]:
        with self._lock:
            return self._runs.get(run_id)


class StoreProjector:
    """Projects progress events onto the stored job records.

    Byte-level progress events are not persisted; item and status events
    write the latest snapshot, and transfer job records take over the
    snapshot's status, counters and timestamps.
    """

    def __init__(self, store: JobStore):
        self.store = store

    def __call__(self, event: ProgressEvent) -> None:
        if event.event_type == EventType.BYTES_TRANSFERRED:
            return
        snapshot = event.snapshot
        self.store.save_run(snapshot)

        if event.job_kind != JobKind.TRANSFER:
            return
        job = self.store.get_transfer_job(event.job_id)
        if job is None:
            logger.debug(f"No stored transfer job for event of {event.job_id}")
            return
        self.store.save_transfer_job(
            replace(
                job,
                status=snapshot.status,
                counters=snapshot.counters.copy(),
                started_at=snapshot.started_at,
                completed_at=snapshot.completed_at,
                error_message=snapshot.error_message,
            )
        )
