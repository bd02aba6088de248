"""Scheduler that admits due sync runs into the job engine.

This module provides:
- next-run computation for interval and cron schedules
- a sweep that starts every due, enabled sync job at most once at a time
- a background tick driven by apscheduler
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .exceptions import NotRunningError
from .jobs.engine import JobEngine
from .models import (
    JobSnapshot,
    JobStatus,
    Schedule,
    ScheduleKind,
    SyncJob,
    SyncJobStatus,
)
from .store import JobStore
from .utils import DEFAULT_SCHEDULER_TICK, utcnow

logger = logging.getLogger(__name__)


def cron_trigger(expression: str) -> CronTrigger:
    """Build a UTC trigger from a five-field crontab expression.

    Raises:
        ValueError: If the expression is malformed
    """
    return CronTrigger.from_crontab(expression, timezone="UTC")


def compute_next_run(
    schedule: Schedule,
    last_run_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """Compute when a sync job should run next.

    Args:
        schedule: The job's schedule
        last_run_at: End of the previous run (None if it never ran)
        now: Reference time used when the job never ran

    Returns:
        Next run time, or None for manual schedules
    """
    base = last_run_at or now or utcnow()
    if schedule.kind == ScheduleKind.INTERVAL:
        return base + timedelta(minutes=schedule.interval_minutes or 0)
    if schedule.kind == ScheduleKind.CRON and schedule.cron:
        # Strictly after the base so a run at a fire time is not repeated
        return cron_trigger(schedule.cron).get_next_fire_time(
            None, base + timedelta(seconds=1)
        )
    return None


class SyncScheduler:
    """Periodic sweep over stored sync jobs.

    A run failure marks the job ``error`` and still advances
    ``next_run_at`` on the normal schedule; the whole job is never retried
    in a loop.
    """

    def __init__(
        self,
        engine: JobEngine,
        store: JobStore,
        tick: float = DEFAULT_SCHEDULER_TICK,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the scheduler.

        Args:
            engine: Job engine that executes the runs
            store: Store holding the sync jobs
            tick: Seconds between sweeps when started in the background
            clock: Time source (replaced in tests)
        """
        self.engine = engine
        self.store = store
        self.tick = tick
        self._clock = clock
        self._lock = threading.Lock()
        self._running: set[str] = set()
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def started(self) -> bool:
        return self._scheduler is not None

    def is_running(self, sync_id: str) -> bool:
        with self._lock:
            return sync_id in self._running

    def schedule_job(self, job: SyncJob) -> None:
        """Set the first next-run time of a newly created or enabled job."""
        with self._lock:
            if job.enabled and job.next_run_at is None:
                job.next_run_at = compute_next_run(
                    job.schedule, job.last_run_at, self._clock()
                )
            self.store.save_sync_job(job)

    def set_enabled(self, job: SyncJob, enabled: bool) -> None:
        """Enable or disable a sync job between runs.

        A running job finishes its current run; it is marked disabled when
        that run ends.
        """
        with self._lock:
            job.enabled = enabled
            if enabled:
                if job.status == SyncJobStatus.DISABLED:
                    job.status = SyncJobStatus.ACTIVE
                job.next_run_at = compute_next_run(job.schedule, None, self._clock())
            else:
                job.next_run_at = None
                if job.id not in self._running:
                    job.status = SyncJobStatus.DISABLED
            self.store.save_sync_job(job)
        logger.info(f"Sync job {job.name} {'enabled' if enabled else 'disabled'}")

    def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """Start every enabled sync job whose next run is due.

        Returns:
            Ids of the runs started
        """
        now = now or self._clock()
        started = []
        for job in self.store.list_sync_jobs():
            if not job.enabled or job.schedule.kind == ScheduleKind.MANUAL:
                continue
            if job.next_run_at is None:
                self.schedule_job(job)
                continue
            if job.next_run_at > now:
                continue
            if self.is_running(job.id):
                logger.debug(f"Sync job {job.name} still running, not starting again")
                continue
            run_id = self._launch(job)
            if run_id is not None:
                started.append(run_id)
        if started:
            logger.info(f"Scheduler started {len(started)} sync run(s)")
        return started

    def trigger(self, job: SyncJob) -> str:
        """Start a run immediately, regardless of the schedule.

        Raises:
            NotRunningError: If the job is disabled or already running
        """
        if not job.enabled:
            raise NotRunningError(f"Sync job {job.name} is disabled")
        run_id = self._launch(job)
        if run_id is None:
            raise NotRunningError(f"Sync job {job.name} is already running")
        return run_id

    def _launch(self, job: SyncJob) -> Optional[str]:
        with self._lock:
            if job.id in self._running:
                return None
            self._running.add(job.id)
            job.status = SyncJobStatus.RUNNING
            self.store.save_sync_job(job)

        def finished(snapshot: JobSnapshot) -> None:
            self._on_finished(job, snapshot)

        try:
            run = self.engine.start_sync(job, on_finished=finished)
        except Exception:
            with self._lock:
                self._running.discard(job.id)
                job.status = SyncJobStatus.ERROR
                self.store.save_sync_job(job)
            raise

        with self._lock:
            job.last_run_id = run.job_id
            self.store.save_sync_job(job)
        logger.debug(f"Started run {run.job_id} of sync job {job.name}")
        return run.job_id

    def _on_finished(self, ran: SyncJob, snapshot: JobSnapshot) -> None:
        with self._lock:
            self._running.discard(ran.id)
            job = self.store.get_sync_job(ran.id)
            if job is None:
                return

            job.state = ran.state
            job.last_run_at = snapshot.completed_at or self._clock()
            job.pending_conflicts = list(snapshot.conflicts)
            if snapshot.status == JobStatus.FAILED:
                job.status = SyncJobStatus.ERROR
                job.last_error = snapshot.error_message
            else:
                job.status = (
                    SyncJobStatus.ACTIVE if job.enabled else SyncJobStatus.DISABLED
                )
                job.last_error = None
            job.next_run_at = (
                compute_next_run(job.schedule, job.last_run_at) if job.enabled else None
            )
            self.store.save_sync_job(job)

        logger.info(
            f"Sync job {job.name} run {snapshot.job_id} {snapshot.status.value}, "
            f"next run: {job.next_run_at.isoformat() if job.next_run_at else 'manual'}"
        )

    def _sweep_job(self) -> None:
        """Job function for the scheduled sweep."""
        try:
            self.sweep()
        except Exception:
            logger.exception("Error during scheduled sync sweep")

    def start(self) -> None:
        """Start the background sweep."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._sweep_job,
            trigger=IntervalTrigger(seconds=self.tick),
            id="sync_sweep",
            name="Sync job sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Sync scheduler started (tick: {self.tick:g}s)")

    def stop(self, wait: bool = True) -> None:
        """Stop the background sweep."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Sync scheduler stopped")
