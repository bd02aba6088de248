"""Tests for the sync scheduler."""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from pycloudsync.exceptions import NotRunningError
from pycloudsync.models import (
    JobStatus,
    Schedule,
    SyncJob,
    SyncJobStatus,
)
from pycloudsync.scheduler import SyncScheduler, compute_next_run, cron_trigger
from pycloudsync.store import InMemoryJobStore

from .conftest import BASE_TIME


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(BASE_TIME)


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def scheduler(engine, store, clock):
    sched = SyncScheduler(engine, store, tick=3600, clock=clock)
    yield sched
    sched.stop()


def sync_job(schedule="interval:15", **kwargs):
    return SyncJob(
        kwargs.pop("name", "docs"),
        kwargs.pop("source", "src"),
        "/s",
        "dst",
        "/d",
        schedule=Schedule.parse(schedule),
        **kwargs,
    )


class TestComputeNextRun:
    """Tests for compute_next_run function."""

    def test_interval_from_last_run(self):
        assert compute_next_run(Schedule.every(15), BASE_TIME) == BASE_TIME + timedelta(
            minutes=15
        )

    def test_interval_without_last_run_uses_now(self):
        now = BASE_TIME + timedelta(hours=2)
        assert compute_next_run(Schedule.every(5), None, now) == now + timedelta(
            minutes=5
        )

    def test_manual_never_scheduled(self):
        assert compute_next_run(Schedule(), BASE_TIME) is None

    def test_cron_next_fire_time(self):
        schedule = Schedule.parse("cron:0 3 * * *")
        next_run = compute_next_run(schedule, BASE_TIME)
        assert next_run == datetime(2024, 1, 16, 3, 0, tzinfo=timezone.utc)

    def test_cron_at_fire_time_moves_to_next(self):
        schedule = Schedule.parse("cron:0 3 * * *")
        fire = datetime(2024, 1, 16, 3, 0, tzinfo=timezone.utc)
        assert compute_next_run(schedule, fire) == fire + timedelta(days=1)

    def test_invalid_cron_expression(self):
        with pytest.raises(ValueError):
            cron_trigger("not a cron")


class TestSweep:
    """Tests for SyncScheduler.sweep."""

    def test_new_job_gets_first_run_time(self, scheduler, store, clock):
        job = sync_job()
        scheduler.schedule_job(job)
        assert job.next_run_at == BASE_TIME + timedelta(minutes=15)
        assert store.get_sync_job(job.id) is job

    def test_job_not_due_is_not_started(self, scheduler, clock, source):
        source.add_file("/s/a.txt", b"a")
        scheduler.schedule_job(sync_job())
        clock.advance(minutes=10)
        assert scheduler.sweep() == []

    def test_due_job_runs_and_reschedules(self, scheduler, engine, clock, source):
        source.add_file("/s/a.txt", b"a")
        job = sync_job()
        scheduler.schedule_job(job)
        clock.advance(minutes=16)

        started = scheduler.sweep()
        assert len(started) == 1
        snapshot = engine.wait(started[0], timeout=5)

        assert snapshot.status == JobStatus.COMPLETED
        assert job.last_run_id == started[0]
        assert job.status == SyncJobStatus.ACTIVE
        assert job.last_run_at == snapshot.completed_at
        assert job.next_run_at == snapshot.completed_at + timedelta(minutes=15)
        assert not scheduler.is_running(job.id)

    def test_manual_and_disabled_jobs_are_ignored(self, scheduler, clock, source):
        source.add_folder("/s")
        scheduler.schedule_job(sync_job(schedule="manual", name="manual"))
        scheduler.schedule_job(sync_job(name="off", enabled=False))
        clock.advance(days=1)
        assert scheduler.sweep() == []

    def test_at_most_one_run_per_job(self, scheduler, engine, clock, source):
        source.add_file("/s/a.txt", b"a")
        release = threading.Event()
        entered = threading.Event()
        original = source._download_file

        def blocking(path, offset):
            entered.set()
            release.wait(5)
            return original(path, offset)

        source._download_file = blocking
        job = sync_job()
        scheduler.schedule_job(job)
        clock.advance(minutes=20)

        first = scheduler.sweep()
        assert entered.wait(5)
        assert scheduler.sweep() == []
        assert job.status == SyncJobStatus.RUNNING
        with pytest.raises(NotRunningError, match="already running"):
            scheduler.trigger(job)

        release.set()
        engine.wait(first[0], timeout=5)
        assert job.status == SyncJobStatus.ACTIVE

    def test_failed_run_marks_error_and_advances(self, scheduler, engine, clock):
        job = sync_job(source="ghost")
        scheduler.schedule_job(job)
        clock.advance(minutes=15)

        started = scheduler.sweep()
        snapshot = engine.wait(started[0], timeout=5)

        assert snapshot.status == JobStatus.FAILED
        assert job.status == SyncJobStatus.ERROR
        assert "ghost" in job.last_error
        assert job.next_run_at == job.last_run_at + timedelta(minutes=15)

    def test_manual_conflicts_recorded_on_job(
        self, scheduler, engine, source, destination
    ):
        source.add_file("/s/a.txt", b"one", modified_at=BASE_TIME)
        destination.add_file("/d/a.txt", b"two!", modified_at=BASE_TIME)
        job = SyncJob(
            "docs",
            "src",
            "/s",
            "dst",
            "/d",
            direction="bidirectional",
            conflict_policy="manual",
        )
        scheduler.schedule_job(job)

        engine.wait(scheduler.trigger(job), timeout=5)
        assert job.pending_conflicts == ["/a.txt"]

    def test_sync_state_reaches_stored_record(self, engine, clock, source):
        """Stores that hand out copies still receive the run's sync state."""

        class CopyingStore(InMemoryJobStore):
            def save_sync_job(self, job):
                super().save_sync_job(replace(job))

            def get_sync_job(self, job_id):
                job = super().get_sync_job(job_id)
                return replace(job) if job else None

        store = CopyingStore()
        sched = SyncScheduler(engine, store, tick=3600, clock=clock)
        source.add_file("/s/a.txt", b"a")
        job = sync_job(schedule="manual")
        sched.schedule_job(job)

        engine.wait(sched.trigger(job), timeout=5)
        sched.stop()

        stored = store.get_sync_job(job.id)
        assert list(stored.state.synced_files) == ["/a.txt"]
        assert stored.state.last_sync is not None


class TestEnableDisable:
    """Tests for enabling, disabling and manual triggers."""

    def test_disable_clears_next_run(self, scheduler, store):
        job = sync_job()
        scheduler.schedule_job(job)
        scheduler.set_enabled(job, False)
        assert job.status == SyncJobStatus.DISABLED
        assert job.next_run_at is None
        assert store.get_sync_job(job.id).enabled is False

    def test_enable_schedules_from_now(self, scheduler, clock):
        job = sync_job(enabled=False)
        scheduler.schedule_job(job)
        assert job.next_run_at is None

        clock.advance(hours=1)
        scheduler.set_enabled(job, True)
        assert job.status == SyncJobStatus.ACTIVE
        assert job.next_run_at == clock.now + timedelta(minutes=15)

    def test_trigger_disabled_job_rejected(self, scheduler):
        job = sync_job(enabled=False)
        scheduler.schedule_job(job)
        with pytest.raises(NotRunningError, match="disabled"):
            scheduler.trigger(job)

    def test_trigger_manual_job(self, scheduler, engine, source, destination):
        source.add_file("/s/a.txt", b"a")
        job = sync_job(schedule="manual")
        scheduler.schedule_job(job)

        run_id = scheduler.trigger(job)
        engine.wait(run_id, timeout=5)

        assert destination.read("/d/a.txt") == b"a"
        assert job.next_run_at is None
        assert job.last_run_at is not None


class TestBackgroundSweep:
    """Tests for the apscheduler-driven tick."""

    def test_start_and_stop(self, scheduler):
        assert not scheduler.started
        scheduler.start()
        scheduler.start()
        assert scheduler.started
        scheduler.stop()
        assert not scheduler.started
