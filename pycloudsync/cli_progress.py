"""CLI progress display for transfer jobs and sync runs.

This module provides a Rich-based progress display fed by an event
subscription of the job engine.
"""

from typing import TYPE_CHECKING, Optional

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)

from .events import Subscription
from .models import EventType, JobSnapshot, ProgressEvent
from .utils import base_name, format_size

if TYPE_CHECKING:
    from .service import CloudSyncService

POLL_INTERVAL = 0.2  # seconds


class JobProgressDisplay:
    """Rich-based progress display for one job run.

    The bar tracks bytes; the text column shows the file counters:
    - Files: processed files / total files
    - Size: transferred size / total size
    """

    def __init__(self) -> None:
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    @staticmethod
    def _format_counters(snapshot: JobSnapshot) -> str:
        c = snapshot.counters
        files_str = f"{c.files_processed}/{c.files_total} files"
        if c.files_failed:
            files_str += f" ({c.files_failed} failed)"
        size_str = f"{format_size(c.bytes_done)}/{format_size(c.bytes_total)}"
        return f"{files_str}, {size_str}"

    def handle_event(self, event: ProgressEvent) -> None:
        """Update the display from a progress event."""
        if self._progress is None or self._task is None:
            return

        counters = event.snapshot.counters
        description = None
        if event.event_type == EventType.STATUS_CHANGED:
            description = event.status.value.capitalize()
        elif event.path and event.event_type != EventType.BYTES_TRANSFERRED:
            description = base_name(event.path) or event.path

        self._progress.update(
            self._task,
            total=counters.bytes_total or None,
            completed=counters.bytes_done,
            job_info=self._format_counters(event.snapshot),
            **({"description": description} if description else {}),
        )

    def __enter__(self) -> "JobProgressDisplay":
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("[cyan]{task.fields[job_info]}"),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            refresh_per_second=4,
        )
        self._progress.__enter__()
        self._task = self._progress.add_task(
            "Planning...", total=None, job_info="0/0 files, 0 B/0 B"
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._progress is not None:
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._task = None


def follow_run(
    service: "CloudSyncService",
    subscription: Subscription,
    run_id: str,
    show_progress: bool = True,
) -> JobSnapshot:
    """Wait for a run to finish, showing its progress.

    The subscription must have been opened before the run was started so
    that no event is missed; it is closed on return.

    Returns:
        Final snapshot of the run
    """
    try:
        if not show_progress:
            return service.wait(run_id)

        with JobProgressDisplay() as display:
            while True:
                event = subscription.get(timeout=POLL_INTERVAL)
                if event is not None:
                    if event.job_id == run_id:
                        display.handle_event(event)
                    continue
                if service.get_job_status(run_id).status.is_terminal:
                    break
        return service.wait(run_id)
    finally:
        subscription.close()
