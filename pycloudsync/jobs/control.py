"""Cooperative cancellation and pause for running jobs."""

import threading
from typing import Optional

from ..exceptions import JobCancelled


class JobControl:
    """Cancellation token and pause gate shared by a job's workers.

    Workers call :meth:`checkpoint` between items, never while streaming a
    file, so cancellation takes effect after the current item finishes.
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._running = threading.Event()
        self._running.set()
        self._lock = threading.Lock()
        self.failure: Optional[BaseException] = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        # Wake paused workers so they can observe the cancellation
        self._running.set()

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def fail(self, error: BaseException) -> None:
        """Abort the job because of an unrecoverable error."""
        with self._lock:
            if self.failure is None:
                self.failure = error
        self.cancel()

    def checkpoint(self) -> None:
        """Block while paused; raise JobCancelled once cancelled."""
        self._running.wait()
        if self._cancelled.is_set():
            raise JobCancelled("Job cancelled")
