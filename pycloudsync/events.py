"""Process-wide fan-out of job progress events."""

import logging
import threading
from collections import deque
from collections.abc import Iterator
from typing import Callable, Optional

from .models import ProgressEvent
from .utils import DEFAULT_EVENT_BUFFER_SIZE

logger = logging.getLogger(__name__)


class Subscription:
    """Bounded per-subscriber event buffer.

    When the buffer is full the oldest unread event is discarded, so a slow
    reader never blocks the publisher. ``dropped`` counts discarded events.
    """

    def __init__(
        self,
        publisher: "EventPublisher",
        job_id: Optional[str] = None,
        maxsize: int = DEFAULT_EVENT_BUFFER_SIZE,
    ):
        self._publisher = publisher
        self.job_id = job_id
        self.maxsize = maxsize
        self.dropped = 0
        self._buffer: deque[ProgressEvent] = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: ProgressEvent) -> bool:
        if self.job_id is None:
            return True
        return self.job_id in (event.job_id, event.snapshot.parent_id)

    def offer(self, event: ProgressEvent) -> None:
        """Append an event without blocking (drop-oldest on overflow)."""
        with self._cond:
            if self._closed:
                return
            if len(self._buffer) == self.maxsize:
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 100 == 0:
                    logger.warning(
                        f"Subscriber buffer full, dropped {self.dropped} event(s)"
                    )
            self._buffer.append(event)
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Pop the oldest buffered event.

        Args:
            timeout: Seconds to wait for an event (None waits until one
                arrives or the subscription is closed)

        Returns:
            The event, or None on timeout or when closed and drained
        """
        with self._cond:
            if not self._buffer and not self._closed:
                self._cond.wait_for(lambda: self._buffer or self._closed, timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> list[ProgressEvent]:
        """Pop all buffered events without waiting."""
        with self._cond:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def close(self) -> None:
        """Stop receiving events; buffered events can still be read."""
        self._publisher.unsubscribe(self)
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def __len__(self) -> int:
        with self._cond:
            return len(self._buffer)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class EventPublisher:
    """Delivers every published event to every matching subscription.

    Examples:
        >>> publisher = EventPublisher()
        >>> sub = publisher.subscribe(job_id)
        >>> for event in sub:
        ...     print(event.event_type, event.snapshot.counters.files_done)
    """

    def __init__(self, buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._threads: list[threading.Thread] = []

    def subscribe(
        self, job_id: Optional[str] = None, maxsize: Optional[int] = None
    ) -> Subscription:
        """Create a subscription.

        Args:
            job_id: Only receive events of this job (or of runs whose parent
                is this sync job); None receives everything
            maxsize: Buffer size (publisher default if None)
        """
        subscription = Subscription(self, job_id, maxsize or self.buffer_size)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def subscribe_callback(
        self,
        callback: Callable[[ProgressEvent], None],
        job_id: Optional[str] = None,
        name: str = "event-subscriber",
    ) -> Subscription:
        """Deliver events to a callback on a dedicated thread.

        Exceptions raised by the callback are logged and do not stop
        delivery.
        """
        subscription = self.subscribe(job_id)

        def _deliver() -> None:
            for event in subscription:
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Event subscriber {name} failed")

        thread = threading.Thread(target=_deliver, name=name, daemon=True)
        thread.start()
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            if subscription.matches(event):
                subscription.offer(event)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def close(self, timeout: float = 5.0) -> None:
        """Close all subscriptions and wait for callback threads to finish."""
        with self._lock:
            subscriptions = list(self._subscriptions)
            threads = list(self._threads)
            self._threads.clear()
        for subscription in subscriptions:
            subscription.close()
        for thread in threads:
            thread.join(timeout)
