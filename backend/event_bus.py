"""
Hand-off between the fetcher and the parser.

The fetcher publishes FileUpdated / Fetched messages and returns to the
sweep right away. ParseDispatcher drains the queue on its own thread and
runs each parse on a small pool, one parse at a time per course.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Union

from scraper.models import Fetched, FileUpdated

logger = logging.getLogger(__name__)

Event = Union[FileUpdated, Fetched]

_STOP = object()


class EventQueue:
    """Thread-safe FIFO of pipeline events."""

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()

    def publish(self, event: Event) -> None:
        logger.info(f"Event published: {type(event).__name__} for {event.course_code}-{event.grade}")
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None):
        return self._queue.get(timeout=timeout)

    def close(self) -> None:
        """Wake the consumer and tell it to stop after queued events."""
        self._queue.put(_STOP)

    def __len__(self) -> int:
        return self._queue.qsize()


class ParseDispatcher:
    """Consumes events and feeds them to a TimetableParser."""

    def __init__(self, events: EventQueue, parser, max_workers: int = 2):
        self._events = events
        self._parser = parser
        self._max_workers = max(1, max_workers)
        self._pool: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._course_locks: dict[tuple, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="parse")
        self._thread = threading.Thread(target=self._run, name="parse-dispatcher", daemon=True)
        self._thread.start()
        logger.info(f"Parse dispatcher started with {self._max_workers} workers")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Finish queued events, then stop the consumer thread and the pool."""
        if self._thread is None:
            return
        self._events.close()
        self._thread.join(timeout)
        if self._pool is not None:
            self._pool.shutdown(wait=True)
        self._thread = None
        self._pool = None
        logger.info("Parse dispatcher stopped")

    def _run(self) -> None:
        while True:
            event = self._events.get()
            if event is _STOP:
                break
            self._pool.submit(self._handle, event)

    def _lock_for(self, event: Event) -> threading.Lock:
        key = (event.course_code, event.grade, event.project)
        with self._locks_guard:
            return self._course_locks.setdefault(key, threading.Lock())

    def _handle(self, event: Event) -> None:
        with self._lock_for(event):
            try:
                if isinstance(event, FileUpdated):
                    self._parser.handle_file_updated(event)
                elif isinstance(event, Fetched):
                    self._parser.handle_fetched(event)
                else:
                    logger.warning(f"Ignoring unknown event {event!r}")
            except Exception:
                logger.exception(f"Handling {type(event).__name__} for {event.course_code}-{event.grade} failed")
