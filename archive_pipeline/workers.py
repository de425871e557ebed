"""Bounded thread pools with submitter backpressure and cancellation."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)


class BoundedPool:
    """A ``ThreadPoolExecutor`` that never queues more than *max_workers* tasks.

    ``submit`` blocks while the pool is saturated, so callers feel
    backpressure instead of building an unbounded backlog. Once
    *cancel_event* is set, ``submit`` returns None and work already running
    is left to finish.
    """

    def __init__(
        self,
        name: str,
        max_workers: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"{name}: max_workers must be >= 1, got {max_workers}")
        self.name = name
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()
        self._slots = threading.BoundedSemaphore(max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=name,
        )
        self._lock = threading.Lock()
        self._futures: list[Future] = []
        self._active = 0
        self.peak_active = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[Future]:
        if self.cancelled:
            return None
        # Poll so a cancel request also releases a blocked submitter.
        while not self._slots.acquire(timeout=0.2):
            if self.cancelled:
                return None
        if self.cancelled:
            self._slots.release()
            return None

        def _run() -> Any:
            with self._lock:
                self._active += 1
                self.peak_active = max(self.peak_active, self._active)
            try:
                return fn(*args, **kwargs)
            except Exception:
                log.exception("%s: task %r raised", self.name, fn)
                raise
            finally:
                with self._lock:
                    self._active -= 1
                self._slots.release()

        future = self._executor.submit(_run)
        with self._lock:
            self._futures.append(future)
        return future

    def wait(self) -> None:
        """Block until every submitted task has settled."""
        while True:
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                break
            wait(pending)
        with self._lock:
            self._futures = []

    def shutdown(self) -> None:
        self.wait()
        self._executor.shutdown(wait=True)
        log.debug("%s: shut down (peak concurrency %s)", self.name, self.peak_active)

    def __enter__(self) -> "BoundedPool":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()
