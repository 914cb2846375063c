"""Named background operations and a de-duplicating work queue."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Hashable

log = logging.getLogger(__name__)

INITIAL_DURATION_BEFORE_RETRY = 0.5
MAX_DURATION_BEFORE_RETRY = 122.0


class AlreadyRunningError(RuntimeError):
    """An operation with the same name is still running."""


class BackoffError(RuntimeError):
    """An operation with the same name failed recently and must wait."""


@dataclass
class _Operation:
    pending: bool
    last_error: BaseException | None = None
    last_error_time: float = 0.0
    duration_before_retry: float = 0.0


class OperationMap:
    """Runs operations in threads, at most one per name.

    With exponential backoff on, a failed operation cannot be started again
    under the same name until its retry delay has passed; the delay doubles on
    every further failure up to a maximum.
    """

    def __init__(
        self,
        exponential_backoff_on_error: bool = True,
        initial_delay: float = INITIAL_DURATION_BEFORE_RETRY,
        max_delay: float = MAX_DURATION_BEFORE_RETRY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.exponential_backoff_on_error = exponential_backoff_on_error
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._clock = clock
        self._operations: dict[str, _Operation] = {}
        self._cond = threading.Condition()

    def run(self, name: str, operation: Callable[[], Any]) -> None:
        """Start ``operation`` in a background thread under ``name``.

        Raises AlreadyRunningError or BackoffError when it may not start.
        """
        with self._cond:
            existing = self._operations.get(name)
            if existing is not None:
                if existing.pending:
                    raise AlreadyRunningError(
                        f"Failed to create operation with name {name!r}. "
                        "An operation with that name is already executing."
                    )
                retry_at = existing.last_error_time + existing.duration_before_retry
                if self._clock() < retry_at:
                    raise BackoffError(
                        f"Operation for {name!r} failed. No retries permitted until "
                        f"{existing.duration_before_retry:g}s after the last error "
                        f"({existing.last_error})."
                    )
                existing.pending = True
            else:
                self._operations[name] = _Operation(pending=True)
        thread = threading.Thread(
            target=self._execute, args=(name, operation), name=f"operation-{name}", daemon=True
        )
        thread.start()

    def _execute(self, name: str, operation: Callable[[], Any]) -> None:
        error: BaseException | None = None
        try:
            operation()
        except Exception as exc:  # noqa: BLE001 - failures are recorded, not lost
            error = exc
            log.error("operation %r failed: %s", name, exc)
        self._finish(name, error)

    def _finish(self, name: str, error: BaseException | None) -> None:
        with self._cond:
            entry = self._operations.get(name)
            if error is None or not self.exponential_backoff_on_error or entry is None:
                self._operations.pop(name, None)
            else:
                entry.pending = False
                entry.last_error = error
                entry.last_error_time = self._clock()
                if entry.duration_before_retry == 0:
                    entry.duration_before_retry = self.initial_delay
                else:
                    entry.duration_before_retry = min(
                        entry.duration_before_retry * 2, self.max_delay
                    )
            self._cond.notify_all()

    def is_running(self, name: str) -> bool:
        """True if an operation with ``name`` is executing."""
        with self._cond:
            entry = self._operations.get(name)
            return entry is not None and entry.pending

    def wait_for_completion(self) -> None:
        """Block until no operation is executing."""
        with self._cond:
            self._cond.wait_for(
                lambda: not any(op.pending for op in self._operations.values())
            )


class WorkQueue:
    """FIFO queue of keys in which a key waits at most once.

    A key added while it is being processed is queued again once ``done`` is
    called for it. ``get`` blocks until a key is available and returns None
    after ``shut_down`` once the queue is drained.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        self._cond = threading.Condition()

    def add(self, item: Hashable) -> None:
        """Queue ``item`` unless it is already waiting."""
        if item is None:
            raise ValueError("None cannot be queued")
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> Hashable | None:
        """Take the next item, or None when the queue is shut down and empty."""
        with self._cond:
            self._cond.wait_for(lambda: bool(self._queue) or self._shutting_down)
            if not self._queue:
                return None
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    def done(self, item: Hashable) -> None:
        """Mark ``item`` processed; requeue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting items and wake every waiting ``get``."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        """True once ``shut_down`` was called."""
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)