"""Per-task mutual exclusion and the manual-run registry."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager

from change_pipeline.errors import ConcurrentManualRun, PreconditionFailed


class TaskLocks:
    """Serialize lifecycle changes per task id."""

    def __init__(self, *, timeout_s: float = 30.0) -> None:
        self.timeout_s = timeout_s
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, task_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[task_id] = lock
            return lock

    @contextmanager
    def hold(self, task_id: str) -> Iterator[None]:
        lock = self._lock_for(task_id)
        if not lock.acquire(timeout=self.timeout_s):
            raise PreconditionFailed(
                f"Task {task_id} is busy; lock not acquired within {self.timeout_s:.1f}s",
                task_id=task_id,
            )
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def hold_many(self, task_ids: Iterable[str]) -> Iterator[None]:
        # Sorted acquisition keeps two bulk requests from deadlocking each other.
        with ExitStack() as stack:
            for task_id in sorted(set(task_ids)):
                stack.enter_context(self.hold(task_id))
            yield

    def forget(self, task_id: str) -> None:
        with self._guard:
            self._locks.pop(task_id, None)


class ManualRunRegistry:
    """At most one interactive browser per task; each claim carries a cancel token."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._active: dict[str, threading.Event] = {}

    @contextmanager
    def claim(self, task_id: str) -> Iterator[threading.Event]:
        with self._guard:
            if task_id in self._active:
                raise ConcurrentManualRun(task_id)
            token = threading.Event()
            self._active[task_id] = token
        try:
            yield token
        finally:
            with self._guard:
                if self._active.get(task_id) is token:
                    del self._active[task_id]

    def is_active(self, task_id: str) -> bool:
        with self._guard:
            return task_id in self._active

    def cancel(self, task_id: str) -> bool:
        with self._guard:
            token = self._active.get(task_id)
        if token is None:
            return False
        token.set()
        return True
