"""Time-windowed idempotency keys for task submission."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable

PENDING = "<pending>"


class IdempotencyWindow:
    """Remember idempotency keys for ``window_s`` seconds.

    Keys are claimed before the task is created and bound to the task id once the
    store accepted it, so two concurrent submissions with one key create a single
    task. Expired keys are purged lazily on every access.
    """

    def __init__(self, window_s: float = 60.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[float, str]] = OrderedDict()

    def claim(self, key: str) -> str | None:
        """Reserve ``key``; return the existing task id (or ``PENDING``) when already seen."""
        with self._lock:
            self._purge()
            entry = self._entries.get(key)
            if entry is not None:
                return entry[1]
            self._entries[key] = (self._clock() + self.window_s, PENDING)
            return None

    def bind(self, key: str, task_id: str) -> None:
        with self._lock:
            expires_at, _ = self._entries.get(key, (self._clock() + self.window_s, PENDING))
            self._entries[key] = (expires_at, task_id)

    def release(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._entries)

    def _purge(self) -> None:
        now = self._clock()
        # Insertion order equals expiry order because the window length is fixed.
        while self._entries:
            key, (expires_at, _) = next(iter(self._entries.items()))
            if expires_at > now:
                break
            self._entries.pop(key)
