"""Ordered, fire-and-forget status events."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from change_pipeline.collaborators.base import EventNotifier
from change_pipeline.models import Event, utcnow

logger = logging.getLogger(__name__)

TASK_CREATED = "task_created"
TASK_STATUS_CHANGED = "task_status_changed"
TASK_UPDATED = "task_updated"
TASK_DELETED = "task_deleted"
TASKS_CLEARED = "tasks_cleared"
TEST_ATTEMPT_FAILED = "test_attempt_failed"
TEST_COMPLETED = "test_completed"
PROPOSAL_CREATED = "proposal_created"
PROPOSAL_UPDATED = "proposal_updated"


class EventPublisher:
    """Stamp events with strictly increasing ids and hand them to the notifier.

    Publication happens synchronously in production order; a notifier failure is
    logged and never propagates into the pipeline operation that produced it.
    """

    def __init__(
        self,
        notifier: EventNotifier,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._notifier = notifier
        self._now = now
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def publish(self, kind: str, subject_id: str, payload: dict[str, Any] | None = None) -> Event:
        with self._lock:
            event = Event(
                event_id=next(self._ids),
                kind=kind,
                subject_id=subject_id,
                payload=dict(payload or {}),
                timestamp=self._now(),
            )
            try:
                self._notifier.publish(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "event_publish event=failed kind=%s subject_id=%s event_id=%d reason=%s",
                    kind,
                    subject_id,
                    event.event_id,
                    exc,
                )
        return event


class OrderedEventConsumer:
    """Downstream helper: accept each subject's events once and in increasing id order."""

    def __init__(self) -> None:
        self._last_seen: dict[str, int] = {}
        self.accepted: list[Event] = []

    def offer(self, event: Event) -> bool:
        last = self._last_seen.get(event.subject_id, 0)
        if event.event_id <= last:
            return False
        self._last_seen[event.subject_id] = event.event_id
        self.accepted.append(event)
        return True
