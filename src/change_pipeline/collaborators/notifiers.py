"""Event notifier sinks."""

from __future__ import annotations

import logging
import threading

from change_pipeline.models import Event

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Default sink: one log line per event."""

    def publish(self, event: Event) -> None:
        logger.info(
            "pipeline_event id=%d kind=%s subject_id=%s payload=%s",
            event.event_id,
            event.kind,
            event.subject_id,
            event.payload,
        )


class InMemoryNotifier:
    """Collect published events in order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[Event] = []

    def publish(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[Event]:
        with self._lock:
            return list(self._events)

    def kinds(self, subject_id: str | None = None) -> list[str]:
        return [
            event.kind
            for event in self.events
            if subject_id is None or event.subject_id == subject_id
        ]
