"""Interfaces of the collaborators the pipeline drives but does not own."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol

from change_pipeline.models import Event, RunMode, RunnerOutcome, StagedFile


class CodeGenerator(Protocol):
    def generate(self, prompt: str, hint_targets: list[str]) -> list[StagedFile]: ...


class BrowserRunner(Protocol):
    """Executes one generated test script; ``manual`` runs with a visible browser.

    ``test_timeout_ms`` bounds the whole script. Once ``stop_event`` is set the
    runner must stop the browser and return before the workspace goes away.
    """

    def run(
        self,
        script_path: Path,
        mode: RunMode,
        test_timeout_ms: int,
        stop_event: threading.Event | None = None,
    ) -> RunnerOutcome: ...


class ChangeApplier(Protocol):
    def snapshot(self, paths: list[str]) -> dict[str, str]: ...

    def apply(self, task_id: str) -> None: ...

    def rollback(self, task_id: str) -> None: ...


class EventNotifier(Protocol):
    def publish(self, event: Event) -> None: ...
