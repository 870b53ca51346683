from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from change_pipeline.collaborators.notifiers import InMemoryNotifier
from change_pipeline.config.settings import Settings
from change_pipeline.coordinator import PipelineCoordinator
from change_pipeline.models import (
    ProposedChange,
    RunMode,
    RunnerOutcome,
    StagedFile,
    Task,
)
from change_pipeline.storage.memory import InMemoryChangeStore

CRM_FILES = [
    StagedFile(
        path="frontend/src/pages/Crm.jsx",
        content="export default function Crm() { return <h1>CRM</h1>; }\n",
        test_instructions="Open /crm and verify the CRM heading.",
    ),
    StagedFile(
        path="backend/src/routes/crmRoutes.js",
        content="module.exports = require('express').Router();\n",
    ),
]


def passing() -> RunnerOutcome:
    return RunnerOutcome(passed=True)


def failing(diagnostic: str) -> RunnerOutcome:
    return RunnerOutcome(passed=False, diagnostic=diagnostic)


class ScriptedRunner:
    """Browser runner double that replays outcomes; the last one repeats."""

    def __init__(self, *outcomes: RunnerOutcome | Exception) -> None:
        self.outcomes = list(outcomes) or [passing()]
        self.calls: list[dict[str, Any]] = []
        self.started = threading.Event()
        self.release: threading.Event | None = None
        self.stopped = 0

    def block_until_released(self) -> threading.Event:
        self.release = threading.Event()
        return self.release

    def run(
        self,
        script_path: Path,
        mode: RunMode,
        test_timeout_ms: int,
        stop_event: threading.Event | None = None,
    ) -> RunnerOutcome:
        workspace = script_path.parent
        self.calls.append(
            {
                "script": script_path.read_text(encoding="utf-8"),
                "mode": mode,
                "timeout_ms": test_timeout_ms,
                "stop_event": stop_event,
                "workspace": workspace,
                "files": sorted(
                    path.relative_to(workspace).as_posix()
                    for path in workspace.rglob("*")
                    if path.is_file()
                ),
            }
        )
        self.started.set()
        if self.release is not None:
            deadline = time.monotonic() + 10
            while not self.release.wait(timeout=0.01) and time.monotonic() < deadline:
                if stop_event is not None and stop_event.is_set():
                    self.stopped += 1
                    return failing("Browser run stopped")
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class StubGenerator:
    def __init__(self, files: list[StagedFile] | None = None, error: Exception | None = None) -> None:
        self.files = list(CRM_FILES if files is None else files)
        self.error = error
        self.calls: list[tuple[str, list[str]]] = []

    def generate(self, prompt: str, hint_targets: list[str]) -> list[StagedFile]:
        self.calls.append((prompt, list(hint_targets)))
        if self.error is not None:
            raise self.error
        return list(self.files)


class RecordingApplier:
    def __init__(self, originals: dict[str, str] | None = None) -> None:
        self.originals = dict(originals or {})
        self.applied: list[str] = []
        self.rolled_back: list[str] = []
        self.apply_error: Exception | None = None
        self.rollback_error: Exception | None = None

    def snapshot(self, paths: list[str]) -> dict[str, str]:
        return {path: self.originals[path] for path in paths if path in self.originals}

    def apply(self, task_id: str) -> None:
        if self.apply_error is not None:
            raise self.apply_error
        self.applied.append(task_id)

    def rollback(self, task_id: str) -> None:
        if self.rollback_error is not None:
            raise self.rollback_error
        self.rolled_back.append(task_id)


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class PipelineHarness:
    coordinator: PipelineCoordinator
    store: InMemoryChangeStore
    runner: ScriptedRunner
    generator: StubGenerator
    applier: RecordingApplier
    notifier: InMemoryNotifier
    clock: ManualClock
    sleeps: list[float] = field(default_factory=list)

    def staged_task(
        self,
        prompt: str = "Build CRM system",
        files: list[StagedFile] | None = None,
        proposed_changes: list[ProposedChange] | None = None,
    ) -> Task:
        task = self.coordinator.submit_task(prompt)
        return self.coordinator.stage_task(task.task_id, files or CRM_FILES, proposed_changes)

    def pending_task(self, proposed_changes: list[ProposedChange] | None = None) -> Task:
        task = self.staged_task(proposed_changes=proposed_changes)
        outcome = self.coordinator.run_test(task.task_id)
        assert outcome.report.success
        return outcome.task


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "workspace_root": str(tmp_path / "workspaces"),
        "project_root": str(tmp_path / "project"),
        "store_retry_backoff_s": 0.0,
        "attempt_timeout_s": 5.0,
        "collaborator_timeout_s": 5.0,
        "lock_timeout_s": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def make_harness(tmp_path: Path) -> Callable[..., PipelineHarness]:
    def _build(
        *,
        runner: ScriptedRunner | None = None,
        generator: StubGenerator | None = None,
        applier: RecordingApplier | None = None,
        **setting_overrides: Any,
    ) -> PipelineHarness:
        store = InMemoryChangeStore()
        notifier = InMemoryNotifier()
        clock = ManualClock()
        sleeps: list[float] = []
        runner = runner or ScriptedRunner()
        generator = generator or StubGenerator()
        applier = applier or RecordingApplier()
        coordinator = PipelineCoordinator(
            store=store,
            generator=generator,
            runner=runner,
            applier=applier,
            notifier=notifier,
            settings=make_settings(tmp_path, **setting_overrides),
            clock=clock,
            sleep=sleeps.append,
        )
        return PipelineHarness(
            coordinator=coordinator,
            store=store,
            runner=runner,
            generator=generator,
            applier=applier,
            notifier=notifier,
            clock=clock,
            sleeps=sleeps,
        )

    return _build


@pytest.fixture
def harness(make_harness: Callable[..., PipelineHarness]) -> PipelineHarness:
    return make_harness()
