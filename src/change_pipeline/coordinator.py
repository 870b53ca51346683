"""Pipeline facade: the only entry point external callers use."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from contextlib import ExitStack
from datetime import datetime
from pathlib import Path
from typing import Any

from change_pipeline.collaborators.applier import FilesystemChangeApplier
from change_pipeline.collaborators.base import (
    BrowserRunner,
    ChangeApplier,
    CodeGenerator,
    EventNotifier,
)
from change_pipeline.collaborators.generators import (
    LLMCodeGenerator,
    TemplateCodeGenerator,
    derive_hint_targets,
)
from change_pipeline.collaborators.llm import ChatCompletionsFileSource
from change_pipeline.collaborators.notifiers import LoggingNotifier
from change_pipeline.collaborators.runner import PlaywrightCliRunner
from change_pipeline.config.settings import Settings
from change_pipeline.dedup import PENDING, IdempotencyWindow
from change_pipeline.errors import (
    Duplicate,
    InvalidPrompt,
    NoStagedFiles,
    PreconditionFailed,
)
from change_pipeline.events import (
    TASK_CREATED,
    TASK_DELETED,
    TASKS_CLEARED,
    TEST_COMPLETED,
    EventPublisher,
)
from change_pipeline.gate import ProposalGate
from change_pipeline.locks import ManualRunRegistry, TaskLocks
from change_pipeline.models import (
    Proposal,
    ProposalStatus,
    ProposedChange,
    RunMode,
    RunOutcome,
    RunReport,
    StagedFile,
    Task,
    TaskStatus,
    utcnow,
)
from change_pipeline.retry import call_with_timeout
from change_pipeline.state_machine import TaskStateMachine
from change_pipeline.storage.base import ChangeStore
from change_pipeline.testing.orchestrator import TestOrchestrator

logger = logging.getLogger(__name__)

TESTABLE_STATUSES = frozenset({TaskStatus.STAGED, TaskStatus.TESTED, TaskStatus.PENDING_APPROVAL})


class PipelineCoordinator:
    """Sequence state-machine, test-harness and gate calls for external requests.

    Lifecycle changes of one task are serialized by a per-task lock. A test run
    holds that lock only while it starts and while it records its result, so a
    delete can proceed mid-run: delete always wins, a manual run is cancelled and
    an automatic run finishes with its result discarded.
    """

    def __init__(
        self,
        *,
        store: ChangeStore,
        generator: CodeGenerator,
        runner: BrowserRunner,
        applier: ChangeApplier,
        notifier: EventNotifier | None = None,
        settings: Settings | None = None,
        now: Callable[[], datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.generator = generator
        self.applier = applier
        self._now = now
        self.publisher = EventPublisher(notifier or LoggingNotifier(), now=now)
        self.locks = TaskLocks(timeout_s=self.settings.lock_timeout_s)
        self.manual_runs = ManualRunRegistry()
        self.dedup = IdempotencyWindow(self.settings.dedup_window_s, clock=clock)
        self.state_machine = TaskStateMachine(store, self.publisher, self.settings, now=now)
        self.orchestrator = TestOrchestrator(
            runner=runner,
            generator=generator,
            settings=self.settings,
            manual_runs=self.manual_runs,
            publisher=self.publisher,
            sleep=sleep,
            clock=clock,
        )
        self.gate = ProposalGate(
            store,
            self.state_machine,
            applier,
            self.publisher,
            self.settings,
            now=now,
        )

    # Submission and staging

    def submit_task(self, prompt: str, idempotency_key: str | None = None) -> Task:
        if not prompt or not prompt.strip():
            raise InvalidPrompt("Prompt must not be empty")
        if idempotency_key:
            existing = self.dedup.claim(idempotency_key)
            if existing is not None:
                logger.info(
                    "task_submit event=duplicate key=%s task_id=%s",
                    idempotency_key,
                    existing,
                )
                raise Duplicate(idempotency_key, None if existing == PENDING else existing)
        now = self._now()
        draft = Task(task_id=str(uuid.uuid4()), prompt=prompt, created_at=now, updated_at=now)
        try:
            task = self._store_call(self.store.create_task, draft)
        except Exception:
            if idempotency_key:
                self.dedup.release(idempotency_key)
            raise
        if idempotency_key:
            self.dedup.bind(idempotency_key, task.task_id)
        logger.info("task_submit event=created task_id=%s", task.task_id)
        self.publisher.publish(TASK_CREATED, task.task_id, {"status": task.status.value})
        return task

    def stage_task(
        self,
        task_id: str,
        files: list[StagedFile] | None = None,
        proposed_changes: list[ProposedChange] | None = None,
    ) -> Task:
        with self.locks.hold(task_id):
            task = self.state_machine.load(task_id)
            if task.status is TaskStatus.STAGED:
                return task
            if task.status is not TaskStatus.CREATED:
                # Delegates the typed rejection to the transition table.
                return self.state_machine.transition(task, TaskStatus.STAGED)

            if files is None:
                files = call_with_timeout(
                    self.generator.generate,
                    task.prompt,
                    derive_hint_targets(task.prompt),
                    timeout_s=self.settings.collaborator_timeout_s,
                    collaborator="code_generator",
                )
            if not files:
                raise NoStagedFiles(f"No staged files produced for task {task_id}", task_id=task_id)
            self.orchestrator.validate(task.model_copy(update={"staged_files": list(files)}))

            paths = [item.path for item in files]
            original = call_with_timeout(
                self.applier.snapshot,
                paths,
                timeout_s=self.settings.collaborator_timeout_s,
                collaborator="change_applier",
            )
            instructions = "\n".join(
                item.test_instructions.strip() for item in files if item.test_instructions.strip()
            )
            return self.state_machine.transition(
                task,
                TaskStatus.STAGED,
                changes={
                    "staged_files": list(files),
                    "original_content": dict(original),
                    "new_content": {item.path: item.content for item in files},
                    "test_instructions": instructions,
                    "proposed_changes": list(proposed_changes or []),
                },
            )

    # Testing

    def run_test(self, task_id: str, mode: RunMode = RunMode.AUTO) -> RunOutcome:
        with ExitStack() as manual_slot:
            with self.locks.hold(task_id):
                task = self.state_machine.load(task_id)
                cancel_event = None
                if mode is RunMode.MANUAL:
                    # Claimed under the task lock so a delete always finds the run.
                    cancel_event = manual_slot.enter_context(self.manual_runs.claim(task_id))
                if task.status is TaskStatus.TESTING:
                    raise PreconditionFailed(f"Task {task_id} is already being tested", task_id=task_id)
                if task.status not in TESTABLE_STATUSES:
                    raise PreconditionFailed(
                        f"Task {task_id} is '{task.status.value}' and cannot be tested",
                        task_id=task_id,
                        status=task.status.value,
                    )
                self.orchestrator.validate(task)
                if task.status is TaskStatus.STAGED:
                    task = self.state_machine.transition(task, TaskStatus.TESTING)
                expected_status = task.status

            try:
                report = self.orchestrator.run_tests(task, mode, cancel_event=cancel_event)
            except Exception as exc:
                self._abort_run(task_id, expected_status, exc)
                raise

            with self.locks.hold(task_id):
                return self._record_run(task, report, expected_status)

    def process_task(
        self,
        prompt: str,
        idempotency_key: str | None = None,
        mode: RunMode = RunMode.AUTO,
    ) -> RunOutcome:
        task = self.submit_task(prompt, idempotency_key)
        self.stage_task(task.task_id)
        return self.run_test(task.task_id, mode)

    def cancel_test(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if not self.manual_runs.cancel(task_id):
            raise PreconditionFailed(f"No manual test run is active for task {task_id}", task_id=task_id)
        logger.info("task_test event=cancel_requested task_id=%s", task_id)
        return task

    # Approval

    def approve_proposal(self, proposal_id: str) -> Proposal:
        proposal = self.gate.load_proposal(proposal_id)
        with self.locks.hold(proposal.task_id):
            return self.gate.approve(proposal_id)

    def deny_proposal(self, proposal_id: str) -> Proposal:
        proposal = self.gate.load_proposal(proposal_id)
        with self.locks.hold(proposal.task_id):
            return self.gate.deny(proposal_id)

    def bulk_approve(self, proposal_ids: list[str]) -> list[Proposal]:
        task_ids = [self.gate.load_proposal(proposal_id).task_id for proposal_id in proposal_ids]
        with self.locks.hold_many(task_ids):
            return self.gate.bulk_approve(proposal_ids)

    def bulk_deny(self, proposal_ids: list[str]) -> list[Proposal]:
        task_ids = [self.gate.load_proposal(proposal_id).task_id for proposal_id in proposal_ids]
        with self.locks.hold_many(task_ids):
            return self.gate.bulk_deny(proposal_ids)

    def approve_task(self, task_id: str) -> Task:
        with self.locks.hold(task_id):
            return self.gate.approve_task(task_id)

    def deny_task(self, task_id: str) -> Task:
        with self.locks.hold(task_id):
            return self.gate.rollback_task(task_id)

    # Deletion

    def delete_task(self, task_id: str) -> Task:
        with self.locks.hold(task_id):
            cancelled = self.manual_runs.cancel(task_id)
            task = self.state_machine.transition(task_id, TaskStatus.DELETED)
        logger.info("task_delete event=deleted task_id=%s cancelled_manual_run=%s", task_id, cancelled)
        self.publisher.publish(TASK_DELETED, task_id, {"cancelled_manual_run": cancelled})
        return task

    def clear_all_tasks(self) -> int:
        """Soft-delete every task, then purge the records; returns the number removed."""
        tasks = self._store_call(self.store.list_tasks, include_deleted=True)
        removed = 0
        for task in tasks:
            with self.locks.hold(task.task_id):
                self.manual_runs.cancel(task.task_id)
                if task.status is not TaskStatus.DELETED:
                    self.state_machine.transition(task.task_id, TaskStatus.DELETED)
                if self._store_call(self.store.delete_task, task.task_id):
                    removed += 1
            self.locks.forget(task.task_id)
        logger.info("task_delete event=cleared count=%d", removed)
        self.publisher.publish(TASKS_CLEARED, "*", {"count": removed})
        return removed

    # Queries

    def get_task(self, task_id: str) -> Task:
        return self.state_machine.load(task_id)

    def get_tasks(self, *, include_deleted: bool = False) -> list[Task]:
        return self._store_call(self.store.list_tasks, include_deleted=include_deleted)

    def get_proposals(
        self,
        *,
        task_id: str | None = None,
        status: ProposalStatus | None = None,
    ) -> list[Proposal]:
        return self._store_call(self.store.list_proposals, task_id=task_id, status=status)

    # Internals

    def _record_run(self, started: Task, report: RunReport, expected_status: TaskStatus) -> RunOutcome:
        task_id = started.task_id
        current = self._store_call(self.store.get_task, task_id)
        if current is None or current.status is not expected_status:
            logger.warning(
                "task_test event=result_discarded task_id=%s expected=%s actual=%s",
                task_id,
                expected_status.value,
                current.status.value if current else "purged",
            )
            return RunOutcome(task=current or started, report=report, discarded=True)

        changes: dict[str, Any] = {
            "test_url": report.artifact_ref,
            "test_attempts": report.attempts,
            "error": report.error,
            "error_class": report.error_class,
        }
        if report.regenerated:
            changes["staged_files"] = list(report.staged_files)

        if report.success:
            if current.status is TaskStatus.TESTING:
                current = self.state_machine.transition(task_id, TaskStatus.TESTED, changes)
                current = self.state_machine.transition(task_id, TaskStatus.PENDING_APPROVAL)
            elif current.status is TaskStatus.TESTED:
                current = self.state_machine.transition(task_id, TaskStatus.PENDING_APPROVAL, changes)
            else:
                current = self.state_machine.amend(task_id, changes)
            self.gate.arm(current)
        elif current.status is TaskStatus.TESTING:
            current = self.state_machine.transition(task_id, TaskStatus.FAILED, changes)
        else:
            # A failed re-test never moves the task backward.
            current = self.state_machine.amend(task_id, changes)

        self.publisher.publish(
            TEST_COMPLETED,
            task_id,
            {
                "success": report.success,
                "attempts": report.attempts,
                "artifact_ref": report.artifact_ref,
                "mode": report.mode.value,
                "cancelled": report.cancelled,
            },
        )
        return RunOutcome(task=current, report=report)

    def _abort_run(self, task_id: str, expected_status: TaskStatus, exc: Exception) -> None:
        logger.error("task_test event=run_error task_id=%s reason=%s", task_id, exc, exc_info=True)
        if expected_status is not TaskStatus.TESTING:
            return
        with self.locks.hold(task_id):
            current = self._store_call(self.store.get_task, task_id)
            if current is not None and current.status is TaskStatus.TESTING:
                self.state_machine.transition(
                    task_id,
                    TaskStatus.FAILED,
                    {"error": f"Test run aborted: {exc}"},
                )

    def _store_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return call_with_timeout(
            fn,
            *args,
            timeout_s=self.settings.collaborator_timeout_s,
            collaborator="change_store",
            **kwargs,
        )


def build_coordinator(
    settings: Settings,
    store: ChangeStore,
    *,
    notifier: EventNotifier | None = None,
) -> PipelineCoordinator:
    """Wire the default collaborators from settings."""
    if settings.generator_mode == "llm":
        source = ChatCompletionsFileSource(
            api_key=settings.resolved_openai_api_key(),
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            max_retries=settings.llm_max_retries,
            backoff_s=settings.llm_backoff_s,
        )
        generator: CodeGenerator = LLMCodeGenerator(source, timeout_s=settings.llm_timeout_s)
    else:
        generator = TemplateCodeGenerator()
    runner = PlaywrightCliRunner(
        command=settings.runner_command,
        base_url=settings.target_base_url,
        process_timeout_s=settings.attempt_timeout_s,
    )
    applier = FilesystemChangeApplier(store, Path(settings.project_root))
    return PipelineCoordinator(
        store=store,
        generator=generator,
        runner=runner,
        applier=applier,
        notifier=notifier,
        settings=settings,
    )
