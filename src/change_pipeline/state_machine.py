"""Canonical task lifecycle: the transition table and its single writer."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from change_pipeline.config.settings import Settings
from change_pipeline.errors import InvalidTransition, NotFound, PreconditionFailed
from change_pipeline.events import TASK_STATUS_CHANGED, TASK_UPDATED, EventPublisher
from change_pipeline.models import Task, TaskStatus, utcnow
from change_pipeline.retry import call_with_timeout, retry_store_write
from change_pipeline.storage.base import ChangeStore

logger = logging.getLogger(__name__)

S = TaskStatus

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    S.CREATED: frozenset({S.STAGED, S.DELETED}),
    S.STAGED: frozenset({S.TESTING, S.DELETED}),
    S.TESTING: frozenset({S.TESTED, S.FAILED, S.DELETED}),
    S.TESTED: frozenset({S.PENDING_APPROVAL, S.DELETED}),
    S.PENDING_APPROVAL: frozenset({S.APPLIED, S.DENIED, S.DELETED}),
    # Rollback path for an already applied change.
    S.APPLIED: frozenset({S.DENIED, S.DELETED}),
    S.DENIED: frozenset({S.DELETED}),
    S.FAILED: frozenset({S.DELETED}),
    S.DELETED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.APPLIED, S.DENIED, S.FAILED, S.DELETED})
REQUIRES_STAGED_FILES = frozenset({S.STAGED, S.PENDING_APPROVAL})
# Fields only the state machine may change through ``amend``.
PROTECTED_FIELDS = frozenset({"task_id", "prompt", "status", "version", "created_at", "updated_at"})


def validate_transition(task: Task, target: TaskStatus) -> None:
    """Raise when ``task`` may not move to ``target``; staying put is always allowed."""
    if task.status is target:
        return
    if target not in TRANSITIONS[task.status]:
        raise InvalidTransition(task.task_id, task.status.value, target.value)
    if target in REQUIRES_STAGED_FILES and not task.staged_files:
        raise PreconditionFailed(
            f"Task {task.task_id} cannot move to '{target.value}' without staged files",
            task_id=task.task_id,
            target=target.value,
        )


class TaskStateMachine:
    """Sole writer of ``Task.status``.

    Every write re-reads the stored task, validates the edge against the current
    stored status and commits with compare-and-swap on ``version``. Lost races are
    retried a bounded number of times; exhaustion surfaces as an
    ``ExternalCollaboratorFailure`` and leaves the last committed state intact.
    """

    def __init__(
        self,
        store: ChangeStore,
        publisher: EventPublisher,
        settings: Settings,
        *,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.settings = settings
        self._now = now
        self._sleep_kwargs = {"sleep": sleep} if sleep is not None else {}

    def load(self, task_id: str) -> Task:
        task = call_with_timeout(
            self.store.get_task,
            task_id,
            timeout_s=self.settings.collaborator_timeout_s,
            collaborator="change_store",
        )
        if task is None:
            raise NotFound(f"Task {task_id} not found", task_id=task_id)
        return task

    def transition(
        self,
        task: Task | str,
        target: TaskStatus,
        changes: dict[str, Any] | None = None,
    ) -> Task:
        task_id = task if isinstance(task, str) else task.task_id
        fields = self._checked_changes(changes)
        previous: dict[str, TaskStatus] = {}

        def _write() -> Task:
            current = self.load(task_id)
            if current.status is target and not fields:
                previous["status"] = current.status
                return current
            candidate = current.model_copy(update=fields)
            validate_transition(candidate, target)
            previous["status"] = current.status
            updated = candidate.model_copy(
                update={"status": target, "version": current.version + 1, "updated_at": self._now()}
            )
            return self._commit(updated, expected_version=current.version)

        result = retry_store_write(
            _write,
            attempts=self.settings.store_write_attempts,
            backoff_s=self.settings.store_retry_backoff_s,
            description=f"transition task {task_id} to {target.value}",
            **self._sleep_kwargs,
        )
        source = previous.get("status", target)
        if source is not target:
            logger.info(
                "task_transition event=committed task_id=%s from=%s to=%s version=%d",
                task_id,
                source.value,
                target.value,
                result.version,
            )
            self.publisher.publish(
                TASK_STATUS_CHANGED,
                task_id,
                {"from": source.value, "to": target.value, "version": result.version},
            )
        elif fields:
            self.publisher.publish(TASK_UPDATED, task_id, {"fields": sorted(fields), "version": result.version})
        return result

    def amend(self, task: Task | str, changes: dict[str, Any]) -> Task:
        """Update non-status fields while keeping the current status."""
        task_id = task if isinstance(task, str) else task.task_id
        fields = self._checked_changes(changes)

        def _write() -> Task:
            current = self.load(task_id)
            updated = current.model_copy(
                update={**fields, "version": current.version + 1, "updated_at": self._now()}
            )
            return self._commit(updated, expected_version=current.version)

        result = retry_store_write(
            _write,
            attempts=self.settings.store_write_attempts,
            backoff_s=self.settings.store_retry_backoff_s,
            description=f"amend task {task_id}",
            **self._sleep_kwargs,
        )
        self.publisher.publish(TASK_UPDATED, task_id, {"fields": sorted(fields), "version": result.version})
        return result

    def _commit(self, task: Task, *, expected_version: int) -> Task:
        return call_with_timeout(
            self.store.update_task,
            task,
            expected_version=expected_version,
            timeout_s=self.settings.collaborator_timeout_s,
            collaborator="change_store",
        )

    @staticmethod
    def _checked_changes(changes: dict[str, Any] | None) -> dict[str, Any]:
        fields = dict(changes or {})
        protected = PROTECTED_FIELDS.intersection(fields)
        if protected:
            raise ValueError(f"Fields {sorted(protected)} cannot be changed directly")
        return fields
