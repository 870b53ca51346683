"""In-memory storage backend for tests and single-process runs."""

from __future__ import annotations

import itertools
import threading

from change_pipeline.errors import NotFound, PipelineError, WriteConflict
from change_pipeline.models import Proposal, ProposalStatus, Task, TaskStatus


class InMemoryChangeStore:
    """Dict-backed store; every read hands out a deep copy."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._proposals: dict[str, Proposal] = {}
        self._proposal_seq: dict[str, int] = {}
        self._seq = itertools.count(1)

    def migrate(self) -> None:
        return None

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.task_id in self._tasks:
                raise PipelineError(f"Task {task.task_id} already exists", task_id=task.task_id)
            self._tasks[task.task_id] = task.model_copy(deep=True)
            return task.model_copy(deep=True)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task is not None else None

    def list_tasks(self, *, include_deleted: bool = True) -> list[Task]:
        with self._lock:
            tasks = [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if include_deleted or task.status is not TaskStatus.DELETED
            ]
        return sorted(tasks, key=lambda task: task.created_at)

    def update_task(self, task: Task, *, expected_version: int) -> Task:
        with self._lock:
            current = self._tasks.get(task.task_id)
            if current is None:
                raise NotFound(f"Task {task.task_id} not found", task_id=task.task_id)
            if current.version != expected_version:
                raise WriteConflict(
                    f"Task {task.task_id} changed concurrently",
                    task_id=task.task_id,
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            self._tasks[task.task_id] = task.model_copy(deep=True)
            return task.model_copy(deep=True)

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            removed = self._tasks.pop(task_id, None)
            for proposal_id in [
                key for key, proposal in self._proposals.items() if proposal.task_id == task_id
            ]:
                del self._proposals[proposal_id]
                self._proposal_seq.pop(proposal_id, None)
            return removed is not None

    def create_proposal(self, proposal: Proposal) -> Proposal:
        with self._lock:
            if proposal.task_id not in self._tasks:
                raise NotFound(f"Task {proposal.task_id} not found", task_id=proposal.task_id)
            self._proposals[proposal.proposal_id] = proposal.model_copy(deep=True)
            self._proposal_seq[proposal.proposal_id] = next(self._seq)
            return proposal.model_copy(deep=True)

    def get_proposal(self, proposal_id: str) -> Proposal | None:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            return proposal.model_copy(deep=True) if proposal is not None else None

    def list_proposals(
        self,
        *,
        task_id: str | None = None,
        status: ProposalStatus | None = None,
    ) -> list[Proposal]:
        with self._lock:
            selected = [
                proposal
                for proposal in self._proposals.values()
                if (task_id is None or proposal.task_id == task_id)
                and (status is None or proposal.status is status)
            ]
            selected.sort(key=lambda item: (item.created_at, self._proposal_seq[item.proposal_id]))
            return [proposal.model_copy(deep=True) for proposal in selected]

    def update_proposal(self, proposal: Proposal, *, expected_version: int) -> Proposal:
        with self._lock:
            current = self._proposals.get(proposal.proposal_id)
            if current is None:
                raise NotFound(
                    f"Proposal {proposal.proposal_id} not found",
                    proposal_id=proposal.proposal_id,
                )
            if current.version != expected_version:
                raise WriteConflict(
                    f"Proposal {proposal.proposal_id} changed concurrently",
                    proposal_id=proposal.proposal_id,
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            self._proposals[proposal.proposal_id] = proposal.model_copy(deep=True)
            return proposal.model_copy(deep=True)
