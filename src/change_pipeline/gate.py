"""Human approval gate in front of apply and rollback."""

from __future__ import annotations

import logging
import posixpath
import uuid
from collections.abc import Callable
from datetime import datetime

from change_pipeline.collaborators.base import ChangeApplier
from change_pipeline.config.settings import Settings
from change_pipeline.errors import NotFound, PreconditionFailed
from change_pipeline.events import PROPOSAL_CREATED, PROPOSAL_UPDATED, EventPublisher
from change_pipeline.models import Proposal, ProposalStatus, Task, TaskStatus, utcnow
from change_pipeline.retry import call_with_timeout, retry_store_write
from change_pipeline.state_machine import TaskStateMachine, validate_transition
from change_pipeline.storage.base import ChangeStore

logger = logging.getLogger(__name__)


def _unique(ids: list[str]) -> list[str]:
    return list(dict.fromkeys(ids))


class ProposalGate:
    """Track proposals per task and drive the task's terminal transition.

    Approval needs consensus: the external apply runs once, inside the approval
    that resolves the last pending proposal, and only then does the task become
    ``applied``. A single denial rolls the whole task back to ``denied``.
    Callers hold the per-task lock of every task they touch.
    """

    def __init__(
        self,
        store: ChangeStore,
        state_machine: TaskStateMachine,
        applier: ChangeApplier,
        publisher: EventPublisher,
        settings: Settings,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.state_machine = state_machine
        self.applier = applier
        self.publisher = publisher
        self.settings = settings
        self._now = now

    def load_proposal(self, proposal_id: str) -> Proposal:
        proposal = call_with_timeout(
            self.store.get_proposal,
            proposal_id,
            timeout_s=self.settings.collaborator_timeout_s,
            collaborator="change_store",
        )
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found", proposal_id=proposal_id)
        return proposal

    def proposals_for(self, task_id: str, status: ProposalStatus | None = None) -> list[Proposal]:
        return call_with_timeout(
            self.store.list_proposals,
            task_id=task_id,
            status=status,
            timeout_s=self.settings.collaborator_timeout_s,
            collaborator="change_store",
        )

    def arm(self, task: Task) -> list[Proposal]:
        """Create the task's proposals once; later calls return the existing set."""
        existing = self.proposals_for(task.task_id)
        if existing:
            return existing
        now = self._now()
        drafts = [
            Proposal(
                proposal_id=str(uuid.uuid4()),
                task_id=task.task_id,
                file=change.file,
                content=change.change,
                reason=change.reason,
                created_at=now,
                updated_at=now,
            )
            for change in task.proposed_changes
        ] or [self._summary_proposal(task, now)]
        created: list[Proposal] = []
        for draft in drafts:
            proposal = call_with_timeout(
                self.store.create_proposal,
                draft,
                timeout_s=self.settings.collaborator_timeout_s,
                collaborator="change_store",
            )
            created.append(proposal)
            self.publisher.publish(
                PROPOSAL_CREATED,
                task.task_id,
                {"proposal_id": proposal.proposal_id, "file": proposal.file},
            )
        logger.info("proposal_gate event=armed task_id=%s proposals=%d", task.task_id, len(created))
        return created

    def approve(self, proposal_id: str) -> Proposal:
        proposal = self.load_proposal(proposal_id)
        if proposal.status is ProposalStatus.APPROVED:
            return proposal
        if proposal.status is ProposalStatus.DENIED:
            raise PreconditionFailed(
                f"Proposal {proposal_id} was already denied",
                proposal_id=proposal_id,
                status=proposal.status.value,
            )
        task = self.state_machine.load(proposal.task_id)
        self._require_pending_approval(task, proposal_id)

        pending = self.proposals_for(task.task_id, ProposalStatus.PENDING)
        resolves_task = [item.proposal_id for item in pending] == [proposal_id]
        if resolves_task:
            self._call_applier(self.applier.apply, task.task_id)
        approved = self._set_status(proposal, ProposalStatus.APPROVED)
        if resolves_task:
            self.state_machine.transition(task.task_id, TaskStatus.APPLIED)
        logger.info(
            "proposal_gate event=approved task_id=%s proposal_id=%s applied=%s",
            task.task_id,
            proposal_id,
            resolves_task,
        )
        return approved

    def deny(self, proposal_id: str) -> Proposal:
        proposal = self.load_proposal(proposal_id)
        if proposal.status is ProposalStatus.DENIED:
            return proposal
        if proposal.status is ProposalStatus.APPROVED:
            raise PreconditionFailed(
                f"Proposal {proposal_id} was already approved",
                proposal_id=proposal_id,
                status=proposal.status.value,
            )
        task = self.state_machine.load(proposal.task_id)
        if task.status is TaskStatus.DENIED:
            # The task was rolled back by an earlier denial.
            return self._set_status(proposal, ProposalStatus.DENIED)
        self._require_pending_approval(task, proposal_id)

        self._call_applier(self.applier.rollback, task.task_id)
        denied = self._set_status(proposal, ProposalStatus.DENIED)
        self.state_machine.transition(task.task_id, TaskStatus.DENIED)
        logger.info("proposal_gate event=denied task_id=%s proposal_id=%s", task.task_id, proposal_id)
        return denied

    def bulk_approve(self, proposal_ids: list[str]) -> list[Proposal]:
        ids = _unique(proposal_ids)
        proposals = [self.load_proposal(proposal_id) for proposal_id in ids]
        pending_by_task: dict[str, list[Proposal]] = {}
        for proposal in proposals:
            if proposal.status is ProposalStatus.DENIED:
                raise PreconditionFailed(
                    f"Proposal {proposal.proposal_id} was already denied",
                    proposal_id=proposal.proposal_id,
                )
            if proposal.status is ProposalStatus.PENDING and proposal.task_id not in pending_by_task:
                task = self.state_machine.load(proposal.task_id)
                self._require_pending_approval(task, proposal.proposal_id)
                pending_by_task[proposal.task_id] = self.proposals_for(task.task_id, ProposalStatus.PENDING)

        if self.settings.require_oldest_in_bulk_approve:
            requested = set(ids)
            for task_id, pending in pending_by_task.items():
                oldest = pending[0] if pending else None
                if oldest is not None and oldest.proposal_id not in requested:
                    raise PreconditionFailed(
                        "Bulk approval must include the oldest pending proposal of each task",
                        task_id=task_id,
                        oldest_proposal_id=oldest.proposal_id,
                    )

        return [self.approve(proposal_id) for proposal_id in ids]

    def bulk_deny(self, proposal_ids: list[str]) -> list[Proposal]:
        ids = _unique(proposal_ids)
        for proposal in [self.load_proposal(proposal_id) for proposal_id in ids]:
            if proposal.status is ProposalStatus.APPROVED:
                raise PreconditionFailed(
                    f"Proposal {proposal.proposal_id} was already approved",
                    proposal_id=proposal.proposal_id,
                )
        return [self.deny(proposal_id) for proposal_id in ids]

    def approve_task(self, task_id: str) -> Task:
        task = self.state_machine.load(task_id)
        if task.status is TaskStatus.APPLIED:
            return task
        self._require_pending_approval(task, None)
        pending = self.proposals_for(task_id, ProposalStatus.PENDING) or [
            item for item in self.arm(task) if item.status is ProposalStatus.PENDING
        ]
        self.bulk_approve([item.proposal_id for item in pending])
        return self.state_machine.load(task_id)

    def rollback_task(self, task_id: str) -> Task:
        """Deny a pending or applied task as a whole with exactly one rollback call."""
        task = self.state_machine.load(task_id)
        if task.status is TaskStatus.DENIED:
            return task
        validate_transition(task, TaskStatus.DENIED)
        self._call_applier(self.applier.rollback, task_id)
        for proposal in self.proposals_for(task_id, ProposalStatus.PENDING):
            self._set_status(proposal, ProposalStatus.DENIED)
        logger.info("proposal_gate event=task_rolled_back task_id=%s from=%s", task_id, task.status.value)
        return self.state_machine.transition(task_id, TaskStatus.DENIED)

    def _set_status(self, proposal: Proposal, status: ProposalStatus) -> Proposal:
        def _write() -> Proposal:
            current = self.load_proposal(proposal.proposal_id)
            if current.status is status:
                return current
            updated = current.model_copy(
                update={"status": status, "version": current.version + 1, "updated_at": self._now()}
            )
            return call_with_timeout(
                self.store.update_proposal,
                updated,
                expected_version=current.version,
                timeout_s=self.settings.collaborator_timeout_s,
                collaborator="change_store",
            )

        result = retry_store_write(
            _write,
            attempts=self.settings.store_write_attempts,
            backoff_s=self.settings.store_retry_backoff_s,
            description=f"set proposal {proposal.proposal_id} {status.value}",
        )
        self.publisher.publish(
            PROPOSAL_UPDATED,
            result.task_id,
            {"proposal_id": result.proposal_id, "status": result.status.value},
        )
        return result

    def _call_applier(self, operation: Callable[[str], None], task_id: str) -> None:
        call_with_timeout(
            operation,
            task_id,
            timeout_s=self.settings.collaborator_timeout_s,
            collaborator="change_applier",
        )

    @staticmethod
    def _require_pending_approval(task: Task, proposal_id: str | None) -> None:
        if task.status is not TaskStatus.PENDING_APPROVAL:
            raise PreconditionFailed(
                f"Task {task.task_id} is '{task.status.value}', not awaiting approval",
                task_id=task.task_id,
                proposal_id=proposal_id,
                status=task.status.value,
            )

    @staticmethod
    def _summary_proposal(task: Task, now: datetime) -> Proposal:
        paths = [item.path for item in task.staged_files]
        if len(paths) == 1:
            target = paths[0]
        elif paths:
            target = posixpath.commonpath(paths) or "."
        else:
            target = "."
        listing = "\n".join(f"- {path}" for path in paths)
        return Proposal(
            proposal_id=str(uuid.uuid4()),
            task_id=task.task_id,
            file=target,
            content=f"{task.prompt}\n\nFiles:\n{listing}",
            reason="Staged change set passed automated testing",
            created_at=now,
            updated_at=now,
        )
