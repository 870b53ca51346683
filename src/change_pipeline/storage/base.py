"""Storage interface for tasks and proposals."""

from __future__ import annotations

from typing import Protocol

from change_pipeline.models import Proposal, ProposalStatus, Task


class ChangeStore(Protocol):
    """Durable Task/Proposal records with compare-and-swap updates.

    ``update_*`` writes succeed only when the stored ``version`` equals
    ``expected_version``; the stored record then carries the version of the
    record passed in. A mismatch raises ``WriteConflict`` and a missing row
    raises ``NotFound``.
    """

    def migrate(self) -> None: ...

    def create_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(self, *, include_deleted: bool = True) -> list[Task]: ...

    def update_task(self, task: Task, *, expected_version: int) -> Task: ...

    def delete_task(self, task_id: str) -> bool: ...

    def create_proposal(self, proposal: Proposal) -> Proposal: ...

    def get_proposal(self, proposal_id: str) -> Proposal | None: ...

    def list_proposals(
        self,
        *,
        task_id: str | None = None,
        status: ProposalStatus | None = None,
    ) -> list[Proposal]: ...

    def update_proposal(self, proposal: Proposal, *, expected_version: int) -> Proposal: ...
