"""Typed error taxonomy surfaced by the change pipeline.

Every error carries a stable ``kind`` string and an HTTP status so the API layer
can render it without inspecting the exception type.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind = "pipeline_error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        payload.update({key: value for key, value in self.details.items() if value is not None})
        return payload


class InvalidPrompt(PipelineError):
    kind = "invalid_prompt"
    http_status = 400


class Duplicate(PipelineError):
    """Submission replayed inside the idempotency window."""

    kind = "duplicate"
    http_status = 409

    def __init__(self, idempotency_key: str, task_id: str | None) -> None:
        super().__init__(
            f"Submission with idempotency key '{idempotency_key}' was already accepted",
            idempotency_key=idempotency_key,
            task_id=task_id,
        )
        self.task_id = task_id


class InvalidTransition(PipelineError):
    kind = "invalid_transition"
    http_status = 409

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Task {task_id} cannot move from '{current}' to '{target}'",
            task_id=task_id,
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class PreconditionFailed(PipelineError):
    kind = "precondition_failed"
    http_status = 409


class NoStagedFiles(PreconditionFailed):
    kind = "no_staged_files"


class ConcurrentManualRun(PipelineError):
    kind = "concurrent_manual_run"
    http_status = 409

    def __init__(self, task_id: str) -> None:
        super().__init__(f"A manual test run is already active for task {task_id}", task_id=task_id)


class NotFound(PipelineError):
    kind = "not_found"
    http_status = 404


class ExternalCollaboratorFailure(PipelineError):
    """Wraps a failure raised by a store, notifier, runner, generator or applier."""

    kind = "external_collaborator_failure"
    http_status = 502

    def __init__(self, collaborator: str, message: str, **details: Any) -> None:
        super().__init__(f"{collaborator}: {message}", collaborator=collaborator, **details)
        self.collaborator = collaborator


class CollaboratorTimeout(ExternalCollaboratorFailure):
    kind = "collaborator_timeout"
    http_status = 504

    def __init__(self, collaborator: str, timeout_s: float) -> None:
        super().__init__(collaborator, f"Timeout after {timeout_s:.2f}s", timeout_s=timeout_s)
        self.timeout_s = timeout_s


class WriteConflict(PipelineError):
    """Compare-and-swap on a stored entity lost against a concurrent writer."""

    kind = "write_conflict"
    http_status = 409


class RunCancelled(PipelineError):
    kind = "run_cancelled"
    http_status = 409
