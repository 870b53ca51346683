"""Pydantic models shared across the coordinator, gate, harness, storage and API."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    CREATED = "created"
    STAGED = "staged"
    TESTING = "testing"
    TESTED = "tested"
    PENDING_APPROVAL = "pending_approval"
    APPLIED = "applied"
    DENIED = "denied"
    FAILED = "failed"
    DELETED = "deleted"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class RunMode(str, Enum):
    """auto runs the browser headless, manual runs it interactively."""

    AUTO = "auto"
    MANUAL = "manual"


class ErrorClass(str, Enum):
    SELECTOR_NOT_FOUND = "selector_not_found"
    NO_STAGED_FILES = "no_staged_files"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class StagedFile(BaseModel):
    """One candidate file of a change set."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str
    test_instructions: str = ""

    def is_blank(self) -> bool:
        return not self.path.strip() or not self.content.strip()

    def escapes_root(self) -> bool:
        candidate = PurePosixPath(self.path.replace("\\", "/"))
        return candidate.is_absolute() or ".." in candidate.parts


class ProposedChange(BaseModel):
    """A discrete change description; each one becomes a Proposal."""

    file: str = Field(min_length=1)
    change: str = Field(min_length=1)
    reason: str = ""


class Task(BaseModel):
    """Canonical task record returned by the store and the API."""

    task_id: str
    prompt: str
    status: TaskStatus = TaskStatus.CREATED
    staged_files: list[StagedFile] = Field(default_factory=list)
    # Diff presentation, keyed by file path.
    original_content: dict[str, str] = Field(default_factory=dict)
    new_content: dict[str, str] = Field(default_factory=dict)
    proposed_changes: list[ProposedChange] = Field(default_factory=list)
    test_url: str | None = None
    test_instructions: str = ""
    test_attempts: int = 0
    error: str | None = None
    error_class: ErrorClass | None = None
    # Compare-and-swap token bumped on every write.
    version: int = 0
    created_at: datetime
    updated_at: datetime


class Proposal(BaseModel):
    proposal_id: str
    task_id: str
    file: str
    content: str
    reason: str = ""
    status: ProposalStatus = ProposalStatus.PENDING
    version: int = 0
    created_at: datetime
    updated_at: datetime


class RunnerOutcome(BaseModel):
    """What a browser runner reports for one executed script."""

    passed: bool
    diagnostic: str = ""


class AttemptRecord(BaseModel):
    """One test attempt; kept only as part of the run report."""

    attempt_number: int
    error_class: ErrorClass | None = None
    fix_applied: bool = False
    elapsed_ms: float = 0.0
    diagnostic: str = ""


class RunReport(BaseModel):
    """Final outcome of a test run across all attempts."""

    task_id: str
    mode: RunMode
    success: bool
    attempts: int
    artifact_ref: str
    error: str | None = None
    error_class: ErrorClass | None = None
    cancelled: bool = False
    history: list[AttemptRecord] = Field(default_factory=list)
    # Final staged set, replaced wholesale when self-correction regenerated it.
    staged_files: list[StagedFile] = Field(default_factory=list)
    regenerated: bool = False


class Event(BaseModel):
    """Status event pushed to the notifier; event_id is the consumer dedup key."""

    event_id: int
    kind: str
    subject_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class RunOutcome(BaseModel):
    """Coordinator result for a test request."""

    task: Task
    report: RunReport
    discarded: bool = False
