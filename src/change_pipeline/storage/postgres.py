"""PostgreSQL-backed change store with automatic table migration."""

from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any

from change_pipeline.errors import NotFound, PipelineError, WriteConflict
from change_pipeline.models import (
    ErrorClass,
    Proposal,
    ProposalStatus,
    ProposedChange,
    StagedFile,
    Task,
    TaskStatus,
)


class PostgresChangeStore:
    """Persist tasks and proposals in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("CHANGE_PIPELINE_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_tasks (
                    task_id UUID PRIMARY KEY,
                    prompt TEXT NOT NULL,
                    status TEXT NOT NULL,
                    staged_files_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    original_content_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    new_content_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    proposed_changes_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    test_url TEXT,
                    test_instructions TEXT NOT NULL DEFAULT '',
                    test_attempts INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    error_class TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pipeline_tasks_status
                ON pipeline_tasks(status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_proposals (
                    proposal_id UUID PRIMARY KEY,
                    seq BIGSERIAL,
                    task_id UUID NOT NULL REFERENCES pipeline_tasks(task_id) ON DELETE CASCADE,
                    file TEXT NOT NULL,
                    content TEXT NOT NULL,
                    reason TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pipeline_proposals_task_id
                ON pipeline_proposals(task_id, status)
                """)
            conn.commit()

    def create_task(self, task: Task) -> Task:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_tasks (
                    task_id,
                    prompt,
                    status,
                    staged_files_json,
                    original_content_json,
                    new_content_json,
                    proposed_changes_json,
                    test_url,
                    test_instructions,
                    test_attempts,
                    error,
                    error_class,
                    version,
                    created_at,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (task.task_id, task.prompt, *self._task_columns(task), task.created_at, task.updated_at),
            )
            conn.commit()
        created = self.get_task(task.task_id)
        if created is None:
            raise PipelineError("Failed to load created task", task_id=task.task_id)
        return created

    def get_task(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(self, *, include_deleted: bool = True) -> list[Task]:
        query = "SELECT * FROM pipeline_tasks"
        params: tuple[Any, ...] = ()
        if not include_deleted:
            query += " WHERE status <> %s"
            params = (TaskStatus.DELETED.value,)
        query += " ORDER BY created_at ASC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, task: Task, *, expected_version: int) -> Task:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_tasks
                SET status = %s,
                    staged_files_json = %s,
                    original_content_json = %s,
                    new_content_json = %s,
                    proposed_changes_json = %s,
                    test_url = %s,
                    test_instructions = %s,
                    test_attempts = %s,
                    error = %s,
                    error_class = %s,
                    version = %s,
                    updated_at = %s
                WHERE task_id::text = %s
                  AND version = %s
                """,
                (*self._task_columns(task), task.updated_at, task.task_id, expected_version),
            )
            updated = cursor.rowcount
            conn.commit()
        if updated == 0:
            if self.get_task(task.task_id) is None:
                raise NotFound(f"Task {task.task_id} not found", task_id=task.task_id)
            raise WriteConflict(
                f"Task {task.task_id} changed concurrently",
                task_id=task.task_id,
                expected_version=expected_version,
            )
        refreshed = self.get_task(task.task_id)
        if refreshed is None:
            raise NotFound(f"Task {task.task_id} not found", task_id=task.task_id)
        return refreshed

    def delete_task(self, task_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM pipeline_tasks WHERE task_id::text = %s",
                (task_id,),
            )
            deleted = cursor.rowcount
            conn.commit()
        return deleted > 0

    def create_proposal(self, proposal: Proposal) -> Proposal:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_proposals (
                    proposal_id,
                    task_id,
                    file,
                    content,
                    reason,
                    status,
                    version,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    proposal.proposal_id,
                    proposal.task_id,
                    proposal.file,
                    proposal.content,
                    proposal.reason,
                    proposal.status.value,
                    proposal.version,
                    proposal.created_at,
                    proposal.updated_at,
                ),
            )
            conn.commit()
        created = self.get_proposal(proposal.proposal_id)
        if created is None:
            raise PipelineError("Failed to load created proposal", proposal_id=proposal.proposal_id)
        return created

    def get_proposal(self, proposal_id: str) -> Proposal | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_proposals WHERE proposal_id::text = %s",
                (proposal_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_proposal(row)

    def list_proposals(
        self,
        *,
        task_id: str | None = None,
        status: ProposalStatus | None = None,
    ) -> list[Proposal]:
        clauses: list[str] = []
        params: list[Any] = []
        if task_id is not None:
            clauses.append("task_id::text = %s")
            params.append(task_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        query = "SELECT * FROM pipeline_proposals"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, seq ASC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_proposal(row) for row in rows]

    def update_proposal(self, proposal: Proposal, *, expected_version: int) -> Proposal:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_proposals
                SET status = %s,
                    content = %s,
                    reason = %s,
                    version = %s,
                    updated_at = %s
                WHERE proposal_id::text = %s
                  AND version = %s
                """,
                (
                    proposal.status.value,
                    proposal.content,
                    proposal.reason,
                    proposal.version,
                    proposal.updated_at,
                    proposal.proposal_id,
                    expected_version,
                ),
            )
            updated = cursor.rowcount
            conn.commit()
        if updated == 0:
            if self.get_proposal(proposal.proposal_id) is None:
                raise NotFound(
                    f"Proposal {proposal.proposal_id} not found",
                    proposal_id=proposal.proposal_id,
                )
            raise WriteConflict(
                f"Proposal {proposal.proposal_id} changed concurrently",
                proposal_id=proposal.proposal_id,
                expected_version=expected_version,
            )
        refreshed = self.get_proposal(proposal.proposal_id)
        if refreshed is None:
            raise NotFound(
                f"Proposal {proposal.proposal_id} not found",
                proposal_id=proposal.proposal_id,
            )
        return refreshed

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _task_columns(self, task: Task) -> tuple[Any, ...]:
        return (
            task.status.value,
            self._json_wrapper([item.model_dump() for item in task.staged_files]),
            self._json_wrapper(dict(task.original_content)),
            self._json_wrapper(dict(task.new_content)),
            self._json_wrapper([item.model_dump() for item in task.proposed_changes]),
            task.test_url,
            task.test_instructions,
            task.test_attempts,
            task.error,
            task.error_class.value if task.error_class is not None else None,
            task.version,
        )

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any, default: Any) -> Any:
        if raw is None:
            return default
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        error_class = row.get("error_class")
        return Task(
            task_id=str(row["task_id"]),
            prompt=row["prompt"],
            status=TaskStatus(row["status"]),
            staged_files=[
                StagedFile.model_validate(item)
                for item in cls._parse_json(row.get("staged_files_json"), [])
            ],
            original_content=cls._parse_json(row.get("original_content_json"), {}),
            new_content=cls._parse_json(row.get("new_content_json"), {}),
            proposed_changes=[
                ProposedChange.model_validate(item)
                for item in cls._parse_json(row.get("proposed_changes_json"), [])
            ],
            test_url=row.get("test_url"),
            test_instructions=row.get("test_instructions") or "",
            test_attempts=int(row.get("test_attempts") or 0),
            error=row.get("error"),
            error_class=ErrorClass(error_class) if error_class else None,
            version=int(row["version"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_proposal(cls, row: Any) -> Proposal:
        return Proposal(
            proposal_id=str(row["proposal_id"]),
            task_id=str(row["task_id"]),
            file=row["file"],
            content=row["content"],
            reason=row.get("reason") or "",
            status=ProposalStatus(row["status"]),
            version=int(row["version"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )
