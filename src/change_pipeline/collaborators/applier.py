"""Filesystem apply/rollback collaborator."""

from __future__ import annotations

import logging
import threading
from pathlib import Path, PurePosixPath

from change_pipeline.errors import NotFound, PreconditionFailed
from change_pipeline.models import Task
from change_pipeline.storage.base import ChangeStore

logger = logging.getLogger(__name__)


def resolve_under(root: Path, relative_path: str) -> Path:
    """Resolve ``relative_path`` below ``root``; absolute or escaping paths are rejected."""
    candidate = PurePosixPath(relative_path.replace("\\", "/"))
    if not relative_path.strip() or candidate.is_absolute() or ".." in candidate.parts:
        raise PreconditionFailed(f"Path '{relative_path}' escapes the target root", path=relative_path)
    resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root.resolve()):
        raise PreconditionFailed(f"Path '{relative_path}' escapes the target root", path=relative_path)
    return resolved


class FilesystemChangeApplier:
    """Write a task's staged files below ``project_root`` and undo that write on rollback.

    Rollback restores each file's pre-apply content. When this process did not
    perform the apply (restart in between), the task's ``original_content``
    captured at staging time is used instead; files without an original are removed.
    """

    def __init__(self, store: ChangeStore, project_root: Path | str) -> None:
        self.store = store
        self.root = Path(project_root)
        self._lock = threading.Lock()
        self._backups: dict[str, dict[str, str | None]] = {}

    def snapshot(self, paths: list[str]) -> dict[str, str]:
        contents: dict[str, str] = {}
        for relative_path in paths:
            target = resolve_under(self.root, relative_path)
            if target.is_file():
                contents[relative_path] = target.read_text(encoding="utf-8")
        return contents

    def apply(self, task_id: str) -> None:
        task = self._load(task_id)
        backups: dict[str, str | None] = {}
        targets = [(resolve_under(self.root, item.path), item) for item in task.staged_files]
        for target, item in targets:
            backups[item.path] = target.read_text(encoding="utf-8") if target.is_file() else None
        with self._lock:
            self._backups[task_id] = backups
        for target, item in targets:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(item.content, encoding="utf-8")
        logger.info("change_apply event=applied task_id=%s files=%d", task_id, len(targets))

    def rollback(self, task_id: str) -> None:
        with self._lock:
            backups = self._backups.pop(task_id, None)
        task = self._load(task_id)
        if backups is None:
            backups = self._backups_from_task(task)
        for relative_path, original in backups.items():
            target = resolve_under(self.root, relative_path)
            if original is None:
                target.unlink(missing_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(original, encoding="utf-8")
        logger.info("change_apply event=rolled_back task_id=%s files=%d", task_id, len(backups))

    def _backups_from_task(self, task: Task) -> dict[str, str | None]:
        backups: dict[str, str | None] = {}
        for item in task.staged_files:
            target = resolve_under(self.root, item.path)
            # Only undo content this task wrote.
            if target.is_file() and target.read_text(encoding="utf-8") == item.content:
                backups[item.path] = task.original_content.get(item.path)
        return backups

    def _load(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found", task_id=task_id)
        return task
