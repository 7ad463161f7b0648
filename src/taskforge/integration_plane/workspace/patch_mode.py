"""In-place workspace: the task runs directly on the caller's working tree."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from taskforge.domain.models import WorkspaceMode
from taskforge.integration_plane.git_engine import GitEngine
from taskforge.integration_plane.workspace.base import (
    WorkspaceContext,
    WorkspaceError,
    WorkspaceManager,
)

if TYPE_CHECKING:
    from taskforge.domain.models import ChangedFile


class PatchModeWorkspace(WorkspaceManager):
    """Snapshot ``HEAD`` at prepare time and diff or reset against it."""

    mode = WorkspaceMode.PATCH

    def __init__(self, repo_root: Path | str, *, git: GitEngine | None = None) -> None:
        self._repo_root = Path(repo_root).resolve()
        self._git = git if git is not None else GitEngine(self._repo_root)
        self._snapshots: dict[str, str] = {}

    def prepare(self, task_id: str) -> WorkspaceContext:
        self._snapshots[task_id] = self._git.rev_parse("HEAD")
        return WorkspaceContext(task_id=task_id, working_dir=self._repo_root)

    def working_dir(self, task_id: str) -> Path:
        return self._repo_root

    def snapshot(self, task_id: str) -> str | None:
        return self._snapshots.get(task_id)

    def changed_files(self, task_id: str) -> tuple[ChangedFile, ...]:
        return self._git.changed_files(self._require_snapshot(task_id))

    def checkpoint(self, task_id: str, message: str) -> str:
        return self._git.commit_all(message)

    def merge(self, task_id: str) -> None:
        return None

    def revert(self, task_id: str) -> None:
        self._git.reset_hard(self._require_snapshot(task_id))
        self._git.clean_untracked()

    def cleanup(self, task_id: str) -> None:
        self._snapshots.pop(task_id, None)

    def _require_snapshot(self, task_id: str) -> str:
        snapshot = self._snapshots.get(task_id)
        if snapshot is None:
            raise WorkspaceError(f"workspace not prepared for task {task_id}")
        return snapshot


__all__ = ["PatchModeWorkspace"]
