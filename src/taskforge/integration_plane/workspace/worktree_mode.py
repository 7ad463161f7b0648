"""Isolated-copy workspace backed by ``git worktree``."""

from __future__ import annotations

import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from taskforge.constants import COMMIT_MESSAGE_PREFIX, DEFAULT_BRANCH_PREFIX
from taskforge.domain.models import WorkspaceMode
from taskforge.integration_plane.git_engine import GitCommandError, GitEngine
from taskforge.integration_plane.workspace.base import (
    WorkspaceContext,
    WorkspaceError,
    WorkspaceManager,
    WorkspaceMergeError,
    sanitize_task_id,
)

if TYPE_CHECKING:
    from taskforge.domain.models import ChangedFile


@dataclass(frozen=True, slots=True)
class WorktreeState:
    worktree_path: Path
    branch_name: str
    base_commit: str


class WorktreeModeWorkspace(WorkspaceManager):
    """
    Run each task on its own branch in a linked worktree.

    The branch is rooted at the main checkout's ``HEAD`` at prepare time. On
    success the branch is squash-merged into the main checkout's current branch.
    """

    mode = WorkspaceMode.WORKTREE

    def __init__(
        self,
        repo_root: Path | str,
        worktree_root: Path | str,
        *,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        git: GitEngine | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._repo_root = Path(repo_root).resolve()
        self._worktree_root = Path(worktree_root).resolve()
        self._branch_prefix = branch_prefix
        self._git = git if git is not None else GitEngine(self._repo_root)
        self._clock_ms = clock_ms if clock_ms is not None else _now_ms
        self._states: dict[str, WorktreeState] = {}
        self._logger = structlog.get_logger(__name__)

    def prepare(self, task_id: str) -> WorkspaceContext:
        self._worktree_root.mkdir(parents=True, exist_ok=True)
        base_commit = self._git.rev_parse("HEAD")
        branch_name = f"{self._branch_prefix}/{sanitize_task_id(task_id)}/{self._clock_ms()}"
        worktree_path = self._worktree_root / sanitize_task_id(task_id)

        if worktree_path.exists():
            self._git.remove_worktree(worktree_path, check=False)
            shutil.rmtree(worktree_path, ignore_errors=True)

        self._git.add_worktree(worktree_path, branch_name, base_commit)
        self._states[task_id] = WorktreeState(
            worktree_path=worktree_path,
            branch_name=branch_name,
            base_commit=base_commit,
        )
        return WorkspaceContext(task_id=task_id, working_dir=worktree_path)

    def working_dir(self, task_id: str) -> Path:
        state = self._states.get(task_id)
        return state.worktree_path if state is not None else self._repo_root

    def state_for(self, task_id: str) -> WorktreeState | None:
        return self._states.get(task_id)

    def changed_files(self, task_id: str) -> tuple[ChangedFile, ...]:
        state = self._states.get(task_id)
        if state is None:
            return ()
        return self._git.changed_files(state.base_commit, cwd=state.worktree_path)

    def checkpoint(self, task_id: str, message: str) -> str:
        state = self._require_state(task_id)
        return self._git.commit_all(message, cwd=state.worktree_path)

    def merge(self, task_id: str) -> None:
        state = self._states.get(task_id)
        if state is None:
            return
        try:
            self._git.merge_squash(
                state.branch_name, f"{COMMIT_MESSAGE_PREFIX} Merge task {task_id}"
            )
        except GitCommandError as exc:
            raise WorkspaceMergeError(task_id, exc.stderr.strip() or str(exc)) from exc

    def revert(self, task_id: str) -> None:
        state = self._states.get(task_id)
        if state is None:
            return
        self._git.reset_hard(state.base_commit, cwd=state.worktree_path)
        self._git.clean_untracked(cwd=state.worktree_path)

    def cleanup(self, task_id: str) -> None:
        state = self._states.pop(task_id, None)
        if state is None:
            return
        removed = self._git.remove_worktree(state.worktree_path, check=False)
        deleted = self._git.delete_branch(state.branch_name, check=False)
        if not removed.ok or not deleted.ok:
            self._logger.warning(
                "worktree_cleanup_incomplete",
                task_id=task_id,
                worktree=state.worktree_path.as_posix(),
                branch=state.branch_name,
                remove_stderr=removed.stderr.strip(),
                branch_stderr=deleted.stderr.strip(),
            )

    def _require_state(self, task_id: str) -> WorktreeState:
        state = self._states.get(task_id)
        if state is None:
            raise WorkspaceError(f"No worktree state for task {task_id}")
        return state


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


__all__ = ["WorktreeModeWorkspace", "WorktreeState"]
