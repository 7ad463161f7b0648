"""Workspace strategies: in-place (patch) and isolated-copy (worktree)."""

from __future__ import annotations

from pathlib import Path

from taskforge.domain.models import WorkspaceMode
from taskforge.integration_plane.workspace.base import (
    WorkspaceContext,
    WorkspaceError,
    WorkspaceManager,
    WorkspaceMergeError,
    sanitize_task_id,
)
from taskforge.integration_plane.workspace.patch_mode import PatchModeWorkspace
from taskforge.integration_plane.workspace.worktree_mode import (
    WorktreeModeWorkspace,
    WorktreeState,
)


def create_workspace(
    mode: WorkspaceMode | str,
    repo_root: Path | str,
    *,
    worktree_root: Path | str,
) -> WorkspaceManager:
    """Select the workspace strategy once per run."""

    resolved = WorkspaceMode(mode)
    if resolved is WorkspaceMode.WORKTREE:
        return WorktreeModeWorkspace(repo_root, worktree_root)
    return PatchModeWorkspace(repo_root)


__all__ = [
    "PatchModeWorkspace",
    "WorkspaceContext",
    "WorkspaceError",
    "WorkspaceManager",
    "WorkspaceMergeError",
    "WorktreeModeWorkspace",
    "WorktreeState",
    "create_workspace",
    "sanitize_task_id",
]
