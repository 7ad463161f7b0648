"""Git integration: command wrapper, file contracts, and workspace strategies."""

from taskforge.integration_plane.file_contract import (
    evaluate_file_contract,
    glob_matches,
    matches_any,
)
from taskforge.integration_plane.git_engine import (
    CommandResult,
    GitCommandError,
    GitEngine,
    GitEngineError,
)
from taskforge.integration_plane.workspace import (
    PatchModeWorkspace,
    WorkspaceContext,
    WorkspaceError,
    WorkspaceManager,
    WorkspaceMergeError,
    WorktreeModeWorkspace,
    create_workspace,
)

__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "PatchModeWorkspace",
    "WorkspaceContext",
    "WorkspaceError",
    "WorkspaceManager",
    "WorkspaceMergeError",
    "WorktreeModeWorkspace",
    "create_workspace",
    "evaluate_file_contract",
    "glob_matches",
    "matches_any",
]
