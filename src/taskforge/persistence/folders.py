"""State folder layout under the repository root."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from taskforge.constants import (
    BUDGET_FILE,
    FAILURE_FILE,
    LOGS_DIR,
    RUNS_DIR,
    STATE_DB_FILE,
    STATE_DIR_NAME,
    STATUS_FILE,
    TASKS_DIR,
    TASKS_FILE,
    WORKTREES_DIR,
)

# Keeps git status, `git clean` and untracked-file listings away from orchestrator state.
_GITIGNORE_CONTENT = "*\n"


@dataclass(frozen=True, slots=True)
class StateFolders:
    root: Path

    @property
    def runs(self) -> Path:
        return self.root / RUNS_DIR

    @property
    def logs(self) -> Path:
        return self.root / LOGS_DIR

    @property
    def worktrees(self) -> Path:
        return self.root / WORKTREES_DIR

    @property
    def tasks(self) -> Path:
        return self.root / TASKS_DIR

    @property
    def db_path(self) -> Path:
        return self.root / STATE_DB_FILE

    @property
    def status_file(self) -> Path:
        return self.root / STATUS_FILE

    @property
    def tasks_file(self) -> Path:
        return self.root / TASKS_FILE

    @property
    def budget_file(self) -> Path:
        return self.root / BUDGET_FILE

    def task_dir(self, task_id: str) -> Path:
        safe = task_id.replace("/", "_").replace("\\", "_")
        return self.tasks / safe

    def failure_file(self, task_id: str) -> Path:
        return self.task_dir(task_id) / FAILURE_FILE


def state_root(repo_root: str | Path, override: str | Path | None = None) -> Path:
    """Resolve the state folder; relative overrides are taken from ``repo_root``."""

    base = Path(repo_root)
    if override is None:
        return base / STATE_DIR_NAME
    candidate = Path(override).expanduser()
    return candidate if candidate.is_absolute() else base / candidate


def ensure_state_folders(repo_root: str | Path, override: str | Path | None = None) -> StateFolders:
    folders = StateFolders(root=state_root(repo_root, override))
    for path in (folders.root, folders.runs, folders.logs, folders.worktrees, folders.tasks):
        path.mkdir(parents=True, exist_ok=True)
    gitignore = folders.root / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(_GITIGNORE_CONTENT, encoding="utf-8")
    return folders


__all__ = ["StateFolders", "ensure_state_folders", "state_root"]
