"""Workspace strategy interface consumed by the engine loop."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from taskforge.integration_plane.file_contract import evaluate_file_contract

if TYPE_CHECKING:
    from taskforge.domain.models import (
        ChangedFile,
        ContractViolation,
        FileContract,
        WorkspaceMode,
    )

_UNSAFE_TASK_CHARS: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9_-]")


class WorkspaceError(RuntimeError):
    """Raised when a workspace operation cannot complete."""


class WorkspaceMergeError(WorkspaceError):
    """Raised when a task's isolated history cannot be merged back."""

    def __init__(self, task_id: str, detail: str) -> None:
        self.task_id = task_id
        self.detail = detail
        super().__init__(
            f"Failed to merge task {task_id}: {detail}. Manual resolution may be required."
        )


@dataclass(frozen=True, slots=True)
class WorkspaceContext:
    task_id: str
    working_dir: Path


class WorkspaceManager(ABC):
    """
    Per-task workspace lifecycle.

    The engine calls ``prepare`` once per task, then any of the inspection and
    mutation operations, and finally ``merge``/``cleanup`` on success.
    """

    mode: WorkspaceMode

    @abstractmethod
    def prepare(self, task_id: str) -> WorkspaceContext: ...

    @abstractmethod
    def working_dir(self, task_id: str) -> Path: ...

    @abstractmethod
    def changed_files(self, task_id: str) -> tuple[ChangedFile, ...]: ...

    @abstractmethod
    def checkpoint(self, task_id: str, message: str) -> str:
        """Commit current changes and return an opaque revision reference."""

    @abstractmethod
    def merge(self, task_id: str) -> None: ...

    @abstractmethod
    def revert(self, task_id: str) -> None:
        """Restore the pre-task snapshot, removing any new files."""

    @abstractmethod
    def cleanup(self, task_id: str) -> None: ...

    def enforce_contract(
        self, task_id: str, contract: FileContract
    ) -> tuple[ContractViolation, ...]:
        """Evaluate ``contract``; any violation reverts the workspace immediately."""

        violations = evaluate_file_contract(self.changed_files(task_id), contract)
        if violations:
            self.revert(task_id)
        return violations


def sanitize_task_id(task_id: str) -> str:
    if not task_id:
        raise ValueError("task_id must not be empty")
    return _UNSAFE_TASK_CHARS.sub("_", task_id)


__all__ = [
    "WorkspaceContext",
    "WorkspaceError",
    "WorkspaceManager",
    "WorkspaceMergeError",
    "sanitize_task_id",
]
