"""
Backend interface: the engine's only view of a code-generation tool.

A backend reports failure as a value (``BackendResult(ok=False)``); exceptions
are reserved for programming errors. Operational failures such as a missing
executable, an auth problem, or a timeout are all ``ok=False`` results.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

from taskforge.constants import DEFAULT_BACKEND_TIMEOUT_MINUTES

if TYPE_CHECKING:
    from taskforge.domain.models import Task
    from taskforge.verification_plane.command import CommandResult

_MAX_LOG_STREAM_CHARS: Final[int] = 200_000
_MAX_MESSAGE_CHARS: Final[int] = 2_000


@dataclass(frozen=True, slots=True)
class BackendEnv:
    working_dir: Path
    backend_id: str
    log_file: Path | None = None


@dataclass(frozen=True, slots=True)
class BackendInput:
    task: Task
    iteration: int
    repair_notes: str | None = None
    context: str | None = None


@dataclass(frozen=True, slots=True)
class BackendResult:
    ok: bool
    message: str
    estimated_usd: float | None = None
    estimated_tokens: int | None = None


class CodingBackend(abc.ABC):
    """One implementation attempt per call; never retried by the backend itself."""

    backend_id: str = "backend"

    @abc.abstractmethod
    def implement(self, env: BackendEnv, request: BackendInput) -> BackendResult:
        """Attempt the task in ``env.working_dir`` and report the outcome."""


def backend_timeout_seconds(task: Task, *, default_minutes: float | None = None) -> float:
    """Task hard ``time_minutes`` when declared, else the backend default."""

    if task.budget is not None and task.budget.hard is not None:
        minutes = task.budget.hard.time_minutes
        if minutes is not None:
            return float(minutes) * 60.0
    fallback = DEFAULT_BACKEND_TIMEOUT_MINUTES if default_minutes is None else default_minutes
    return float(fallback) * 60.0


def build_prompt(request: BackendInput) -> str:
    task = request.task
    lines = [f"# Task: {task.title or task.id}", ""]
    if task.goal:
        lines.extend(["## Goal", task.goal, ""])
    if request.context:
        lines.extend([request.context.rstrip(), ""])
    if request.repair_notes:
        lines.extend([f"## Repair Notes (iteration {request.iteration})", request.repair_notes, ""])
    lines.append("Please implement this task and ensure all validators pass.")
    return "\n".join(lines)


def truncate_message(text: str) -> str:
    return text[:_MAX_MESSAGE_CHARS]


def write_backend_log(
    log_file: Path,
    *,
    backend_id: str,
    working_dir: Path,
    command: str,
    result: CommandResult,
    timeout_seconds: float,
) -> None:
    """Write a markdown transcript of one backend invocation."""

    def fenced(stream: str) -> list[str]:
        if not stream:
            return ["(empty)"]
        if len(stream) > _MAX_LOG_STREAM_CHARS:
            stream = stream[:_MAX_LOG_STREAM_CHARS] + "\n\n[...truncated...]\n"
        return ["```", stream, "```"]

    lines = [
        "# Backend log",
        "",
        f"- writtenAt: {datetime.now(UTC).isoformat(timespec='seconds')}",
        f"- duration: {result.duration_ms}ms",
        f"- backend: {backend_id}",
        f"- cwd: {working_dir}",
        f"- command: {command}",
        f"- exitCode: {'null' if result.exit_code is None else result.exit_code}",
        f"- timedOut: {str(result.timed_out).lower()}",
        f"- timeoutSeconds: {timeout_seconds:g}",
        "",
        "## stdout",
        "",
        *fenced(result.stdout),
        "",
        "## stderr",
        "",
        *fenced(result.stderr),
        "",
    ]
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.write_text("\n".join(lines), encoding="utf-8")


__all__ = [
    "BackendEnv",
    "BackendInput",
    "BackendResult",
    "CodingBackend",
    "backend_timeout_seconds",
    "build_prompt",
    "truncate_message",
    "write_backend_log",
]
