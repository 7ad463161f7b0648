"""Synchronous shell command execution with a hard timeout."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Deterministic command execution outcome."""

    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if self.timed_out and self.exit_code is not None:
            raise ValueError("CommandResult.exit_code must be None when timed_out is true")

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "error": self.error,
        }


def run_shell_command(
    command: str,
    *,
    cwd: Path | str,
    timeout_seconds: float | None,
    stdin_text: str | None = None,
    env: Mapping[str, str] | None = None,
    max_output_chars: int | None = 200_000,
) -> CommandResult:
    """
    Run ``command`` through the shell and capture its output.

    On timeout the whole process group is killed and the result carries
    ``timed_out=True`` with ``exit_code=None``. A command that cannot be
    started yields ``exit_code=None`` and ``error`` set.
    """

    started_ns = time.monotonic_ns()
    run_env = os.environ.copy()
    if env is not None:
        run_env.update(env)

    try:
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=Path(cwd),
            env=run_env,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return CommandResult(
            command=command,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started_ns),
            error=str(exc),
        )

    stdin_bytes = stdin_text.encode("utf-8") if stdin_text is not None else None
    try:
        stdout_bytes, stderr_bytes = process.communicate(stdin_bytes, timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        _kill_process_group(process)
        stdout_bytes, stderr_bytes = process.communicate()
        timeout_value = timeout_seconds if timeout_seconds is not None else 0.0
        return CommandResult(
            command=command,
            exit_code=None,
            stdout=_truncate_text(_normalize_output_text(stdout_bytes), max_output_chars),
            stderr=_truncate_text(_normalize_output_text(stderr_bytes), max_output_chars),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=True,
            error=f"command timed out after {timeout_value:.3f}s",
        )

    return CommandResult(
        command=command,
        exit_code=process.returncode,
        stdout=_truncate_text(_normalize_output_text(stdout_bytes), max_output_chars),
        stderr=_truncate_text(_normalize_output_text(stderr_bytes), max_output_chars),
        duration_ms=_elapsed_ms(started_ns),
    )


def _kill_process_group(process: subprocess.Popen[bytes]) -> None:
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    with suppress(ProcessLookupError):
        process.kill()


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


def _normalize_output_text(raw: bytes | None) -> str:
    if not raw:
        return ""
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


__all__ = ["CommandResult", "run_shell_command"]
