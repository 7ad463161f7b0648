"""Backend that runs a configured shell command with the prompt on stdin."""

from __future__ import annotations

from collections.abc import Callable
from typing import Final

from taskforge.backends.base import (
    BackendEnv,
    BackendInput,
    BackendResult,
    CodingBackend,
    backend_timeout_seconds,
    build_prompt,
    truncate_message,
    write_backend_log,
)
from taskforge.verification_plane.command import CommandResult, run_shell_command

# POSIX shells exit with 127 when the command itself cannot be found.
_SHELL_COMMAND_NOT_FOUND: Final[int] = 127

CommandRunner = Callable[..., CommandResult]


class CommandBackend(CodingBackend):
    """
    Generic subprocess backend.

    The task id and iteration are exported as ``TASKFORGE_TASK_ID`` and
    ``TASKFORGE_ITERATION``. A zero exit status is success.
    """

    def __init__(
        self,
        backend_id: str,
        command: str,
        *,
        default_timeout_minutes: float | None = None,
        command_runner: CommandRunner | None = None,
    ) -> None:
        if not command.strip():
            raise ValueError("backend command must be non-empty")
        self.backend_id = backend_id
        self._command = command
        self._default_timeout_minutes = default_timeout_minutes
        self._run = command_runner if command_runner is not None else run_shell_command

    @property
    def command(self) -> str:
        return self._command

    def implement(self, env: BackendEnv, request: BackendInput) -> BackendResult:
        timeout_seconds = backend_timeout_seconds(
            request.task, default_minutes=self._default_timeout_minutes
        )
        result = self._run(
            self._command,
            cwd=env.working_dir,
            timeout_seconds=timeout_seconds,
            stdin_text=build_prompt(request),
            env={
                "TASKFORGE_TASK_ID": request.task.id,
                "TASKFORGE_ITERATION": str(request.iteration),
            },
        )
        if env.log_file is not None:
            write_backend_log(
                env.log_file,
                backend_id=self.backend_id,
                working_dir=env.working_dir,
                command=self._command,
                result=result,
                timeout_seconds=timeout_seconds,
            )
        return self._to_backend_result(request, result, timeout_seconds)

    def _to_backend_result(
        self, request: BackendInput, result: CommandResult, timeout_seconds: float
    ) -> BackendResult:
        if result.ok:
            return BackendResult(
                ok=True,
                message=(
                    f'{self.backend_id} completed task "{request.task.id}" '
                    f"(iteration {request.iteration})"
                ),
            )
        if result.timed_out:
            return BackendResult(
                ok=False,
                message=(
                    f"{self.backend_id} timed out after {timeout_seconds / 60.0:g} minute(s). "
                    "Consider breaking the task into smaller subtasks or increasing the "
                    "task's hard.time_minutes budget."
                ),
            )
        if result.error is not None:
            return BackendResult(
                ok=False,
                message=truncate_message(f"{self.backend_id} could not start: {result.error}"),
            )
        if result.exit_code == _SHELL_COMMAND_NOT_FOUND:
            return BackendResult(
                ok=False,
                message=truncate_message(
                    f"{self.backend_id} command not found: {self._command}. "
                    "Ensure the tool is installed and on PATH."
                ),
            )
        detail = result.stderr.strip() or result.stdout.strip()
        return BackendResult(
            ok=False,
            message=truncate_message(
                f"{self.backend_id} exited with code {result.exit_code}: {detail}"
            ),
        )


__all__ = ["CommandBackend", "CommandRunner"]
