"""Backend for the ``claude`` CLI in headless print mode."""

from __future__ import annotations

import shlex
import shutil
from typing import Final

from taskforge.backends.base import BackendEnv, BackendInput, BackendResult
from taskforge.backends.command import CommandBackend, CommandRunner

CLAUDE_BINARY: Final[str] = "claude"

# stderr fragments that mean the CLI needs an interactive login first.
_AUTH_KEYWORDS: Final[tuple[str, ...]] = (
    "not logged in",
    "unauthorized",
    "authentication",
    "please log in",
    "login required",
)


class ClaudeCodeBackend(CommandBackend):
    """
    Runs ``claude -p`` in the task working directory with the prompt on stdin.

    The CLI manages its own authentication; this backend never handles keys.
    """

    def __init__(
        self,
        backend_id: str = "claude-code",
        *,
        binary_path: str | None = None,
        default_timeout_minutes: float | None = None,
        command_runner: CommandRunner | None = None,
    ) -> None:
        self._binary_path = binary_path
        binary = binary_path if binary_path is not None else CLAUDE_BINARY
        super().__init__(
            backend_id,
            f"{shlex.quote(binary)} -p --output-format text",
            default_timeout_minutes=default_timeout_minutes,
            command_runner=command_runner,
        )

    def implement(self, env: BackendEnv, request: BackendInput) -> BackendResult:
        if self._binary_path is None and shutil.which(CLAUDE_BINARY) is None:
            return BackendResult(
                ok=False,
                message=(
                    "Claude CLI not found. Please ensure Claude Code is installed "
                    "and the CLI is in PATH."
                ),
            )
        result = super().implement(env, request)
        if not result.ok and any(word in result.message.lower() for word in _AUTH_KEYWORDS):
            return BackendResult(
                ok=False,
                message=(
                    f"Not logged in. Please run `{CLAUDE_BINARY}` directly to log in, then retry."
                ),
            )
        return result


__all__ = ["CLAUDE_BINARY", "ClaudeCodeBackend"]
