"""Unit tests for backend implementations and the backend registry."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from taskforge.backends import (
    BackendEnv,
    BackendInput,
    ClaudeCodeBackend,
    CommandBackend,
    NoopBackend,
    UnknownBackendError,
    backend_timeout_seconds,
    build_prompt,
    create_backend,
)
from taskforge.domain.models import BackendConfig, BudgetTier, ProjectSpec, Task, TaskBudget
from taskforge.verification_plane.command import CommandResult


class _FakeRunner:
    def __init__(self, result: CommandResult) -> None:
        self.result = result
        self.calls: list[dict[str, Any]] = []

    def __call__(self, command: str, **kwargs: Any) -> CommandResult:
        self.calls.append({"command": command, **kwargs})
        return self.result


def _result(exit_code: int | None = 0, *, stderr: str = "", **extra: Any) -> CommandResult:
    return CommandResult(
        command="agent", exit_code=exit_code, stdout="", stderr=stderr, duration_ms=5, **extra
    )


def _request(task: Task | None = None, **extra: Any) -> BackendInput:
    return BackendInput(task=task or Task(id="T1", title="Add parser"), iteration=2, **extra)


@pytest.mark.unit
def test_noop_backend_always_succeeds(tmp_path: Path) -> None:
    result = NoopBackend().implement(BackendEnv(tmp_path, "noop"), _request())
    assert result.ok
    assert result.message.startswith("Noop backend")
    assert result.estimated_usd is None


@pytest.mark.unit
def test_prompt_includes_goal_context_and_repair_notes() -> None:
    prompt = build_prompt(
        _request(
            Task(id="T1", title="Add parser", goal="Parse the config."),
            context="## Context\nsrc/parser.py",
            repair_notes="Fix the failing test.",
        )
    )
    assert prompt.startswith("# Task: Add parser\n")
    assert "## Goal\nParse the config." in prompt
    assert "## Context\nsrc/parser.py" in prompt
    assert "## Repair Notes (iteration 2)\nFix the failing test." in prompt
    assert prompt.endswith("ensure all validators pass.")


@pytest.mark.unit
def test_timeout_comes_from_hard_tier_or_default() -> None:
    limited = Task(id="T1", budget=TaskBudget(hard=BudgetTier(time_minutes=2)))
    assert backend_timeout_seconds(limited) == 120.0
    assert backend_timeout_seconds(Task(id="T2"), default_minutes=1.5) == 90.0


@pytest.mark.unit
def test_command_backend_passes_prompt_and_task_env(tmp_path: Path) -> None:
    runner = _FakeRunner(_result(0))
    backend = CommandBackend("agent", "./agent.sh", command_runner=runner)
    log_file = tmp_path / "logs" / "backend.md"

    result = backend.implement(BackendEnv(tmp_path, "agent", log_file=log_file), _request())

    assert result.ok
    assert result.message == 'agent completed task "T1" (iteration 2)'
    call = runner.calls[0]
    assert call["command"] == "./agent.sh"
    assert call["cwd"] == tmp_path
    assert call["env"] == {"TASKFORGE_TASK_ID": "T1", "TASKFORGE_ITERATION": "2"}
    assert call["stdin_text"].startswith("# Task: Add parser")
    transcript = log_file.read_text(encoding="utf-8")
    assert "- backend: agent" in transcript
    assert "- exitCode: 0" in transcript


@pytest.mark.unit
@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (_result(None, timed_out=True), "agent timed out after"),
        (_result(None, error="permission denied"), "agent could not start: permission denied"),
        (_result(127), "agent command not found: ./agent.sh"),
        (_result(3, stderr="boom\n"), "agent exited with code 3: boom"),
    ],
)
def test_command_backend_failures_are_values(
    tmp_path: Path, result: CommandResult, expected: str
) -> None:
    backend = CommandBackend("agent", "./agent.sh", command_runner=_FakeRunner(result))
    outcome = backend.implement(BackendEnv(tmp_path, "agent"), _request())
    assert not outcome.ok
    assert outcome.message.startswith(expected)


@pytest.mark.unit
def test_command_backend_rejects_blank_command() -> None:
    with pytest.raises(ValueError, match="non-empty"):
        CommandBackend("agent", "  ")


@pytest.mark.unit
def test_claude_backend_uses_print_mode(tmp_path: Path) -> None:
    runner = _FakeRunner(_result(0))
    backend = ClaudeCodeBackend(binary_path="/opt/claude", command_runner=runner)

    assert backend.implement(BackendEnv(tmp_path, "claude-code"), _request()).ok
    assert runner.calls[0]["command"] == "/opt/claude -p --output-format text"


@pytest.mark.unit
def test_claude_backend_maps_auth_failures(tmp_path: Path) -> None:
    runner = _FakeRunner(_result(1, stderr="Error: not logged in"))
    backend = ClaudeCodeBackend(binary_path="/opt/claude", command_runner=runner)

    outcome = backend.implement(BackendEnv(tmp_path, "claude-code"), _request())

    assert not outcome.ok
    assert outcome.message.startswith("Not logged in.")


@pytest.mark.unit
def test_claude_backend_reports_missing_cli(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("taskforge.backends.claude_code.shutil.which", lambda _name: None)
    runner = _FakeRunner(_result(0))

    outcome = ClaudeCodeBackend(command_runner=runner).implement(
        BackendEnv(tmp_path, "claude-code"), _request()
    )

    assert not outcome.ok
    assert "Claude CLI not found" in outcome.message
    assert runner.calls == []


@pytest.mark.unit
def test_registry_prefers_project_backends() -> None:
    project = ProjectSpec(backends={"claude-code": BackendConfig(command="./wrapper.sh")})

    configured = create_backend("claude-code", project)
    assert isinstance(configured, CommandBackend)
    assert configured.command == "./wrapper.sh"
    assert isinstance(create_backend("claude-code"), ClaudeCodeBackend)
    assert isinstance(create_backend("noop", project), NoopBackend)


@pytest.mark.unit
def test_registry_rejects_unknown_backend() -> None:
    project = ProjectSpec(backends={"custom": BackendConfig(command="./custom.sh")})
    with pytest.raises(UnknownBackendError, match="known backends: claude-code, custom, noop"):
        create_backend("missing", project)


@pytest.mark.integration
def test_command_backend_runs_real_shell(tmp_path: Path) -> None:
    backend = CommandBackend("agent", 'cat > prompt.txt && echo "$TASKFORGE_TASK_ID" > id.txt')

    outcome = backend.implement(BackendEnv(tmp_path, "agent"), _request())

    assert outcome.ok
    assert (tmp_path / "id.txt").read_text(encoding="utf-8") == "T1\n"
    assert (tmp_path / "prompt.txt").read_text(encoding="utf-8").startswith("# Task: Add parser")
