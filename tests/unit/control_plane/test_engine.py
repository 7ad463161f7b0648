"""
Engine loop tests against in-memory workspace, backend, and validator fakes.

The state DB, ledger and projections are real; only subprocesses and git are
replaced.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from taskforge.backends.base import BackendEnv, BackendInput, BackendResult, CodingBackend
from taskforge.backends.noop import NoopBackend
from taskforge.control_plane.engine import (
    EngineLoop,
    EngineOptions,
    EngineSettings,
    RunOutcome,
    STUCK_REASON,
)
from taskforge.domain.models import (
    BudgetTier,
    ChangedFile,
    FileContract,
    ProjectSpec,
    RunBudget,
    RunStatus,
    ScopeGuardPolicy,
    SprintIntent,
    SprintSize,
    SprintSpec,
    Task,
    TaskBudget,
    TaskStatus,
    ValidatorSpec,
    WorkspaceMode,
)
from taskforge.integration_plane.workspace.base import WorkspaceContext, WorkspaceManager
from taskforge.persistence.repositories import (
    CheckpointRepo,
    IssueRepo,
    LedgerRepo,
    RunRepo,
    TaskStateRepo,
)
from taskforge.verification_plane.command import CommandResult

RUN_ID = "run_test"


class _MemoryWorkspace(WorkspaceManager):
    """Tracks changed files in memory; checkpoint refs are sequential."""

    def __init__(self, root: Path, mode: WorkspaceMode = WorkspaceMode.PATCH) -> None:
        self.mode = mode
        self.root = root
        self.changes: dict[str, ChangedFile] = {}
        self.prepared: list[str] = []
        self.checkpoints: list[str] = []
        self.merged: list[str] = []
        self.cleaned: list[str] = []
        self.reverts: list[str] = []

    def touch(self, path: str, *, is_new: bool = True) -> None:
        self.changes[path] = ChangedFile(path, is_new)

    def prepare(self, task_id: str) -> WorkspaceContext:
        self.prepared.append(task_id)
        return WorkspaceContext(task_id=task_id, working_dir=self.root)

    def working_dir(self, task_id: str) -> Path:
        return self.root

    def changed_files(self, task_id: str) -> tuple[ChangedFile, ...]:
        return tuple(self.changes[path] for path in sorted(self.changes))

    def checkpoint(self, task_id: str, message: str) -> str:
        self.checkpoints.append(message)
        self.changes.clear()
        return f"ref{len(self.checkpoints)}"

    def merge(self, task_id: str) -> None:
        self.merged.append(task_id)

    def revert(self, task_id: str) -> None:
        self.reverts.append(task_id)
        self.changes.clear()

    def cleanup(self, task_id: str) -> None:
        self.cleaned.append(task_id)


class _ScriptedBackend(CodingBackend):
    backend_id = "scripted"

    def __init__(
        self,
        *,
        results: list[BackendResult] | None = None,
        on_call: Callable[[BackendInput], None] | None = None,
    ) -> None:
        self._results = results or [BackendResult(ok=True, message="done")]
        self._on_call = on_call
        self.requests: list[BackendInput] = []
        self.envs: list[BackendEnv] = []

    def implement(self, env: BackendEnv, request: BackendInput) -> BackendResult:
        self.requests.append(request)
        self.envs.append(env)
        if self._on_call is not None:
            self._on_call(request)
        index = min(len(self.requests), len(self._results)) - 1
        return self._results[index]


class _ScriptedCommands:
    """Validator exit codes per command, one per call; the last code repeats."""

    def __init__(self, exit_codes: dict[str, list[int]]) -> None:
        self._exit_codes = exit_codes
        self.calls: list[str] = []

    def __call__(self, command: str, **_: Any) -> CommandResult:
        self.calls.append(command)
        codes = self._exit_codes[command]
        code = codes[min(self.calls.count(command), len(codes)) - 1]
        stdout = "" if code == 0 else f"FAILED tests/test_app.py::test_app - {command} broke"
        return CommandResult(
            command=command, exit_code=code, stdout=stdout, stderr="", duration_ms=3
        )


def _project(*tasks: Task, **overrides: Any) -> ProjectSpec:
    options: dict[str, Any] = {
        "validators": (ValidatorSpec(id="tests", run="pytest -q", parser="pytest"),),
        "default_validators": ("tests",),
        "tasks": tasks,
    }
    options.update(overrides)
    return ProjectSpec(**options)


def _engine(
    tmp_path: Path,
    project: ProjectSpec,
    *,
    backend: CodingBackend | None = None,
    workspace: WorkspaceManager | None = None,
    commands: _ScriptedCommands | None = None,
    settings: EngineSettings | None = None,
) -> EngineLoop:
    ticks = itertools.count()
    return EngineLoop(
        project,
        backend=backend if backend is not None else NoopBackend(),
        workspace=workspace if workspace is not None else _MemoryWorkspace(tmp_path),
        repo_root=tmp_path,
        settings=settings,
        command_runner=commands or _ScriptedCommands({"pytest -q": [0]}),
        run_id_factory=lambda: RUN_ID,
        clock=lambda: next(ticks) * 0.5,
    )


def _ledger_kinds(engine: EngineLoop, *, task_id: str | None = None) -> list[str]:
    events = LedgerRepo(engine.db).list_all(RUN_ID)
    return [event.kind for event in events if task_id is None or event.task_id == task_id]


def _task_row(engine: EngineLoop, task_id: str) -> Any:
    row = TaskStateRepo(engine.db).get(RUN_ID, task_id)
    assert row is not None
    return row


def _run_status(engine: EngineLoop) -> RunStatus:
    run = RunRepo(engine.db).get(RUN_ID)
    assert run is not None and run.is_finished
    return run.status


@pytest.mark.unit
def test_successful_run_executes_tasks_in_dependency_order(tmp_path: Path) -> None:
    workspace = _MemoryWorkspace(tmp_path)
    backend = _ScriptedBackend()
    project = _project(
        Task(id="B", title="Second", deps=("A",), priority=10),
        Task(id="A", title="First"),
    )
    engine = _engine(tmp_path, project, backend=backend, workspace=workspace)

    outcome = engine.run()

    assert outcome == RunOutcome(ok=True, run_id=RUN_ID)
    assert workspace.prepared == ["A", "B"]
    assert workspace.checkpoints == ["[taskforge] A: First", "[taskforge] B: Second"]
    assert workspace.merged == workspace.cleaned == ["A", "B"]
    assert [request.task.id for request in backend.requests] == ["A", "B"]
    assert _run_status(engine) is RunStatus.SUCCESS

    for task_id in ("A", "B"):
        row = _task_row(engine, task_id)
        assert row.status is TaskStatus.DONE
        assert row.phase == "DONE"
        assert row.iteration == 1
        assert row.finished_at is not None

    assert _ledger_kinds(engine, task_id="A") == [
        "task_started",
        "prep",
        "exec",
        "validate_started",
        "validate",
        "checkpoint",
        "task_done",
    ]
    kinds = _ledger_kinds(engine)
    assert kinds[0] == "run_started"
    assert kinds[-1] == "run_done"
    assert [record.ref for record in CheckpointRepo(engine.db).list_for_run(RUN_ID)] == [
        "ref1",
        "ref2",
    ]
    assert engine.folders.status_file.exists()
    assert (engine.folders.tasks / "A" / "CONTEXT.md").exists()
    assert backend.envs[0].log_file == engine.folders.runs / RUN_ID / "A-iter1.md"


@pytest.mark.unit
def test_repair_loop_feeds_notes_into_the_next_attempt(tmp_path: Path) -> None:
    backend = _ScriptedBackend()
    commands = _ScriptedCommands({"pytest -q": [1, 0]})
    engine = _engine(tmp_path, _project(Task(id="T1")), backend=backend, commands=commands)

    outcome = engine.run()

    assert outcome.ok
    assert [request.iteration for request in backend.requests] == [1, 2]
    assert backend.requests[0].repair_notes is None
    notes = backend.requests[1].repair_notes
    assert notes is not None and "test_app" in notes
    assert (engine.folders.tasks / "T1" / "REPAIR.md").exists()
    assert _task_row(engine, "T1").iteration == 2
    assert "diagnose" in _ledger_kinds(engine) and "repair" in _ledger_kinds(engine)


@pytest.mark.unit
def test_dry_run_persists_pending_rows_only(tmp_path: Path) -> None:
    backend = _ScriptedBackend()
    engine = _engine(tmp_path, _project(Task(id="A"), Task(id="B")), backend=backend)

    outcome = engine.run(EngineOptions(dry_run=True))

    assert outcome.ok and outcome.run_id == RUN_ID
    assert backend.requests == []
    assert [row.status for row in TaskStateRepo(engine.db).list_for_run(RUN_ID)] == [
        TaskStatus.PENDING,
        TaskStatus.PENDING,
    ]
    assert _ledger_kinds(engine) == ["run_started", "dry_run"]
    assert _run_status(engine) is RunStatus.SUCCESS


@pytest.mark.unit
def test_unknown_task_returns_config_error_without_a_run(tmp_path: Path) -> None:
    engine = _engine(tmp_path, _project(Task(id="A")))

    outcome = engine.run(EngineOptions(task_id="missing"))

    assert outcome.exit_code == 4
    assert outcome.run_id is None
    assert outcome.reason == "Unknown task id: missing"
    assert RunRepo(engine.db).get_latest() is None


@pytest.mark.unit
def test_dependency_cycle_is_a_config_error(tmp_path: Path) -> None:
    engine = _engine(tmp_path, _project(Task(id="A", deps=("B",)), Task(id="B", deps=("A",))))

    outcome = engine.run()

    assert not outcome.ok
    assert outcome.exit_code == 4
    assert outcome.run_id is None


@pytest.mark.unit
def test_single_task_option_skips_other_tasks(tmp_path: Path) -> None:
    workspace = _MemoryWorkspace(tmp_path)
    engine = _engine(
        tmp_path, _project(Task(id="A"), Task(id="B", deps=("A",))), workspace=workspace
    )

    assert engine.run(EngineOptions(task_id="B")).ok
    assert workspace.prepared == ["B"]


@pytest.mark.unit
def test_hard_iteration_cap_stops_with_budget_exit(tmp_path: Path) -> None:
    task = Task(id="T1", budget=TaskBudget(hard=BudgetTier(max_iterations=1)))
    engine = _engine(
        tmp_path, _project(task), commands=_ScriptedCommands({"pytest -q": [1]})
    )

    outcome = engine.run()

    assert outcome.exit_code == 2
    assert outcome.task_id == "T1"
    assert outcome.reason is not None and "Hard cap" in outcome.reason
    row = _task_row(engine, "T1")
    assert row.status is TaskStatus.BLOCKED
    assert _ledger_kinds(engine)[-1] == "hard_cap"
    assert _run_status(engine) is RunStatus.STOPPED
    failure = engine.folders.failure_file("T1").read_text(encoding="utf-8")
    assert "Hard cap" in failure


@pytest.mark.unit
def test_repeated_identical_failures_are_detected_as_stuck(tmp_path: Path) -> None:
    backend = _ScriptedBackend()
    engine = _engine(
        tmp_path,
        _project(Task(id="T1")),
        backend=backend,
        commands=_ScriptedCommands({"pytest -q": [1]}),
    )

    outcome = engine.run()

    assert outcome.exit_code == 3
    assert outcome.reason == STUCK_REASON
    assert len(backend.requests) == 3
    assert "stuck" in _ledger_kinds(engine)
    assert _task_row(engine, "T1").status is TaskStatus.BLOCKED


@pytest.mark.unit
def test_iteration_limit_without_hard_cap_is_a_stuck_exit(tmp_path: Path) -> None:
    engine = _engine(
        tmp_path,
        _project(Task(id="T1"), run_budget=RunBudget(max_iterations_total=2)),
        commands=_ScriptedCommands({"pytest -q": [1]}),
    )

    outcome = engine.run()

    assert outcome.exit_code == 3
    assert outcome.reason == "Max iterations reached (2)"


@pytest.mark.unit
def test_run_money_budget_blocks_before_the_next_iteration(tmp_path: Path) -> None:
    backend = _ScriptedBackend(
        results=[BackendResult(ok=True, message="done", estimated_usd=0.8, estimated_tokens=100)]
    )
    engine = _engine(
        tmp_path,
        _project(Task(id="T1"), run_budget=RunBudget(money_usd=1.0)),
        backend=backend,
        commands=_ScriptedCommands({"pytest -q": [1]}),
    )

    outcome = engine.run()

    assert outcome.exit_code == 2
    assert len(backend.requests) == 2
    kinds = _ledger_kinds(engine)
    assert kinds.count("backend_usage") == 2
    assert kinds[-1] == "budget_exceeded"


@pytest.mark.unit
def test_backend_failure_stops_the_run(tmp_path: Path) -> None:
    backend = _ScriptedBackend(results=[BackendResult(ok=False, message="agent crashed")])
    commands = _ScriptedCommands({"pytest -q": [0]})
    engine = _engine(tmp_path, _project(Task(id="T1")), backend=backend, commands=commands)

    outcome = engine.run()

    assert outcome.exit_code == 5
    assert outcome.reason == "Backend invocation error: agent crashed"
    assert commands.calls == []
    row = _task_row(engine, "T1")
    assert row.status is TaskStatus.ERROR
    assert row.last_error == "agent crashed"
    assert _run_status(engine) is RunStatus.ERROR


def _xs_fix_task(**overrides: Any) -> Task:
    options: dict[str, Any] = {
        "id": "T1",
        "sprint": SprintSpec(size=SprintSize.XS, intent=SprintIntent.FIX),
        "files_contract": None,
    }
    options.update(overrides)
    return Task(**options)


@pytest.mark.unit
def test_scope_guard_warn_records_warning_and_succeeds(tmp_path: Path) -> None:
    workspace = _MemoryWorkspace(tmp_path)
    backend = _ScriptedBackend(on_call=lambda _request: workspace.touch("unrelated.txt"))
    engine = _engine(
        tmp_path, _project(_xs_fix_task()), backend=backend, workspace=workspace
    )

    outcome = engine.run()

    assert outcome.ok
    issues = IssueRepo(engine.db).list_for_task(RUN_ID, "T1")
    assert [(issue.kind, issue.level) for issue in issues] == [("scope_violation", "warning")]


@pytest.mark.unit
def test_scope_guard_block_fails_the_iteration(tmp_path: Path) -> None:
    workspace = _MemoryWorkspace(tmp_path)
    backend = _ScriptedBackend(on_call=lambda _request: workspace.touch("unrelated.txt"))
    task = _xs_fix_task(budget=TaskBudget(hard=BudgetTier(max_iterations=1)))
    engine = _engine(
        tmp_path,
        _project(task, scope_guard=ScopeGuardPolicy.BLOCK),
        backend=backend,
        workspace=workspace,
    )

    outcome = engine.run()

    assert outcome.exit_code == 2
    issues = IssueRepo(engine.db).latest_for_task(RUN_ID, "T1")
    assert {issue.kind for issue in issues} == {"scope_violation"}
    assert all(issue.level == "error" for issue in issues)


@pytest.mark.unit
def test_contract_violation_reverts_and_retries(tmp_path: Path) -> None:
    workspace = _MemoryWorkspace(tmp_path)

    def edit(request: BackendInput) -> None:
        workspace.touch("secrets.env" if request.iteration == 1 else "src/app.py")

    engine = _engine(
        tmp_path,
        _project(Task(id="T1", files_contract=FileContract(forbidden=("*.env",)))),
        backend=_ScriptedBackend(on_call=edit),
        workspace=workspace,
    )

    outcome = engine.run()

    assert outcome.ok
    assert workspace.reverts == ["T1"]
    first = IssueRepo(engine.db).list_for_task(RUN_ID, "T1", iteration=1)
    assert [issue.kind for issue in first] == ["contract_violation"]
    assert first[0].file == "secrets.env"


@pytest.mark.unit
def test_worktree_fix_tasks_checkpoint_every_iteration(tmp_path: Path) -> None:
    workspace = _MemoryWorkspace(tmp_path, WorkspaceMode.WORKTREE)
    task = Task(id="T1", title="Fix it", sprint=SprintSpec(intent=SprintIntent.FIX))
    engine = _engine(
        tmp_path,
        _project(task),
        workspace=workspace,
        commands=_ScriptedCommands({"pytest -q": [1, 0]}),
    )

    assert engine.run().ok
    assert workspace.checkpoints == ["[taskforge] T1: WIP iteration 1", "[taskforge] T1: Fix it"]


@pytest.mark.unit
def test_warning_tier_shrinks_context_and_tightens_repair(tmp_path: Path) -> None:
    workspace = _MemoryWorkspace(tmp_path, WorkspaceMode.WORKTREE)
    backend = _ScriptedBackend(
        results=[BackendResult(ok=True, message="done", estimated_usd=0.05)]
    )
    task = Task(
        id="T1",
        sprint=SprintSpec(intent=SprintIntent.FIX),
        budget=TaskBudget(optimal=BudgetTier(usd=0.01)),
    )
    engine = _engine(
        tmp_path,
        _project(task),
        backend=backend,
        workspace=workspace,
        commands=_ScriptedCommands({"pytest -q": [1, 1, 0]}),
    )

    assert engine.run().ok
    assert len(backend.requests) == 3

    first, second, third = backend.requests
    assert first.context is not None and first.context.startswith("# Context\n")
    assert second.context is not None
    assert second.context.startswith("# Context (WARNING: shrunk)")
    assert "### tests" in second.context
    assert "FAILED tests/test_app.py::test_app" in second.context

    assert second.repair_notes is not None
    assert "## Constraints (WARNING tier)" not in second.repair_notes
    assert third.repair_notes is not None
    assert "## Constraints (WARNING tier)" in third.repair_notes
    assert "- Do NOT add new features" in third.repair_notes

    assert workspace.checkpoints == [
        "[taskforge] T1: WIP iteration 1",
        "[taskforge] T1: Task completed",
    ]
    assert backend.envs[0].log_file is not None
    assert backend.envs[1].log_file is None
    assert backend.envs[2].log_file is None


@pytest.mark.unit
def test_unexpected_workspace_error_marks_task_and_run(tmp_path: Path) -> None:
    class _BrokenWorkspace(_MemoryWorkspace):
        def merge(self, task_id: str) -> None:
            raise RuntimeError("merge exploded")

    engine = _engine(tmp_path, _project(Task(id="T1")), workspace=_BrokenWorkspace(tmp_path))

    outcome = engine.run()

    assert outcome.exit_code == 4
    assert outcome.reason == "merge exploded"
    assert _task_row(engine, "T1").status is TaskStatus.ERROR
    assert _ledger_kinds(engine)[-1] == "run_error"
    assert _run_status(engine) is RunStatus.ERROR


@pytest.mark.unit
def test_backend_logs_can_be_disabled(tmp_path: Path) -> None:
    backend = _ScriptedBackend()
    engine = _engine(
        tmp_path,
        _project(Task(id="T1")),
        backend=backend,
        settings=EngineSettings(backend_logs=False, artifacts_enabled=False),
    )

    assert engine.run().ok
    assert backend.envs[0].log_file is None
    assert not engine.folders.status_file.exists()
