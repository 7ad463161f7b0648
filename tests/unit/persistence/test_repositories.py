"""Unit tests for run, task, ledger, issue, and checkpoint repositories."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskforge.domain.models import Issue, IssueLevel, Phase, RunStatus, TaskStatus, WorkspaceMode
from taskforge.persistence.ledger import LedgerLogger
from taskforge.persistence.repositories import (
    CheckpointRepo,
    IssueRepo,
    LedgerRepo,
    RunAlreadyFinalizedError,
    RunRepo,
    TaskStateRepo,
)
from taskforge.persistence.state_db import StateDB
from taskforge.verification_plane.signatures import issue_signature


@pytest.fixture
def db(tmp_path: Path) -> StateDB:
    return StateDB(tmp_path / "state.db")


@pytest.mark.unit
def test_run_is_created_active_and_finalized_exactly_once(db: StateDB) -> None:
    runs = RunRepo(db)
    created = runs.create(
        "run_1", repo_root="/repo", backend_id="noop", workspace_mode=WorkspaceMode.WORKTREE
    )
    assert created.status is RunStatus.ACTIVE
    assert not created.is_finished
    assert created.workspace_mode == "worktree"

    runs.finish("run_1", RunStatus.STOPPED)
    loaded = runs.get("run_1")
    assert loaded is not None
    assert loaded.status is RunStatus.STOPPED
    assert loaded.is_finished

    with pytest.raises(RunAlreadyFinalizedError):
        runs.finish("run_1", RunStatus.SUCCESS)
    reloaded = runs.get("run_1")
    assert reloaded is not None and reloaded.status is RunStatus.STOPPED


@pytest.mark.unit
def test_finish_rejects_active_status_and_unknown_run(db: StateDB) -> None:
    runs = RunRepo(db)
    runs.create("run_1", repo_root="/repo")

    with pytest.raises(ValueError, match="cannot be finalized as active"):
        runs.finish("run_1", RunStatus.ACTIVE)
    with pytest.raises(ValueError, match="run_id not found"):
        runs.finish("run_missing", RunStatus.ERROR)


@pytest.mark.unit
def test_latest_run_and_listing(db: StateDB) -> None:
    runs = RunRepo(db)
    assert runs.get_latest() is None

    runs.create("run_a", repo_root="/repo")
    runs.create("run_b", repo_root="/repo")

    latest = runs.get_latest()
    assert latest is not None and latest.id == "run_b"
    assert [run.id for run in runs.list(limit=5)] == ["run_b", "run_a"]
    with pytest.raises(ValueError):
        runs.list(limit=0)


@pytest.mark.unit
def test_task_rows_are_last_write_wins(db: StateDB) -> None:
    RunRepo(db).create("run_1", repo_root="/repo")
    tasks = TaskStateRepo(db)

    tasks.upsert("run_1", "T1", status=TaskStatus.PENDING)
    first = tasks.get("run_1", "T1")
    tasks.upsert("run_1", "T1", status=TaskStatus.RUNNING, phase=Phase.EXEC, iteration=1)
    tasks.upsert(
        "run_1",
        "T1",
        status=TaskStatus.BLOCKED,
        phase=Phase.DIAGNOSE,
        iteration=2,
        last_error="Hard cap reached for T1",
    )
    tasks.upsert("run_1", "T0", status=TaskStatus.PENDING)

    row = tasks.get("run_1", "T1")
    assert first is not None and row is not None
    assert row.status is TaskStatus.BLOCKED
    assert row.phase == "DIAGNOSE"
    assert row.iteration == 2
    assert row.last_error == "Hard cap reached for T1"
    assert row.started_at == first.started_at
    assert row.finished_at is not None
    assert [item.task_id for item in tasks.list_for_run("run_1")] == ["T0", "T1"]

    with pytest.raises(ValueError):
        tasks.upsert("run_1", "T1", status=TaskStatus.RUNNING, iteration=-1)


@pytest.mark.unit
def test_ledger_tail_is_chronological(db: StateDB) -> None:
    RunRepo(db).create("run_1", repo_root="/repo")
    RunRepo(db).create("run_2", repo_root="/repo")
    ledger = LedgerRepo(db)
    for index in range(5):
        ledger.append("run_1", kind="exec", message=f"event {index}", data={"i": index})
    ledger.append("run_2", kind="exec", message="other run")

    tail = ledger.list("run_1", limit=3)
    assert [event.message for event in tail] == ["event 2", "event 3", "event 4"]
    assert tail[0].data == {"i": 2}
    assert [event.id for event in ledger.list_all("run_1")] == sorted(
        event.id for event in ledger.list_all("run_1")
    )
    assert ledger.list_all("run_1", kinds=()) == []
    assert len(ledger.list_all("run_1", kinds=("exec", "missing"))) == 5

    with pytest.raises(ValueError):
        ledger.append("run_1", kind="", message="empty kind")


@pytest.mark.unit
def test_ledger_logger_binds_run_id(db: StateDB) -> None:
    RunRepo(db).create("run_1", repo_root="/repo")
    repo = LedgerRepo(db)
    logger = LedgerLogger(repo, "run_1")

    event = logger.event("task_started", "Task started", task_id="T1", data={"phase": "PLAN"})

    assert logger.run_id == "run_1"
    assert event.id is not None
    assert repo.list("run_1")[-1].to_dict() == event.to_dict()


@pytest.mark.unit
def test_issues_are_grouped_by_iteration_with_signatures(db: StateDB) -> None:
    RunRepo(db).create("run_1", repo_root="/repo")
    issues = IssueRepo(db)
    first = Issue("ruff", IssueLevel.ERROR, "F401 unused import", file="a.py", line=1)
    second = Issue("ruff", IssueLevel.WARNING, "E501", file="b.py", raw={"code": "E501"})

    assert issues.record("run_1", "T1", 1, [first]) == 1
    assert issues.record("run_1", "T1", 2, [first, second]) == 2
    assert issues.record("run_1", "T1", 3, []) == 0

    latest = issues.latest_for_task("run_1", "T1")
    assert [record.iteration for record in latest] == [2, 2]
    assert latest[0].signature == issue_signature(first)
    assert issues.latest_for_task("run_1", "T9") == []
    assert len(issues.list_for_task("run_1", "T1")) == 3


@pytest.mark.unit
def test_checkpoints_are_recorded_in_order(db: StateDB) -> None:
    RunRepo(db).create("run_1", repo_root="/repo")
    checkpoints = CheckpointRepo(db)
    checkpoints.record("run_1", "T1", ref="abc123", message="[taskforge] T1: WIP iteration 1")
    checkpoints.record("run_1", "T1", ref="def456", message="[taskforge] T1: Done")

    assert [item.ref for item in checkpoints.list_for_run("run_1")] == ["abc123", "def456"]
