"""
Repositories over the state DB.

These are the only writers of runs, task rows, ledger events, issues and
checkpoint references, and they expose the read-only query surface used by
status and report commands ("latest run", "recent ledger events", "task rows
for a run").
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Final

from taskforge.constants import DEFAULT_LEDGER_TAIL
from taskforge.domain.models import Issue, Phase, RunStatus, TaskStatus, WorkspaceMode
from taskforge.persistence.state_db import (
    RowValue,
    StateDB,
    StateDBError,
    _utc_now_iso,
    canonical_json,
)
from taskforge.verification_plane.signatures import issue_signature

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_PAGE_SIZE: Final[int] = 1_000

_TERMINAL_TASK_STATUSES: Final[frozenset[str]] = frozenset(
    {TaskStatus.DONE.value, TaskStatus.BLOCKED.value, TaskStatus.ERROR.value}
)


class RunAlreadyFinalizedError(StateDBError):
    """Raised when a terminated run is finalized a second time."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"run {run_id} is already finalized")
        self.run_id = run_id


@dataclass(frozen=True, slots=True)
class RunRecord:
    id: str
    status: RunStatus
    started_at: str
    repo_root: str
    finished_at: str | None = None
    backend_id: str | None = None
    workspace_mode: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "repo_root": self.repo_root,
            "backend_id": self.backend_id,
            "workspace_mode": self.workspace_mode,
        }


@dataclass(frozen=True, slots=True)
class TaskStateRecord:
    run_id: str
    task_id: str
    status: TaskStatus
    phase: str | None
    iteration: int
    started_at: str
    updated_at: str
    finished_at: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "status": self.status.value,
            "phase": self.phase,
            "iteration": self.iteration,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
            "last_error": self.last_error,
        }


@dataclass(frozen=True, slots=True)
class LedgerEvent:
    run_id: str
    ts: str
    kind: str
    message: str
    task_id: str | None = None
    data: JSONValue = None
    id: int | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "task_id": self.task_id,
            "ts": self.ts,
            "kind": self.kind,
            "message": self.message,
            "data": self.data,
        }


@dataclass(frozen=True, slots=True)
class CheckpointRecord:
    run_id: str
    task_id: str
    ref: str
    message: str
    ts: str
    id: int | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "task_id": self.task_id,
            "ref": self.ref,
            "message": self.message,
            "ts": self.ts,
        }


@dataclass(frozen=True, slots=True)
class IssueRecord:
    run_id: str
    task_id: str
    iteration: int
    signature: str
    kind: str
    level: str
    message: str
    ts: str
    file: str | None = None
    line: int | None = None
    raw: JSONValue = field(default=None, compare=False)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "iteration": self.iteration,
            "signature": self.signature,
            "kind": self.kind,
            "level": self.level,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "ts": self.ts,
            "raw": self.raw,
        }


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.ensure_migrated()

    @staticmethod
    def _validate_limit(limit: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")


class RunRepo(_BaseRepo):
    """Repository for run lifecycle: created once, finalized exactly once."""

    def create(
        self,
        run_id: str,
        *,
        repo_root: str,
        backend_id: str | None = None,
        workspace_mode: WorkspaceMode | str | None = None,
    ) -> RunRecord:
        started_at = _utc_now_iso()
        mode = None if workspace_mode is None else str(workspace_mode)
        self._db.execute(
            """
            INSERT INTO runs (id, status, started_at, repo_root, backend_id, workspace_mode)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (run_id, RunStatus.ACTIVE.value, started_at, repo_root, backend_id, mode),
        )
        return RunRecord(
            id=run_id,
            status=RunStatus.ACTIVE,
            started_at=started_at,
            repo_root=repo_root,
            backend_id=backend_id,
            workspace_mode=mode,
        )

    def finish(self, run_id: str, status: RunStatus) -> None:
        if status is RunStatus.ACTIVE:
            raise ValueError("a run cannot be finalized as active")
        affected = self._db.execute(
            """
            UPDATE runs
            SET status = ?, finished_at = ?
            WHERE id = ? AND finished_at IS NULL
            """,
            (status.value, _utc_now_iso(), run_id),
        )
        if affected == 0:
            if self.get(run_id) is None:
                raise ValueError(f"run_id not found: {run_id}")
            raise RunAlreadyFinalizedError(run_id)

    def get(self, run_id: str) -> RunRecord | None:
        row = self._db.query_one("SELECT * FROM runs WHERE id = ?", (run_id,))
        return None if row is None else _run_from_row(row)

    def get_latest(self) -> RunRecord | None:
        row = self._db.query_one("SELECT * FROM runs ORDER BY started_at DESC, id DESC LIMIT 1")
        return None if row is None else _run_from_row(row)

    def list(self, *, limit: int = 20) -> list[RunRecord]:
        self._validate_limit(limit)
        rows = self._db.query_all(
            "SELECT * FROM runs ORDER BY started_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [_run_from_row(row) for row in rows]


class TaskStateRepo(_BaseRepo):
    """Last-write-wins task execution rows keyed by (run_id, task_id)."""

    def upsert(
        self,
        run_id: str,
        task_id: str,
        *,
        status: TaskStatus,
        phase: Phase | str | None = None,
        iteration: int = 0,
        last_error: str | None = None,
    ) -> None:
        if iteration < 0:
            raise ValueError("iteration must be >= 0")
        now = _utc_now_iso()
        finished_at = now if status.value in _TERMINAL_TASK_STATUSES else None
        self._db.execute(
            """
            INSERT INTO tasks (
                run_id, task_id, status, phase, iteration,
                started_at, updated_at, finished_at, last_error
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, task_id) DO UPDATE SET
                status = excluded.status,
                phase = excluded.phase,
                iteration = excluded.iteration,
                updated_at = excluded.updated_at,
                finished_at = excluded.finished_at,
                last_error = excluded.last_error
            """,
            (
                run_id,
                task_id,
                status.value,
                None if phase is None else str(phase),
                iteration,
                now,
                now,
                finished_at,
                last_error,
            ),
        )

    def get(self, run_id: str, task_id: str) -> TaskStateRecord | None:
        row = self._db.query_one(
            "SELECT * FROM tasks WHERE run_id = ? AND task_id = ?",
            (run_id, task_id),
        )
        return None if row is None else _task_state_from_row(row)

    def list_for_run(self, run_id: str) -> list[TaskStateRecord]:
        rows = self._db.query_all(
            "SELECT * FROM tasks WHERE run_id = ? ORDER BY task_id ASC",
            (run_id,),
        )
        return [_task_state_from_row(row) for row in rows]


class LedgerRepo(_BaseRepo):
    """Append-only chronological event log."""

    def append(
        self,
        run_id: str,
        *,
        kind: str,
        message: str,
        task_id: str | None = None,
        data: Mapping[str, object] | None = None,
        ts: str | None = None,
    ) -> LedgerEvent:
        if not kind:
            raise ValueError("ledger event kind must be non-empty")
        timestamp = ts if ts is not None else _utc_now_iso()
        data_json = None if data is None else canonical_json(dict(data))
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO ledger (run_id, task_id, ts, kind, message, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, task_id, timestamp, kind, message, data_json),
            )
            event_id = cursor.lastrowid
        return LedgerEvent(
            id=event_id,
            run_id=run_id,
            task_id=task_id,
            ts=timestamp,
            kind=kind,
            message=message,
            data=None if data_json is None else json.loads(data_json),
        )

    def list(self, run_id: str, *, limit: int = DEFAULT_LEDGER_TAIL) -> list[LedgerEvent]:
        """Return the newest ``limit`` events for a run in chronological order."""

        self._validate_limit(limit)
        rows = self._db.query_all(
            """
            SELECT id, run_id, task_id, ts, kind, message, data_json
            FROM ledger
            WHERE run_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (run_id, limit),
        )
        rows.reverse()
        return [_ledger_event_from_row(row) for row in rows]

    def list_all(self, run_id: str, *, kinds: Iterable[str] | None = None) -> list[LedgerEvent]:
        sql = """
            SELECT id, run_id, task_id, ts, kind, message, data_json
            FROM ledger
            WHERE run_id = ?
        """
        params: list[str] = [run_id]
        if kinds is not None:
            kind_list = sorted(set(kinds))
            if not kind_list:
                return []
            sql += f" AND kind IN ({','.join('?' for _ in kind_list)})"
            params.extend(kind_list)
        sql += " ORDER BY id ASC"
        return [_ledger_event_from_row(row) for row in self._db.query_all(sql, tuple(params))]


class IssueRepo(_BaseRepo):
    """Issues observed per iteration, with their stuck-detection signature."""

    def record(
        self,
        run_id: str,
        task_id: str,
        iteration: int,
        issues: Iterable[Issue],
    ) -> int:
        ts = _utc_now_iso()
        rows = [
            (
                run_id,
                task_id,
                iteration,
                issue_signature(issue),
                issue.kind,
                issue.level.value,
                issue.file,
                issue.line,
                issue.message,
                None if issue.raw is None else canonical_json(issue.raw),
                ts,
            )
            for issue in issues
        ]
        if not rows:
            return 0
        with self._db.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO issues (
                    run_id, task_id, iteration, signature, kind, level,
                    file, line, message, raw_json, ts
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def list_for_task(
        self,
        run_id: str,
        task_id: str,
        *,
        iteration: int | None = None,
    ) -> list[IssueRecord]:
        sql = "SELECT * FROM issues WHERE run_id = ? AND task_id = ?"
        params: list[str | int] = [run_id, task_id]
        if iteration is not None:
            sql += " AND iteration = ?"
            params.append(iteration)
        sql += " ORDER BY id ASC"
        return [_issue_from_row(row) for row in self._db.query_all(sql, tuple(params))]

    def latest_for_task(self, run_id: str, task_id: str) -> list[IssueRecord]:
        """Issues from the most recent iteration that recorded any."""

        row = self._db.query_one(
            "SELECT MAX(iteration) AS iteration FROM issues WHERE run_id = ? AND task_id = ?",
            (run_id, task_id),
        )
        if row is None or row["iteration"] is None:
            return []
        return self.list_for_task(run_id, task_id, iteration=_as_int(row["iteration"]))


class CheckpointRepo(_BaseRepo):
    """Opaque checkpoint references kept for traceability."""

    def record(self, run_id: str, task_id: str, *, ref: str, message: str) -> CheckpointRecord:
        ts = _utc_now_iso()
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO checkpoints (run_id, task_id, ts, ref, message)
                VALUES (?, ?, ?, ?, ?)
                """,
                (run_id, task_id, ts, ref, message),
            )
            checkpoint_id = cursor.lastrowid
        return CheckpointRecord(
            id=checkpoint_id, run_id=run_id, task_id=task_id, ref=ref, message=message, ts=ts
        )

    def list_for_run(self, run_id: str) -> list[CheckpointRecord]:
        rows = self._db.query_all(
            "SELECT * FROM checkpoints WHERE run_id = ? ORDER BY id ASC",
            (run_id,),
        )
        return [
            CheckpointRecord(
                id=_as_int(row["id"]),
                run_id=_as_str(row["run_id"]),
                task_id=_as_str(row["task_id"]),
                ref=_as_str(row["ref"]),
                message=_as_str(row["message"]),
                ts=_as_str(row["ts"]),
            )
            for row in rows
        ]


def _run_from_row(row: Mapping[str, RowValue]) -> RunRecord:
    return RunRecord(
        id=_as_str(row["id"]),
        status=RunStatus(_as_str(row["status"])),
        started_at=_as_str(row["started_at"]),
        finished_at=_as_optional_str(row["finished_at"]),
        repo_root=_as_str(row["repo_root"]),
        backend_id=_as_optional_str(row["backend_id"]),
        workspace_mode=_as_optional_str(row["workspace_mode"]),
    )


def _task_state_from_row(row: Mapping[str, RowValue]) -> TaskStateRecord:
    return TaskStateRecord(
        run_id=_as_str(row["run_id"]),
        task_id=_as_str(row["task_id"]),
        status=TaskStatus(_as_str(row["status"])),
        phase=_as_optional_str(row["phase"]),
        iteration=_as_int(row["iteration"]),
        started_at=_as_str(row["started_at"]),
        updated_at=_as_str(row["updated_at"]),
        finished_at=_as_optional_str(row["finished_at"]),
        last_error=_as_optional_str(row["last_error"]),
    )


def _ledger_event_from_row(row: Mapping[str, RowValue]) -> LedgerEvent:
    data_json = row["data_json"]
    return LedgerEvent(
        id=_as_int(row["id"]),
        run_id=_as_str(row["run_id"]),
        task_id=_as_optional_str(row["task_id"]),
        ts=_as_str(row["ts"]),
        kind=_as_str(row["kind"]),
        message=_as_str(row["message"]),
        data=None if data_json is None else json.loads(_as_str(data_json)),
    )


def _issue_from_row(row: Mapping[str, RowValue]) -> IssueRecord:
    raw_json = row["raw_json"]
    line = row["line"]
    return IssueRecord(
        run_id=_as_str(row["run_id"]),
        task_id=_as_str(row["task_id"]),
        iteration=_as_int(row["iteration"]),
        signature=_as_str(row["signature"]),
        kind=_as_str(row["kind"]),
        level=_as_str(row["level"]),
        message=_as_str(row["message"]),
        ts=_as_str(row["ts"]),
        file=_as_optional_str(row["file"]),
        line=None if line is None else _as_int(line),
        raw=None if raw_json is None else json.loads(_as_str(raw_json)),
    )


def _as_str(value: RowValue) -> str:
    if not isinstance(value, str):
        raise StateDBError(f"expected text column, got {type(value).__name__}")
    return value


def _as_optional_str(value: RowValue) -> str | None:
    return None if value is None else _as_str(value)


def _as_int(value: RowValue) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise StateDBError(f"expected integer column, got {type(value).__name__}")
    return value


__all__ = [
    "CheckpointRecord",
    "CheckpointRepo",
    "IssueRecord",
    "IssueRepo",
    "LedgerEvent",
    "LedgerRepo",
    "RunAlreadyFinalizedError",
    "RunRecord",
    "RunRepo",
    "TaskStateRecord",
    "TaskStateRepo",
]
