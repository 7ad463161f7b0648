"""
SQLite state store: schema migrations, connection lifecycle and safe query helpers.

The store holds runs, per-task execution rows, the append-only ledger, issues
and checkpoint references. Connections are short-lived and opened in WAL mode
so status readers never block an active run that is appending events.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from taskforge.domain.models import RunStatus, TaskStatus

RowValue = str | int | float | bytes | None
SQLParams = Sequence[RowValue]

STATE_DB_SCHEMA_VERSION: Final[int] = 1
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
BUSY_RETRY_BACKOFF_SECONDS: Final[float] = 0.025


def _sql_enum(values: Sequence[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


_RUN_STATUS_VALUES: Final[tuple[str, ...]] = tuple(sorted(item.value for item in RunStatus))
_TASK_STATUS_VALUES: Final[tuple[str, ...]] = tuple(sorted(item.value for item in TaskStatus))

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(_RUN_STATUS_VALUES)})),
        started_at TEXT NOT NULL,
        finished_at TEXT,
        repo_root TEXT NOT NULL,
        backend_id TEXT,
        workspace_mode TEXT
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS runs_finalized_immutable
    BEFORE UPDATE ON runs
    WHEN OLD.finished_at IS NOT NULL
    BEGIN
        SELECT RAISE(ABORT, 'run is already finalized');
    END
    """,
    f"""
    CREATE TABLE IF NOT EXISTS tasks (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        task_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(_TASK_STATUS_VALUES)})),
        phase TEXT,
        iteration INTEGER NOT NULL DEFAULT 0 CHECK (iteration >= 0),
        started_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        finished_at TEXT,
        last_error TEXT,
        PRIMARY KEY (run_id, task_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES runs(id),
        task_id TEXT,
        ts TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (length(kind) > 0),
        message TEXT NOT NULL,
        data_json TEXT
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ledger_append_only_update
    BEFORE UPDATE ON ledger
    BEGIN
        SELECT RAISE(ABORT, 'ledger is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ledger_append_only_delete
    BEFORE DELETE ON ledger
    BEGIN
        SELECT RAISE(ABORT, 'ledger is append-only');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS issues (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES runs(id),
        task_id TEXT NOT NULL,
        iteration INTEGER NOT NULL DEFAULT 0,
        signature TEXT NOT NULL,
        kind TEXT NOT NULL,
        level TEXT NOT NULL CHECK (level IN ('error','warning')),
        file TEXT,
        line INTEGER,
        message TEXT NOT NULL,
        raw_json TEXT,
        ts TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES runs(id),
        task_id TEXT NOT NULL,
        ts TEXT NOT NULL,
        ref TEXT NOT NULL,
        message TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_run_id ON ledger(run_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_issues_run_task ON issues(run_id, task_id, iteration)",
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_run_task ON checkpoints(run_id, task_id)",
)


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="initial_state_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "initial_state_schema", _MIGRATION_0001_STATEMENTS),
    ),
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite state DB with checksummed migrations and retrying query helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._migrated = False

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            journal_mode = str(conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]).lower()
            if journal_mode != "wal":
                raise StateDBError(f"journal_mode must be WAL, got {journal_mode!r}")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, *, conn: sqlite3.Connection | None = None
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside one ``BEGIN IMMEDIATE`` transaction."""

        if conn is None:
            with self.connection() as owned_conn, self.transaction(conn=owned_conn) as txn_conn:
                yield txn_conn
            return

        self._execute_with_retry(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        with self.connection() as conn:
            self._execute_with_retry(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
            )
            rows = self._execute_with_retry(
                conn,
                "SELECT version, checksum FROM schema_versions ORDER BY version",
                (),
                operation="load schema_versions",
            ).fetchall()
            applied = {int(row["version"]): str(row["checksum"]) for row in rows}
            if max(applied, default=0) > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this binary "
                    f"(db={max(applied)}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                checksum = applied.get(migration.version)
                if checksum is not None:
                    if checksum != migration.checksum:
                        raise StateDBMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={checksum} code={migration.checksum}"
                        )
                    continue

                operation = f"apply migration {migration.version}"
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(tx, statement, (), operation=operation)
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        operation=operation,
                    )

            self._migrated = True
            return self.schema_version(conn=conn)

    def ensure_migrated(self) -> None:
        """Run ``migrate`` once per instance."""

        if not self._migrated:
            self.migrate()

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
            conn=conn,
        )
        return 0 if row is None else int(row["version"] or 0)

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            return self._execute_with_retry(conn, sql, params, operation="execute").rowcount

        with self.transaction() as tx:
            return self._execute_with_retry(tx, sql, params, operation="execute").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    def integrity_check(self) -> tuple[str, ...]:
        """Return SQLite's integrity findings; empty when the file is healthy."""

        rows = self.query_all("PRAGMA integrity_check")
        messages = tuple(str(next(iter(row.values()))) for row in rows)
        return () if messages == ("ok",) else messages

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                message = str(exc).lower()
                busy = any(fragment in message for fragment in _BUSY_SUBSTRINGS)
                if busy and attempt < self._busy_retry_limit:
                    time.sleep(BUSY_RETRY_BACKOFF_SECONDS * 2**attempt)
                    attempt += 1
                    continue
                if any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS):
                    raise StateDBCorruptionError(
                        f"{operation} failed for {self._path}: {exc}. "
                        "Remove the state folder to start fresh."
                    ) from exc
                if busy:
                    raise StateDBBusyError(
                        f"{operation} hit SQLITE_BUSY for {self._path} after "
                        f"{attempt + 1} attempt(s): {exc}"
                    ) from exc
                raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "STATE_DB_SCHEMA_VERSION",
    "RowValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
