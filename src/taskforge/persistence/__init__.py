"""Durable run, task, and ledger storage."""

from taskforge.persistence.folders import StateFolders, ensure_state_folders, state_root
from taskforge.persistence.ledger import LedgerLogger
from taskforge.persistence.repositories import (
    CheckpointRecord,
    CheckpointRepo,
    IssueRecord,
    IssueRepo,
    LedgerEvent,
    LedgerRepo,
    RunAlreadyFinalizedError,
    RunRecord,
    RunRepo,
    TaskStateRecord,
    TaskStateRepo,
)
from taskforge.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "CheckpointRecord",
    "CheckpointRepo",
    "IssueRecord",
    "IssueRepo",
    "LedgerEvent",
    "LedgerLogger",
    "LedgerRepo",
    "RunAlreadyFinalizedError",
    "RunRecord",
    "RunRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "StateFolders",
    "TaskStateRecord",
    "TaskStateRepo",
    "ensure_state_folders",
    "state_root",
]
