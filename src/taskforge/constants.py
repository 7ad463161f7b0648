"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from typing import Final

# State folder layout (relative to the repository root unless overridden by config).
STATE_DIR_NAME: Final[str] = ".taskforge"
RUNS_DIR: Final[str] = "runs"
LOGS_DIR: Final[str] = "logs"
WORKTREES_DIR: Final[str] = "worktrees"
TASKS_DIR: Final[str] = "tasks"

STATE_DB_FILE: Final[str] = "state.db"
STATUS_FILE: Final[str] = "STATUS.md"
TASKS_FILE: Final[str] = "TASKS.md"
BUDGET_FILE: Final[str] = "BUDGET.md"
FAILURE_FILE: Final[str] = "FAILURE.md"

PROJECT_SPEC_FILE: Final[str] = "taskforge.yml"
SETTINGS_FILE: Final[str] = "taskforge.toml"

# Git.
DEFAULT_BRANCH_PREFIX: Final[str] = "taskforge"
COMMIT_MESSAGE_PREFIX: Final[str] = "[taskforge]"

# Engine loop defaults.
DEFAULT_MAX_ITERATIONS: Final[int] = 12
DEFAULT_COMMAND_TIMEOUT_SECONDS: Final[int] = 900
DEFAULT_BACKEND_TIMEOUT_MINUTES: Final[int] = 10
SIGNATURE_HISTORY_CAP: Final[int] = 50
STUCK_WINDOW_MULTIPLIER: Final[int] = 3
STUCK_MIN_ITERATION: Final[int] = 3

# Output caps.
MAX_RAW_ISSUE_CHARS: Final[int] = 4000
MAX_CONTEXT_OUTPUT_CHARS: Final[int] = 8000
MAX_SUMMARY_ISSUES: Final[int] = 50
DEFAULT_LEDGER_TAIL: Final[int] = 50

# Process exit codes shared by the engine and the CLI.
EXIT_SUCCESS: Final[int] = 0
EXIT_BUDGET_STOP: Final[int] = 2
EXIT_STUCK_STOP: Final[int] = 3
EXIT_CONFIG_ERROR: Final[int] = 4
EXIT_BACKEND_ERROR: Final[int] = 5

__all__ = [
    "BUDGET_FILE",
    "COMMIT_MESSAGE_PREFIX",
    "DEFAULT_BACKEND_TIMEOUT_MINUTES",
    "DEFAULT_BRANCH_PREFIX",
    "DEFAULT_COMMAND_TIMEOUT_SECONDS",
    "DEFAULT_LEDGER_TAIL",
    "DEFAULT_MAX_ITERATIONS",
    "EXIT_BACKEND_ERROR",
    "EXIT_BUDGET_STOP",
    "EXIT_CONFIG_ERROR",
    "EXIT_STUCK_STOP",
    "EXIT_SUCCESS",
    "FAILURE_FILE",
    "LOGS_DIR",
    "MAX_CONTEXT_OUTPUT_CHARS",
    "MAX_RAW_ISSUE_CHARS",
    "MAX_SUMMARY_ISSUES",
    "PROJECT_SPEC_FILE",
    "RUNS_DIR",
    "SETTINGS_FILE",
    "SIGNATURE_HISTORY_CAP",
    "STATE_DB_FILE",
    "STATE_DIR_NAME",
    "STATUS_FILE",
    "STUCK_MIN_ITERATION",
    "STUCK_WINDOW_MULTIPLIER",
    "TASKS_DIR",
    "TASKS_FILE",
    "WORKTREES_DIR",
]
