"""
Markdown projections of the ledger and task rows.

``STATUS.md``, ``TASKS.md`` and ``BUDGET.md`` are regenerated from persisted
state on every write and never patched incrementally. Per-task files
(``CONTEXT.md``, ``REPAIR.md``, ``FAILURE.md``) live under ``tasks/<task>/``.

A write failure never aborts a run: it is logged once and turns every later
write for the same writer into a no-op.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

import structlog

from taskforge.control_plane.budgets import BudgetStatus, Tier
from taskforge.control_plane.failure_summary import aggregate_spend
from taskforge.control_plane.templates import TemplateRenderError, render
from taskforge.domain.models import Task, TaskStatus
from taskforge.persistence.folders import StateFolders
from taskforge.persistence.repositories import LedgerRepo, RunRepo, TaskStateRepo
from taskforge.persistence.state_db import StateDBError

CONTEXT_FILE: Final[str] = "CONTEXT.md"
REPAIR_FILE: Final[str] = "REPAIR.md"


class StatusIconMode(StrEnum):
    EMOJI = "emoji"
    ASCII = "ascii"
    NONE = "none"


_STATUS_ICONS: Final[dict[StatusIconMode, dict[TaskStatus, str]]] = {
    StatusIconMode.EMOJI: {
        TaskStatus.PENDING: "⬜",
        TaskStatus.RUNNING: "⏳",
        TaskStatus.DONE: "✅",
        TaskStatus.BLOCKED: "⛔",
        TaskStatus.ERROR: "❌",
    },
    StatusIconMode.ASCII: {
        TaskStatus.PENDING: "[ ]",
        TaskStatus.RUNNING: "[~]",
        TaskStatus.DONE: "[x]",
        TaskStatus.BLOCKED: "[!]",
        TaskStatus.ERROR: "[x!]",
    },
    StatusIconMode.NONE: {},
}

_STATUS_TEMPLATE: Final[str] = """\
# STATUS

- **runId**: `{{ run.id }}`
- **runStatus**: {{ run.status }}
{% if run.backend_id %}
- **backend**: {{ run.backend_id }}
{% endif %}
{% if run.workspace_mode %}
- **workspace**: {{ run.workspace_mode }}
{% endif %}
{% if task %}
- **taskId**: `{{ task.task_id }}`
- **phase**: {{ task.phase or "-" }}
- **iteration**: {{ task.iteration }}
{% endif %}
{% if tier %}
- **tier**: {{ tier }}
{% endif %}
- **updatedAt**: {{ updated_at }}

{% if message %}
## Message

{{ message }}

{% endif %}
{% if budget %}
## Budget

- used: ${{ "%.4f"|format(budget.used_usd) }}, {{ "{:,}".format(budget.used_tokens) }} tokens, {{ budget.used_iterations }} iterations
- tier: {{ budget.tier.value }}{% if budget.is_at_hard_cap %} (HARD CAP){% endif %}


{% endif %}
## Files

- root: `{{ root }}`
- tasks: `tasks/<taskId>/` (CONTEXT.md / REPAIR.md / FAILURE.md)
"""

_TASKS_TEMPLATE: Final[str] = """\
# TASKS

- **runId**: `{{ run_id }}`
- **updatedAt**: {{ updated_at }}

| Task | Status | Phase | Iter | Title |
|------|--------|-------|------|-------|
{% for row in rows %}
| `{{ row.task_id }}` | {{ row.status }} | {{ row.phase }} | {{ row.iteration }} | {{ row.title }} |
{% endfor %}
{% if attention %}

## Attention

{% for row in attention %}
### {{ row.task_id }}
{% if row.goal %}
{{ row.goal }}
{% endif %}
{% if row.last_error %}

Last error: {{ row.last_error }}
{% endif %}

{% endfor %}
{% endif %}
"""

_BUDGET_TEMPLATE: Final[str] = """\
# BUDGET

- **runId**: `{{ run_id }}`
- **updatedAt**: {{ updated_at }}

| task | calls | usd | tokens |
| --- | ---: | ---: | ---: |
{% for entry in spend %}
| {{ entry.task_id }} | {{ entry.calls }} | {{ "%.4f"|format(entry.usd) }} | {{ entry.tokens }} |
{% else %}
| (no backend usage recorded) | 0 | 0.0000 | 0 |
{% endfor %}
| **total** | {{ total_calls }} | {{ "%.4f"|format(total_usd) }} | {{ total_tokens }} |

> Spend is best-effort and depends on backends reporting usage. Wall time and
> iterations are always tracked; USD/tokens may be 0 for some backends.
"""


class ArtifactWriter:
    """Writes projections for one run under the state folder."""

    def __init__(
        self,
        folders: StateFolders,
        *,
        runs: RunRepo,
        task_states: TaskStateRepo,
        ledger: LedgerRepo,
        enabled: bool = True,
        status_icons: StatusIconMode = StatusIconMode.EMOJI,
        logger: Any | None = None,
    ) -> None:
        self._folders = folders
        self._runs = runs
        self._task_states = task_states
        self._ledger = ledger
        self._enabled = enabled
        self._status_icons = status_icons
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def write_status(
        self,
        run_id: str,
        *,
        tier: Tier | None = None,
        budget_status: BudgetStatus | None = None,
    ) -> Path | None:
        def produce() -> str:
            run = self._runs.get(run_id)
            if run is None:
                raise ValueError(f"run_id not found: {run_id}")
            rows = self._task_states.list_for_run(run_id)
            current = max(rows, key=lambda row: row.updated_at, default=None)
            recent = self._ledger.list(run_id, limit=1)
            return render(
                _STATUS_TEMPLATE,
                {
                    "run": {
                        "id": run.id,
                        "status": run.status.value,
                        "backend_id": run.backend_id,
                        "workspace_mode": run.workspace_mode,
                    },
                    "task": current,
                    "tier": None if tier is None else tier.value,
                    "updated_at": _now_iso(),
                    "message": recent[-1].message if recent else None,
                    "budget": budget_status,
                    "root": str(self._folders.root),
                },
            )

        return self._write(self._folders.status_file, produce)

    def write_tasks_board(self, run_id: str, tasks: Sequence[Task]) -> Path | None:
        def produce() -> str:
            by_id = {task.id: task for task in tasks}
            icons = _STATUS_ICONS[self._status_icons]
            rows = []
            attention = []
            for record in self._task_states.list_for_run(run_id):
                task = by_id.get(record.task_id)
                icon = icons.get(record.status, "")
                rows.append(
                    {
                        "task_id": record.task_id,
                        "status": f"{icon} {record.status.value}" if icon else record.status.value,
                        "phase": record.phase or "",
                        "iteration": record.iteration,
                        "title": _escape_pipes((task.title if task else None) or ""),
                    }
                )
                if record.status in (TaskStatus.BLOCKED, TaskStatus.ERROR):
                    attention.append(
                        {
                            "task_id": record.task_id,
                            "goal": ((task.goal if task else None) or "").strip(),
                            "last_error": record.last_error,
                        }
                    )
            return render(
                _TASKS_TEMPLATE,
                {
                    "run_id": run_id,
                    "updated_at": _now_iso(),
                    "rows": rows,
                    "attention": attention,
                },
            )

        return self._write(self._folders.tasks_file, produce)

    def write_budget_report(self, run_id: str) -> Path | None:
        def produce() -> str:
            spend = aggregate_spend(self._ledger.list_all(run_id, kinds=("backend_usage",)))
            return render(
                _BUDGET_TEMPLATE,
                {
                    "run_id": run_id,
                    "updated_at": _now_iso(),
                    "spend": spend,
                    "total_calls": sum(entry.calls for entry in spend),
                    "total_usd": sum(entry.usd for entry in spend),
                    "total_tokens": sum(entry.tokens for entry in spend),
                },
            )

        return self._write(self._folders.budget_file, produce)

    def write_projections(
        self,
        run_id: str,
        tasks: Sequence[Task],
        *,
        tier: Tier | None = None,
        budget_status: BudgetStatus | None = None,
    ) -> None:
        self.write_status(run_id, tier=tier, budget_status=budget_status)
        self.write_tasks_board(run_id, tasks)
        self.write_budget_report(run_id)

    def write_task_context(self, task_id: str, markdown: str) -> Path | None:
        return self._write(self._folders.task_dir(task_id) / CONTEXT_FILE, lambda: markdown)

    def write_task_repair(self, task_id: str, markdown: str) -> Path | None:
        return self._write(self._folders.task_dir(task_id) / REPAIR_FILE, lambda: markdown)

    def write_failure_summary(self, task_id: str, markdown: str) -> Path | None:
        return self._write(self._folders.failure_file(task_id), lambda: markdown)

    def _write(self, path: Path, produce: Callable[[], str]) -> Path | None:
        if not self._enabled:
            return None
        try:
            content = produce()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except (OSError, ValueError, StateDBError, TemplateRenderError) as exc:
            self._enabled = False
            self._logger.warning(
                "artifact_write_failed",
                path=str(path),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        return path


def _escape_pipes(value: str) -> str:
    return value.replace("|", "\\|")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "CONTEXT_FILE",
    "REPAIR_FILE",
    "ArtifactWriter",
    "StatusIconMode",
]
