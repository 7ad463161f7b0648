"""
Human-readable summary written next to a blocked task's artifacts.

Spend is aggregated from ``backend_usage`` ledger events so the summary stays a
projection of the ledger rather than a second source of truth.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Final

from taskforge.constants import MAX_SUMMARY_ISSUES
from taskforge.control_plane.budgets import BudgetStatus, Tier
from taskforge.control_plane.templates import render
from taskforge.domain.models import Issue
from taskforge.persistence.repositories import LedgerEvent

BACKEND_USAGE_KIND: Final[str] = "backend_usage"

DEFAULT_SUGGESTED_STEPS: Final[tuple[str, ...]] = (
    "Inspect recent validator output and fix the first failing error.",
    "Re-run validators locally until green.",
    "If this is a scope issue, narrow the task or adjust the file contract/sprint settings.",
)


@dataclass(frozen=True, slots=True)
class SpendEntry:
    task_id: str
    usd: float
    tokens: int
    calls: int


@dataclass(frozen=True, slots=True)
class FailureSummaryInput:
    run_id: str
    task_id: str
    reason: str
    tier: Tier | None = None
    budget_status: BudgetStatus | None = None
    last_issues: Sequence[Issue] = ()
    ledger_events: Sequence[LedgerEvent] = ()
    suggested_steps: Sequence[str] = field(default_factory=tuple)


_FAILURE_TEMPLATE: Final[str] = """\
# Task blocked

- **runId**: `{{ run_id }}`
- **taskId**: `{{ task_id }}`
- **reason**: {{ reason }}
{% if tier %}
- **tier**: {{ tier }}
{% endif %}

{% if budget %}
## Budget status

- **tier**: {{ budget.tier }}
- **used**: ${{ "%.4f"|format(budget.used_usd) }}, {{ "{:,}".format(budget.used_tokens) }} tokens, {{ budget.used_iterations }} iterations
- **hard cap**: {{ "YES" if budget.is_at_hard_cap else "no" }}

{% endif %}
{% if issues %}
## Last issues

{% for issue in issues %}
- {% if issue.meta %}[{{ issue.meta }}] {% endif %}{{ issue.message }}
{% endfor %}

{% endif %}
{% if spend %}
## Spend breakdown

| task | calls | usd | tokens |
| --- | ---: | ---: | ---: |
{% for entry in spend %}
| {{ entry.task_id }} | {{ entry.calls }} | {{ "%.4f"|format(entry.usd) }} | {{ entry.tokens }} |
{% endfor %}

{% endif %}
## Suggested manual steps

{% for step in steps %}
- {{ step }}
{% endfor %}
"""


def aggregate_spend(events: Iterable[LedgerEvent]) -> list[SpendEntry]:
    """Sum ``backend_usage`` events per task, in first-seen order."""

    totals: dict[str, list[float]] = {}
    for event in events:
        if event.kind != BACKEND_USAGE_KIND or not isinstance(event.data, dict):
            continue
        key = event.task_id or "-"
        bucket = totals.setdefault(key, [0.0, 0.0, 0.0])
        usd = event.data.get("usd")
        tokens = event.data.get("tokens")
        bucket[0] += float(usd) if isinstance(usd, (int, float)) else 0.0
        bucket[1] += float(tokens) if isinstance(tokens, (int, float)) else 0.0
        bucket[2] += 1
    return [
        SpendEntry(task_id=key, usd=usd, tokens=int(tokens), calls=int(calls))
        for key, (usd, tokens, calls) in totals.items()
    ]


def build_failure_summary(summary: FailureSummaryInput) -> str:
    issues = [
        {
            "meta": " / ".join(
                part for part in (issue.level.value, issue.kind, issue.file) if part
            ),
            "message": issue.message,
        }
        for issue in summary.last_issues[:MAX_SUMMARY_ISSUES]
    ]
    steps = list(summary.suggested_steps) or list(DEFAULT_SUGGESTED_STEPS)
    return render(
        _FAILURE_TEMPLATE,
        {
            "run_id": summary.run_id,
            "task_id": summary.task_id,
            "reason": summary.reason,
            "tier": None if summary.tier is None else summary.tier.value,
            "budget": None
            if summary.budget_status is None
            else {
                "tier": summary.budget_status.tier.value,
                "used_usd": summary.budget_status.used_usd,
                "used_tokens": summary.budget_status.used_tokens,
                "used_iterations": summary.budget_status.used_iterations,
                "is_at_hard_cap": summary.budget_status.is_at_hard_cap,
            },
            "issues": issues,
            "spend": aggregate_spend(summary.ledger_events),
            "steps": steps,
        },
    )


__all__ = [
    "BACKEND_USAGE_KIND",
    "DEFAULT_SUGGESTED_STEPS",
    "FailureSummaryInput",
    "SpendEntry",
    "aggregate_spend",
    "build_failure_summary",
]
