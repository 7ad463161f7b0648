"""Repair notes carried into the next backend invocation."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Final

from taskforge.control_plane.budgets import Tier
from taskforge.control_plane.templates import render
from taskforge.domain.models import Issue

WARNING_TIER_CONSTRAINTS: Final[tuple[str, ...]] = (
    "Fix only failing validators",
    "Do NOT refactor unrelated code",
    "Do NOT add new features",
)

_REPAIR_TEMPLATE: Final[str] = """\
# Repair notes

{% if constraints %}
## Constraints (WARNING tier)
{% for line in constraints %}
- {{ line }}
{% endfor %}

{% endif %}
## Issues
{% for issue in issues %}
- [{{ issue.level }}] {{ issue.kind }}{% if issue.location %} ({{ issue.location }}){% endif %}: {{ issue.message }}
{% endfor %}
"""


def issue_location(issue: Issue) -> str:
    if not issue.file:
        return ""
    return f"{issue.file}:{issue.line}" if issue.line else issue.file


def build_repair_notes(*, tier: Tier, issues: Sequence[Issue]) -> str:
    rows = [
        {
            "level": issue.level.value,
            "kind": issue.kind,
            "location": issue_location(issue),
            "message": issue.message,
        }
        for issue in issues
    ]
    constraints = WARNING_TIER_CONSTRAINTS if tier is Tier.WARNING else ()
    return render(_REPAIR_TEMPLATE, {"constraints": constraints, "issues": rows})


__all__ = ["WARNING_TIER_CONSTRAINTS", "build_repair_notes", "issue_location"]
