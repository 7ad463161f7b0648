"""Unit tests for repair notes."""

from __future__ import annotations

import pytest

from taskforge.control_plane.budgets import Tier
from taskforge.control_plane.repair import (
    WARNING_TIER_CONSTRAINTS,
    build_repair_notes,
    issue_location,
)
from taskforge.domain.models import Issue, IssueLevel


@pytest.mark.unit
def test_issue_location_formats() -> None:
    assert issue_location(Issue("k", IssueLevel.ERROR, "m")) == ""
    assert issue_location(Issue("k", IssueLevel.ERROR, "m", file="a.py")) == "a.py"
    assert issue_location(Issue("k", IssueLevel.ERROR, "m", file="a.py", line=7)) == "a.py:7"


@pytest.mark.unit
def test_repair_notes_list_issues() -> None:
    notes = build_repair_notes(
        tier=Tier.OPTIMAL,
        issues=[
            Issue("ruff", IssueLevel.ERROR, "F401 unused import", file="src/app.py", line=3),
            Issue("scope_violation", IssueLevel.WARNING, "too many files"),
        ],
    )

    assert notes.startswith("# Repair notes")
    assert "- [error] ruff (src/app.py:3): F401 unused import" in notes
    assert "- [warning] scope_violation: too many files" in notes
    assert "Constraints" not in notes


@pytest.mark.unit
def test_warning_tier_adds_constraints() -> None:
    notes = build_repair_notes(tier=Tier.WARNING, issues=[])

    assert "## Constraints (WARNING tier)" in notes
    for line in WARNING_TIER_CONSTRAINTS:
        assert f"- {line}" in notes
