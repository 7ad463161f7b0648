"""Unit tests for the backend context pack."""

from __future__ import annotations

import pytest

from taskforge.control_plane.budgets import Tier
from taskforge.control_plane.context_pack import ContextPackSize, build_context_pack
from taskforge.domain.models import Issue, IssueLevel
from taskforge.verification_plane.runner import ValidatorResult


def _results() -> dict[str, ValidatorResult]:
    return {
        "lint": ValidatorResult("lint", ok=True, exit_code=0, duration_ms=3),
        "tests": ValidatorResult(
            "tests",
            ok=False,
            exit_code=None,
            duration_ms=9,
            stdout="FAILED tests/test_app.py::test_login",
            stderr="boom",
            timed_out=True,
        ),
    }


@pytest.mark.unit
@pytest.mark.parametrize("tier", [Tier.OPTIMAL, Tier.HARD])
def test_full_pack_summarizes_every_validator(tier: Tier) -> None:
    pack = build_context_pack(tier=tier, task_id="T1", validator_results=_results(), issues=())

    assert pack.size is ContextPackSize.FULL
    assert "Task: T1" in pack.text
    assert "- lint: OK (exit=0)" in pack.text
    assert "- tests: FAIL (exit=?)" in pack.text


@pytest.mark.unit
def test_warning_pack_keeps_failing_output_and_issue_files() -> None:
    issues = [
        Issue(kind="pytest", level=IssueLevel.ERROR, message="x", file="tests/test_app.py"),
        Issue(kind="pytest", level=IssueLevel.ERROR, message="y", file="tests/test_app.py"),
        Issue(kind="mypy", level=IssueLevel.ERROR, message="z", file="src/app.py"),
        Issue(kind="raw", level=IssueLevel.ERROR, message="no file"),
    ]

    pack = build_context_pack(
        tier=Tier.WARNING, task_id="T1", validator_results=_results(), issues=issues
    )

    assert pack.size is ContextPackSize.WARNING_SHRUNK
    assert "WARNING: shrunk" in pack.text
    assert "### tests" in pack.text
    assert "FAILED tests/test_app.py::test_login\nboom" in pack.text
    assert "### lint" not in pack.text
    assert pack.text.count("- tests/test_app.py") == 1
    assert "- src/app.py" in pack.text


@pytest.mark.unit
def test_warning_pack_without_failures_or_hints() -> None:
    pack = build_context_pack(tier=Tier.WARNING, task_id="T1", validator_results={}, issues=())
    assert pack.text.count("(none)") == 2
