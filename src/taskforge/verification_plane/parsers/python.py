"""Parsers for ``pytest -rfE``, ``ruff check`` and ``mypy`` output."""

from __future__ import annotations

import re
from typing import Final

from taskforge.domain.models import Issue, IssueLevel
from taskforge.verification_plane.parsers import register_parser

# FAILED tests/test_x.py::test_name - AssertionError: boom
_PYTEST_FAILED_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<outcome>FAILED|ERROR)\s+(?P<path>[^\s:]+)(?:::(?P<node>\S+))?"
    r"(?:\s+-\s+(?P<msg>.*))?$"
)
# src/app.py:3:1: F401 [*] `os` imported but unused
_PATH_LINE_COL_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<path>[^:\s][^:]*?):(?P<line>\d+):(?P<column>\d+):\s*(?P<message>.+)$"
)
# src/app.py:12: error: Incompatible return value type  [return-value]
_MYPY_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<path>[^:\s][^:]*?):(?P<line>\d+)(?::\d+)?:\s*"
    r"(?P<level>error|warning|note):\s*(?P<message>.+)$"
)


@register_parser("pytest")
def parse_pytest_output(output: str) -> list[Issue]:
    issues: list[Issue] = []
    for line in output.splitlines():
        match = _PYTEST_FAILED_RE.match(line.strip())
        if match is None:
            continue
        node = match["node"]
        detail = (match["msg"] or "").strip()
        if node and detail:
            message = f"{node}: {detail}"
        else:
            message = node or detail or match["outcome"]
        issues.append(
            Issue(
                kind="pytest",
                level=IssueLevel.ERROR,
                message=message,
                file=match["path"],
                raw={"line": line},
            )
        )
    return issues


@register_parser("ruff")
def parse_ruff_output(output: str) -> list[Issue]:
    issues: list[Issue] = []
    for line in output.splitlines():
        match = _PATH_LINE_COL_RE.match(line.strip())
        if match is None:
            continue
        issues.append(
            Issue(
                kind="ruff",
                level=IssueLevel.ERROR,
                message=match["message"].strip(),
                file=match["path"].replace("\\", "/"),
                line=int(match["line"]),
                raw={"line": line},
            )
        )
    return issues


@register_parser("mypy")
def parse_mypy_output(output: str) -> list[Issue]:
    issues: list[Issue] = []
    for line in output.splitlines():
        match = _MYPY_RE.match(line.strip())
        if match is None or match["level"] == "note":
            continue
        issues.append(
            Issue(
                kind="mypy",
                level=IssueLevel.ERROR if match["level"] == "error" else IssueLevel.WARNING,
                message=match["message"].strip(),
                file=match["path"].replace("\\", "/"),
                line=int(match["line"]),
                raw={"line": line},
            )
        )
    return issues


__all__ = ["parse_mypy_output", "parse_pytest_output", "parse_ruff_output"]
