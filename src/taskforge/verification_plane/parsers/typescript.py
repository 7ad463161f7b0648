"""Parsers for ``tsc``, ``eslint --format json`` and ``jest`` output."""

from __future__ import annotations

import json
import re
from typing import Final

from taskforge.domain.models import Issue, IssueLevel
from taskforge.verification_plane.parsers import register_parser

# src/foo.ts(12,3): error TS2322: Type 'x' is not assignable...
_TSC_LINE_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<file>[^:(]+)\((?P<line>\d+),(?P<col>\d+)\):\s+(?P<level>error|warning)"
    r"\s+TS\d+:\s+(?P<msg>.*)$"
)
# FAIL src/sum.test.ts
_JEST_FAIL_RE: Final[re.Pattern[str]] = re.compile(r"^FAIL\s+(?P<file>\S+)")
# ● sum › adds numbers
_JEST_TEST_RE: Final[re.Pattern[str]] = re.compile(r"^●\s+(?P<name>.+)$")


@register_parser("tsc")
def parse_tsc_output(output: str) -> list[Issue]:
    issues: list[Issue] = []
    for line in output.splitlines():
        match = _TSC_LINE_RE.match(line)
        if match is None:
            continue
        issues.append(
            Issue(
                kind="tsc",
                level=IssueLevel.WARNING if match["level"] == "warning" else IssueLevel.ERROR,
                message=match["msg"].strip(),
                file=match["file"].strip(),
                line=int(match["line"]),
                raw={"line": line},
            )
        )
    return issues


@register_parser("eslint")
def parse_eslint_output(output: str) -> list[Issue]:
    """Parse ``eslint -f json``; non-JSON output yields no structured issues."""

    trimmed = output.strip()
    if not trimmed:
        return []
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, list):
        return []

    issues: list[Issue] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        file_path = entry.get("filePath")
        for message in entry.get("messages") or ():
            if not isinstance(message, dict):
                continue
            rule = message.get("ruleId")
            text = str(message.get("message", ""))
            line = message.get("line")
            issues.append(
                Issue(
                    kind="eslint",
                    level=IssueLevel.WARNING if message.get("severity") == 1 else IssueLevel.ERROR,
                    message=f"{text} ({rule})" if rule else text,
                    file=file_path if isinstance(file_path, str) else None,
                    line=line if isinstance(line, int) else None,
                    raw=message,
                )
            )
    return issues


@register_parser("jest")
def parse_jest_output(output: str) -> list[Issue]:
    issues: list[Issue] = []
    current_file: str | None = None
    seen: set[tuple[str | None, str]] = set()
    for line in output.splitlines():
        stripped = line.strip()
        fail_match = _JEST_FAIL_RE.match(stripped)
        if fail_match is not None:
            current_file = fail_match["file"]
            continue
        test_match = _JEST_TEST_RE.match(stripped)
        if test_match is None:
            continue
        name = test_match["name"].strip()
        if (current_file, name) in seen:
            continue
        seen.add((current_file, name))
        issues.append(
            Issue(
                kind="jest",
                level=IssueLevel.ERROR,
                message=f"test failed: {name}",
                file=current_file,
                raw={"line": line},
            )
        )
    return issues


__all__ = ["parse_eslint_output", "parse_jest_output", "parse_tsc_output"]
