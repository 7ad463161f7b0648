"""
Scope guard: changed-file heuristics derived from a task's sprint intent and size.

Findings become ``scope_violation`` issues whose level follows the project-wide
``ScopeGuardPolicy``; ``off`` skips the checks entirely.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

from taskforge.domain.models import (
    ChangedFile,
    Issue,
    IssueLevel,
    ScopeGuardPolicy,
    SprintIntent,
    SprintSize,
    Task,
)
from taskforge.integration_plane.file_contract import matches_any

SCOPE_VIOLATION_KIND: Final[str] = "scope_violation"

MAX_CHANGED_FILES_BY_INTENT: Final[Mapping[SprintIntent, float]] = {
    SprintIntent.FIX: 5,
    SprintIntent.FEATURE: 20,
    SprintIntent.INFRA: 50,
    SprintIntent.REFACTOR: math.inf,
}

MAX_NEW_FILES_BY_SIZE: Final[Mapping[SprintSize, float]] = {
    SprintSize.XS: 0,
    SprintSize.S: 0,
    SprintSize.M: 2,
    SprintSize.L: 10,
    SprintSize.XL: math.inf,
}


@dataclass(frozen=True, slots=True)
class ScopeFinding:
    message: str
    file: str | None = None


def detect_scope_violations(task: Task, changed_files: Sequence[ChangedFile]) -> list[ScopeFinding]:
    """Changed-file count per intent, plus the allow-list boundary for ``fix`` tasks."""

    intent = task.sprint.intent if task.sprint is not None else None
    if intent is None:
        return []

    findings: list[ScopeFinding] = []
    max_files = MAX_CHANGED_FILES_BY_INTENT[intent]
    if len(changed_files) > max_files:
        findings.append(
            ScopeFinding(
                message=(
                    f'Scope violation: "{intent.value}" intent changed {len(changed_files)} '
                    f"files (max {_format_limit(max_files)})."
                )
            )
        )

    allowed = task.files_contract.allowed if task.files_contract is not None else ()
    if intent is SprintIntent.FIX and allowed:
        for changed in changed_files:
            if not matches_any(changed.file, allowed):
                findings.append(
                    ScopeFinding(
                        file=changed.file,
                        message=(
                            f'Scope violation: "{intent.value}" intent changed file outside '
                            f"allowed scope: {changed.file}"
                        ),
                    )
                )
    return findings


def enforce_sprint_constraints(
    task: Task, changed_files: Sequence[ChangedFile]
) -> list[ScopeFinding]:
    size = task.sprint.size if task.sprint is not None else None
    if size is None:
        return []

    new_files = [changed.file for changed in changed_files if changed.is_new]
    max_new = MAX_NEW_FILES_BY_SIZE[size]
    if len(new_files) <= max_new:
        return []
    return [
        ScopeFinding(
            message=(
                f"Sprint size {size.value} allows at most {_format_limit(max_new)} new files, "
                f"but found {len(new_files)}."
            )
        )
    ]


def scope_issues(
    task: Task,
    changed_files: Sequence[ChangedFile],
    policy: ScopeGuardPolicy,
) -> list[Issue]:
    if policy is ScopeGuardPolicy.OFF:
        return []
    level = IssueLevel.ERROR if policy is ScopeGuardPolicy.BLOCK else IssueLevel.WARNING
    findings = [
        *detect_scope_violations(task, changed_files),
        *enforce_sprint_constraints(task, changed_files),
    ]
    return [
        Issue(
            kind=SCOPE_VIOLATION_KIND,
            level=level,
            message=finding.message,
            file=finding.file,
            raw={"policy": policy.value},
        )
        for finding in findings
    ]


def _format_limit(value: float) -> str:
    return "unlimited" if math.isinf(value) else str(int(value))


__all__ = [
    "MAX_CHANGED_FILES_BY_INTENT",
    "MAX_NEW_FILES_BY_SIZE",
    "SCOPE_VIOLATION_KIND",
    "ScopeFinding",
    "detect_scope_violations",
    "enforce_sprint_constraints",
    "scope_issues",
]
