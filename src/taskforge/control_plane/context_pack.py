"""
Context handed to the backend alongside repair notes.

The full pack summarizes every validator. Once the task budget enters the
``warning`` tier the pack shrinks to the failing validators' output and the
files named by the previous iteration's issues.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from taskforge.constants import MAX_CONTEXT_OUTPUT_CHARS
from taskforge.control_plane.budgets import Tier
from taskforge.control_plane.templates import render
from taskforge.domain.models import Issue
from taskforge.verification_plane.runner import ValidatorResult


class ContextPackSize(StrEnum):
    FULL = "full"
    WARNING_SHRUNK = "warning_shrunk"


@dataclass(frozen=True, slots=True)
class ContextPack:
    text: str
    size: ContextPackSize


_FULL_TEMPLATE: Final[str] = """\
# Context

Task: {{ task_id }}

## Validator summary
{% for row in validators %}
- {{ row.id }}: {{ "OK" if row.ok else "FAIL" }} (exit={{ row.exit_code }})
{% endfor %}
"""

_SHRUNK_TEMPLATE: Final[str] = """\
# Context (WARNING: shrunk)

Task: {{ task_id }}

## Failing validators
{% for row in failing %}
### {{ row.id }}
{% if row.output %}
```
{{ row.output }}
```
{% else %}
(no output)
{% endif %}

{% else %}
(none)

{% endfor %}
## Issue files (hints)
{% for path in issue_files %}
- {{ path }}
{% else %}
(none)
{% endfor %}
"""


def build_context_pack(
    *,
    tier: Tier,
    task_id: str,
    validator_results: Mapping[str, ValidatorResult],
    issues: Sequence[Issue],
) -> ContextPack:
    if tier is not Tier.WARNING:
        rows = [
            {
                "id": validator_id,
                "ok": result.ok,
                "exit_code": "?" if result.exit_code is None else result.exit_code,
            }
            for validator_id, result in validator_results.items()
        ]
        return ContextPack(
            text=render(_FULL_TEMPLATE, {"task_id": task_id, "validators": rows}),
            size=ContextPackSize.FULL,
        )

    failing = [
        {
            "id": validator_id,
            "output": result.combined_output.strip()[:MAX_CONTEXT_OUTPUT_CHARS],
        }
        for validator_id, result in validator_results.items()
        if not result.ok
    ]
    issue_files = list(dict.fromkeys(issue.file for issue in issues if issue.file))
    return ContextPack(
        text=render(
            _SHRUNK_TEMPLATE,
            {"task_id": task_id, "failing": failing, "issue_files": issue_files},
        ),
        size=ContextPackSize.WARNING_SHRUNK,
    )


__all__ = ["ContextPack", "ContextPackSize", "build_context_pack"]
