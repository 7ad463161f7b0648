"""
Validator output parsers.

Each parser turns combined stdout/stderr of one validator command into
structured issues. Parsers register themselves by kind name.
"""

from __future__ import annotations

from collections.abc import Callable

from taskforge.constants import MAX_RAW_ISSUE_CHARS
from taskforge.domain.models import Issue, IssueLevel

OutputParser = Callable[[str], list[Issue]]

_PARSERS: dict[str, OutputParser] = {}


def register_parser(kind: str) -> Callable[[OutputParser], OutputParser]:
    """Register ``func`` as the parser for validators declaring ``parser: kind``."""

    normalized = kind.strip().lower()

    def decorator(func: OutputParser) -> OutputParser:
        if normalized in _PARSERS:
            raise ValueError(f"parser already registered: {normalized}")
        _PARSERS[normalized] = func
        return func

    return decorator


def get_parser(kind: str | None) -> OutputParser | None:
    if kind is None:
        return None
    return _PARSERS.get(kind.strip().lower())


def registered_parsers() -> tuple[str, ...]:
    return tuple(sorted(_PARSERS))


def raw_output_issue(kind: str, output: str) -> Issue | None:
    """One error issue carrying the trimmed, truncated output, or ``None`` if empty."""

    trimmed = output.strip()
    if not trimmed:
        return None
    return Issue(kind=kind, level=IssueLevel.ERROR, message=trimmed[:MAX_RAW_ISSUE_CHARS])


# Built-in parsers register on import.
from taskforge.verification_plane.parsers import python as _python  # noqa: E402,F401
from taskforge.verification_plane.parsers import typescript as _typescript  # noqa: E402,F401

__all__ = [
    "OutputParser",
    "get_parser",
    "raw_output_issue",
    "register_parser",
    "registered_parsers",
]
