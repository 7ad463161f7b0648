"""
Validation helpers shared by the settings and project-spec loaders.

Validators never stop at the first problem: every issue is collected with its
dotted path and raised together in one ``ConfigValidationError``.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")


class ConfigLoadError(ValueError):
    """Raised when a config file cannot be read or parsed, or an override cannot be coerced."""


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue], *, source: str = "config") -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid {source}:\n{rendered}")


class IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    def raise_if_any(self, *, source: str = "config") -> None:
        if self._items:
            raise ConfigValidationError(self._items, source=source)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``."""

    merged: dict[str, Any] = {}
    for key, value in base.items():
        merged[key] = merge_config(value, {}) if isinstance(value, Mapping) else value
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        elif isinstance(value, Mapping):
            merged[key] = merge_config(value, {})
        else:
            merged[key] = value
    return merged


def normalize_key(key: str) -> str:
    """``maxIterations`` and ``max_iterations`` both become ``max_iterations``."""

    return _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip()).lower()


def as_object(
    value: object,
    path: str,
    issues: IssueCollector,
    *,
    normalize_keys: bool = True,
) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        normalized = normalize_key(key) if normalize_keys else key
        if normalized in out:
            issues.add(join(path, key), f"duplicates key {normalized!r}")
            continue
        out[normalized] = item
    return out


def as_str(value: object, path: str, issues: IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def as_bool(value: object, path: str, issues: IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def as_int(
    value: object,
    path: str,
    issues: IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def as_float(
    value: object,
    path: str,
    issues: IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def as_enum(
    value: object,
    path: str,
    issues: IssueCollector,
    *,
    allowed_values: Sequence[str],
) -> str | None:
    parsed = as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def as_str_list(value: object, path: str, issues: IssueCollector) -> tuple[str, ...] | None:
    if not isinstance(value, list):
        issues.add(path, f"expected list, got {type(value).__name__}")
        return None
    items: list[str] = []
    for index, item in enumerate(value):
        parsed = as_str(item, f"{path}[{index}]", issues)
        if parsed is not None:
            items.append(parsed)
    return tuple(items)


def reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(join(path, key), "unknown field")


def require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(join(path, key), "missing required field")


def join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "IssueCollector",
    "as_bool",
    "as_enum",
    "as_float",
    "as_int",
    "as_object",
    "as_str",
    "as_str_list",
    "join",
    "merge_config",
    "normalize_key",
    "reject_unknown_keys",
    "require_keys",
]
