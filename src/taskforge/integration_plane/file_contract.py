"""
File-scope contract evaluation shared by every workspace strategy.

Glob semantics follow the usual shell-style path matching with dotfiles
included: ``*`` and ``?`` never cross ``/``, ``**`` spans any number of path
segments, ``[...]`` is a character class and ``{a,b}`` an alternation.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from functools import lru_cache
from pathlib import PurePosixPath

from taskforge.domain.models import (
    ChangedFile,
    ContractViolation,
    ContractViolationReason,
    FileContract,
)


@lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    return re.compile(f"^{_translate(_normalize_path(pattern))}$")


def _translate(pattern: str) -> str:
    out: list[str] = []
    index = 0
    length = len(pattern)
    while index < length:
        char = pattern[index]
        if char == "*":
            if pattern.startswith("**", index):
                at_segment_start = index == 0 or pattern[index - 1] == "/"
                after = index + 2
                if at_segment_start and pattern.startswith("/", after):
                    out.append("(?:.*/)?")
                    index = after + 1
                    continue
                if at_segment_start and after == length:
                    out.append(".*")
                    index = after
                    continue
                out.append("[^/]*")
                index = after
                continue
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "[":
            close = pattern.find("]", index + 1)
            if close == -1:
                out.append(re.escape(char))
            else:
                body = pattern[index + 1 : close]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body.replace(chr(92), chr(92) * 2)}]")
                index = close
        elif char == "{":
            close = pattern.find("}", index + 1)
            if close == -1:
                out.append(re.escape(char))
            else:
                options = pattern[index + 1 : close].split(",")
                out.append("(?:" + "|".join(_translate(option) for option in options) + ")")
                index = close
        else:
            out.append(re.escape(char))
        index += 1
    return "".join(out)


def _normalize_path(value: str) -> str:
    normalized = value.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def glob_matches(path: str, pattern: str) -> bool:
    """Return ``True`` if repository-relative ``path`` matches ``pattern``."""

    normalized = _normalize_path(path)
    if not normalized:
        return False
    return bool(_compile_glob(pattern).match(PurePosixPath(normalized).as_posix()))


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(glob_matches(path, pattern) for pattern in patterns)


def evaluate_file_contract(
    changed_files: Sequence[ChangedFile],
    contract: FileContract,
) -> tuple[ContractViolation, ...]:
    """
    Check changed files against ``contract``.

    Each file yields at most one violation, checked in this order: disallowed
    new file, forbidden pattern, outside a non-empty allow-list.
    """

    violations: list[ContractViolation] = []
    for changed in changed_files:
        if changed.is_new and not contract.allow_new_files:
            violations.append(
                ContractViolation(changed.file, ContractViolationReason.NEW_FILE_DISALLOWED)
            )
            continue
        if matches_any(changed.file, contract.forbidden):
            violations.append(ContractViolation(changed.file, ContractViolationReason.FORBIDDEN))
            continue
        if contract.allowed and not matches_any(changed.file, contract.allowed):
            violations.append(
                ContractViolation(changed.file, ContractViolationReason.NOT_ALLOWED)
            )
    return tuple(violations)


__all__ = ["evaluate_file_contract", "glob_matches", "matches_any"]
