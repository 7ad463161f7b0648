"""Sequential validator execution and issue extraction."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import structlog

from taskforge.constants import DEFAULT_COMMAND_TIMEOUT_SECONDS
from taskforge.domain.models import Issue, IssueLevel, ValidatorSpec
from taskforge.verification_plane.command import CommandResult, run_shell_command
from taskforge.verification_plane.parsers import get_parser, raw_output_issue

CommandRunner = Callable[..., CommandResult]


@dataclass(frozen=True, slots=True)
class ValidatorResult:
    validator_id: str
    ok: bool
    exit_code: int | None
    duration_ms: int
    issues: tuple[Issue, ...] = ()
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def to_dict(self) -> dict[str, object]:
        return {
            "validator_id": self.validator_id,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "issues": [issue.to_dict() for issue in self.issues],
        }


class ValidatorRunner:
    """
    Run validator commands in ``cwd`` one at a time.

    ``command_timeout_seconds`` applies to validators that declare no timeout.
    A failing validator always yields at least one error-level issue.
    """

    def __init__(
        self,
        cwd: Path | str,
        *,
        command_timeout_seconds: float = float(DEFAULT_COMMAND_TIMEOUT_SECONDS),
        command_runner: CommandRunner | None = None,
        logger: Any | None = None,
    ) -> None:
        if command_timeout_seconds <= 0:
            raise ValueError("command_timeout_seconds must be > 0")
        self.cwd = Path(cwd)
        self.command_timeout_seconds = command_timeout_seconds
        self._command_runner = command_runner if command_runner is not None else run_shell_command
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def run_all(self, validators: Sequence[ValidatorSpec]) -> dict[str, ValidatorResult]:
        results: dict[str, ValidatorResult] = {}
        for validator in validators:
            results[validator.id] = self.run_one(validator)
        return results

    def run_one(self, validator: ValidatorSpec) -> ValidatorResult:
        timeout = (
            validator.timeout_seconds
            if validator.timeout_seconds is not None
            else self.command_timeout_seconds
        )
        result = self._command_runner(validator.run, cwd=self.cwd, timeout_seconds=timeout)
        issues = extract_issues(validator, result)
        self._logger.info(
            "validator_finished",
            validator_id=validator.id,
            ok=result.ok,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_ms=result.duration_ms,
            issues=len(issues),
        )
        return ValidatorResult(
            validator_id=validator.id,
            ok=result.ok,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            issues=issues,
            stdout=result.stdout,
            stderr=result.stderr,
            timed_out=result.timed_out,
        )


def extract_issues(validator: ValidatorSpec, result: CommandResult) -> tuple[Issue, ...]:
    """
    Parse ``result`` with the validator's declared parser.

    Without a registered parser, or when the parser finds nothing in a failed
    run, the raw output becomes one issue. A failed run with no error-level
    issue gets a synthetic ``validator failed`` issue.
    """

    parser = get_parser(validator.parser)
    kind = "unknown"
    if parser is not None and validator.parser:
        kind = validator.parser.strip().lower()
    combined = result.combined_output

    issues = [] if parser is None else list(parser(combined))
    if not result.ok:
        if not issues:
            detail = combined
            if result.error is not None:
                detail = f"{result.error}\n{combined}" if combined.strip() else result.error
            fallback = raw_output_issue(kind, detail)
            if fallback is not None:
                issues.append(fallback)
        if not any(issue.level is IssueLevel.ERROR for issue in issues):
            issues.append(
                Issue(
                    kind=kind,
                    level=IssueLevel.ERROR,
                    message=f"validator {validator.id} failed (exit={_exit_text(result)})",
                )
            )

    raw = {"validator_id": validator.id}
    return tuple(issue if issue.raw is not None else replace(issue, raw=raw) for issue in issues)


def _exit_text(result: CommandResult) -> str:
    if result.timed_out:
        return "timeout"
    return "?" if result.exit_code is None else str(result.exit_code)


__all__ = ["ValidatorResult", "ValidatorRunner", "extract_issues"]
