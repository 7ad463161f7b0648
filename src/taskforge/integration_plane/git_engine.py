"""Thin, deterministic wrapper around the git CLI used by workspace strategies."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from taskforge.domain.models import ChangedFile

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_FALLBACK_USER_NAME: Final[str] = "taskforge"
_FALLBACK_USER_EMAIL: Final[str] = "taskforge@example.invalid"


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for git invocations."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitEngine:
    """
    Run git commands against one repository.

    Every method takes an optional ``cwd`` so the same engine can operate on
    linked worktrees of the repository.
    """

    def __init__(
        self,
        repo_path: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self._env_overrides = dict(env_overrides or {})

    def rev_parse(self, ref: str = "HEAD", *, cwd: Path | None = None) -> str:
        return self._run_git(["rev-parse", ref], cwd=cwd).stdout.strip()

    def changed_files(self, base_ref: str, *, cwd: Path | None = None) -> tuple[ChangedFile, ...]:
        """
        Return files changed in the working tree relative to ``base_ref``.

        Tracked changes come from ``git diff --name-status``; untracked files that
        are not ignored are reported as new.
        """

        output = self._run_git(["diff", "--name-status", "--no-renames", base_ref], cwd=cwd).stdout
        entries: dict[str, ChangedFile] = {}
        for line in output.splitlines():
            if not line.strip():
                continue
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            status = parts[0][:1]
            path = parts[-1]
            entries[path] = ChangedFile(file=path, is_new=status == "A")

        for path in self.untracked_files(cwd=cwd):
            entries.setdefault(path, ChangedFile(file=path, is_new=True))

        return tuple(entries[path] for path in sorted(entries))

    def untracked_files(self, *, cwd: Path | None = None) -> tuple[str, ...]:
        output = self._run_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd).stdout
        return tuple(line for line in output.splitlines() if line.strip())

    def stage_all(self, *, cwd: Path | None = None) -> None:
        self._run_git(["add", "-A"], cwd=cwd)

    def has_staged_changes(self, *, cwd: Path | None = None) -> bool:
        return self._run_git(["diff", "--cached", "--quiet"], cwd=cwd, check=False).returncode != 0

    def commit_all(self, message: str, *, cwd: Path | None = None) -> str:
        """Stage everything and commit; an empty change set is not an error."""

        self.stage_all(cwd=cwd)
        if self.has_staged_changes(cwd=cwd):
            self._run_git([*self._identity_args(cwd=cwd), "commit", "-m", message], cwd=cwd)
        return self.rev_parse("HEAD", cwd=cwd)

    def reset_hard(self, ref: str, *, cwd: Path | None = None) -> None:
        self._run_git(["reset", "--hard", ref], cwd=cwd)

    def clean_untracked(self, *, cwd: Path | None = None) -> None:
        self._run_git(["clean", "-fd"], cwd=cwd)

    def add_worktree(self, path: Path, branch: str, base_ref: str) -> None:
        self._run_git(["worktree", "add", "--quiet", "-b", branch, str(path), base_ref])

    def remove_worktree(self, path: Path, *, check: bool = True) -> CommandResult:
        result = self._run_git(["worktree", "remove", "--force", str(path)], check=check)
        self._run_git(["worktree", "prune"], check=False)
        return result

    def delete_branch(self, branch: str, *, check: bool = True) -> CommandResult:
        return self._run_git(["branch", "-D", branch], check=check)

    def branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).ok

    def merge_squash(self, branch: str, message: str) -> str:
        """Squash ``branch`` into the current branch of the main checkout."""

        self._run_git(["merge", "--squash", branch])
        if self.has_staged_changes():
            self._run_git([*self._identity_args(), "commit", "-m", message])
        return self.rev_parse("HEAD")

    def _identity_args(self, *, cwd: Path | None = None) -> tuple[str, ...]:
        args: list[str] = []
        if not self._run_git(["config", "--get", "user.name"], cwd=cwd, check=False).ok:
            args.extend(["-c", f"user.name={_FALLBACK_USER_NAME}"])
        if not self._run_git(["config", "--get", "user.email"], cwd=cwd, check=False).ok:
            args.extend(["-c", f"user.email={_FALLBACK_USER_EMAIL}"])
        return tuple(args)

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        completed = subprocess.run(
            command,
            cwd=run_cwd,
            env=env,
            text=True,
            capture_output=True,
            check=False,
        )

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
]
