"""Code-generation backends and the backend registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskforge.backends.base import (
    BackendEnv,
    BackendInput,
    BackendResult,
    CodingBackend,
    backend_timeout_seconds,
    build_prompt,
)
from taskforge.backends.claude_code import ClaudeCodeBackend
from taskforge.backends.command import CommandBackend
from taskforge.backends.noop import NoopBackend

if TYPE_CHECKING:
    from taskforge.domain.models import ProjectSpec

BUILTIN_BACKENDS = ("noop", "claude-code")


class UnknownBackendError(ValueError):
    def __init__(self, backend_id: str, known: tuple[str, ...]) -> None:
        super().__init__(
            f"Unknown backend {backend_id!r}; known backends: {', '.join(known) or '(none)'}"
        )
        self.backend_id = backend_id


def create_backend(backend_id: str, project: ProjectSpec | None = None) -> CodingBackend:
    """
    Resolve a backend id. Project-declared ``backends`` entries win over built-ins,
    so a project can point ``claude-code`` at a wrapper script.
    """

    configured = dict(project.backends) if project is not None else {}
    if backend_id in configured:
        return CommandBackend(backend_id, configured[backend_id].command)
    if backend_id == "noop":
        return NoopBackend(backend_id)
    if backend_id == "claude-code":
        return ClaudeCodeBackend(backend_id)
    raise UnknownBackendError(backend_id, tuple(sorted({*BUILTIN_BACKENDS, *configured})))


__all__ = [
    "BUILTIN_BACKENDS",
    "BackendEnv",
    "BackendInput",
    "BackendResult",
    "ClaudeCodeBackend",
    "CodingBackend",
    "CommandBackend",
    "NoopBackend",
    "UnknownBackendError",
    "backend_timeout_seconds",
    "build_prompt",
    "create_backend",
]
