"""Backend that changes nothing; used to exercise the orchestrator in isolation."""

from __future__ import annotations

from taskforge.backends.base import BackendEnv, BackendInput, BackendResult, CodingBackend


class NoopBackend(CodingBackend):
    def __init__(self, backend_id: str = "noop") -> None:
        self.backend_id = backend_id

    def implement(self, env: BackendEnv, request: BackendInput) -> BackendResult:
        del env, request
        return BackendResult(
            ok=True,
            message=(
                "Noop backend: no code changes performed. "
                "Use validators/contracts to verify desired state."
            ),
        )


__all__ = ["NoopBackend"]
