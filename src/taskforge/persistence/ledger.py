"""Per-run ledger writer."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from taskforge.persistence.repositories import LedgerEvent, LedgerRepo


class LedgerLogger:
    """
    Appends events for one run. Construct a fresh instance per run.

    Every append is committed before ``event`` returns, so the ledger is never
    behind the last status the engine reported.
    """

    def __init__(
        self,
        repo: LedgerRepo,
        run_id: str,
        *,
        logger: Any | None = None,
    ) -> None:
        self._repo = repo
        self._run_id = run_id
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def run_id(self) -> str:
        return self._run_id

    def event(
        self,
        kind: str,
        message: str,
        *,
        task_id: str | None = None,
        data: Mapping[str, object] | None = None,
    ) -> LedgerEvent:
        recorded = self._repo.append(
            self._run_id,
            kind=kind,
            message=message,
            task_id=task_id,
            data=data,
        )
        self._logger.debug(
            "ledger_event",
            run_id=self._run_id,
            task_id=task_id,
            kind=kind,
            event_message=message,
        )
        return recorded


__all__ = ["LedgerLogger"]
