"""Issue fingerprints used for stuck-loop detection."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from taskforge.domain.models import Issue


def issue_signature(issue: Issue) -> str:
    """Return ``kind|file|line|message`` with whitespace in the message collapsed."""

    message = " ".join(issue.message.split())
    return f"{issue.kind}|{issue.file or ''}|{issue.line or 0}|{message}"


def signature_set(issues: Iterable[Issue]) -> tuple[str, ...]:
    return tuple(issue_signature(issue) for issue in issues)


class SignatureHistory:
    """
    Bounded rolling record of issue signatures for one task.

    A task is stuck when, from ``min_iteration`` onward, every signature of the
    current iteration already appears among the last ``window_multiplier``
    times as many signatures recorded by earlier iterations.
    """

    __slots__ = ("_cap", "_window_multiplier", "_min_iteration", "_items")

    def __init__(
        self,
        *,
        cap: int = 50,
        window_multiplier: int = 3,
        min_iteration: int = 3,
    ) -> None:
        if cap <= 0:
            raise ValueError("cap must be > 0")
        self._cap = cap
        self._window_multiplier = window_multiplier
        self._min_iteration = min_iteration
        self._items: list[str] = []

    @property
    def items(self) -> tuple[str, ...]:
        return tuple(self._items)

    def record(self, signatures: Sequence[str]) -> None:
        self._items.extend(signatures)
        overflow = len(self._items) - self._cap
        if overflow > 0:
            del self._items[:overflow]

    def is_stuck(self, signatures: Sequence[str], iteration: int) -> bool:
        """Check ``signatures`` against history; call before ``record``."""

        if iteration < self._min_iteration or not signatures:
            return False
        window = set(self._items[-len(signatures) * self._window_multiplier :])
        return all(signature in window for signature in signatures)


__all__ = ["SignatureHistory", "issue_signature", "signature_set"]
