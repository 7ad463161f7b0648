"""
Budget accounting and tier evaluation.

This module tracks usage for a run or a single task:
- a usage accumulator (usd, tokens, wall time, iterations) checked against
  simple limits with strict ``>`` comparisons
- a three-tier evaluator (optimal/warning/hard) using ``>=`` comparisons
- a manager that performs preflight checks and records usage, emitting
  ``structlog`` decision events
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

if TYPE_CHECKING:
    from taskforge.domain.models import BudgetTier, RunBudget, TaskBudget

_MS_PER_MINUTE: Final[int] = 60_000


class BudgetExceededError(RuntimeError):
    """Raised when an iteration would push usage past a simple limit."""

    def __init__(self, metric: str) -> None:
        self.metric = metric
        super().__init__(f"Budget limit exceeded ({metric})")


class BudgetExhaustedError(RuntimeError):
    """Raised when a task has reached its hard cap and may not iterate again."""

    def __init__(self, message: str = "Hard cap reached", *, metric: str | None = None) -> None:
        self.metric = metric
        super().__init__(message)


class Tier(StrEnum):
    OPTIMAL = "optimal"
    WARNING = "warning"
    HARD = "hard"


@dataclass(frozen=True, slots=True)
class BudgetUsage:
    usd: float = 0.0
    tokens: int = 0
    wall_time_ms: int = 0
    iterations: int = 0

    def plus(
        self,
        *,
        usd: float = 0.0,
        tokens: int = 0,
        wall_time_ms: int = 0,
        iterations: int = 0,
    ) -> BudgetUsage:
        return BudgetUsage(
            usd=self.usd + usd,
            tokens=self.tokens + tokens,
            wall_time_ms=self.wall_time_ms + wall_time_ms,
            iterations=self.iterations + iterations,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "usd": self.usd,
            "tokens": self.tokens,
            "wall_time_ms": self.wall_time_ms,
            "iterations": self.iterations,
        }


@dataclass(frozen=True, slots=True)
class BudgetLimits:
    """Simple limits; ``None`` means unconfigured."""

    usd: float | None = None
    tokens: int | None = None
    wall_time_ms: int | None = None
    max_iterations: int | None = None

    @classmethod
    def from_run_budget(cls, budget: RunBudget) -> BudgetLimits:
        return cls(
            usd=budget.money_usd,
            tokens=budget.tokens,
            wall_time_ms=_minutes_to_ms(budget.wall_time_minutes),
            max_iterations=budget.max_iterations_total,
        )

    @classmethod
    def from_tier(cls, tier: BudgetTier | None) -> BudgetLimits:
        if tier is None:
            return cls()
        return cls(
            usd=tier.usd,
            tokens=tier.tokens,
            wall_time_ms=_minutes_to_ms(tier.time_minutes),
        )


class BudgetState:
    """Monotonic usage accumulator bound to one set of simple limits."""

    __slots__ = ("limits", "_usage")

    def __init__(self, limits: BudgetLimits | None = None) -> None:
        self.limits = limits if limits is not None else BudgetLimits()
        self._usage = BudgetUsage()

    @property
    def usage(self) -> BudgetUsage:
        return self._usage

    def add_usage(
        self,
        *,
        usd: float = 0.0,
        tokens: int = 0,
        wall_time_ms: int = 0,
        iterations: int = 0,
    ) -> None:
        if min(usd, tokens, wall_time_ms, iterations) < 0:
            raise ValueError("budget usage deltas must be non-negative")
        self._usage = self._usage.plus(
            usd=usd, tokens=tokens, wall_time_ms=wall_time_ms, iterations=iterations
        )

    def exceeded_hard_limit(self) -> str | None:
        """Return the first strictly exceeded metric, or ``None``."""

        return _exceeded_metric(self._usage, self.limits)


@dataclass(frozen=True, slots=True)
class TierThresholds:
    usd: float | None = None
    tokens: int | None = None
    time_ms: int | None = None

    @classmethod
    def from_tier(cls, tier: BudgetTier | None) -> TierThresholds:
        if tier is None:
            return cls()
        return cls(usd=tier.usd, tokens=tier.tokens, time_ms=_minutes_to_ms(tier.time_minutes))

    def crossed_by(self, usage: BudgetUsage) -> bool:
        return (
            (self.usd is not None and usage.usd >= self.usd)
            or (self.tokens is not None and usage.tokens >= self.tokens)
            or (self.time_ms is not None and usage.wall_time_ms >= self.time_ms)
        )


@dataclass(frozen=True, slots=True)
class TaskBudgetConfig:
    """Tiered budget; the hard tier always carries an iteration cap."""

    optimal: TierThresholds
    warning: TierThresholds
    hard: TierThresholds
    max_iterations: int

    @classmethod
    def from_task_budget(
        cls, budget: TaskBudget | None, *, default_max_iterations: int
    ) -> TaskBudgetConfig:
        optimal = warning = hard = None
        max_iterations = default_max_iterations
        if budget is not None:
            optimal, warning, hard = budget.optimal, budget.warning, budget.hard
            if hard is not None and hard.max_iterations is not None:
                max_iterations = hard.max_iterations
        return cls(
            optimal=TierThresholds.from_tier(optimal),
            warning=TierThresholds.from_tier(warning),
            hard=TierThresholds.from_tier(hard),
            max_iterations=max_iterations,
        )


@dataclass(frozen=True, slots=True)
class BudgetStatus:
    tier: Tier
    used_usd: float
    used_tokens: int
    used_time_ms: int
    used_iterations: int
    usd_pct_of_optimal: float | None
    usd_pct_of_hard: float | None
    tokens_pct_of_optimal: float | None
    tokens_pct_of_hard: float | None
    time_pct_of_optimal: float | None
    time_pct_of_hard: float | None
    is_in_warning: bool
    is_at_hard_cap: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "tier": self.tier.value,
            "used_usd": self.used_usd,
            "used_tokens": self.used_tokens,
            "used_time_ms": self.used_time_ms,
            "used_iterations": self.used_iterations,
            "usd_pct_of_optimal": self.usd_pct_of_optimal,
            "usd_pct_of_hard": self.usd_pct_of_hard,
            "tokens_pct_of_optimal": self.tokens_pct_of_optimal,
            "tokens_pct_of_hard": self.tokens_pct_of_hard,
            "time_pct_of_optimal": self.time_pct_of_optimal,
            "time_pct_of_hard": self.time_pct_of_hard,
            "is_in_warning": self.is_in_warning,
            "is_at_hard_cap": self.is_at_hard_cap,
        }


def get_budget_tier(usage: BudgetUsage, config: TaskBudgetConfig) -> Tier:
    """
    Map usage to a tier. Hard is checked before warning.

    Crossing either the optimal or the warning thresholds enters ``warning``.
    """

    if usage.iterations >= config.max_iterations:
        return Tier.HARD
    if config.hard.crossed_by(usage):
        return Tier.HARD
    if config.optimal.crossed_by(usage) or config.warning.crossed_by(usage):
        return Tier.WARNING
    return Tier.OPTIMAL


def get_budget_status(usage: BudgetUsage, config: TaskBudgetConfig) -> BudgetStatus:
    tier = get_budget_tier(usage, config)
    return BudgetStatus(
        tier=tier,
        used_usd=usage.usd,
        used_tokens=usage.tokens,
        used_time_ms=usage.wall_time_ms,
        used_iterations=usage.iterations,
        usd_pct_of_optimal=_pct(usage.usd, config.optimal.usd),
        usd_pct_of_hard=_pct(usage.usd, config.hard.usd),
        tokens_pct_of_optimal=_pct(usage.tokens, config.optimal.tokens),
        tokens_pct_of_hard=_pct(usage.tokens, config.hard.tokens),
        time_pct_of_optimal=_pct(usage.wall_time_ms, config.optimal.time_ms),
        time_pct_of_hard=_pct(usage.wall_time_ms, config.hard.time_ms),
        is_in_warning=tier is Tier.WARNING,
        is_at_hard_cap=tier is Tier.HARD,
    )


class BudgetManager:
    """
    Preflight and usage recording for one ``BudgetState``.

    ``scope`` names the owner in log events (``run`` or a task id). An optional
    tier config turns on tier tracking and the hard-cap check.
    """

    def __init__(
        self,
        state: BudgetState,
        *,
        scope: str = "run",
        tiers: TaskBudgetConfig | None = None,
        logger: Any | None = None,
    ) -> None:
        self._state = state
        self._scope = scope
        self._tiers = tiers
        self._last_tier: Tier | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def state(self) -> BudgetState:
        return self._state

    @property
    def usage(self) -> BudgetUsage:
        return self._state.usage

    @property
    def tiers(self) -> TaskBudgetConfig | None:
        return self._tiers

    def preflight(self, *, estimated_usd: float = 0.0, estimated_tokens: int = 0) -> None:
        """Raise ``BudgetExceededError`` if one more iteration would exceed a simple limit."""

        projected = self._state.usage.plus(
            usd=estimated_usd, tokens=estimated_tokens, iterations=1
        )
        metric = _exceeded_metric(projected, self._state.limits)
        if metric is None:
            return
        self._logger.info(
            "budget_preflight_denied",
            scope=self._scope,
            metric=metric,
            usage=self._state.usage.to_dict(),
            estimated_usd=estimated_usd,
            estimated_tokens=estimated_tokens,
        )
        raise BudgetExceededError(metric)

    def ensure_below_hard_cap(self) -> None:
        status = self.status()
        if status is None or not status.is_at_hard_cap:
            return
        self._logger.info(
            "budget_hard_cap_reached",
            scope=self._scope,
            usage=self._state.usage.to_dict(),
        )
        raise BudgetExhaustedError(f"Hard cap reached for {self._scope}")

    def record_iteration(self, wall_time_ms: int) -> None:
        self._state.add_usage(wall_time_ms=max(0, int(wall_time_ms)), iterations=1)
        self._observe_tier()

    def record_wall_time(self, wall_time_ms: int) -> None:
        self._state.add_usage(wall_time_ms=max(0, int(wall_time_ms)))
        self._observe_tier()

    def record_backend_usage(self, *, usd: float | None = None, tokens: int | None = None) -> None:
        self._state.add_usage(usd=usd or 0.0, tokens=tokens or 0)
        self._observe_tier()

    def tier(self) -> Tier:
        if self._tiers is None:
            return Tier.OPTIMAL
        return get_budget_tier(self._state.usage, self._tiers)

    def status(self) -> BudgetStatus | None:
        if self._tiers is None:
            return None
        return get_budget_status(self._state.usage, self._tiers)

    def _observe_tier(self) -> None:
        if self._tiers is None:
            return
        current = self.tier()
        if current is self._last_tier:
            return
        previous = self._last_tier
        self._last_tier = current
        self._logger.info(
            "budget_tier_changed",
            scope=self._scope,
            previous=None if previous is None else previous.value,
            tier=current.value,
            usage=self._state.usage.to_dict(),
        )


def _exceeded_metric(usage: BudgetUsage, limits: BudgetLimits) -> str | None:
    if limits.usd is not None and usage.usd > limits.usd:
        return "usd"
    if limits.tokens is not None and usage.tokens > limits.tokens:
        return "tokens"
    if limits.wall_time_ms is not None and usage.wall_time_ms > limits.wall_time_ms:
        return "wall_time"
    if limits.max_iterations is not None and usage.iterations > limits.max_iterations:
        return "iterations"
    return None


def _pct(used: float, limit: float | None) -> float | None:
    if limit is None:
        return None
    if limit == 0:
        return 1.0 if used > 0 else 0.0
    return used / limit


def _minutes_to_ms(minutes: float | None) -> int | None:
    if minutes is None:
        return None
    return int(minutes * _MS_PER_MINUTE)


__all__ = [
    "BudgetExceededError",
    "BudgetExhaustedError",
    "BudgetLimits",
    "BudgetManager",
    "BudgetState",
    "BudgetStatus",
    "BudgetUsage",
    "TaskBudgetConfig",
    "Tier",
    "TierThresholds",
    "get_budget_status",
    "get_budget_tier",
]
