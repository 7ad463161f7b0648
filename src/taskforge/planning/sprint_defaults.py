"""Default budgets and working constraints derived from sprint size and intent."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Final

from taskforge.domain.models import BudgetTier, SprintIntent, SprintSize, Task, TaskBudget


class RefactorAllowance(StrEnum):
    NONE = "none"
    LIMITED = "limited"
    FULL = "full"


class ValidatorStrictness(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"


@dataclass(frozen=True, slots=True)
class IntentConstraints:
    refactor_allowed: RefactorAllowance
    checkpoint_every_iterations: int
    validator_strictness: ValidatorStrictness


def _budget(optimal: float, warning: float, hard: float, max_iterations: int) -> TaskBudget:
    return TaskBudget(
        optimal=BudgetTier(usd=optimal),
        warning=BudgetTier(usd=warning),
        hard=BudgetTier(usd=hard, max_iterations=max_iterations),
    )


SPRINT_SIZE_DEFAULTS: Final[Mapping[SprintSize, TaskBudget]] = MappingProxyType(
    {
        SprintSize.XS: _budget(0.2, 0.35, 0.5, 3),
        SprintSize.S: _budget(0.5, 0.8, 1.2, 5),
        SprintSize.M: _budget(1.2, 2.0, 3.0, 8),
        SprintSize.L: _budget(2.5, 4.0, 6.0, 12),
        SprintSize.XL: _budget(5.0, 8.0, 12.0, 20),
    }
)

SPRINT_INTENT_CONSTRAINTS: Final[Mapping[SprintIntent, IntentConstraints]] = MappingProxyType(
    {
        SprintIntent.FIX: IntentConstraints(
            RefactorAllowance.NONE, 1, ValidatorStrictness.HIGH
        ),
        SprintIntent.FEATURE: IntentConstraints(
            RefactorAllowance.LIMITED, 2, ValidatorStrictness.MEDIUM
        ),
        SprintIntent.REFACTOR: IntentConstraints(
            RefactorAllowance.FULL, 1, ValidatorStrictness.HIGH
        ),
        SprintIntent.INFRA: IntentConstraints(
            RefactorAllowance.FULL, 1, ValidatorStrictness.MEDIUM
        ),
    }
)


def _merge_tier(existing: BudgetTier | None, default: BudgetTier | None) -> BudgetTier | None:
    if existing is None:
        return default
    if default is None:
        return existing
    merged = {
        item.name: getattr(existing, item.name)
        if getattr(existing, item.name) is not None
        else getattr(default, item.name)
        for item in fields(BudgetTier)
    }
    return BudgetTier(**merged)


def merge_budget_defaults(existing: TaskBudget | None, defaults: TaskBudget) -> TaskBudget:
    """Fill unset tier values from ``defaults``; explicitly declared values win."""

    if existing is None:
        return defaults
    return TaskBudget(
        optimal=_merge_tier(existing.optimal, defaults.optimal),
        warning=_merge_tier(existing.warning, defaults.warning),
        hard=_merge_tier(existing.hard, defaults.hard),
    )


def apply_sprint_defaults(
    task: Task,
    overrides: Mapping[SprintSize, TaskBudget] | None = None,
) -> Task:
    """Return ``task`` with its budget completed from its sprint size, if any."""

    if task.sprint is None or task.sprint.size is None:
        return task
    size = task.sprint.size
    defaults = SPRINT_SIZE_DEFAULTS[size]
    if overrides and size in overrides:
        defaults = merge_budget_defaults(overrides[size], defaults)
    merged = merge_budget_defaults(task.budget, defaults)
    return replace(task, budget=merged)


def intent_constraints(task: Task) -> IntentConstraints | None:
    if task.sprint is None or task.sprint.intent is None:
        return None
    return SPRINT_INTENT_CONSTRAINTS[task.sprint.intent]


__all__ = [
    "IntentConstraints",
    "RefactorAllowance",
    "SPRINT_INTENT_CONSTRAINTS",
    "SPRINT_SIZE_DEFAULTS",
    "ValidatorStrictness",
    "apply_sprint_defaults",
    "intent_constraints",
    "merge_budget_defaults",
]
