"""Budgets, scope guard, loop artifacts, and the engine state machine."""

from taskforge.control_plane.artifacts import ArtifactWriter, StatusIconMode
from taskforge.control_plane.budgets import (
    BudgetExceededError,
    BudgetExhaustedError,
    BudgetLimits,
    BudgetManager,
    BudgetState,
    BudgetStatus,
    BudgetUsage,
    TaskBudgetConfig,
    Tier,
    get_budget_status,
    get_budget_tier,
)
from taskforge.control_plane.constraints import (
    detect_scope_violations,
    enforce_sprint_constraints,
    scope_issues,
)
from taskforge.control_plane.context_pack import ContextPack, ContextPackSize, build_context_pack
from taskforge.control_plane.engine import (
    EngineLoop,
    EngineOptions,
    EngineSettings,
    RunOutcome,
    UnknownTaskError,
)
from taskforge.control_plane.failure_summary import FailureSummaryInput, build_failure_summary
from taskforge.control_plane.repair import build_repair_notes

__all__ = [
    "ArtifactWriter",
    "BudgetExceededError",
    "BudgetExhaustedError",
    "BudgetLimits",
    "BudgetManager",
    "BudgetState",
    "BudgetStatus",
    "BudgetUsage",
    "ContextPack",
    "ContextPackSize",
    "EngineLoop",
    "EngineOptions",
    "EngineSettings",
    "FailureSummaryInput",
    "RunOutcome",
    "StatusIconMode",
    "TaskBudgetConfig",
    "Tier",
    "UnknownTaskError",
    "build_context_pack",
    "build_failure_summary",
    "build_repair_notes",
    "detect_scope_violations",
    "enforce_sprint_constraints",
    "get_budget_status",
    "get_budget_tier",
    "scope_issues",
]
