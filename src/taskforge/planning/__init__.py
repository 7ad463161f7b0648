"""Task graph construction and sprint-derived defaults."""

from taskforge.planning.sprint_defaults import (
    SPRINT_INTENT_CONSTRAINTS,
    SPRINT_SIZE_DEFAULTS,
    IntentConstraints,
    apply_sprint_defaults,
    intent_constraints,
    merge_budget_defaults,
)
from taskforge.planning.task_graph import (
    CycleError,
    DuplicateTaskError,
    MissingDependencyError,
    TaskGraph,
    build_task_graph,
)

__all__ = [
    "CycleError",
    "DuplicateTaskError",
    "IntentConstraints",
    "MissingDependencyError",
    "SPRINT_INTENT_CONSTRAINTS",
    "SPRINT_SIZE_DEFAULTS",
    "TaskGraph",
    "apply_sprint_defaults",
    "build_task_graph",
    "intent_constraints",
    "merge_budget_defaults",
]
