"""Domain models and identifiers."""

from taskforge.domain.ids import generate_run_id, is_run_id
from taskforge.domain.models import (
    BackendConfig,
    BudgetTier,
    ChangedFile,
    ContractViolation,
    ContractViolationReason,
    FileContract,
    Issue,
    IssueLevel,
    Phase,
    ProjectSpec,
    RunBudget,
    RunStatus,
    ScopeGuardPolicy,
    SprintIntent,
    SprintSize,
    SprintSpec,
    Task,
    TaskBudget,
    TaskStatus,
    ValidatorSpec,
    WorkspaceMode,
)

__all__ = [
    "BackendConfig",
    "BudgetTier",
    "ChangedFile",
    "ContractViolation",
    "ContractViolationReason",
    "FileContract",
    "Issue",
    "IssueLevel",
    "Phase",
    "ProjectSpec",
    "RunBudget",
    "RunStatus",
    "ScopeGuardPolicy",
    "SprintIntent",
    "SprintSize",
    "SprintSpec",
    "Task",
    "TaskBudget",
    "TaskStatus",
    "ValidatorSpec",
    "WorkspaceMode",
    "generate_run_id",
    "is_run_id",
]
