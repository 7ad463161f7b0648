"""Immutable domain models shared by the planner, engine, and persistence layers."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class SprintSize(StrEnum):
    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


class SprintIntent(StrEnum):
    FIX = "fix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    INFRA = "infra"


class WorkspaceMode(StrEnum):
    PATCH = "patch"
    WORKTREE = "worktree"


class ScopeGuardPolicy(StrEnum):
    OFF = "off"
    WARN = "warn"
    BLOCK = "block"


class IssueLevel(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class RunStatus(StrEnum):
    ACTIVE = "active"
    SUCCESS = "success"
    STOPPED = "stopped"
    ERROR = "error"


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    BLOCKED = "blocked"
    ERROR = "error"


class Phase(StrEnum):
    PLAN = "PLAN"
    PREP = "PREP"
    EXEC = "EXEC"
    VALIDATE = "VALIDATE"
    DIAGNOSE = "DIAGNOSE"
    REPAIR = "REPAIR"
    CHECKPOINT = "CHECKPOINT"
    DONE = "DONE"


class ContractViolationReason(StrEnum):
    FORBIDDEN = "forbidden"
    NOT_ALLOWED = "not_allowed"
    NEW_FILE_DISALLOWED = "new_file_disallowed"


@dataclass(frozen=True, slots=True)
class BudgetTier:
    """One tier of a task budget. Unset metrics are not enforced."""

    usd: float | None = None
    tokens: int | None = None
    time_minutes: float | None = None
    max_iterations: int | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "usd": self.usd,
            "tokens": self.tokens,
            "time_minutes": self.time_minutes,
            "max_iterations": self.max_iterations,
        }


@dataclass(frozen=True, slots=True)
class TaskBudget:
    optimal: BudgetTier | None = None
    warning: BudgetTier | None = None
    hard: BudgetTier | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "optimal": None if self.optimal is None else self.optimal.to_dict(),
            "warning": None if self.warning is None else self.warning.to_dict(),
            "hard": None if self.hard is None else self.hard.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class FileContract:
    allowed: tuple[str, ...] = ()
    forbidden: tuple[str, ...] = ()
    allow_new_files: bool = True


@dataclass(frozen=True, slots=True)
class SprintSpec:
    size: SprintSize | None = None
    intent: SprintIntent | None = None


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of agent work. ``validators=None`` means "use project defaults"."""

    id: str
    title: str | None = None
    goal: str | None = None
    deps: tuple[str, ...] = ()
    priority: int = 0
    validators: tuple[str, ...] | None = None
    files_contract: FileContract | None = None
    budget: TaskBudget | None = None
    sprint: SprintSpec | None = None

    @property
    def hard_max_iterations(self) -> int | None:
        if self.budget is None or self.budget.hard is None:
            return None
        return self.budget.hard.max_iterations

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "title": self.title,
            "goal": self.goal,
            "deps": list(self.deps),
            "priority": self.priority,
            "validators": None if self.validators is None else list(self.validators),
            "budget": None if self.budget is None else self.budget.to_dict(),
            "sprint": None
            if self.sprint is None
            else {
                "size": None if self.sprint.size is None else self.sprint.size.value,
                "intent": None if self.sprint.intent is None else self.sprint.intent.value,
            },
        }


@dataclass(frozen=True, slots=True)
class ValidatorSpec:
    id: str
    run: str
    timeout_seconds: float | None = None
    parser: str | None = None


@dataclass(frozen=True, slots=True)
class RunBudget:
    """Simple (untiered) limits applied to a whole run."""

    money_usd: float | None = None
    tokens: int | None = None
    wall_time_minutes: float | None = None
    max_iterations_total: int | None = None


@dataclass(frozen=True, slots=True)
class BackendConfig:
    command: str


@dataclass(frozen=True, slots=True)
class ProjectSpec:
    """Pre-validated project description consumed by the engine."""

    name: str = "my-project"
    version: str = "1.0"
    repo_root: str = "."
    backend: str = "noop"
    workspace_mode: WorkspaceMode = WorkspaceMode.PATCH
    default_validators: tuple[str, ...] = ()
    scope_guard: ScopeGuardPolicy = ScopeGuardPolicy.WARN
    run_budget: RunBudget = field(default_factory=RunBudget)
    command_timeout_seconds: float | None = None
    validators: tuple[ValidatorSpec, ...] = ()
    tasks: tuple[Task, ...] = ()
    backends: Mapping[str, BackendConfig] = field(default_factory=dict)
    sprint_defaults: Mapping[SprintSize, TaskBudget] = field(default_factory=dict)
    state_dir: str | None = None
    artifacts_enabled: bool = True
    status_icons: str = "emoji"

    def validators_for(self, task: Task) -> tuple[ValidatorSpec, ...]:
        """Resolve a task's validator ids, silently skipping unknown ids."""

        ids = task.validators if task.validators is not None else self.default_validators
        by_id = {validator.id: validator for validator in self.validators}
        return tuple(by_id[item] for item in ids if item in by_id)


@dataclass(frozen=True, slots=True)
class ChangedFile:
    file: str
    is_new: bool

    def to_dict(self) -> dict[str, JSONValue]:
        return {"file": self.file, "is_new": self.is_new}


@dataclass(frozen=True, slots=True)
class ContractViolation:
    file: str
    reason: ContractViolationReason

    def to_dict(self) -> dict[str, JSONValue]:
        return {"file": self.file, "reason": self.reason.value}


@dataclass(frozen=True, slots=True)
class Issue:
    """A normalized validator, contract, or scope finding for one iteration."""

    kind: str
    level: IssueLevel
    message: str
    file: str | None = None
    line: int | None = None
    raw: JSONValue = field(default=None, compare=False)

    @property
    def is_error(self) -> bool:
        return self.level is IssueLevel.ERROR

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind,
            "level": self.level.value,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "raw": self.raw,
        }


__all__ = [
    "BackendConfig",
    "BudgetTier",
    "ChangedFile",
    "ContractViolation",
    "ContractViolationReason",
    "FileContract",
    "Issue",
    "IssueLevel",
    "JSONScalar",
    "JSONValue",
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
]
