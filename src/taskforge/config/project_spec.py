"""
Project spec loader (``taskforge.yml``).

The YAML document is parsed with ``yaml.safe_load`` and validated into the
immutable ``ProjectSpec`` the engine consumes. Object keys are accepted in
either snake_case or camelCase; map keys that are names (backend ids, sprint
sizes) are kept verbatim. Sprint-size budget defaults are merged into every
task here, so the engine only ever sees completed budgets.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from taskforge.config.schema import (
    ConfigLoadError,
    ConfigValidationError,
    IssueCollector,
    as_bool,
    as_enum,
    as_float,
    as_int,
    as_object,
    as_str,
    as_str_list,
    join,
    reject_unknown_keys,
    require_keys,
)
from taskforge.constants import PROJECT_SPEC_FILE
from taskforge.domain.models import (
    BackendConfig,
    BudgetTier,
    FileContract,
    ProjectSpec,
    RunBudget,
    ScopeGuardPolicy,
    SprintIntent,
    SprintSize,
    SprintSpec,
    Task,
    TaskBudget,
    ValidatorSpec,
    WorkspaceMode,
)
from taskforge.planning.sprint_defaults import apply_sprint_defaults

_STATUS_ICON_MODES = ("emoji", "ascii", "none")


def find_project_spec(repo_root: str | Path) -> Path:
    return Path(repo_root) / PROJECT_SPEC_FILE


def load_project_spec(path: str | Path) -> ProjectSpec:
    """Read and validate a project spec; ``repo_root`` resolves against the file's folder."""

    spec_path = Path(path).expanduser()
    try:
        text = spec_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigLoadError(f"project spec not found: {spec_path}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read project spec {spec_path}: {exc}") from exc

    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"invalid YAML in {spec_path}: {exc}") from exc

    return parse_project_spec(payload, base_dir=spec_path.resolve().parent)


def parse_project_spec(payload: object, *, base_dir: Path | None = None) -> ProjectSpec:
    issues = IssueCollector()
    root = as_object({} if payload is None else payload, "<root>", issues)
    if root is None:
        raise ConfigValidationError(issues.items(), source="project spec")

    reject_unknown_keys(
        root,
        {
            "version",
            "project",
            "defaults",
            "policies",
            "sprint_defaults",
            "budgets",
            "backends",
            "validators",
            "tasks",
            "artifacts",
            "paths",
        },
        "",
        issues,
    )

    version = "1.0"
    if "version" in root:
        raw_version = root["version"]
        if isinstance(raw_version, (int, float)) and not isinstance(raw_version, bool):
            version = str(raw_version)
        else:
            version = as_str(raw_version, "version", issues) or version

    project = _section(root, "project", issues)
    reject_unknown_keys(
        project, {"name", "repo_root", "language", "package_manager"}, "project", issues
    )
    name = _optional_text(project, "name", "project", issues)
    repo_root_text = _optional_text(project, "repo_root", "project", issues)

    defaults = _section(root, "defaults", issues)
    reject_unknown_keys(
        defaults, {"backend", "workspace_mode", "checkpoint_mode", "validators"}, "defaults", issues
    )
    backend = _optional_text(defaults, "backend", "defaults", issues)
    workspace_mode = (
        as_enum(
            defaults["workspace_mode"],
            "defaults.workspace_mode",
            issues,
            allowed_values=[mode.value for mode in WorkspaceMode],
        )
        if "workspace_mode" in defaults
        else None
    )
    default_validators = (
        as_str_list(defaults["validators"], "defaults.validators", issues)
        if "validators" in defaults
        else None
    )

    policies = _section(root, "policies", issues)
    reject_unknown_keys(policies, {"scope_guard"}, "policies", issues)
    scope_guard = (
        as_enum(
            policies["scope_guard"],
            "policies.scope_guard",
            issues,
            allowed_values=[policy.value for policy in ScopeGuardPolicy],
        )
        if "scope_guard" in policies
        else None
    )

    run_budget, command_timeout = _parse_budgets(_section(root, "budgets", issues), issues)
    sprint_defaults = _parse_sprint_defaults(root.get("sprint_defaults"), issues)
    backends = _parse_backends(root.get("backends"), issues)
    validators = _parse_validators(root.get("validators"), issues)
    tasks = _parse_tasks(root.get("tasks"), issues)

    artifacts = _section(root, "artifacts", issues)
    reject_unknown_keys(artifacts, {"enabled", "status_icons"}, "artifacts", issues)
    artifacts_enabled = (
        as_bool(artifacts["enabled"], "artifacts.enabled", issues)
        if artifacts.get("enabled") is not None
        else None
    )
    status_icons = (
        as_enum(
            artifacts["status_icons"],
            "artifacts.status_icons",
            issues,
            allowed_values=_STATUS_ICON_MODES,
        )
        if "status_icons" in artifacts
        else None
    )

    paths = _section(root, "paths", issues)
    reject_unknown_keys(paths, {"state_dir"}, "paths", issues)
    state_dir = _optional_text(paths, "state_dir", "paths", issues)

    issues.raise_if_any(source="project spec")

    repo_root = Path(repo_root_text or ".")
    if base_dir is not None and not repo_root.is_absolute():
        repo_root = base_dir / repo_root

    completed = tuple(apply_sprint_defaults(task, sprint_defaults) for task in tasks)
    return ProjectSpec(
        name=name or "my-project",
        version=version,
        repo_root=str(repo_root),
        backend=backend or "noop",
        workspace_mode=WorkspaceMode(workspace_mode or WorkspaceMode.PATCH.value),
        default_validators=default_validators or (),
        scope_guard=ScopeGuardPolicy(scope_guard or ScopeGuardPolicy.WARN.value),
        run_budget=run_budget,
        command_timeout_seconds=command_timeout,
        validators=validators,
        tasks=completed,
        backends=backends,
        sprint_defaults=sprint_defaults,
        state_dir=state_dir,
        artifacts_enabled=True if artifacts_enabled is None else artifacts_enabled,
        status_icons=status_icons or "emoji",
    )


def _section(root: Mapping[str, object], key: str, issues: IssueCollector) -> dict[str, object]:
    raw = root.get(key)
    if raw is None:
        return {}
    return as_object(raw, key, issues) or {}


def _parse_budgets(
    budgets: Mapping[str, object], issues: IssueCollector
) -> tuple[RunBudget, float | None]:
    reject_unknown_keys(budgets, {"run", "limits"}, "budgets", issues)

    run_budget = RunBudget()
    if budgets.get("run") is not None:
        run = as_object(budgets["run"], "budgets.run", issues) or {}
        reject_unknown_keys(
            run,
            {"money_usd", "tokens", "wall_time_minutes", "max_iterations_total"},
            "budgets.run",
            issues,
        )
        run_budget = RunBudget(
            money_usd=_optional_float(run, "money_usd", "budgets.run", issues),
            tokens=_optional_int(run, "tokens", "budgets.run", issues, minimum=0),
            wall_time_minutes=_optional_float(run, "wall_time_minutes", "budgets.run", issues),
            max_iterations_total=_optional_int(
                run, "max_iterations_total", "budgets.run", issues, minimum=1
            ),
        )

    command_timeout: float | None = None
    if budgets.get("limits") is not None:
        limits = as_object(budgets["limits"], "budgets.limits", issues) or {}
        # Parallelism limits are accepted for compatibility; execution is always sequential.
        reject_unknown_keys(
            limits,
            {"command_timeout_seconds", "max_parallel_tasks", "max_parallel_validators"},
            "budgets.limits",
            issues,
        )
        command_timeout = _optional_float(
            limits, "command_timeout_seconds", "budgets.limits", issues
        )
        if command_timeout is not None and command_timeout <= 0:
            issues.add("budgets.limits.command_timeout_seconds", "must be > 0")
            command_timeout = None
    return run_budget, command_timeout


def _parse_tier(
    value: object, path: str, issues: IssueCollector, *, require_max_iterations: bool
) -> BudgetTier | None:
    tier = as_object(value, path, issues)
    if tier is None:
        return None
    reject_unknown_keys(tier, {"usd", "tokens", "time_minutes", "max_iterations"}, path, issues)
    if require_max_iterations:
        require_keys(tier, {"max_iterations"}, path, issues)
    return BudgetTier(
        usd=_optional_float(tier, "usd", path, issues),
        tokens=_optional_int(tier, "tokens", path, issues, minimum=0),
        time_minutes=_optional_float(tier, "time_minutes", path, issues),
        max_iterations=_optional_int(tier, "max_iterations", path, issues, minimum=1),
    )


def _parse_task_budget(value: object, path: str, issues: IssueCollector) -> TaskBudget | None:
    budget = as_object(value, path, issues)
    if budget is None:
        return None
    reject_unknown_keys(budget, {"optimal", "warning", "hard"}, path, issues)
    tiers: dict[str, BudgetTier | None] = {}
    for name in ("optimal", "warning", "hard"):
        raw = budget.get(name)
        tiers[name] = (
            None
            if raw is None
            else _parse_tier(raw, join(path, name), issues, require_max_iterations=name == "hard")
        )
    return TaskBudget(**tiers)


def _parse_sprint_defaults(value: object, issues: IssueCollector) -> dict[SprintSize, TaskBudget]:
    if value is None:
        return {}
    sizes = as_object(value, "sprint_defaults", issues, normalize_keys=False)
    if sizes is None:
        return {}
    out: dict[SprintSize, TaskBudget] = {}
    for key, raw in sizes.items():
        path = join("sprint_defaults", key)
        if key not in SprintSize.__members__:
            expected = ", ".join(SprintSize.__members__)
            issues.add(path, f"unknown sprint size; expected one of: {expected}")
            continue
        budget = _parse_task_budget(raw, path, issues)
        if budget is not None:
            out[SprintSize(key)] = budget
    return out


def _parse_backends(value: object, issues: IssueCollector) -> dict[str, BackendConfig]:
    if value is None:
        return {}
    entries = as_object(value, "backends", issues, normalize_keys=False)
    if entries is None:
        return {}
    out: dict[str, BackendConfig] = {}
    for backend_id, raw in entries.items():
        path = join("backends", backend_id)
        entry = as_object(raw, path, issues)
        if entry is None:
            continue
        reject_unknown_keys(entry, {"command"}, path, issues)
        require_keys(entry, {"command"}, path, issues)
        command = _optional_text(entry, "command", path, issues)
        if command is not None:
            out[backend_id] = BackendConfig(command=command)
    return out


def _parse_validators(value: object, issues: IssueCollector) -> tuple[ValidatorSpec, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        issues.add("validators", f"expected list, got {type(value).__name__}")
        return ()
    out: list[ValidatorSpec] = []
    seen: set[str] = set()
    for index, raw in enumerate(value):
        path = f"validators[{index}]"
        entry = as_object(raw, path, issues)
        if entry is None:
            continue
        reject_unknown_keys(entry, {"id", "run", "timeout_seconds", "parser"}, path, issues)
        require_keys(entry, {"id", "run"}, path, issues)
        validator_id = _optional_text(entry, "id", path, issues)
        run = _optional_text(entry, "run", path, issues)
        timeout = _optional_float(entry, "timeout_seconds", path, issues)
        parser = _optional_text(entry, "parser", path, issues)
        if validator_id is None or run is None:
            continue
        if validator_id in seen:
            issues.add(join(path, "id"), f"duplicate validator id {validator_id!r}")
            continue
        seen.add(validator_id)
        out.append(ValidatorSpec(id=validator_id, run=run, timeout_seconds=timeout, parser=parser))
    return tuple(out)


def _parse_tasks(value: object, issues: IssueCollector) -> tuple[Task, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        issues.add("tasks", f"expected list, got {type(value).__name__}")
        return ()
    out: list[Task] = []
    for index, raw in enumerate(value):
        task = _parse_task(raw, f"tasks[{index}]", issues)
        if task is not None:
            out.append(task)
    return tuple(out)


def _parse_task(raw: object, path: str, issues: IssueCollector) -> Task | None:
    entry = as_object(raw, path, issues)
    if entry is None:
        return None
    reject_unknown_keys(
        entry,
        {
            "id",
            "title",
            "goal",
            "deps",
            "priority",
            "validators",
            "files_contract",
            "budget",
            "sprint",
        },
        path,
        issues,
    )
    require_keys(entry, {"id"}, path, issues)
    task_id = _optional_text(entry, "id", path, issues)

    title = _optional_text(entry, "title", path, issues)
    goal = _optional_text(entry, "goal", path, issues)
    deps = (
        as_str_list(entry["deps"], join(path, "deps"), issues)
        if entry.get("deps") is not None
        else ()
    )
    priority = _optional_int(entry, "priority", path, issues) or 0
    validators = (
        as_str_list(entry["validators"], join(path, "validators"), issues)
        if entry.get("validators") is not None
        else None
    )

    contract: FileContract | None = None
    if entry.get("files_contract") is not None:
        contract = _parse_contract(entry["files_contract"], join(path, "files_contract"), issues)

    budget = (
        _parse_task_budget(entry["budget"], join(path, "budget"), issues)
        if entry.get("budget") is not None
        else None
    )

    sprint: SprintSpec | None = None
    if entry.get("sprint") is not None:
        sprint = _parse_sprint(entry["sprint"], join(path, "sprint"), issues)

    if task_id is None:
        return None
    return Task(
        id=task_id,
        title=title,
        goal=goal,
        deps=deps or (),
        priority=priority,
        validators=validators,
        files_contract=contract,
        budget=budget,
        sprint=sprint,
    )


def _parse_contract(value: object, path: str, issues: IssueCollector) -> FileContract | None:
    contract = as_object(value, path, issues)
    if contract is None:
        return None
    reject_unknown_keys(contract, {"allowed", "forbidden", "allow_new_files"}, path, issues)
    allowed = (
        as_str_list(contract["allowed"], join(path, "allowed"), issues)
        if contract.get("allowed") is not None
        else ()
    )
    forbidden = (
        as_str_list(contract["forbidden"], join(path, "forbidden"), issues)
        if contract.get("forbidden") is not None
        else ()
    )
    allow_new = (
        as_bool(contract["allow_new_files"], join(path, "allow_new_files"), issues)
        if contract.get("allow_new_files") is not None
        else None
    )
    return FileContract(
        allowed=allowed or (),
        forbidden=forbidden or (),
        allow_new_files=True if allow_new is None else allow_new,
    )


def _parse_sprint(value: object, path: str, issues: IssueCollector) -> SprintSpec | None:
    sprint = as_object(value, path, issues)
    if sprint is None:
        return None
    reject_unknown_keys(sprint, {"size", "intent"}, path, issues)
    size = (
        as_enum(
            sprint["size"],
            join(path, "size"),
            issues,
            allowed_values=[s.value for s in SprintSize],
        )
        if sprint.get("size") is not None
        else None
    )
    intent = (
        as_enum(
            sprint["intent"],
            join(path, "intent"),
            issues,
            allowed_values=[i.value for i in SprintIntent],
        )
        if sprint.get("intent") is not None
        else None
    )
    return SprintSpec(
        size=None if size is None else SprintSize(size),
        intent=None if intent is None else SprintIntent(intent),
    )


def _optional_text(
    entry: Mapping[str, object], key: str, path: str, issues: IssueCollector
) -> str | None:
    value = entry.get(key)
    if value is None:
        return None
    return as_str(value, join(path, key), issues)


def _optional_int(
    entry: Mapping[str, object],
    key: str,
    path: str,
    issues: IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    value = entry.get(key)
    if value is None:
        return None
    return as_int(value, join(path, key), issues, minimum=minimum)


def _optional_float(
    entry: Mapping[str, object], key: str, path: str, issues: IssueCollector
) -> float | None:
    value = entry.get(key)
    if value is None:
        return None
    return as_float(value, join(path, key), issues, minimum=0.0)


def dump_project_spec(spec: ProjectSpec) -> dict[str, Any]:
    """Plain-data view of a loaded spec, used by ``taskforge validate --json``."""

    return {
        "name": spec.name,
        "version": spec.version,
        "repo_root": spec.repo_root,
        "backend": spec.backend,
        "workspace_mode": spec.workspace_mode.value,
        "scope_guard": spec.scope_guard.value,
        "default_validators": list(spec.default_validators),
        "validators": [validator.id for validator in spec.validators],
        "tasks": [task.to_dict() for task in spec.tasks],
    }


__all__ = ["dump_project_spec", "find_project_spec", "load_project_spec", "parse_project_spec"]
