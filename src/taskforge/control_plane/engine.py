"""
Engine loop: the per-task state machine and the run that drives it.

A run builds the task graph once, then executes tasks strictly one at a time
in graph order. Each task walks ``PLAN -> PREP -> EXEC -> VALIDATE`` and then
either ``CHECKPOINT -> DONE`` or ``DIAGNOSE -> REPAIR`` back into ``EXEC``.
The first task that does not finish stops the run with that task's exit code.

Every phase transition is written to the task row and the ledger before the
next subprocess starts, so persisted state never lags the last reported phase.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from taskforge.backends.base import BackendEnv, BackendInput, CodingBackend
from taskforge.constants import (
    COMMIT_MESSAGE_PREFIX,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_MAX_ITERATIONS,
    EXIT_BACKEND_ERROR,
    EXIT_BUDGET_STOP,
    EXIT_CONFIG_ERROR,
    EXIT_STUCK_STOP,
    EXIT_SUCCESS,
    SIGNATURE_HISTORY_CAP,
    STUCK_MIN_ITERATION,
    STUCK_WINDOW_MULTIPLIER,
)
from taskforge.control_plane.artifacts import ArtifactWriter, StatusIconMode
from taskforge.control_plane.budgets import (
    BudgetExceededError,
    BudgetExhaustedError,
    BudgetLimits,
    BudgetManager,
    BudgetState,
    BudgetStatus,
    TaskBudgetConfig,
    Tier,
)
from taskforge.control_plane.constraints import scope_issues
from taskforge.control_plane.context_pack import build_context_pack
from taskforge.control_plane.failure_summary import (
    BACKEND_USAGE_KIND,
    FailureSummaryInput,
    build_failure_summary,
)
from taskforge.control_plane.repair import build_repair_notes
from taskforge.domain.ids import generate_run_id
from taskforge.domain.models import (
    Issue,
    IssueLevel,
    Phase,
    ProjectSpec,
    RunStatus,
    ScopeGuardPolicy,
    Task,
    TaskStatus,
    WorkspaceMode,
)
from taskforge.integration_plane.workspace.base import WorkspaceManager, sanitize_task_id
from taskforge.observability.logging import correlation_scope
from taskforge.persistence.folders import StateFolders, ensure_state_folders
from taskforge.persistence.ledger import LedgerLogger
from taskforge.persistence.repositories import (
    CheckpointRepo,
    IssueRepo,
    LedgerRepo,
    RunRepo,
    TaskStateRepo,
)
from taskforge.persistence.state_db import StateDB
from taskforge.planning.sprint_defaults import intent_constraints
from taskforge.planning.task_graph import (
    CycleError,
    DuplicateTaskError,
    MissingDependencyError,
    build_task_graph,
)
from taskforge.verification_plane.runner import CommandRunner, ValidatorResult, ValidatorRunner
from taskforge.verification_plane.signatures import SignatureHistory, signature_set

CONTRACT_VIOLATION_KIND = "contract_violation"
STUCK_REASON = "Stuck detected (same issues repeated)"


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """Result of one ``EngineLoop.run`` call. ``run_id`` is ``None`` if nothing was persisted."""

    ok: bool
    run_id: str | None
    exit_code: int = EXIT_SUCCESS
    reason: str | None = None
    task_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "run_id": self.run_id,
            "exit_code": self.exit_code,
            "reason": self.reason,
            "task_id": self.task_id,
        }


@dataclass(frozen=True, slots=True)
class EngineOptions:
    task_id: str | None = None
    dry_run: bool = False


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Loop tunables; ``config.settings`` builds these from TOML and the environment."""

    default_max_iterations: int = DEFAULT_MAX_ITERATIONS
    command_timeout_seconds: float = float(DEFAULT_COMMAND_TIMEOUT_SECONDS)
    signature_history: int = SIGNATURE_HISTORY_CAP
    stuck_window: int = STUCK_WINDOW_MULTIPLIER
    stuck_min_iteration: int = STUCK_MIN_ITERATION
    artifacts_enabled: bool = True
    backend_logs: bool = True

    def __post_init__(self) -> None:
        if self.default_max_iterations <= 0:
            raise ValueError("default_max_iterations must be > 0")
        if self.command_timeout_seconds <= 0:
            raise ValueError("command_timeout_seconds must be > 0")
        if self.signature_history <= 0:
            raise ValueError("signature_history must be > 0")
        if self.stuck_window <= 0:
            raise ValueError("stuck_window must be > 0")


class UnknownTaskError(ValueError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Unknown task id: {task_id}")


@dataclass(slots=True)
class _RunContext:
    run_id: str
    ledger: LedgerLogger
    run_budget: BudgetManager
    artifacts: ArtifactWriter
    tasks: tuple[Task, ...]


@dataclass(slots=True)
class _TaskOutcome:
    ok: bool
    exit_code: int = EXIT_SUCCESS
    reason: str | None = None
    tier: Tier | None = None
    budget_status: BudgetStatus | None = None


@dataclass(slots=True)
class _TaskProgress:
    """Mutable per-task loop state carried between iterations."""

    task: Task
    budget: BudgetManager
    working_dir: Path
    phase: Phase = Phase.PLAN
    iteration: int = 0
    repair_notes: str | None = None
    last_results: Mapping[str, ValidatorResult] = field(default_factory=dict)
    last_issues: Sequence[Issue] = ()


class EngineLoop:
    """
    Drives a project's tasks against one backend and one workspace strategy.

    Budget managers, the ledger writer, and signature history are built fresh
    for every ``run`` call so runs never share mutable state.
    """

    def __init__(
        self,
        project: ProjectSpec,
        *,
        backend: CodingBackend,
        workspace: WorkspaceManager,
        repo_root: Path | str,
        folders: StateFolders | None = None,
        db: StateDB | None = None,
        settings: EngineSettings | None = None,
        command_runner: CommandRunner | None = None,
        run_id_factory: Callable[[], str] | None = None,
        clock: Callable[[], float] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._project = project
        self._backend = backend
        self._workspace = workspace
        self._repo_root = Path(repo_root)
        self._folders = (
            folders
            if folders is not None
            else ensure_state_folders(self._repo_root, project.state_dir)
        )
        self._db = db if db is not None else StateDB(self._folders.db_path)
        self._settings = settings if settings is not None else EngineSettings()
        self._command_runner = command_runner
        self._run_id_factory = run_id_factory if run_id_factory is not None else generate_run_id
        self._clock = clock if clock is not None else time.monotonic
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._runs = RunRepo(self._db)
        self._task_states = TaskStateRepo(self._db)
        self._ledger_repo = LedgerRepo(self._db)
        self._issues = IssueRepo(self._db)
        self._checkpoints = CheckpointRepo(self._db)

    @property
    def folders(self) -> StateFolders:
        return self._folders

    @property
    def db(self) -> StateDB:
        return self._db

    def run(self, options: EngineOptions | None = None) -> RunOutcome:
        opts = options if options is not None else EngineOptions()

        try:
            tasks = self._plan(opts.task_id)
        except (DuplicateTaskError, MissingDependencyError, CycleError, UnknownTaskError) as exc:
            self._logger.warning(
                "run_plan_rejected",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RunOutcome(
                ok=False,
                run_id=None,
                exit_code=EXIT_CONFIG_ERROR,
                reason=str(exc),
                task_id=opts.task_id,
            )

        run_id = self._run_id_factory()
        self._runs.create(
            run_id,
            repo_root=str(self._repo_root),
            backend_id=self._backend.backend_id,
            workspace_mode=self._workspace.mode,
        )
        ctx = _RunContext(
            run_id=run_id,
            ledger=LedgerLogger(self._ledger_repo, run_id, logger=self._logger),
            run_budget=BudgetManager(
                BudgetState(BudgetLimits.from_run_budget(self._project.run_budget)),
                scope="run",
                logger=self._logger,
            ),
            artifacts=ArtifactWriter(
                self._folders,
                runs=self._runs,
                task_states=self._task_states,
                ledger=self._ledger_repo,
                enabled=self._settings.artifacts_enabled and self._project.artifacts_enabled,
                status_icons=StatusIconMode(self._project.status_icons),
                logger=self._logger,
            ),
            tasks=tasks,
        )

        with correlation_scope(run_id=run_id):
            return self._execute(ctx, opts)

    def _plan(self, task_id: str | None) -> tuple[Task, ...]:
        """Resolve the execution order; a single named task skips graph validation."""

        if task_id is not None:
            for task in self._project.tasks:
                if task.id == task_id:
                    return (task,)
            raise UnknownTaskError(task_id)
        graph = build_task_graph(self._project.tasks)
        return tuple(graph.tasks_by_id[item] for item in graph.order)

    def _execute(self, ctx: _RunContext, opts: EngineOptions) -> RunOutcome:
        order = [task.id for task in ctx.tasks]
        ctx.ledger.event(
            "run_started",
            "Run started",
            data={
                "tasks": order,
                "backend": self._backend.backend_id,
                "workspace_mode": str(self._workspace.mode),
            },
        )
        self._logger.info("run_started", run_id=ctx.run_id, tasks=len(order))

        try:
            for task in ctx.tasks:
                self._task_states.upsert(ctx.run_id, task.id, status=TaskStatus.PENDING)

            if opts.dry_run:
                ctx.ledger.event("dry_run", "Dry run plan generated", data={"tasks": order})
                return self._finish(ctx, RunOutcome(ok=True, run_id=ctx.run_id))

            for task in ctx.tasks:
                with correlation_scope(task_id=task.id):
                    try:
                        outcome = self._run_task(ctx, task)
                    except Exception as exc:
                        self._mark_task_error(ctx, task, exc)
                        raise
                ctx.artifacts.write_projections(
                    ctx.run_id, ctx.tasks, tier=outcome.tier, budget_status=outcome.budget_status
                )
                if not outcome.ok:
                    return self._finish(
                        ctx,
                        RunOutcome(
                            ok=False,
                            run_id=ctx.run_id,
                            exit_code=outcome.exit_code,
                            reason=outcome.reason,
                            task_id=task.id,
                        ),
                    )

            ctx.ledger.event("run_done", "All tasks done")
            return self._finish(ctx, RunOutcome(ok=True, run_id=ctx.run_id))
        except Exception as exc:
            self._logger.exception("run_failed", run_id=ctx.run_id, error=str(exc))
            ctx.ledger.event(
                "run_error",
                str(exc) or type(exc).__name__,
                data={"error_type": type(exc).__name__},
            )
            return self._finish(
                ctx,
                RunOutcome(
                    ok=False,
                    run_id=ctx.run_id,
                    exit_code=EXIT_CONFIG_ERROR,
                    reason=str(exc) or type(exc).__name__,
                ),
            )

    def _finish(self, ctx: _RunContext, outcome: RunOutcome) -> RunOutcome:
        if outcome.ok:
            status = RunStatus.SUCCESS
        elif outcome.exit_code in (EXIT_BUDGET_STOP, EXIT_STUCK_STOP):
            status = RunStatus.STOPPED
        else:
            status = RunStatus.ERROR
        self._runs.finish(ctx.run_id, status)
        ctx.artifacts.write_projections(ctx.run_id, ctx.tasks)
        self._logger.info(
            "run_finished",
            run_id=ctx.run_id,
            status=status.value,
            exit_code=outcome.exit_code,
            reason=outcome.reason,
        )
        return outcome

    def _mark_task_error(self, ctx: _RunContext, task: Task, exc: Exception) -> None:
        current = self._task_states.get(ctx.run_id, task.id)
        self._task_states.upsert(
            ctx.run_id,
            task.id,
            status=TaskStatus.ERROR,
            phase=None if current is None else current.phase,
            iteration=0 if current is None else current.iteration,
            last_error=str(exc) or type(exc).__name__,
        )

    def _iteration_bound(self, task: Task) -> int:
        bounds = [
            value
            for value in (task.hard_max_iterations, self._project.run_budget.max_iterations_total)
            if value is not None
        ]
        return min(bounds) if bounds else self._settings.default_max_iterations

    def _run_task(self, ctx: _RunContext, task: Task) -> _TaskOutcome:
        tiers = TaskBudgetConfig.from_task_budget(
            task.budget, default_max_iterations=self._settings.default_max_iterations
        )
        hard = task.budget.hard if task.budget is not None else None
        task_budget = BudgetManager(
            BudgetState(BudgetLimits.from_tier(hard)),
            scope=task.id,
            tiers=tiers,
            logger=self._logger,
        )
        max_iterations = self._iteration_bound(task)

        self._transition(ctx, task, Phase.PLAN, 0, kind="task_started", message="Task started")

        context = self._workspace.prepare(task.id)
        progress = _TaskProgress(task=task, budget=task_budget, working_dir=context.working_dir)
        self._transition(
            ctx,
            task,
            Phase.PREP,
            0,
            kind="prep",
            message="Workspace prepared",
            data={"working_dir": str(context.working_dir), "max_iterations": max_iterations},
        )
        progress.phase = Phase.PREP

        history = SignatureHistory(
            cap=self._settings.signature_history,
            window_multiplier=self._settings.stuck_window,
            min_iteration=self._settings.stuck_min_iteration,
        )
        runner = ValidatorRunner(
            context.working_dir,
            command_timeout_seconds=(
                self._project.command_timeout_seconds
                if self._project.command_timeout_seconds is not None
                else self._settings.command_timeout_seconds
            ),
            command_runner=self._command_runner,
            logger=self._logger,
        )
        validators = self._project.validators_for(task)
        cadence = intent_constraints(task)

        for iteration in range(1, max_iterations + 1):
            progress.iteration = iteration
            started = self._clock()

            try:
                task_budget.ensure_below_hard_cap()
                ctx.run_budget.preflight()
                task_budget.preflight()
            except BudgetExhaustedError as exc:
                return self._block(
                    ctx, progress, kind="hard_cap", reason=str(exc), exit_code=EXIT_BUDGET_STOP
                )
            except BudgetExceededError as exc:
                return self._block(
                    ctx,
                    progress,
                    kind="budget_exceeded",
                    reason=str(exc),
                    exit_code=EXIT_BUDGET_STOP,
                )

            tier = task_budget.tier()
            self._logger.info(
                "task_iteration_started",
                task_id=task.id,
                iteration=iteration,
                max_iterations=max_iterations,
                tier=tier.value,
            )
            progress.phase = Phase.EXEC
            self._transition(
                ctx,
                task,
                Phase.EXEC,
                iteration,
                kind="exec",
                message=f"EXEC iteration {iteration}",
                data={"tier": tier.value},
            )

            pack = build_context_pack(
                tier=tier,
                task_id=task.id,
                validator_results=progress.last_results,
                issues=progress.last_issues,
            )
            ctx.artifacts.write_task_context(task.id, pack.text)

            backend_result = self._backend.implement(
                BackendEnv(
                    working_dir=context.working_dir,
                    backend_id=self._backend.backend_id,
                    log_file=self._backend_log_file(ctx.run_id, task.id, iteration, tier),
                ),
                BackendInput(
                    task=task,
                    iteration=iteration,
                    repair_notes=progress.repair_notes,
                    context=pack.text,
                ),
            )
            if backend_result.estimated_usd or backend_result.estimated_tokens:
                ctx.run_budget.record_backend_usage(
                    usd=backend_result.estimated_usd, tokens=backend_result.estimated_tokens
                )
                task_budget.record_backend_usage(
                    usd=backend_result.estimated_usd, tokens=backend_result.estimated_tokens
                )
                ctx.ledger.event(
                    BACKEND_USAGE_KIND,
                    "Backend usage reported",
                    task_id=task.id,
                    data={
                        "iteration": iteration,
                        "usd": backend_result.estimated_usd or 0.0,
                        "tokens": backend_result.estimated_tokens or 0,
                    },
                )

            if not backend_result.ok:
                elapsed = self._elapsed_ms(started)
                ctx.run_budget.record_wall_time(elapsed)
                task_budget.record_wall_time(elapsed)
                self._task_states.upsert(
                    ctx.run_id,
                    task.id,
                    status=TaskStatus.ERROR,
                    phase=Phase.EXEC,
                    iteration=iteration,
                    last_error=backend_result.message,
                )
                ctx.ledger.event("backend_error", backend_result.message, task_id=task.id)
                self._logger.warning(
                    "backend_failed",
                    task_id=task.id,
                    iteration=iteration,
                    backend_id=self._backend.backend_id,
                    detail=backend_result.message,
                )
                return _TaskOutcome(
                    ok=False,
                    exit_code=EXIT_BACKEND_ERROR,
                    reason=f"Backend invocation error: {backend_result.message}",
                    tier=tier,
                    budget_status=task_budget.status(),
                )

            progress.phase = Phase.VALIDATE
            self._transition(
                ctx,
                task,
                Phase.VALIDATE,
                iteration,
                kind="validate_started",
                message=f"Running {len(validators)} validator(s)",
            )
            results = runner.run_all(validators)
            issues = self._collect_issues(task, results)
            self._issues.record(ctx.run_id, task.id, iteration, issues)

            ok = all(result.ok for result in results.values()) and not any(
                issue.is_error for issue in issues
            )
            ctx.ledger.event(
                "validate",
                "VALIDATE passed" if ok else "VALIDATE failed",
                task_id=task.id,
                data={
                    "ok": ok,
                    "iteration": iteration,
                    "issues": len(issues),
                    "validators": {
                        validator_id: {
                            "ok": result.ok,
                            "exit_code": result.exit_code,
                            "duration_ms": result.duration_ms,
                            "timed_out": result.timed_out,
                        }
                        for validator_id, result in results.items()
                    },
                },
            )

            if ok:
                return self._complete(ctx, progress, started)

            progress.phase = Phase.DIAGNOSE
            self._task_states.upsert(
                ctx.run_id,
                task.id,
                status=TaskStatus.RUNNING,
                phase=Phase.DIAGNOSE,
                iteration=iteration,
                last_error="Validation failed",
            )
            signatures = signature_set(issues)
            stuck = history.is_stuck(signatures, iteration)
            history.record(signatures)
            ctx.ledger.event(
                "diagnose",
                f"{sum(1 for issue in issues if issue.is_error)} error issue(s)",
                task_id=task.id,
                data={"iteration": iteration, "signatures": list(signatures)},
            )

            elapsed = self._elapsed_ms(started)
            if stuck:
                ctx.run_budget.record_iteration(elapsed)
                task_budget.record_iteration(elapsed)
                progress.last_issues = issues
                return self._block(
                    ctx, progress, kind="stuck", reason=STUCK_REASON, exit_code=EXIT_STUCK_STOP
                )

            progress.repair_notes = build_repair_notes(tier=tier, issues=issues)
            ctx.artifacts.write_task_repair(task.id, progress.repair_notes)
            progress.phase = Phase.REPAIR
            self._transition(
                ctx,
                task,
                Phase.REPAIR,
                iteration,
                kind="repair",
                message="Retrying (repair loop)",
                data={"issues": len(issues)},
                last_error="Validation failed",
            )
            ctx.run_budget.record_iteration(elapsed)
            task_budget.record_iteration(elapsed)

            if (
                self._workspace.mode is WorkspaceMode.WORKTREE
                and cadence is not None
                and tier is not Tier.WARNING
                and iteration % cadence.checkpoint_every_iterations == 0
            ):
                self._checkpoint(ctx, task, iteration, f"WIP iteration {iteration}")

            progress.last_results = results
            progress.last_issues = issues

        status = task_budget.status()
        if status is not None and status.is_at_hard_cap:
            return self._block(
                ctx,
                progress,
                kind="hard_cap",
                reason=f"Hard cap reached for {task.id}",
                exit_code=EXIT_BUDGET_STOP,
            )
        return self._block(
            ctx,
            progress,
            kind="max_iterations",
            reason=f"Max iterations reached ({max_iterations})",
            exit_code=EXIT_STUCK_STOP,
        )

    def _collect_issues(
        self, task: Task, results: Mapping[str, ValidatorResult]
    ) -> list[Issue]:
        """Validator issues plus scope and contract findings.

        Scope reads the changed files before any contract revert.
        """

        issues = [issue for result in results.values() for issue in result.issues]
        policy = self._project.scope_guard
        if policy is not ScopeGuardPolicy.OFF:
            changed = self._workspace.changed_files(task.id)
            issues.extend(scope_issues(task, changed, policy))
        if task.files_contract is not None:
            violations = self._workspace.enforce_contract(task.id, task.files_contract)
            issues.extend(
                Issue(
                    kind=CONTRACT_VIOLATION_KIND,
                    level=IssueLevel.ERROR,
                    message=f"File contract violation: {violation.reason.value} ({violation.file})",
                    file=violation.file,
                    raw=violation.to_dict(),
                )
                for violation in violations
            )
        return issues

    def _complete(self, ctx: _RunContext, progress: _TaskProgress, started: float) -> _TaskOutcome:
        task = progress.task
        progress.phase = Phase.CHECKPOINT
        self._task_states.upsert(
            ctx.run_id,
            task.id,
            status=TaskStatus.RUNNING,
            phase=Phase.CHECKPOINT,
            iteration=progress.iteration,
        )
        self._checkpoint(ctx, task, progress.iteration, task.title or "Task completed")
        self._workspace.merge(task.id)
        self._workspace.cleanup(task.id)

        elapsed = self._elapsed_ms(started)
        ctx.run_budget.record_iteration(elapsed)
        progress.budget.record_iteration(elapsed)

        self._task_states.upsert(
            ctx.run_id,
            task.id,
            status=TaskStatus.DONE,
            phase=Phase.DONE,
            iteration=progress.iteration,
        )
        ctx.ledger.event(
            "task_done",
            "Task done",
            task_id=task.id,
            data={"iteration": progress.iteration},
        )
        self._logger.info("task_done", task_id=task.id, iteration=progress.iteration)
        return _TaskOutcome(
            ok=True, tier=progress.budget.tier(), budget_status=progress.budget.status()
        )

    def _checkpoint(self, ctx: _RunContext, task: Task, iteration: int, label: str) -> str:
        message = f"{COMMIT_MESSAGE_PREFIX} {task.id}: {label}"
        ref = self._workspace.checkpoint(task.id, message)
        self._checkpoints.record(ctx.run_id, task.id, ref=ref, message=message)
        ctx.ledger.event(
            "checkpoint",
            message,
            task_id=task.id,
            data={"ref": ref, "iteration": iteration},
        )
        return ref

    def _block(
        self,
        ctx: _RunContext,
        progress: _TaskProgress,
        *,
        kind: str,
        reason: str,
        exit_code: int,
    ) -> _TaskOutcome:
        """Stop the task; the workspace is left untouched for manual inspection."""

        task = progress.task
        tier = progress.budget.tier()
        status = progress.budget.status()
        self._task_states.upsert(
            ctx.run_id,
            task.id,
            status=TaskStatus.BLOCKED,
            phase=progress.phase,
            iteration=progress.iteration,
            last_error=reason,
        )
        ctx.ledger.event(
            kind,
            reason,
            task_id=task.id,
            data={"exit_code": exit_code, "tier": tier.value, "iteration": progress.iteration},
        )
        self._logger.warning(
            "task_blocked",
            task_id=task.id,
            kind=kind,
            reason=reason,
            iteration=progress.iteration,
            tier=tier.value,
        )
        ctx.artifacts.write_failure_summary(
            task.id,
            build_failure_summary(
                FailureSummaryInput(
                    run_id=ctx.run_id,
                    task_id=task.id,
                    reason=reason,
                    tier=tier,
                    budget_status=status,
                    last_issues=tuple(progress.last_issues),
                    ledger_events=self._ledger_repo.list_all(
                        ctx.run_id, kinds=(BACKEND_USAGE_KIND,)
                    ),
                )
            ),
        )
        return _TaskOutcome(
            ok=False, exit_code=exit_code, reason=reason, tier=tier, budget_status=status
        )

    def _transition(
        self,
        ctx: _RunContext,
        task: Task,
        phase: Phase,
        iteration: int,
        *,
        kind: str,
        message: str,
        data: Mapping[str, object] | None = None,
        last_error: str | None = None,
    ) -> None:
        self._task_states.upsert(
            ctx.run_id,
            task.id,
            status=TaskStatus.RUNNING,
            phase=phase,
            iteration=iteration,
            last_error=last_error,
        )
        ctx.ledger.event(kind, message, task_id=task.id, data=data)

    def _backend_log_file(
        self, run_id: str, task_id: str, iteration: int, tier: Tier
    ) -> Path | None:
        # Transcripts are optional output and are dropped once the task is in warning.
        if not self._settings.backend_logs or tier is Tier.WARNING:
            return None
        return self._folders.runs / run_id / f"{sanitize_task_id(task_id)}-iter{iteration}.md"

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))


__all__ = [
    "CONTRACT_VIOLATION_KIND",
    "STUCK_REASON",
    "EngineLoop",
    "EngineOptions",
    "EngineSettings",
    "RunOutcome",
    "UnknownTaskError",
]
