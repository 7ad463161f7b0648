"""Command-line interface router for taskforge."""

from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

from rich.console import Console
from rich.table import Table

from taskforge.backends import UnknownBackendError, create_backend
from taskforge.config import (
    ConfigLoadError,
    ConfigValidationError,
    TaskforgeSettings,
    dump_project_spec,
    find_project_spec,
    load_project_spec,
    load_settings,
)
from taskforge.constants import (
    COMMIT_MESSAGE_PREFIX,
    DEFAULT_LEDGER_TAIL,
    EXIT_CONFIG_ERROR,
    EXIT_SUCCESS,
)
from taskforge.control_plane import (
    ArtifactWriter,
    EngineLoop,
    EngineOptions,
    StatusIconMode,
)
from taskforge.control_plane.failure_summary import aggregate_spend
from taskforge.domain.ids import generate_run_id
from taskforge.domain.models import ProjectSpec, Task, WorkspaceMode
from taskforge.integration_plane.git_engine import GitEngineError
from taskforge.integration_plane.workspace import PatchModeWorkspace, create_workspace
from taskforge.observability import (
    LoggingConfig,
    configure_structlog,
    setup_structured_logging,
    shutdown_logging,
)
from taskforge.persistence import (
    LedgerRepo,
    RunRecord,
    RunRepo,
    StateDB,
    StateFolders,
    TaskStateRepo,
    ensure_state_folders,
    state_root,
)
from taskforge.planning.task_graph import (
    CycleError,
    DuplicateTaskError,
    MissingDependencyError,
    build_task_graph,
)

_MAX_TAIL: Final[int] = 1_000
_STATUS_STYLES: Final[Mapping[str, str]] = {
    "success": "green",
    "done": "green",
    "active": "cyan",
    "running": "cyan",
    "pending": "dim",
    "stopped": "yellow",
    "blocked": "yellow",
    "error": "red",
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = EXIT_CONFIG_ERROR

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="taskforge",
        description=(
            "taskforge - budgeted orchestration of coding-agent tasks.\n\n"
            "Common workflows:\n"
            "  taskforge validate            Check taskforge.yml and the task graph\n"
            "  taskforge run --dry-run       Plan a run without touching the repo\n"
            "  taskforge run --task T1       Run a single task\n"
            "  taskforge status              Show the latest run\n"
            "  taskforge checkpoint --task T1 --message wip\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to engine settings TOML (default: ./taskforge.toml if present).",
    )
    common.add_argument(
        "--spec",
        dest="spec_path",
        default=None,
        help="Path to the project spec (default: ./taskforge.yml).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and log at DEBUG level.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Execute tasks from the project spec",
        description=(
            "Execute every task in dependency order, or a single task.\n\n"
            "Examples:\n"
            "  taskforge run\n"
            "  taskforge run --task fix-login --backend claude-code\n"
            "  taskforge run --workspace worktree\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("--task", dest="task_id", default=None, help="Run only this task id")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Record the plan in the ledger without invoking the backend",
    )
    run_parser.add_argument("--backend", default=None, help="Override the project backend id")
    run_parser.add_argument(
        "--workspace",
        choices=tuple(mode.value for mode in WorkspaceMode),
        default=None,
        help="Override the project workspace mode",
    )
    run_parser.set_defaults(handler=_cmd_run)

    # read-only views -----------------------------------------------------
    for name, help_text, handler in (
        ("status", "Show the latest run and its current task", _cmd_status),
        ("tasks", "Show task rows for a run", _cmd_tasks),
        ("budget", "Show backend spend per task for a run", _cmd_budget),
        ("report", "Regenerate STATUS.md, TASKS.md and BUDGET.md", _cmd_report),
    ):
        view_parser = subparsers.add_parser(name, parents=[common], help=help_text)
        view_parser.add_argument(
            "--run-id", default=None, help="Inspect this run instead of the latest one"
        )
        view_parser.set_defaults(handler=handler)

    tail_parser = subparsers.add_parser(
        "tail", parents=[common], help="Show the most recent ledger events"
    )
    tail_parser.add_argument(
        "--run-id", default=None, help="Inspect this run instead of the latest one"
    )
    tail_parser.add_argument(
        "-n",
        dest="limit",
        type=int,
        default=DEFAULT_LEDGER_TAIL,
        help=f"Number of events (default: {DEFAULT_LEDGER_TAIL})",
    )
    tail_parser.set_defaults(handler=_cmd_tail)

    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Validate the project spec and its task graph",
    )
    validate_parser.set_defaults(handler=_cmd_validate)

    checkpoint_parser = subparsers.add_parser(
        "checkpoint",
        parents=[common],
        help="Commit the working tree as a manual checkpoint (patch mode)",
    )
    checkpoint_parser.add_argument("--task", dest="task_id", required=True, help="Task id")
    checkpoint_parser.add_argument("--message", required=True, help="Checkpoint message")
    checkpoint_parser.set_defaults(handler=_cmd_checkpoint)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    try:
        namespace = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse exits with 2 on usage errors, which would read as a budget stop.
        return EXIT_SUCCESS if exc.code in (0, None) else EXIT_CONFIG_ERROR
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    settings = _load_settings(args, repo_root)
    project = _load_project(args, repo_root)
    assert project is not None

    if args.backend is not None:
        project = replace(project, backend=args.backend)
    if args.workspace is not None:
        project = replace(project, workspace_mode=WorkspaceMode(args.workspace))

    project_root = Path(project.repo_root)
    folders = ensure_state_folders(project_root, _state_dir_override(settings, project))
    try:
        backend = create_backend(project.backend, project)
    except UnknownBackendError as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc
    workspace = create_workspace(
        project.workspace_mode, project_root, worktree_root=folders.worktrees
    )

    run_id = generate_run_id()
    configure_structlog(settings.log_level)
    handle = (
        setup_structured_logging(
            LoggingConfig(base_log_dir=folders.logs, run_id=run_id, level=settings.log_level)
        )
        if settings.json_logs
        else None
    )
    db = StateDB(folders.db_path)
    try:
        engine = EngineLoop(
            project,
            backend=backend,
            workspace=workspace,
            repo_root=project_root,
            folders=folders,
            db=db,
            settings=settings.engine,
            run_id_factory=lambda: run_id,
        )
        outcome = engine.run(EngineOptions(task_id=args.task_id, dry_run=args.dry_run))
    finally:
        if handle is not None:
            shutdown_logging(handle)

    payload: dict[str, object] = {
        "command": "run",
        **outcome.to_dict(),
        "backend": project.backend,
        "workspace_mode": project.workspace_mode.value,
        "dry_run": bool(args.dry_run),
        "state_dir": str(folders.root),
    }
    if args.json:
        _emit_json(payload)
        return outcome.exit_code

    console = _console(args)
    table = _kv_table()
    table.add_row("Run ID", outcome.run_id or "(not created)")
    result = _styled("success", "ok") if outcome.ok else _styled("error", "failed")
    table.add_row("Result", result)
    table.add_row("Exit code", str(outcome.exit_code))
    if outcome.task_id is not None:
        table.add_row("Task", outcome.task_id)
    if outcome.reason:
        table.add_row("Reason", outcome.reason)
    table.add_row("Backend", project.backend)
    table.add_row("Workspace", project.workspace_mode.value)
    table.add_row("State", str(folders.root))
    console.print(table)
    if not outcome.ok and outcome.task_id is not None and outcome.run_id is not None:
        console.print(f"See {folders.failure_file(outcome.task_id)} for next steps.")
    return outcome.exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    view = _open_view(args)
    if view is None:
        return _no_runs(args, "status")
    runs, task_states, ledger, run = view

    rows = task_states.list_for_run(run.id)
    current = max(rows, key=lambda row: row.updated_at, default=None)
    recent = ledger.list(run.id, limit=1)
    counts = Counter(row.status.value for row in rows)

    payload: dict[str, object] = {
        "command": "status",
        "run": run.to_dict(),
        "current_task": None if current is None else current.to_dict(),
        "task_counts": dict(sorted(counts.items())),
        "last_event": recent[-1].to_dict() if recent else None,
    }
    if args.json:
        _emit_json(payload)
        return EXIT_SUCCESS

    console = _console(args)
    table = _kv_table()
    table.add_row("Run ID", run.id)
    table.add_row("Status", _styled(run.status.value))
    table.add_row("Started", run.started_at)
    table.add_row("Finished", run.finished_at or "(in progress)")
    table.add_row("Backend", run.backend_id or "-")
    table.add_row("Workspace", run.workspace_mode or "-")
    if current is not None:
        table.add_row(
            "Current task",
            f"{current.task_id} ({current.status.value}, phase {current.phase or '-'}, "
            f"iteration {current.iteration})",
        )
        if current.last_error:
            table.add_row("Last error", current.last_error)
    table.add_row(
        "Tasks", ", ".join(f"{key}={value}" for key, value in sorted(counts.items())) or "-"
    )
    if recent:
        table.add_row("Last event", f"[{recent[-1].kind}] {recent[-1].message}")
    console.print(table)
    return EXIT_SUCCESS


def _cmd_tail(args: argparse.Namespace) -> int:
    if args.limit <= 0 or args.limit > _MAX_TAIL:
        raise CLIError(f"-n must be in [1, {_MAX_TAIL}]")
    view = _open_view(args)
    if view is None:
        return _no_runs(args, "tail")
    _, _, ledger, run = view
    events = ledger.list(run.id, limit=args.limit)

    if args.json:
        _emit_json(
            {"command": "tail", "run_id": run.id, "events": [event.to_dict() for event in events]}
        )
        return EXIT_SUCCESS

    console = _console(args)
    table = Table(title=f"Ledger for {run.id}", show_lines=False)
    table.add_column("Time", no_wrap=True)
    table.add_column("Task")
    table.add_column("Kind", style="bold")
    table.add_column("Message")
    for event in events:
        table.add_row(event.ts, event.task_id or "", event.kind, event.message)
        if args.verbose and event.data is not None:
            table.add_row("", "", "", json.dumps(event.data, sort_keys=True))
    console.print(table)
    return EXIT_SUCCESS


def _cmd_tasks(args: argparse.Namespace) -> int:
    view = _open_view(args)
    if view is None:
        return _no_runs(args, "tasks")
    _, task_states, _, run = view
    rows = task_states.list_for_run(run.id)

    if args.json:
        _emit_json({"command": "tasks", "run_id": run.id, "tasks": [row.to_dict() for row in rows]})
        return EXIT_SUCCESS

    console = _console(args)
    table = Table(title=f"Tasks for {run.id}")
    table.add_column("Task", no_wrap=True)
    table.add_column("Status")
    table.add_column("Phase")
    table.add_column("Iter", justify="right")
    table.add_column("Last error")
    for row in rows:
        table.add_row(
            row.task_id,
            _styled(row.status.value),
            row.phase or "",
            str(row.iteration),
            row.last_error or "",
        )
    console.print(table)
    return EXIT_SUCCESS


def _cmd_budget(args: argparse.Namespace) -> int:
    view = _open_view(args)
    if view is None:
        return _no_runs(args, "budget")
    _, _, ledger, run = view
    spend = aggregate_spend(ledger.list_all(run.id, kinds=("backend_usage",)))
    totals = {
        "calls": sum(entry.calls for entry in spend),
        "usd": sum(entry.usd for entry in spend),
        "tokens": sum(entry.tokens for entry in spend),
    }

    if args.json:
        _emit_json(
            {
                "command": "budget",
                "run_id": run.id,
                "spend": [
                    {
                        "task_id": entry.task_id,
                        "calls": entry.calls,
                        "usd": entry.usd,
                        "tokens": entry.tokens,
                    }
                    for entry in spend
                ],
                "totals": totals,
            }
        )
        return EXIT_SUCCESS

    console = _console(args)
    table = Table(title=f"Backend spend for {run.id}", show_footer=True)
    table.add_column("Task", footer="total")
    table.add_column("Calls", justify="right", footer=str(totals["calls"]))
    table.add_column("USD", justify="right", footer=f"{totals['usd']:.4f}")
    table.add_column("Tokens", justify="right", footer=str(totals["tokens"]))
    for entry in spend:
        table.add_row(entry.task_id, str(entry.calls), f"{entry.usd:.4f}", str(entry.tokens))
    console.print(table)
    console.print("Spend is best-effort; some backends report no usage.", style="dim")
    return EXIT_SUCCESS


def _cmd_report(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    settings = _load_settings(args, repo_root)
    project = _load_project(args, repo_root, required=False)
    folders = _folders(repo_root, settings, project)
    if not folders.db_path.exists():
        return _no_runs(args, "report")

    db = StateDB(folders.db_path)
    runs = RunRepo(db)
    task_states = TaskStateRepo(db)
    ledger = LedgerRepo(db)
    run = _resolve_run(runs, args.run_id)
    if run is None:
        return _no_runs(args, "report")
    writer = ArtifactWriter(
        folders,
        runs=runs,
        task_states=task_states,
        ledger=ledger,
        status_icons=StatusIconMode(project.status_icons if project else "emoji"),
    )
    tasks: tuple[Task, ...] = project.tasks if project is not None else ()
    written = [
        writer.write_status(run.id),
        writer.write_tasks_board(run.id, tasks),
        writer.write_budget_report(run.id),
    ]

    paths = [str(path) for path in written if path is not None]
    if args.json:
        _emit_json({"command": "report", "run_id": run.id, "written": paths})
    else:
        console = _console(args)
        for path in paths:
            console.print(f"wrote {path}")
    return EXIT_SUCCESS if len(paths) == len(written) else EXIT_CONFIG_ERROR


def _cmd_validate(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    _load_settings(args, repo_root)
    project = _load_project(args, repo_root)
    assert project is not None

    try:
        graph = build_task_graph(project.tasks)
    except (DuplicateTaskError, MissingDependencyError, CycleError) as exc:
        raise CLIError(f"invalid task graph: {exc}", exit_code=EXIT_CONFIG_ERROR) from exc

    if args.json:
        _emit_json(
            {
                "command": "validate",
                "ok": True,
                "order": list(graph.order),
                "spec": dump_project_spec(project),
            }
        )
        return EXIT_SUCCESS

    console = _console(args)
    console.print(f"[green]ok[/green] {project.name}: {len(project.tasks)} task(s)")
    table = Table(title="Execution order")
    table.add_column("#", justify="right")
    table.add_column("Task")
    table.add_column("Depends on")
    table.add_column("Validators")
    for index, task_id in enumerate(graph.order, start=1):
        task = graph.tasks_by_id[task_id]
        validators = project.validators_for(task)
        table.add_row(
            str(index),
            task.id if not task.title else f"{task.id} - {task.title}",
            ", ".join(task.deps) or "-",
            ", ".join(validator.id for validator in validators) or "-",
        )
    console.print(table)
    return EXIT_SUCCESS


def _cmd_checkpoint(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    if not args.task_id.strip() or not args.message.strip():
        raise CLIError("--task and --message must not be empty")

    message = f"{COMMIT_MESSAGE_PREFIX} {args.task_id}: {args.message}"
    workspace = PatchModeWorkspace(repo_root)
    try:
        workspace.prepare(args.task_id)
        ref = workspace.checkpoint(args.task_id, message)
    except GitEngineError as exc:
        raise CLIError(f"checkpoint failed: {exc}") from exc
    finally:
        workspace.cleanup(args.task_id)

    if args.json:
        _emit_json({"command": "checkpoint", "task_id": args.task_id, "ref": ref})
    else:
        _console(args).print(f"Checkpoint {ref}")
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Helpers - config, paths, resolution
# ---------------------------------------------------------------------------


def _repo_root(args: argparse.Namespace) -> Path:
    candidate = Path(args.repo_root).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}")
    return candidate


def _load_settings(args: argparse.Namespace, repo_root: Path) -> TaskforgeSettings:
    try:
        return load_settings(
            args.config_path,
            repo_root=repo_root,
            cli_overrides={"logging.level": "DEBUG" if args.verbose else None},
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc


def _load_project(
    args: argparse.Namespace, repo_root: Path, *, required: bool = True
) -> ProjectSpec | None:
    if args.spec_path is None:
        path = find_project_spec(repo_root)
    else:
        candidate = Path(args.spec_path).expanduser()
        path = candidate if candidate.is_absolute() else repo_root / candidate
    if not required and not path.exists():
        return None
    try:
        return load_project_spec(path)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc


def _state_dir_override(settings: TaskforgeSettings, project: ProjectSpec | None) -> str | None:
    if settings.state_dir is not None:
        return settings.state_dir
    return project.state_dir if project is not None else None


def _folders(
    repo_root: Path, settings: TaskforgeSettings, project: ProjectSpec | None
) -> StateFolders:
    base = Path(project.repo_root) if project is not None else repo_root
    return StateFolders(root=state_root(base, _state_dir_override(settings, project)))


def _open_view(
    args: argparse.Namespace,
) -> tuple[RunRepo, TaskStateRepo, LedgerRepo, RunRecord] | None:
    """Open the state DB read-side for one run; ``None`` when nothing has run yet."""

    repo_root = _repo_root(args)
    settings = _load_settings(args, repo_root)
    project = _load_project(args, repo_root, required=False)
    folders = _folders(repo_root, settings, project)
    if not folders.db_path.exists():
        return None

    db = StateDB(folders.db_path)
    runs = RunRepo(db)
    run = _resolve_run(runs, args.run_id)
    if run is None:
        return None
    return runs, TaskStateRepo(db), LedgerRepo(db), run


def _resolve_run(runs: RunRepo, run_id: str | None) -> RunRecord | None:
    if run_id is None:
        return runs.get_latest()
    run = runs.get(run_id)
    if run is None:
        raise CLIError(f"run not found: {run_id}")
    return run


def _no_runs(args: argparse.Namespace, command: str) -> int:
    if args.json:
        _emit_json({"command": command, "run": None})
    else:
        _console(args).print("No runs found. Start one with `taskforge run`.")
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Helpers - output
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _console(args: argparse.Namespace) -> Console:
    return Console(no_color=bool(args.no_color), highlight=False, soft_wrap=True)


def _kv_table() -> Table:
    table = Table(show_header=False, box=None, pad_edge=False)
    table.add_column(style="bold")
    table.add_column()
    return table


def _styled(status: str, label: str | None = None) -> str:
    style = _STATUS_STYLES.get(status)
    text = label if label is not None else status
    return f"[{style}]{text}[/{style}]" if style else text


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
