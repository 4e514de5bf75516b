from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .config import get_logging_config
from .constants import DEFAULT_LOCK_TTL_MINUTES, DEFAULT_LOG_LINES
from .domain.models import ExecuteOptions, Task
from .errors import DependencyOrderError, LockHeldError
from .logging_utils import configure_logging, summarize_run
from .scheduler.service import OrchestratorService, RunAnalysis, create_orchestrator
from .storage.container import Container
from .workers.pid_registry import pid_alive


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> tuple[Container, OrchestratorService]:
    container = Container(_resolve_project_dir(args.project_dir))
    level = args.log_level or str(get_logging_config(container.config).get("level") or "INFO")
    configure_logging(level)
    return container, create_orchestrator(container)


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _options(container: Container, args: argparse.Namespace, **extra: Any) -> ExecuteOptions:
    return ExecuteOptions.from_config(
        container.config,
        worker_types=args.worker_type or [],
        phases=args.phase or [],
        **extra,
    )


def _feature_tasks(container: Container, feature_id: Optional[str]) -> list[Task]:
    return container.tasks.for_feature(feature_id) if feature_id else container.tasks.list()


def _run(args: argparse.Namespace) -> int:
    container, orchestrator = _ctx(args)
    try:
        options = _options(
            container,
            args,
            max_concurrent=args.max_concurrent,
            task_timeout_seconds=args.timeout,
            dry_run=args.dry_run,
            skip_permissions=True if args.skip_permissions else None,
        )
        run = orchestrator.execute_run(
            str(container.project_dir),
            args.feature or container.project_id,
            _feature_tasks(container, args.feature),
            options,
            feature_title=args.title,
        )
    except (DependencyOrderError, ValueError) as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    _emit({"run": run.to_dict(), "summary": summarize_run(run)})
    if run.dry_run:
        return 0
    return 0 if run.status == "completed" else 2


def _print_plan(analysis: RunAnalysis, feature_id: Optional[str]) -> None:
    console = Console()
    console.print(f"\n[bold]Execution Plan[/bold]{f' for {feature_id}' if feature_id else ''}")
    console.print(f"Total tasks: {analysis.total_tasks}")
    console.print(f"Estimated minutes: {analysis.estimated_minutes}")
    console.print()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Phase", justify="right")
    table.add_column("Task")
    table.add_column("Worker")
    table.add_column("Title")
    table.add_column("Depends on")
    table.add_column("Ready")
    for plan in analysis.phases:
        for item in plan.tasks:
            table.add_row(
                str(plan.phase),
                item["id"],
                item["worker_type"],
                item["title"],
                ", ".join(item["depends_on"]) or "-",
                "[green]yes[/green]" if item["can_execute"] else "[red]no[/red]",
            )
    console.print(table)

    for plan in analysis.phases:
        mode = "parallel" if plan.can_run_parallel else "[yellow]blocked dependencies[/yellow]"
        console.print(f"Phase {plan.phase}: {len(plan.tasks)} task(s), ~{plan.estimated_minutes} min, {mode}")
    for issue in analysis.ordering_issues:
        console.print(f"[red]Ordering issue:[/red] {issue}")


def _analyze(args: argparse.Namespace) -> int:
    container, orchestrator = _ctx(args)
    analysis = orchestrator.analyze(_feature_tasks(container, args.feature), _options(container, args))
    if args.json:
        _emit(analysis.to_dict())
    else:
        _print_plan(analysis, args.feature)
    return 1 if analysis.ordering_issues else 0


def _status(args: argparse.Namespace) -> int:
    _, orchestrator = _ctx(args)
    if args.run_id:
        run = orchestrator.get_run(args.run_id)
        if run is None:
            sys.stderr.write(f"Run not found: {args.run_id}\n")
            return 1
        _emit({"run": run.to_dict()})
        return 0
    _emit({"runs": [summarize_run(run) for run in orchestrator.list_runs()]})
    return 0


def _state_summary(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    sys.stdout.write(container.state.get_summary(container.project_id) + "\n")
    return 0


def _state_show(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    _emit(container.state.load(container.project_id))
    return 0


def _state_lock(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    try:
        state = container.state.add_lock(
            container.project_id,
            args.file,
            args.worker_type,
            args.task,
            ttl_minutes=args.ttl,
        )
    except LockHeldError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    _emit({"active_locks": state["active_locks"]})
    return 0


def _state_unlock(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    state = container.state.release_lock(container.project_id, args.file)
    _emit({"active_locks": state["active_locks"]})
    return 0


def _sessions_list(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    entries = []
    for session_id, entry in container.pid_registry.load().items():
        if not args.all and Path(str(entry.get("project_path"))).resolve() != container.project_dir:
            continue
        entries.append({"session_id": session_id, **entry, "alive": pid_alive(entry.get("pid"))})
    _emit({"sessions": entries})
    return 0


def _sessions_kill(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    if not container.pid_registry.terminate(args.session_id):
        sys.stderr.write(f"No running session: {args.session_id}\n")
        return 1
    _emit({"session_id": args.session_id, "killed": True})
    return 0


def _sessions_log(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    lines = container.workers.read_log(args.session_id, args.lines)
    if not lines:
        sys.stderr.write(f"No log for session: {args.session_id}\n")
        return 1
    sys.stdout.write("\n".join(lines) + "\n")
    return 0


def _sessions_prune(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    _emit({"pruned": container.pid_registry.prune_stale()})
    return 0


def _discover(args: argparse.Namespace) -> int:
    container, _ = _ctx(args)
    result = container.workers.spawn_discovery(
        str(container.project_dir),
        skip_permissions=args.skip_permissions,
    )
    if not result.success or result.session is None:
        sys.stderr.write((result.error or "Failed to spawn discovery session") + "\n")
        return 1
    outcome = container.workers.wait_for(result.session.session_id, args.timeout)
    _emit({"session": result.session.to_dict(), "completed": outcome.completed, "status": outcome.status})
    return 0 if outcome.completed and outcome.status == "completed" else 2


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'phase-runner[server]'\n")
        return 1

    from .api import create_app

    configure_logging(args.log_level or "INFO")
    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def _add_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--feature", default=None, help="Only tasks of this feature")
    parser.add_argument("--worker-type", action="append", help="Restrict to a worker type (repeatable)")
    parser.add_argument("--phase", action="append", type=int, help="Restrict to a phase number (repeatable)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Phase Runner - run feature tasks phase by phase on agent workers")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--log-level", default=None, help="Log level (default: config logging.level or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Execute a feature's tasks")
    _add_filters(run)
    run.add_argument("--title", default=None, help="Feature title recorded in project state")
    run.add_argument("--max-concurrent", type=int, default=None)
    run.add_argument("--timeout", type=float, default=None, help="Per-task timeout in seconds")
    run.add_argument("--dry-run", action="store_true")
    run.add_argument("--skip-permissions", action="store_true")
    run.set_defaults(func=_run)

    analyze = subparsers.add_parser("analyze", help="Show the execution plan without running")
    _add_filters(analyze)
    analyze.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    analyze.set_defaults(func=_analyze)

    status = subparsers.add_parser("status", help="Show recorded runs")
    status.add_argument("--run-id", default=None)
    status.set_defaults(func=_status)

    state = subparsers.add_parser("state", help="Inspect or edit the shared project state")
    state_sub = state.add_subparsers(dest="state_cmd", required=True)
    ssummary = state_sub.add_parser("summary", help="Print a markdown summary")
    ssummary.set_defaults(func=_state_summary)
    sshow = state_sub.add_parser("show", help="Print the raw state document")
    sshow.set_defaults(func=_state_show)
    slock = state_sub.add_parser("lock", help="Claim an advisory file lock")
    slock.add_argument("file")
    slock.add_argument("--worker-type", required=True)
    slock.add_argument("--task", required=True)
    slock.add_argument("--ttl", type=int, default=DEFAULT_LOCK_TTL_MINUTES, help="Minutes until expiry")
    slock.set_defaults(func=_state_lock)
    sunlock = state_sub.add_parser("unlock", help="Release an advisory file lock")
    sunlock.add_argument("file")
    sunlock.set_defaults(func=_state_unlock)

    sessions = subparsers.add_parser("sessions", help="Inspect worker sessions")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd", required=True)
    slist = sessions_sub.add_parser("list", help="List registered sessions")
    slist.add_argument("--all", action="store_true", help="Include other projects")
    slist.set_defaults(func=_sessions_list)
    skill = sessions_sub.add_parser("kill", help="Terminate a session")
    skill.add_argument("session_id")
    skill.set_defaults(func=_sessions_kill)
    slog = sessions_sub.add_parser("log", help="Print the tail of a session log")
    slog.add_argument("session_id")
    slog.add_argument("--lines", type=int, default=DEFAULT_LOG_LINES)
    slog.set_defaults(func=_sessions_log)
    sprune = sessions_sub.add_parser("prune", help="Drop registry entries of dead processes")
    sprune.set_defaults(func=_sessions_prune)

    discover = subparsers.add_parser("discover", help="Run a discovery session and wait for it")
    discover.add_argument("--timeout", type=float, default=3600.0)
    discover.add_argument("--skip-permissions", action="store_true")
    discover.set_defaults(func=_discover)

    server = subparsers.add_parser("server", help="Start the HTTP API")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.set_defaults(func=_server)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
