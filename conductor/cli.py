"""
Conductor CLI — The Interface

Task commands:
  1. conductor run <plan-file> --tools <module:attr>     (start and drive a task)
  2. conductor resume <task-id> --input step.field=value (supply pending inputs)
  3. conductor batch <plan-dir> --tools <module:attr>    (one task per plan, in parallel)

Plus utilities:
  - conductor validate <plan-file>   (check a plan without running it)
  - conductor show <task-id>         (status, steps and history)
  - conductor list                   (recent tasks)
  - conductor cancel <task-id>
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from conductor.audit_logger import AuditLogger
from conductor.config_loader import load_config
from conductor.engine import TaskEngine
from conductor.errors import ConductorError
from conductor.event_bus import EventBus
from conductor.identity import __codename__, __tagline__, __version__, BANNER
from conductor.models import Plan, Task, UserInput
from conductor.parallel import run_batch
from conductor.scheduler import DependencyScheduler, validate_plan
from conductor.store import PlanDirectory, SqliteTaskStore
from conductor.tools import ToolRegistry, load_tools

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".conductor" / ".env")

app = typer.Typer(
    name="conductor",
    help=f"{__codename__} — {__tagline__}\nThe Plan Execution Engine.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

_STATUS_COLORS = {
    "completed": "green",
    "in_progress": "cyan",
    "pending": "dim",
    "paused": "yellow",
    "skipped": "yellow",
    "cancelled": "yellow",
    "failed": "red",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

RootOption = typer.Option(Path("."), "--root", help="Project root holding .conductor/")
ToolsOption = typer.Option(None, "--tools", "-t", help="Tool executor as 'module:attribute'")


@app.command()
def validate(
    plan_file: Path = typer.Argument(..., help="Plan YAML or JSON file"),
    tools: Optional[str] = ToolsOption,
):
    """Check a plan's dependency graph (and actions, if --tools is given)."""
    plan = _load_plan(plan_file)
    executor = load_tools(tools) if tools else None

    try:
        validate_plan(plan, executor.has_action if executor else None)
    except ConductorError as e:
        console.print(f"[red]✗ Invalid plan {plan.id}: {e}[/]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Plan {plan.id} is valid ({len(plan.steps)} steps)[/]")
    order = [step.id for step in DependencyScheduler(plan).topological_order()]
    console.print(f"[dim]Order: {' → '.join(order)}[/]", soft_wrap=True)


@app.command()
def run(
    plan_file: Path = typer.Argument(..., help="Plan YAML or JSON file"),
    tools: str = typer.Option(..., "--tools", "-t", help="Tool executor as 'module:attribute'"),
    agent_config: str = typer.Option("default", "--agent-config", "-a", help="Agent configuration id"),
    root: Path = RootOption,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Start a task for a plan and drive it until it finishes or pauses."""
    _print_banner()
    _configure_logging(verbose)

    plan = _load_plan(plan_file)
    engine, store = _build_engine(root, tools)
    try:
        PlanDirectory(engine.config.resolve_storage(root.resolve()).plan_dir).save(plan)
        task_id = engine.start_task(plan.id, agent_config, run=False)
        console.print(f"[cyan]Task {task_id} created for plan {plan.id}[/]")
        task = engine.execute_task(task_id)
    except ConductorError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    finally:
        store.close()

    _print_task(task)
    if task.status != "completed":
        raise typer.Exit(0 if task.status == "paused" else 2)


@app.command()
def resume(
    task_id: str = typer.Argument(..., help="Paused task id"),
    inputs: list[str] = typer.Option(..., "--input", "-i", help="STEP.FIELD=VALUE (VALUE parsed as JSON if possible)"),
    tools: str = typer.Option(..., "--tools", "-t", help="Tool executor as 'module:attribute'"),
    root: Path = RootOption,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Supply pending inputs to a paused task and continue it."""
    _configure_logging(verbose)

    try:
        user_inputs = [_parse_input(raw) for raw in inputs]
    except ValueError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    engine, store = _build_engine(root, tools)
    try:
        task = engine.resume_task(task_id, user_inputs)
    except ConductorError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    finally:
        store.close()

    _print_task(task)
    if task.status != "completed":
        raise typer.Exit(0 if task.status == "paused" else 2)


@app.command()
def show(
    task_id: str = typer.Argument(..., help="Task id"),
    root: Path = RootOption,
    history: bool = typer.Option(False, "--history", help="Include the execution history"),
):
    """Show a task's status, steps and pending inputs."""
    engine, store = _build_engine(root)
    try:
        task = engine.get_task(task_id)
        summary = engine.summarize_task(task_id)
    except ConductorError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    finally:
        store.close()

    _print_task(task)
    avg = f"{summary.average_step_duration:.0f}ms" if summary.average_step_duration is not None else "—"
    console.print(
        f"[dim]Goal: {summary.goal} | retries: {summary.total_retries} | "
        f"step time: {summary.total_duration}ms (avg {avg})[/]"
    )
    if history:
        _print_history(task)


@app.command()
def cancel(
    task_id: str = typer.Argument(..., help="Task id"),
    root: Path = RootOption,
):
    """Cancel a task that has not finished."""
    engine, store = _build_engine(root)
    try:
        task = engine.cancel_task(task_id)
    except ConductorError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    finally:
        store.close()

    console.print(f"[yellow]Task {task.id} cancelled[/]")


@app.command(name="list")
def list_tasks(
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Filter by plan id"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by task status"),
    agent_config: Optional[str] = typer.Option(None, "--agent-config", "-a"),
    limit: int = typer.Option(50, "--limit", "-n"),
    skip: int = typer.Option(0, "--skip"),
    root: Path = RootOption,
):
    """List tasks, newest first."""
    engine, store = _build_engine(root)
    try:
        tasks = engine.list_tasks(plan_id=plan, status=status, agent_config_id=agent_config, limit=limit, skip=skip)
    finally:
        store.close()

    if not tasks:
        console.print("[dim]No tasks found.[/]")
        return

    table = Table(title="Tasks", border_style="cyan")
    table.add_column("Task")
    table.add_column("Plan")
    table.add_column("Status")
    table.add_column("Progress")
    table.add_column("Created")

    for t in tasks:
        color = _STATUS_COLORS.get(t.status, "white")
        table.add_row(
            t.id,
            t.plan_id,
            f"[{color}]{t.status}[/]",
            f"{t.current_step_index}/{len(t.step_statuses)}",
            t.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


@app.command()
def batch(
    plan_dir: Path = typer.Argument(..., help="Directory of plan files"),
    tools: str = typer.Option(..., "--tools", "-t", help="Tool executor as 'module:attribute'"),
    agent_config: str = typer.Option("default", "--agent-config", "-a"),
    workers: int = typer.Option(3, "--workers", "-w", help="Max concurrent tasks"),
    root: Path = RootOption,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run one task per plan file in parallel worker processes."""
    _print_banner()
    _configure_logging(verbose)

    if not plan_dir.exists():
        console.print(f"[red]Plan directory not found: {plan_dir}[/]")
        raise typer.Exit(1)

    plan_files = sorted(
        p for p in plan_dir.iterdir() if p.suffix in PlanDirectory.SUFFIXES
    )
    if not plan_files:
        console.print(f"[red]No plan files found in {plan_dir}[/]")
        raise typer.Exit(1)

    console.print(f"[cyan]Found {len(plan_files)} plans in {plan_dir}[/]")
    for pf in plan_files:
        console.print(f"  [dim]{pf.name}[/]")

    results = run_batch(root, plan_files, tools, agent_config_id=agent_config, max_workers=workers)
    if any(r.get("status") not in ("completed", "paused") for r in results):
        raise typer.Exit(2)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_plan(plan_file: Path) -> Plan:
    if not plan_file.exists():
        console.print(f"[red]Plan file not found: {plan_file}[/]")
        raise typer.Exit(1)
    try:
        return Plan.from_file(plan_file)
    except Exception as e:
        console.print(f"[red]Could not read plan {plan_file}: {e}[/]")
        raise typer.Exit(1)


def _build_engine(root: Path, tools: str | None = None) -> tuple[TaskEngine, SqliteTaskStore]:
    """Engine wired to the project's SQLite store, plan directory and audit log."""
    root = root.resolve()
    config = load_config(root)
    storage = config.resolve_storage(root)

    bus = EventBus()
    AuditLogger(str(Path(storage.log_dir) / "events.jsonl"), bus)

    store = SqliteTaskStore(storage.db_path)
    executor = load_tools(tools) if tools else ToolRegistry()
    engine = TaskEngine(store, PlanDirectory(storage.plan_dir), executor, config, bus)
    return engine, store


def _parse_input(raw: str) -> UserInput:
    """Parse 'STEP.FIELD=VALUE'. A bare 'STEP=VALUE' replaces the step's parameters."""
    target, sep, value = raw.partition("=")
    if not sep or not target:
        raise ValueError(f"Expected STEP.FIELD=VALUE, got {raw!r}")
    step_id, _, field = target.partition(".")
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    return UserInput(step_id=step_id, field=field, value=parsed)


def _print_task(task: Task) -> None:
    color = _STATUS_COLORS.get(task.status, "white")

    table = Table(title=f"Task {task.id}", border_style="cyan")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Retries")
    table.add_column("Last error")

    for step_id, step_status in task.step_statuses.items():
        c = _STATUS_COLORS.get(step_status, "white")
        table.add_row(
            step_id,
            f"[{c}]{step_status}[/]",
            str(task.retry_count.get(step_id, 0)),
            (task.last_error_for(step_id) or "")[:70],
        )

    console.print(table)
    console.print(f"\n[bold {color}]Status: {task.status}[/]")
    if task.error:
        console.print(f"[red]{task.error}[/]")

    if task.pending_user_inputs:
        lines = [
            f"[bold]{p.step_id}.{p.field}[/] ({p.type}) {p.description}"
            for p in task.pending_user_inputs
        ]
        console.print(Panel(
            "\n".join(lines),
            title="Waiting for input",
            subtitle=f"conductor resume {task.id} --input STEP.FIELD=VALUE",
            border_style="yellow",
        ))


def _print_history(task: Task) -> None:
    table = Table(title="Execution History", border_style="dim")
    table.add_column("Time")
    table.add_column("Step")
    table.add_column("Event")
    table.add_column("Attempt")
    table.add_column("Duration")
    table.add_column("Error")

    for e in task.execution_history:
        table.add_row(
            e.timestamp.strftime("%H:%M:%S.%f")[:-3],
            e.step_id,
            e.status,
            str(e.attempt or ""),
            f"{e.duration}ms" if e.duration is not None else "",
            (e.error or "")[:60],
        )

    console.print(table)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
