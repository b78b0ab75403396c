"""
Conductor Batch Runner

Runs many plans at once, one task per plan. Each worker process:
  1. Loads its own config and opens its own store connection.
  2. Builds a fresh engine around the shared SQLite task table.
  3. Starts and drives exactly one task.

Workers share nothing but the persisted task records, so the lock guard
is the only coordination between them.
"""

from __future__ import annotations

import concurrent.futures
from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.table import Table

from conductor.models import Plan
from conductor.store import PlanDirectory, SqliteTaskStore

console = Console()


def _run_single_plan(plan_id: str, root: Path, tools_ref: str, agent_config_id: str) -> dict[str, Any]:
    """Process worker. Returns a plain dict so results cross the process boundary."""
    try:
        from conductor.config_loader import load_config
        from conductor.engine import TaskEngine
        from conductor.tools import load_tools

        config = load_config(root)
        storage = config.resolve_storage(root)
        store = SqliteTaskStore(storage.db_path)
        try:
            engine = TaskEngine(store, PlanDirectory(storage.plan_dir), load_tools(tools_ref), config)
            task_id = engine.start_task(plan_id, agent_config_id)
            task = engine.get_task(task_id)
        finally:
            store.close()

        return {
            "plan_id": plan_id,
            "task_id": task.id,
            "status": task.status,
            "error": task.error,
            "completed": len(task.steps_with_status("completed")),
            "steps": len(task.step_statuses),
        }

    except Exception as e:
        logger.error(f"[BATCH] Plan {plan_id} failed to run — {e}")
        return {"plan_id": plan_id, "task_id": None, "status": "error", "error": str(e)}


def run_batch(
    root: Path,
    plan_files: list[Path],
    tools_ref: str,
    agent_config_id: str = "default",
    max_workers: int = 3,
) -> list[dict[str, Any]]:
    """
    Register every plan file in the project's plan directory and run one
    task per plan in a process pool.
    """
    from conductor.config_loader import load_config

    root = root.resolve()
    storage = load_config(root).resolve_storage(root)
    plans = PlanDirectory(storage.plan_dir)

    # Create the schema once, before workers race for it.
    SqliteTaskStore(storage.db_path).close()

    plan_ids = []
    for path in plan_files:
        plan = Plan.from_file(path)
        plans.save(plan)
        plan_ids.append(plan.id)

    _print_batch_header(len(plan_ids), max_workers)

    results: list[dict[str, Any]] = []
    with concurrent.futures.ProcessPoolExecutor(max_workers=max_workers) as executor:
        future_to_plan = {
            executor.submit(_run_single_plan, pid, root, tools_ref, agent_config_id): pid
            for pid in plan_ids
        }

        for future in concurrent.futures.as_completed(future_to_plan):
            plan_id = future_to_plan[future]
            try:
                result = future.result()
            except Exception as e:
                result = {"plan_id": plan_id, "task_id": None, "status": "error", "error": str(e)}
            results.append(result)
            _log_plan_completion(result)

    _print_batch_summary(results)
    return results

# --- Helpers ---

_STATUS_COLORS = {"completed": "green", "paused": "yellow", "cancelled": "yellow"}


def _print_batch_header(count: int, workers: int):
    console.print(f"\n[bold]⚡ Conductor batch — {count} plans, {workers} workers[/]")
    console.print("[dim]Each plan runs as its own task in a separate process.[/]\n")


def _log_plan_completion(result: dict):
    status = result.get("status", "unknown")
    color = _STATUS_COLORS.get(status, "red")
    console.print(f"  [{color}]{result.get('plan_id', '?')}: {status}[/]")


def _print_batch_summary(results: list[dict]) -> None:
    table = Table(title="Batch Results", border_style="bright_green")
    table.add_column("Plan")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Steps")
    table.add_column("Error")

    for r in results:
        status = r.get("status", "unknown")
        color = _STATUS_COLORS.get(status, "red")
        steps = f"{r['completed']}/{r['steps']}" if "steps" in r else "—"
        table.add_row(
            r.get("plan_id", "?"),
            (r.get("task_id") or "—")[:12],
            f"[{color}]{status}[/]",
            steps,
            (r.get("error") or "")[:60],
        )

    console.print(table)

    successes = sum(1 for r in results if r.get("status") == "completed")
    console.print(f"\n[bold]{successes}/{len(results)} completed[/]")
