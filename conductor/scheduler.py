"""
Conductor Dependency Scheduler

Answers one question for the engine loop: given the per-step statuses on
a Task, which steps may start now?

A step is ready when it is pending and all of its dependencies are
completed. A pending step with a failed or skipped dependency can never
become ready, so it is skipped instead, transitively.
"""

from __future__ import annotations

from typing import Callable, Mapping

from loguru import logger

from conductor.errors import ConfigurationError
from conductor.models import TERMINAL_STEP_STATUSES, Plan, PlanStep
from conductor.resolver import references


def validate_plan(plan: Plan, has_action: Callable[[str], bool] | None = None) -> None:
    """
    Reject plans that can never execute.

    Raises:
        ConfigurationError: on duplicate or empty step ids, self or unknown
            dependencies, dependency cycles, or actions the executor lacks.
    """
    if not plan.steps:
        raise ConfigurationError(f"Plan {plan.id} has no steps")

    seen: set[str] = set()
    for step in plan.steps:
        if not step.id:
            raise ConfigurationError("Step id must not be empty")
        if step.id in seen:
            raise ConfigurationError(f"Duplicate step id: {step.id}")
        seen.add(step.id)

    for step in plan.steps:
        if step.id in step.dependencies:
            raise ConfigurationError(f"Step {step.id} depends on itself")
        unknown = [d for d in step.dependencies if d not in seen]
        if unknown:
            raise ConfigurationError(f"Step {step.id} depends on unknown steps: {unknown}")
        if has_action is not None and not has_action(step.action):
            raise ConfigurationError(f"Step {step.id} uses unknown action: {step.action}")

    cycle = find_cycle(plan)
    if cycle:
        raise ConfigurationError(f"Circular dependency: {' -> '.join(cycle)}")

    graph = DependencyScheduler(plan)
    for step in plan.steps:
        upstream = graph.ancestors(step.id)
        for ref in references(step.parameters):
            if ref not in upstream:
                logger.warning(
                    f"[SCHEDULER] Step {step.id} references {ref} without depending on it; "
                    "the value will be requested from the user if it is not available"
                )


def find_cycle(plan: Plan) -> list[str]:
    """Return one dependency cycle as a list of step ids, or [] if acyclic."""
    deps = {s.id: s.dependencies for s in plan.steps}
    visiting: list[str] = []
    done: set[str] = set()

    def visit(step_id: str) -> list[str]:
        if step_id in visiting:
            return visiting[visiting.index(step_id):] + [step_id]
        if step_id in done:
            return []
        visiting.append(step_id)
        for dep in deps.get(step_id, []):
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        done.add(step_id)
        return []

    for step in sorted(plan.steps, key=lambda s: s.order):
        cycle = visit(step.id)
        if cycle:
            return cycle
    return []


class DependencyScheduler:
    """Read-only view over a plan's dependency graph."""

    def __init__(self, plan: Plan):
        self.plan = plan
        self._position = {s.id: i for i, s in enumerate(plan.steps)}
        self._steps = {s.id: s for s in plan.steps}

    def _priority(self, step: PlanStep) -> tuple[int, int]:
        return (step.order, self._position[step.id])

    def ancestors(self, step_id: str) -> set[str]:
        found: set[str] = set()
        stack = list(self._steps[step_id].dependencies)
        while stack:
            dep = stack.pop()
            if dep in found or dep not in self._steps:
                continue
            found.add(dep)
            stack.extend(self._steps[dep].dependencies)
        return found

    def topological_order(self) -> list[PlanStep]:
        """All steps, dependencies first, ties broken by (order, position)."""
        ordered: list[PlanStep] = []
        placed: set[str] = set()
        remaining = sorted(self.plan.steps, key=self._priority)
        while remaining:
            for step in remaining:
                if all(d in placed for d in step.dependencies):
                    ordered.append(step)
                    placed.add(step.id)
                    remaining.remove(step)
                    break
            else:
                raise ConfigurationError("Plan contains a dependency cycle")
        return ordered

    def ready_steps(self, statuses: Mapping[str, str]) -> list[PlanStep]:
        """Pending steps whose dependencies are all completed, in dispatch priority."""
        ready = [
            step for step in self.plan.steps
            if statuses.get(step.id) == "pending"
            and all(statuses.get(d) == "completed" for d in step.dependencies)
        ]
        return sorted(ready, key=self._priority)

    def blocked_by_failure(self, statuses: Mapping[str, str]) -> list[tuple[str, str]]:
        """
        Pending steps that can never run, with the dependency that blocks each.

        Computed to a fixpoint, so a chain A <- B <- C with A failed yields
        both B and C.
        """
        effective = dict(statuses)
        skipped: list[tuple[str, str]] = []
        changed = True
        while changed:
            changed = False
            for step in sorted(self.plan.steps, key=self._priority):
                if effective.get(step.id) != "pending":
                    continue
                for dep in step.dependencies:
                    if effective.get(dep) in ("failed", "skipped"):
                        effective[step.id] = "skipped"
                        skipped.append((step.id, dep))
                        changed = True
                        break
        return skipped

    @staticmethod
    def is_finished(statuses: Mapping[str, str]) -> bool:
        return all(st in TERMINAL_STEP_STATUSES for st in statuses.values())
