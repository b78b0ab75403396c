"""
Task summaries: deterministic statistics over a task's execution record.
"""

from __future__ import annotations

from collections import Counter

from pydantic import BaseModel, Field

from conductor.models import PendingUserInput, Plan, Task


class StepSummary(BaseModel):
    step_id: str
    action: str
    status: str
    attempts: int = 0
    retries: int = 0
    duration: int | None = None  # ms, last terminal entry
    error: str | None = None


class TaskSummary(BaseModel):
    task_id: str
    plan_id: str
    goal: str
    status: str
    error: str | None = None
    step_counts: dict[str, int] = Field(default_factory=dict)
    total_retries: int = 0
    total_duration: int = 0
    average_step_duration: float | None = None
    pending_user_inputs: list[PendingUserInput] = Field(default_factory=list)
    steps: list[StepSummary] = Field(default_factory=list)


def summarize(task: Task, plan: Plan) -> TaskSummary:
    history = task.execution_history
    durations = [e.duration for e in history if e.status in ("completed", "failed") and e.duration is not None]
    total = sum(durations)

    steps = []
    for step in plan.steps:
        entries = [e for e in history if e.step_id == step.id]
        terminal = [e for e in entries if e.status in ("completed", "failed")]
        steps.append(StepSummary(
            step_id=step.id,
            action=step.action,
            status=task.step_statuses.get(step.id, "pending"),
            attempts=sum(1 for e in entries if e.status == "started"),
            retries=task.retry_count.get(step.id, 0),
            duration=terminal[-1].duration if terminal else None,
            error=task.last_error_for(step.id),
        ))

    return TaskSummary(
        task_id=task.id,
        plan_id=task.plan_id,
        goal=plan.goal,
        status=task.status,
        error=task.error,
        step_counts=dict(Counter(task.step_statuses.values())),
        total_retries=sum(task.retry_count.values()),
        total_duration=total,
        average_step_duration=(total / len(durations)) if durations else None,
        pending_user_inputs=list(task.pending_user_inputs),
        steps=steps,
    )
