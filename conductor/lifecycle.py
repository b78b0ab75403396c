"""
Task lifecycle.

    pending → in_progress ⇄ paused
    in_progress → completed | failed | cancelled
    pending, paused → cancelled

completed, failed and cancelled are terminal.
"""

from __future__ import annotations

from conductor.errors import InvalidTransitionError
from conductor.models import Task, TaskStatus, utcnow

VALID_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("in_progress", "failed", "cancelled"),
    "in_progress": ("paused", "completed", "failed", "cancelled"),
    "paused": ("in_progress", "cancelled"),
    "completed": (),
    "failed": (),
    "cancelled": (),
}


def can_transition(current: str, new: str) -> bool:
    return new in VALID_TRANSITIONS.get(current, ())


def transition(task: Task, new: TaskStatus, error: str | None = None) -> None:
    """Move task to a new status in place, or raise InvalidTransitionError."""
    if task.status == new:
        return
    if not can_transition(task.status, new):
        raise InvalidTransitionError(
            f"Task {task.id}: cannot go from {task.status} to {new}. "
            f"Allowed: {', '.join(VALID_TRANSITIONS.get(task.status, ())) or 'none'}"
        )
    task.status = new
    task.updated_at = utcnow()
    if new == "failed":
        task.error = error
    if new != "paused":
        task.pending_user_inputs = []
