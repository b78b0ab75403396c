"""
Conductor Lock Guard — optimistic concurrency for task records.

Every mutation of a persisted task goes through LockGuard.update():

  1. take a snapshot (task, token)
  2. apply the change to a deep copy
  3. compare-and-swap against the token

On a conflict the snapshot is thrown away, the task is re-read and the
change is applied again to the fresh copy. After a bounded number of
attempts the ConflictError reaches the caller. Changes must therefore be
re-appliable functions of the task they receive, and may raise to abort.

Ownership of a running task is a claim (claimed_by + claimed_at) written
through the same path, so only one worker loop drives a task at a time.
"""

from __future__ import annotations

import os
import socket
import uuid
from datetime import timedelta
from typing import Callable, Iterable, TypeVar

from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from conductor.errors import ConflictError, InvalidTransitionError
from conductor.lifecycle import transition
from conductor.models import Task, utcnow
from conductor.store import TaskStore

T = TypeVar("T")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class LockGuard:
    def __init__(
        self,
        store: TaskStore,
        max_attempts: int = 3,
        worker_id: str | None = None,
        lease_seconds: int = 300,
    ):
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.worker_id = worker_id or default_worker_id()
        self.lease = timedelta(seconds=lease_seconds)

    def read(self, task_id: str) -> tuple[Task, int]:
        return self.store.load(task_id)

    def update(
        self,
        task_id: str,
        change: Callable[[Task], T],
        snapshot: tuple[Task, int] | None = None,
    ) -> tuple[Task, int, T]:
        """
        Apply change to the task and persist it atomically.

        Args:
            task_id: Task to mutate.
            change: Mutates the task it is given. Its return value is passed back.
            snapshot: Optional (task, token) already in hand, used for the
                first attempt only.

        Returns:
            (persisted task, new token, change result)

        Raises:
            ConflictError: if every attempt lost the race.
        """
        for attempt in Retrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(ConflictError),
            reraise=True,
        ):
            with attempt:
                number = attempt.retry_state.attempt_number
                if snapshot is not None and number == 1:
                    task, token = snapshot
                else:
                    if number > 1:
                        logger.debug(f"[GUARD] Conflict on {task_id}, re-reading (attempt {number}/{self.max_attempts})")
                    task, token = self.store.load(task_id)

                candidate = task.model_copy(deep=True)
                result = change(candidate)
                candidate.updated_at = utcnow()
                if candidate.claimed_by == self.worker_id:
                    candidate.claimed_at = candidate.updated_at
                new_token = self.store.compare_and_swap(task_id, token, candidate)
                return candidate, new_token, result

        raise ConflictError(f"Task {task_id}: no attempts made")  # pragma: no cover

    # -----------------------------------------------------------------------
    # Claims
    # -----------------------------------------------------------------------

    def _claim_is_live(self, task: Task) -> bool:
        if not task.claimed_by or task.claimed_by == self.worker_id:
            return False
        if task.claimed_at is None:
            return True
        return utcnow() - task.claimed_at < self.lease

    def claim(self, task_id: str, from_statuses: Iterable[str] = ("pending",)) -> tuple[Task, int]:
        """
        Take ownership of a task and move it to in_progress.

        An in_progress task may be claimed only if nobody holds a live claim
        on it (crash recovery). Steps a dead worker left in_progress go back
        to pending.

        Raises:
            ConflictError: another worker holds a live claim.
            InvalidTransitionError: the task is not in a claimable status.
        """
        allowed = set(from_statuses)

        def take(task: Task) -> None:
            if self._claim_is_live(task):
                raise ConflictError(f"Task {task.id} is claimed by {task.claimed_by}")
            if task.status != "in_progress":
                if task.status not in allowed:
                    raise InvalidTransitionError(
                        f"Task {task.id} cannot be claimed from status {task.status}"
                    )
                transition(task, "in_progress")
            elif task.claimed_by and task.claimed_by != self.worker_id:
                logger.warning(f"[GUARD] Taking over {task.id} from expired claim {task.claimed_by}")

            for step_id in task.steps_with_status("in_progress"):
                task.set_step_status(step_id, "pending")
            task.claimed_by = self.worker_id
            task.claimed_at = utcnow()

        task, token, _ = self.update(task_id, take)
        logger.debug(f"[GUARD] {self.worker_id} claimed {task_id}")
        return task, token

    def release(self, task_id: str) -> None:
        """Drop this worker's claim, if it still holds one."""

        def drop(task: Task) -> bool:
            if task.claimed_by != self.worker_id:
                return False
            task.claimed_by = None
            task.claimed_at = None
            return True

        try:
            task, token = self.store.load(task_id)
            if task.claimed_by != self.worker_id:
                return
            self.update(task_id, drop, snapshot=(task, token))
        except ConflictError:
            logger.warning(f"[GUARD] Could not release claim on {task_id}")
