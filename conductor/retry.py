"""
Conductor Retry Policy

After a transient failure (tool error, timeout, transport error) a step is
either handed back to the scheduler as pending, or marked failed for good.

retry_count is per step lifetime: it counts retries already granted and
never resets, so retry_count <= limit always holds.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Iterable

from conductor.errors import FatalStepError
from conductor.models import PlanStep, Task
from conductor.runner import StepOutcome


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    attempt: int  # 1-based number of the attempt that just finished
    retry_count: int  # value to store after this decision
    limit: int


class RetryPolicy:
    def __init__(
        self,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 30_000,
        single_attempt_actions: Iterable[str] = (),
    ):
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.single_attempt_actions = frozenset(single_attempt_actions)

    def limit_for(self, task: Task, step: PlanStep) -> int:
        if step.action in self.single_attempt_actions:
            return 0
        return task.max_retries

    def decide(self, task: Task, step: PlanStep, outcome: StepOutcome) -> RetryDecision:
        count = task.retry_count.get(step.id, 0)
        limit = self.limit_for(task, step)
        attempt = count + 1

        if outcome.transient and outcome.retryable and count < limit:
            return RetryDecision(retry=True, attempt=attempt, retry_count=count + 1, limit=limit)
        return RetryDecision(retry=False, attempt=attempt, retry_count=count, limit=limit)

    def check(self, task: Task, step: PlanStep, outcome: StepOutcome) -> RetryDecision:
        """
        Decide on a failed outcome, escalating when the step gets no more attempts.

        Raises:
            FatalStepError: the failure is permanent or retries are exhausted.
        """
        decision = self.decide(task, step, outcome)
        if not decision.retry:
            failure = outcome.failure
            message = failure.message if failure else (outcome.error or outcome.kind)
            raise FatalStepError(step.id, message, decision.attempt) from failure
        return decision

    def backoff_ms(self, retry_number: int) -> int:
        """Exponential delay before retry number `retry_number` (1-based), with 0-30% jitter."""
        if self.backoff_base_ms <= 0 or retry_number <= 0:
            return 0
        delay = min(self.backoff_base_ms * 2 ** (retry_number - 1), self.backoff_max_ms)
        return int(delay + random.random() * 0.3 * delay)
