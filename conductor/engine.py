"""
Conductor Engine — the task state machine.

Drives a Plan to completion as a Task:

  claim → loop { skip unreachable steps → pick ready steps → resolve
  parameters → pause if any ready step is missing data → dispatch →
  record outcome through the retry policy } → completed | failed

Every write to the task record goes through the LockGuard with the token
of the last snapshot this worker persisted. If the record moved under us
(a cancel, another worker) the change is re-applied to a fresh read, and
the loop stops as soon as the task is no longer in_progress and ours.

Exposed operations: start_task, execute_task, get_task, resume_task,
cancel_task, list_tasks, summarize_task.
"""

from __future__ import annotations

import concurrent.futures
import time
from dataclasses import dataclass
from typing import Any, Iterable

from loguru import logger

from conductor.config_loader import ConductorConfig
from conductor.errors import (
    ConductorError,
    ConflictError,
    FatalStepError,
    InputValidationError,
    InvalidTransitionError,
)
from conductor.event_bus import EventBus
from conductor.guard import LockGuard
from conductor.lifecycle import transition
from conductor.models import PendingUserInput, Plan, PlanStep, Task, UserInput, utcnow
from conductor.resolver import Resolution, merge_user_inputs
from conductor.retry import RetryDecision, RetryPolicy
from conductor.runner import StepOutcome, StepRunner, started_entry, terminal_entry
from conductor.scheduler import DependencyScheduler, validate_plan
from conductor.store import PlanSource, TaskStore
from conductor.summary import TaskSummary, summarize
from conductor.tools import ToolExecutor


@dataclass
class ExecutionContext:
    """Everything one worker loop needs, passed explicitly."""
    task: Task
    token: int
    plan: Plan
    scheduler: DependencyScheduler


class _Stop(Exception):
    """The persisted task is no longer in_progress under this worker."""

    def __init__(self, status: str):
        super().__init__(status)
        self.status = status


class TaskEngine:
    def __init__(
        self,
        store: TaskStore,
        plans: PlanSource,
        executor: ToolExecutor,
        config: ConductorConfig | None = None,
        bus: EventBus | None = None,
        worker_id: str | None = None,
    ):
        self.store = store
        self.plans = plans
        self.executor = executor
        self.config = config or ConductorConfig()
        self.bus = bus or EventBus()

        self.guard = LockGuard(
            store,
            max_attempts=self.config.guard.max_conflict_retries,
            worker_id=worker_id,
            lease_seconds=self.config.guard.claim_lease_seconds,
        )
        self.runner = StepRunner(executor)
        self.retry = RetryPolicy(
            backoff_base_ms=self.config.retry.backoff_base_ms,
            backoff_max_ms=self.config.retry.backoff_max_ms,
            single_attempt_actions=self.config.limits.single_attempt_actions,
        )

    @property
    def worker_id(self) -> str:
        return self.guard.worker_id

    # -----------------------------------------------------------------------
    # Exposed operations
    # -----------------------------------------------------------------------

    def start_task(self, plan_id: str, agent_config_id: str, run: bool = True) -> str:
        """
        Create a pending task for a plan and, by default, run it.

        Raises:
            PlanNotFoundError: unknown plan id.
            ConfigurationError: the plan can never execute. Nothing is persisted.
        """
        plan = self.plans.load(plan_id)
        validate_plan(plan, self.executor.has_action)

        limits = self.config.limits
        task = Task.for_plan(
            plan, agent_config_id,
            max_retries=limits.max_retries,
            timeout=limits.step_timeout_ms,
        )
        self.store.create(task)
        logger.info(f"[ENGINE] Created task {task.id} for plan {plan.id} ({len(plan.steps)} steps)")
        self.bus.emit("task_created", task.id, payload={"plan_id": plan.id})

        if run:
            self.execute_task(task.id)
        return task.id

    def execute_task(self, task_id: str) -> Task:
        """Claim a pending (or abandoned in_progress) task and drive it."""
        task, _ = self.guard.read(task_id)
        if task.is_terminal:
            logger.warning(f"[ENGINE] Task {task_id} is already {task.status}")
            return task
        if task.status == "paused":
            logger.info(f"[ENGINE] Task {task_id} is paused, waiting for input")
            return task

        task, token = self.guard.claim(task_id, from_statuses=("pending",))
        return self._drive(task, token)

    def get_task(self, task_id: str) -> Task:
        task, _ = self.store.load(task_id)
        return task

    def resume_task(self, task_id: str, user_inputs: Iterable[UserInput | dict[str, Any]]) -> Task:
        """
        Supply values for pending inputs of a paused task.

        Unknown (step, field) pairs reject the whole call and leave the task
        untouched. Once nothing is pending the task goes back to in_progress
        and the loop continues; otherwise it stays paused.

        Raises:
            InputValidationError: empty input or pairs that are not pending.
            InvalidTransitionError: the task is not paused.
        """
        inputs = [i if isinstance(i, UserInput) else UserInput.model_validate(i) for i in user_inputs]
        if not inputs:
            raise InputValidationError("No user inputs supplied")

        current, _ = self.guard.read(task_id)
        plan = self.plans.load(current.plan_id)

        def apply(task: Task) -> bool:
            if task.status != "paused":
                raise InvalidTransitionError(f"Task {task.id} is not paused (status: {task.status})")

            pending = {(p.step_id, p.field) for p in task.pending_user_inputs}
            rejected = [(i.step_id, i.field) for i in inputs if (i.step_id, i.field) not in pending]
            if rejected:
                listed = ", ".join(f"{s}.{f}" for s, f in rejected)
                raise InputValidationError(f"Inputs do not match any pending input: {listed}", rejected)

            for i in inputs:
                task.user_inputs.setdefault(i.step_id, {})[i.field] = i.value
            for step_id in dict.fromkeys(i.step_id for i in inputs):
                try:
                    merge_user_inputs(plan.step(step_id).parameters, task.user_inputs[step_id])
                except ValueError as e:
                    rejected = [(i.step_id, i.field) for i in inputs if i.step_id == step_id]
                    raise InputValidationError(f"Inputs for {step_id} cannot be applied: {e}", rejected) from e

            supplied = {(i.step_id, i.field) for i in inputs}
            task.pending_user_inputs = [
                p for p in task.pending_user_inputs if (p.step_id, p.field) not in supplied
            ]
            if task.pending_user_inputs:
                return False

            transition(task, "in_progress")
            task.claimed_by = self.worker_id
            task.claimed_at = utcnow()
            return True

        task, token, resumed = self.guard.update(task_id, apply)
        self.bus.emit("task_inputs_received", task_id, payload={"count": len(inputs), "resumed": resumed})

        if not resumed:
            logger.info(
                f"[ENGINE] Task {task_id} still waiting on {len(task.pending_user_inputs)} input(s)"
            )
            return task

        logger.info(f"[ENGINE] Task {task_id} resumed")
        return self._drive(task, token)

    def cancel_task(self, task_id: str) -> Task:
        """
        Cancel a non-terminal task. A running worker notices at its next
        write and discards whatever its in-flight step returns.
        """
        def apply(task: Task) -> None:
            transition(task, "cancelled")

        task, _, _ = self.guard.update(task_id, apply)
        logger.info(f"[ENGINE] Task {task_id} cancelled")
        self.bus.emit("task_cancelled", task_id)
        return task

    def list_tasks(
        self,
        plan_id: str | None = None,
        status: str | None = None,
        agent_config_id: str | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Task]:
        return self.store.list(
            plan_id=plan_id, status=status, agent_config_id=agent_config_id,
            limit=limit, skip=skip,
        )

    def summarize_task(self, task_id: str) -> TaskSummary:
        task = self.get_task(task_id)
        return summarize(task, self.plans.load(task.plan_id))

    # -----------------------------------------------------------------------
    # Scheduler loop
    # -----------------------------------------------------------------------

    def _drive(self, task: Task, token: int) -> Task:
        plan = self.plans.load(task.plan_id)
        ctx = ExecutionContext(task=task, token=token, plan=plan, scheduler=DependencyScheduler(plan))
        self.bus.emit("task_started", task.id, payload={"worker": self.worker_id})

        try:
            while self._tick(ctx):
                pass
        except _Stop as stop:
            logger.info(f"[ENGINE] Task {task.id} is now {stop.status}; stopping worker loop")
        except ConflictError:
            logger.error(f"[ENGINE] Task {task.id}: lost the record to another writer")
            raise
        except Exception as e:
            logger.exception(f"[ENGINE] Task {task.id} crashed")
            self._abort(task.id, f"{type(e).__name__}: {e}")
            raise
        finally:
            self.guard.release(task.id)

        return self.get_task(task.id)

    def _commit(self, ctx: ExecutionContext, change) -> Any:
        worker = self.worker_id

        def guarded(task: Task) -> Any:
            if task.status != "in_progress" or task.claimed_by != worker:
                raise _Stop(task.status)
            return change(task)

        ctx.task, ctx.token, result = self.guard.update(
            ctx.task.id, guarded, snapshot=(ctx.task, ctx.token)
        )
        return result

    def _tick(self, ctx: ExecutionContext) -> bool:
        """One scheduling round. Returns False when the loop should stop."""
        scheduler = ctx.scheduler

        unreachable = scheduler.blocked_by_failure(ctx.task.step_statuses)
        if unreachable:
            self._skip(ctx, [(s, f"Skipped: dependency {d} did not complete") for s, d in unreachable])

        failed = ctx.task.steps_with_status("failed")
        if failed and self.config.limits.fail_fast:
            leftover = ctx.task.steps_with_status("pending")
            if leftover:
                self._skip(ctx, [(s, f"Skipped: step {failed[0]} failed") for s in leftover])

        if scheduler.is_finished(ctx.task.step_statuses):
            self._finish(ctx)
            return False

        ready = scheduler.ready_steps(ctx.task.step_statuses)
        if not ready:
            stuck = ctx.task.steps_with_status("pending", "in_progress")
            raise ConductorError(f"No runnable steps but plan is unfinished: {stuck}")

        prepared = [(step, self.runner.prepare(step, ctx.task)) for step in ready]
        waiting = [(step, res) for step, res in prepared if not res.complete]
        if waiting:
            self._pause(ctx, waiting)
            return False

        self._dispatch(ctx, prepared[: self.config.limits.concurrency])
        return True

    def _skip(self, ctx: ExecutionContext, skips: list[tuple[str, str]]) -> None:
        def change(task: Task) -> None:
            for step_id, reason in skips:
                if task.step_statuses.get(step_id) != "pending":
                    continue
                task.set_step_status(step_id, "skipped")
                task.append_history(step_id, "skipped", error=reason)

        self._commit(ctx, change)
        for step_id, reason in skips:
            logger.info(f"[ENGINE] {step_id} skipped — {reason}")
            self.bus.emit("step_skipped", ctx.task.id, step_id, {"reason": reason})

    def _pause(self, ctx: ExecutionContext, waiting: list[tuple[PlanStep, Resolution]]) -> None:
        pending: list[PendingUserInput] = []
        for step, resolution in waiting:
            for missing in resolution.missing:
                hint = ctx.plan.missing_data_for(step.id, missing.field)
                pending.append(PendingUserInput(
                    step_id=step.id,
                    field=missing.field,
                    description=(hint.description if hint and hint.description else missing.description),
                    type=hint.type if hint else missing.type,
                ))

        def change(task: Task) -> None:
            transition(task, "paused")
            task.pending_user_inputs = pending
            task.claimed_by = None
            task.claimed_at = None

        self._commit(ctx, change)
        fields = [f"{p.step_id}.{p.field}" for p in pending]
        logger.info(f"[ENGINE] Task {ctx.task.id} paused, waiting for: {', '.join(fields)}")
        self.bus.emit("task_paused", ctx.task.id, payload={"pending": fields})

    def _dispatch(self, ctx: ExecutionContext, batch: list[tuple[PlanStep, Resolution]]) -> None:
        retries = {step.id: ctx.task.retry_count.get(step.id, 0) for step, _ in batch}
        wait_ms = max(self.retry.backoff_ms(n) for n in retries.values())
        if wait_ms:
            logger.debug(f"[ENGINE] Backing off {wait_ms}ms before retry")
            time.sleep(wait_ms / 1000)

        def start(task: Task) -> None:
            for step, _ in batch:
                task.set_step_status(step.id, "in_progress")
                started_entry(task, step.id, retries[step.id] + 1)

        # The started entries are durable before any tool is called.
        self._commit(ctx, start)
        for step, _ in batch:
            self.bus.emit("step_started", ctx.task.id, step.id, {"attempt": retries[step.id] + 1})

        timeout = ctx.task.timeout
        if len(batch) == 1:
            step, resolution = batch[0]
            outcomes = [self.runner.run(step, resolution, timeout)]
        else:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=len(batch), thread_name_prefix="conductor-step"
            ) as pool:
                futures = [pool.submit(self.runner.run, step, res, timeout) for step, res in batch]
                outcomes = [f.result() for f in futures]

        try:
            for (step, _), outcome in zip(batch, outcomes):
                self._record(ctx, step, outcome)
        except _Stop as stop:
            if stop.status == "cancelled":
                self._discard(ctx.task.id, outcomes)
            raise

    def _discard(self, task_id: str, outcomes: list[StepOutcome]) -> None:
        """Close out steps that were still running when the task was cancelled."""

        def change(task: Task) -> list[str]:
            dropped = []
            for outcome in outcomes:
                if task.step_statuses.get(outcome.step_id) != "in_progress":
                    continue
                task.set_step_status(outcome.step_id, "skipped")
                task.append_history(outcome.step_id, "skipped", error="cancelled", duration=outcome.duration_ms)
                dropped.append(outcome.step_id)
            return dropped

        _, _, dropped = self.guard.update(task_id, change)
        for step_id in dropped:
            logger.info(f"[ENGINE] {step_id} result discarded, task was cancelled")
            self.bus.emit("step_skipped", task_id, step_id, {"reason": "cancelled"})

    def _record(self, ctx: ExecutionContext, step: PlanStep, outcome: StepOutcome) -> None:
        if outcome.succeeded:
            def complete(task: Task) -> None:
                terminal_entry(task, outcome, task.retry_count.get(step.id, 0) + 1)
                task.record_output(step.id, outcome.output)
                task.set_step_status(step.id, "completed")

            self._commit(ctx, complete)
            logger.info(f"[ENGINE] {step.id} completed in {outcome.duration_ms}ms")
            self.bus.emit("step_completed", ctx.task.id, step.id, {"duration": outcome.duration_ms})
            return

        def fail(task: Task) -> RetryDecision | FatalStepError:
            try:
                decision = self.retry.check(task, step, outcome)
            except FatalStepError as fatal:
                terminal_entry(task, outcome, fatal.attempt)
                task.set_step_status(step.id, "failed")
                return fatal
            terminal_entry(task, outcome, decision.attempt, retry=True)
            task.retry_count[step.id] = decision.retry_count
            task.set_step_status(step.id, "pending")
            return decision

        result = self._commit(ctx, fail)
        if isinstance(result, FatalStepError):
            logger.error(f"[ENGINE] {result}")
            self.bus.emit("step_failed", ctx.task.id, step.id, {
                "kind": outcome.kind, "error": outcome.error, "attempts": result.attempt,
            })
            return

        logger.warning(f"[ENGINE] {outcome.failure} (retry {result.retry_count}/{result.limit})")
        self.bus.emit("step_retry", ctx.task.id, step.id, {
            "kind": outcome.kind, "error": outcome.error, "retry": result.retry_count,
        })

    def _finish(self, ctx: ExecutionContext) -> None:
        order = {sid: i for i, sid in enumerate(ctx.plan.step_ids)}
        failed = sorted(ctx.task.steps_with_status("failed"), key=order.get)

        if failed:
            first = failed[0]
            error = str(FatalStepError(first, ctx.task.last_error_for(first) or "unknown error"))
            if len(failed) > 1:
                error += f" (also failed: {', '.join(failed[1:])})"

            def change(task: Task) -> None:
                transition(task, "failed", error)
        else:
            error = None

            def change(task: Task) -> None:
                transition(task, "completed")

        self._commit(ctx, change)
        if error:
            logger.error(f"[ENGINE] Task {ctx.task.id} failed — {error}")
            self.bus.emit("task_failed", ctx.task.id, payload={"error": error})
        else:
            logger.info(f"[ENGINE] Task {ctx.task.id} completed")
            self.bus.emit("task_completed", ctx.task.id)

    def _abort(self, task_id: str, error: str) -> None:
        """Mark a task failed after an engine-side crash, if it is still running."""

        def change(task: Task) -> None:
            if task.status == "in_progress":
                transition(task, "failed", error)

        try:
            self.guard.update(task_id, change)
        except ConductorError as e:
            logger.warning(f"[ENGINE] Could not mark {task_id} failed: {e}")
