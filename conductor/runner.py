"""
Conductor Step Runner

Executes one ready step and classifies what happened:

  success          — tool returned normally
  tool_error       — tool reported a failure
  timeout          — tool did not answer within the task's step timeout
  transport_error  — the executor itself raised
  needs_input      — parameters still have unresolved references; the
                     tool is not called at all

The runner does not touch the task record. The engine turns outcomes into
history entries (via started_entry / terminal_entry) under the lock guard.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from loguru import logger

from conductor.errors import MissingInputError, TransientStepError
from conductor.models import HistoryEntry, MissingDataRef, PlanStep, Task
from conductor.resolver import Resolution, resolve_parameters
from conductor.tools import ToolExecutor, ToolResult

OutcomeKind = Literal["success", "tool_error", "timeout", "transport_error", "needs_input"]


@dataclass
class StepOutcome:
    step_id: str
    kind: OutcomeKind
    output: Any = None
    error: str | None = None
    missing: list[MissingDataRef] = field(default_factory=list)
    duration_ms: int = 0
    retryable: bool = True

    @property
    def succeeded(self) -> bool:
        return self.kind == "success"

    @property
    def transient(self) -> bool:
        return self.kind in ("tool_error", "timeout", "transport_error")

    @property
    def failure(self) -> TransientStepError | None:
        if not self.transient:
            return None
        return TransientStepError(self.step_id, self.kind, self.error or self.kind)


def call_with_deadline(fn: Callable[..., Any], *args: Any, timeout: float) -> Any:
    """
    Run fn(*args) in a daemon thread and wait at most `timeout` seconds.

    On timeout the call is abandoned, not interrupted: the thread runs to
    completion in the background and its result is discarded. Being a
    daemon, it does not hold up interpreter exit.

    Raises:
        concurrent.futures.TimeoutError: if the deadline passes first.
    """
    future: concurrent.futures.Future = concurrent.futures.Future()

    def target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=target, name="conductor-tool", daemon=True).start()
    return future.result(timeout=timeout)


class StepRunner:
    def __init__(self, executor: ToolExecutor):
        self.executor = executor

    def prepare(self, step: PlanStep, task: Task) -> Resolution:
        return resolve_parameters(step.parameters, step.id, task.step_outputs, task.user_inputs)

    def run(self, step: PlanStep, resolution: Resolution, timeout_ms: int) -> StepOutcome:
        try:
            args = resolution.require()
        except MissingInputError as e:
            return StepOutcome(step_id=step.id, kind="needs_input", missing=list(e.missing))

        deadline = timeout_ms / 1000
        start = time.monotonic()
        logger.debug(f"[RUNNER] {step.id} → {step.action} (deadline {timeout_ms}ms)")

        try:
            result = call_with_deadline(
                self.executor.execute, step.action, args, deadline,
                timeout=deadline,
            )
        except concurrent.futures.TimeoutError:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning(f"[RUNNER] {step.id} timed out after {timeout_ms}ms")
            return StepOutcome(
                step_id=step.id, kind="timeout",
                error=f"Step execution timed out after {timeout_ms}ms",
                duration_ms=elapsed,
            )
        except Exception as e:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning(f"[RUNNER] {step.id} transport error: {e}")
            return StepOutcome(
                step_id=step.id, kind="transport_error",
                error=f"{type(e).__name__}: {e}",
                duration_ms=elapsed,
            )

        elapsed = int((time.monotonic() - start) * 1000)
        return self._classify(step.id, result, elapsed)

    @staticmethod
    def _classify(step_id: str, result: ToolResult, elapsed: int) -> StepOutcome:
        if result.ok:
            return StepOutcome(step_id=step_id, kind="success", output=result.output, duration_ms=elapsed)
        if result.timed_out:
            return StepOutcome(
                step_id=step_id, kind="timeout",
                error=result.error or "Tool call timed out",
                duration_ms=elapsed,
            )
        return StepOutcome(
            step_id=step_id, kind="tool_error",
            error=result.error or "Tool execution failed",
            duration_ms=elapsed,
            retryable=result.retryable,
        )


# ---------------------------------------------------------------------------
# History helpers
# ---------------------------------------------------------------------------

def started_entry(task: Task, step_id: str, attempt: int) -> HistoryEntry:
    return task.append_history(step_id, "started", attempt=attempt)


def terminal_entry(task: Task, outcome: StepOutcome, attempt: int, retry: bool = False) -> HistoryEntry:
    if outcome.succeeded:
        return task.append_history(
            outcome.step_id, "completed",
            duration=outcome.duration_ms, output=outcome.output, attempt=attempt,
        )
    error = outcome.error or outcome.kind
    if retry:
        error = f"{error} (retry attempt {attempt})"
    return task.append_history(
        outcome.step_id, "failed",
        error=error, duration=outcome.duration_ms, attempt=attempt, retry=retry,
    )
