import threading
import time

import pytest

from conductor.engine import TaskEngine
from conductor.errors import (
    ConfigurationError,
    ConflictError,
    InputValidationError,
    InvalidTransitionError,
    PlanNotFoundError,
)
from conductor.models import PendingUserInput, Task, UserInput, utcnow
from conductor.tools import ToolError, ToolResult


def _statuses(task):
    return [(e.step_id, e.status) for e in task.execution_history]


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------

def test_fan_out_runs_dependents_concurrently(engine, tools, config, make_plan):
    config.limits.concurrency = 2
    barrier = threading.Barrier(2, timeout=2)

    @tools.register("lookup")
    def lookup(name):
        return {"id": f"F-{name}"}

    @tools.register("book")
    def book(facility):
        barrier.wait()
        return {"booked": facility}

    make_plan([
        {"id": "A", "action": "lookup", "parameters": {"name": "north"}},
        {"id": "B", "action": "book", "parameters": {"facility": "{{A.output.id}}"}, "dependencies": ["A"]},
        {"id": "C", "action": "book", "parameters": {"facility": "{{A.output.id}}"}, "dependencies": ["A"]},
    ])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "completed"
    assert task.step_outputs == {
        "A": {"id": "F-north"},
        "B": {"booked": "F-north"},
        "C": {"booked": "F-north"},
    }
    assert _statuses(task) == [
        ("A", "started"), ("A", "completed"),
        ("B", "started"), ("C", "started"),
        ("B", "completed"), ("C", "completed"),
    ]
    assert task.current_step_index == 3
    assert task.claimed_by is None


def test_dependencies_run_before_dependents(engine, tools, make_plan):
    calls = []

    @tools.register("record")
    def record(name):
        calls.append(name)
        return name

    make_plan([
        {"id": "c", "action": "record", "parameters": {"name": "c"}, "dependencies": ["b"]},
        {"id": "b", "action": "record", "parameters": {"name": "b"}, "dependencies": ["a"]},
        {"id": "a", "action": "record", "parameters": {"name": "a"}},
    ])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert calls == ["a", "b", "c"]
    assert task.status == "completed"


def test_history_timestamps_strictly_increase(engine, tools, make_plan):
    tools.register("noop", lambda: None)
    make_plan([{"id": f"s{i}", "action": "noop", "parameters": None} for i in range(5)])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    stamps = [e.timestamp for e in task.execution_history]
    assert len(stamps) == 10
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


def test_start_without_running(engine, tools, make_plan):
    tools.register("noop", lambda: None)
    make_plan([{"id": "a", "action": "noop", "parameters": None}])

    task_id = engine.start_task("plan-1", "agent-1", run=False)
    task = engine.get_task(task_id)

    assert task.status == "pending"
    assert task.step_statuses == {"a": "pending"}
    assert engine.execute_task(task_id).status == "completed"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def test_cyclic_plan_is_rejected_before_persisting(engine, store, tools, make_plan):
    tools.register("noop", lambda: None)
    make_plan([
        {"id": "a", "action": "noop", "dependencies": ["b"]},
        {"id": "b", "action": "noop", "dependencies": ["a"]},
    ])

    with pytest.raises(ConfigurationError, match="Circular"):
        engine.start_task("plan-1", "agent-1")
    assert store.list() == []


def test_unknown_action_is_rejected(engine, store, make_plan):
    make_plan([{"id": "a", "action": "teleport"}])

    with pytest.raises(ConfigurationError, match="teleport"):
        engine.start_task("plan-1", "agent-1")
    assert store.list() == []


def test_unknown_plan(engine):
    with pytest.raises(PlanNotFoundError):
        engine.start_task("nope", "agent-1")


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------

def _booking_plan(tools, make_plan):
    booked = []

    @tools.register("book_facility")
    def book_facility(facilityId, date):
        booked.append((facilityId, date))
        return {"confirmation": f"{facilityId}@{date}"}

    make_plan(
        [{"id": "book", "action": "book_facility",
          "parameters": {"facilityId": "{{search.output.facilityId}}", "date": "2024-05-01"}}],
        missing_data=[{"step": "book", "field": "facilityId", "type": "number",
                       "description": "Which facility should be booked?"}],
    )
    return booked


def test_missing_data_pauses_and_resume_completes(engine, tools, make_plan):
    booked = _booking_plan(tools, make_plan)

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "paused"
    assert booked == []
    assert task.execution_history == []
    assert len(task.pending_user_inputs) == 1
    pending = task.pending_user_inputs[0]
    assert (pending.step_id, pending.field) == ("book", "facilityId")
    assert pending.type == "number"
    assert pending.description == "Which facility should be booked?"
    assert task.claimed_by is None

    task = engine.resume_task(task.id, [{"stepId": "book", "field": "facilityId", "value": 7}])

    assert task.status == "completed"
    assert booked == [(7, "2024-05-01")]
    assert task.user_inputs == {"book": {"facilityId": 7}}
    assert task.pending_user_inputs == []
    assert task.step_outputs["book"] == {"confirmation": "7@2024-05-01"}


def test_pause_merges_all_blocked_steps(engine, tools, make_plan):
    tools.register("echo", lambda **kw: kw)
    make_plan([
        {"id": "a", "action": "echo", "parameters": {"who": "{{PROMPT_USER}}"}},
        {"id": "b", "action": "echo", "parameters": {"where": "{{PROMPT_USER}}", "when": "{{PROMPT_USER}}"}},
        {"id": "c", "action": "echo", "parameters": {"ok": True}, "dependencies": ["a"]},
    ])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))
    assert task.status == "paused"
    assert {(p.step_id, p.field) for p in task.pending_user_inputs} == {
        ("a", "who"), ("b", "where"), ("b", "when"),
    }

    # Partial input keeps the task paused.
    task = engine.resume_task(task.id, [UserInput(step_id="a", field="who", value="me")])
    assert task.status == "paused"
    assert {(p.step_id, p.field) for p in task.pending_user_inputs} == {("b", "where"), ("b", "when")}

    task = engine.resume_task(task.id, [
        UserInput(step_id="b", field="where", value="here"),
        UserInput(step_id="b", field="when", value="now"),
    ])
    assert task.status == "completed"
    assert task.step_outputs == {"a": {"who": "me"}, "b": {"where": "here", "when": "now"}, "c": {"ok": True}}


def test_resume_rejects_unknown_inputs_and_leaves_task_untouched(engine, store, tools, make_plan):
    _booking_plan(tools, make_plan)
    task_id = engine.start_task("plan-1", "agent-1")
    before, token = store.load(task_id)

    with pytest.raises(InputValidationError) as exc:
        engine.resume_task(task_id, [
            {"stepId": "book", "field": "facilityId", "value": 1},
            {"stepId": "book", "field": "room", "value": 2},
        ])

    assert exc.value.rejected == [("book", "room")]
    after, after_token = store.load(task_id)
    assert after_token == token
    assert after == before


def test_resume_fills_keys_that_contain_path_characters(engine, tools, make_plan):
    tools.register("lookup", lambda: {})
    tools.register("ship", lambda **kw: kw)
    make_plan([
        {"id": "A", "action": "lookup", "parameters": None},
        {"id": "B", "action": "ship", "dependencies": ["A"],
         "parameters": {"address.city": "{{A.output.city}}", "x": {"": "{{A.output.zip}}"}}},
    ])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))
    assert task.status == "paused"
    fields = [p.field for p in task.pending_user_inputs]
    assert fields == ['["address.city"]', 'x[""]']

    task = engine.resume_task(task.id, [
        {"stepId": "B", "field": fields[0], "value": "Lisbon"},
        {"stepId": "B", "field": fields[1], "value": "1100"},
    ])

    assert task.status == "completed"
    assert task.step_outputs["B"] == {"address.city": "Lisbon", "x": {"": "1100"}}


def test_resume_rejects_unusable_field_path(engine, store, tools, make_plan):
    tools.register("echo", lambda **kw: kw)
    plan = make_plan([{"id": "a", "action": "echo", "parameters": {"x": "{{PROMPT_USER}}"}}])
    task = Task.for_plan(plan, "agent-1")
    task.status = "paused"
    task.pending_user_inputs = [PendingUserInput(step_id="a", field="x.")]
    store.create(task)
    before, token = store.load(task.id)

    with pytest.raises(InputValidationError) as exc:
        engine.resume_task(task.id, [{"stepId": "a", "field": "x.", "value": 1}])

    assert exc.value.rejected == [("a", "x.")]
    after, after_token = store.load(task.id)
    assert after_token == token
    assert after == before
    assert after.status == "paused"


def test_resume_requires_paused_task(engine, tools, make_plan):
    tools.register("noop", lambda: None)
    make_plan([{"id": "a", "action": "noop", "parameters": None}])
    task_id = engine.start_task("plan-1", "agent-1")

    with pytest.raises(InvalidTransitionError):
        engine.resume_task(task_id, [{"stepId": "a", "field": "x", "value": 1}])


def test_resume_requires_inputs(engine):
    with pytest.raises(InputValidationError):
        engine.resume_task("whatever", [])


# ---------------------------------------------------------------------------
# Failures and retries
# ---------------------------------------------------------------------------

def test_timeouts_exhaust_retries(engine, tools, config, make_plan):
    config.limits.step_timeout_ms = 20
    config.limits.max_retries = 3

    @tools.register("slow")
    def slow():
        time.sleep(0.3)

    make_plan([{"id": "wait", "action": "slow", "parameters": None}])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "failed"
    assert task.retry_count == {"wait": 3}
    assert _statuses(task) == [("wait", "started"), ("wait", "failed")] * 4

    failures = [e for e in task.execution_history if e.status == "failed"]
    assert [e.retry for e in failures] == [True, True, True, False]
    assert [e.attempt for e in failures] == [1, 2, 3, 4]
    assert all("timed out after 20ms" in e.error for e in failures)
    assert "(retry attempt 1)" in failures[0].error
    assert task.error.startswith("Step wait failed: Step execution timed out after 20ms")
    assert "wait" not in task.step_outputs


def test_transient_failure_recovers(engine, tools, make_plan):
    attempts = []

    @tools.register("flaky")
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ToolError("service unavailable")
        return {"ok": True}

    make_plan([{"id": "f", "action": "flaky", "parameters": None}])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "completed"
    assert task.retry_count == {"f": 2}
    assert task.step_outputs == {"f": {"ok": True}}
    assert [e.status for e in task.execution_history].count("failed") == 2


def test_transport_errors_are_retried(engine, tools, make_plan):
    calls = []

    @tools.register("shaky")
    def shaky():
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionError("reset by peer")
        return "ok"

    make_plan([{"id": "s", "action": "shaky", "parameters": None}])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "completed"
    assert "ConnectionError: reset by peer" in task.execution_history[1].error


def test_non_retryable_failure_is_fatal(engine, tools, make_plan):
    calls = []

    @tools.register("validate")
    def validate():
        calls.append(1)
        return ToolResult.failure("invalid facility id", retryable=False)

    make_plan([{"id": "v", "action": "validate", "parameters": None}])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "failed"
    assert len(calls) == 1
    assert task.error == "Step v failed: invalid facility id"


def test_single_attempt_action(store, plans, tools, config, make_plan):
    config.limits.single_attempt_actions = ["charge"]
    engine = TaskEngine(store, plans, tools, config)
    calls = []

    @tools.register("charge")
    def charge():
        calls.append(1)
        raise ToolError("gateway error")

    make_plan([{"id": "pay", "action": "charge", "parameters": None}])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "failed"
    assert len(calls) == 1


def test_failure_skips_dependents_but_independent_branch_runs(engine, tools, config, make_plan):
    config.limits.fail_fast = False
    ran = []

    @tools.register("ok")
    def ok(name):
        ran.append(name)
        return name

    @tools.register("broken")
    def broken():
        raise ToolError("bad input", retryable=False)

    make_plan([
        {"id": "a", "action": "broken", "parameters": None},
        {"id": "b", "action": "ok", "parameters": {"name": "b"}, "dependencies": ["a"]},
        {"id": "c", "action": "ok", "parameters": {"name": "c"}, "dependencies": ["b"]},
        {"id": "d", "action": "ok", "parameters": {"name": "d"}},
    ])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "failed"
    assert ran == ["d"]
    assert task.step_statuses == {"a": "failed", "b": "skipped", "c": "skipped", "d": "completed"}
    skipped = {e.step_id: e.error for e in task.execution_history if e.status == "skipped"}
    assert "dependency a" in skipped["b"]
    assert "dependency b" in skipped["c"]
    assert task.error == "Step a failed: bad input"


def test_fail_fast_skips_everything_pending(engine, tools, make_plan):
    ran = []
    tools.register("ok", lambda: ran.append(1))

    @tools.register("broken")
    def broken():
        raise ToolError("bad input", retryable=False)

    make_plan([
        {"id": "a", "action": "broken", "parameters": None},
        {"id": "d", "action": "ok", "parameters": None, "order": 1},
    ])

    task = engine.get_task(engine.start_task("plan-1", "agent-1"))

    assert task.status == "failed"
    assert ran == []
    assert task.step_statuses == {"a": "failed", "d": "skipped"}


# ---------------------------------------------------------------------------
# Cancel, claims, queries
# ---------------------------------------------------------------------------

def test_cancel_pending_task(engine, tools, make_plan):
    calls = []
    tools.register("noop", lambda: calls.append(1))
    make_plan([{"id": "a", "action": "noop", "parameters": None}])
    task_id = engine.start_task("plan-1", "agent-1", run=False)

    assert engine.cancel_task(task_id).status == "cancelled"
    assert engine.execute_task(task_id).status == "cancelled"
    assert calls == []

    with pytest.raises(InvalidTransitionError):
        engine.resume_task(task_id, [{"stepId": "a", "field": "x", "value": 1}])


def test_cancel_during_step_discards_its_result(engine, tools, make_plan):
    task_ids = []
    later = []

    @tools.register("first")
    def first():
        engine.cancel_task(task_ids[0])
        return "late result"

    tools.register("second", lambda: later.append(1))

    make_plan([
        {"id": "a", "action": "first", "parameters": None},
        {"id": "b", "action": "second", "parameters": None, "dependencies": ["a"]},
    ])
    task_ids.append(engine.start_task("plan-1", "agent-1", run=False))

    task = engine.execute_task(task_ids[0])

    assert task.status == "cancelled"
    assert "a" not in task.step_outputs
    assert later == []
    assert task.step_statuses["a"] == "skipped"
    assert _statuses(task) == [("a", "started"), ("a", "skipped")]
    closing = task.execution_history[-1]
    assert closing.error == "cancelled"
    assert closing.duration is not None
    assert closing.output is None


def test_cancel_completed_task_rejected(engine, tools, make_plan):
    tools.register("noop", lambda: None)
    make_plan([{"id": "a", "action": "noop", "parameters": None}])
    task_id = engine.start_task("plan-1", "agent-1")

    with pytest.raises(InvalidTransitionError):
        engine.cancel_task(task_id)


def test_task_claimed_by_live_worker_is_not_driven(engine, store, tools, make_plan):
    tools.register("noop", lambda: None)
    plan = make_plan([{"id": "a", "action": "noop", "parameters": None}])
    task = Task.for_plan(plan, "agent-1")
    task.status = "in_progress"
    task.claimed_by = "other-worker"
    task.claimed_at = utcnow()
    store.create(task)

    with pytest.raises(ConflictError):
        engine.execute_task(task.id)


def test_list_and_summarize(engine, tools, make_plan):
    tools.register("noop", lambda: None)
    make_plan([{"id": "a", "action": "noop", "parameters": None}], plan_id="p1")
    make_plan([{"id": "x", "action": "noop", "parameters": "{{PROMPT_USER}}"}], plan_id="p2")

    done = engine.start_task("p1", "agent-1")
    paused = engine.start_task("p2", "agent-2")

    assert {t.id for t in engine.list_tasks()} == {done, paused}
    assert [t.id for t in engine.list_tasks(plan_id="p1")] == [done]
    assert [t.id for t in engine.list_tasks(status="paused")] == [paused]
    assert [t.id for t in engine.list_tasks(agent_config_id="agent-2")] == [paused]

    summary = engine.summarize_task(done)
    assert summary.status == "completed"
    assert summary.step_counts == {"completed": 1}
    assert summary.steps[0].attempts == 1

    waiting = engine.summarize_task(paused)
    assert waiting.step_counts == {"pending": 1}
    assert [(p.step_id, p.field) for p in waiting.pending_user_inputs] == [("x", "")]


def test_events_are_emitted(engine, tools, make_plan):
    seen = []
    engine.bus.subscribe(lambda e: seen.append((e.event_type, e.step_id)))
    tools.register("noop", lambda: None)
    make_plan([{"id": "a", "action": "noop", "parameters": None}])

    engine.start_task("plan-1", "agent-1")

    assert [t for t, _ in seen] == [
        "task_created", "task_started", "step_started", "step_completed", "task_completed",
    ]
