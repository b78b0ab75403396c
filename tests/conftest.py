import pytest

from conductor.config_loader import ConductorConfig
from conductor.engine import TaskEngine
from conductor.models import Plan
from conductor.store import InMemoryPlanSource, InMemoryTaskStore
from conductor.tools import ToolRegistry


@pytest.fixture
def tools():
    return ToolRegistry()


@pytest.fixture
def config():
    cfg = ConductorConfig()
    cfg.retry.backoff_base_ms = 0
    cfg.limits.step_timeout_ms = 2000
    return cfg


@pytest.fixture
def store():
    return InMemoryTaskStore()


@pytest.fixture
def plans():
    return InMemoryPlanSource()


@pytest.fixture
def engine(store, plans, tools, config):
    return TaskEngine(store, plans, tools, config, worker_id="test-worker")


@pytest.fixture
def make_plan(plans):
    """Build a plan from step dicts and register it with the plan source."""

    def _make(steps, plan_id="plan-1", goal="test goal", missing_data=None):
        plan = Plan(id=plan_id, goal=goal, steps=steps, missingData=missing_data or [])
        return plans.add(plan)

    return _make
