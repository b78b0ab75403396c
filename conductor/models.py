"""
Conductor data model.

Plan    — immutable, dependency-annotated list of steps (produced elsewhere).
Task    — the mutable execution record of one Plan run.

The Task owns all execution state, including per-step status, so that the
Plan can stay read-only. History and step outputs are append-only.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, JsonValue, field_validator


TaskStatus = Literal["pending", "in_progress", "paused", "completed", "failed", "cancelled"]
StepStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
HistoryStatus = Literal["started", "completed", "failed", "skipped"]

TERMINAL_STEP_STATUSES: frozenset[str] = frozenset({"completed", "failed", "skipped"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

class MissingDataRef(BaseModel):
    """Advisory note from the planner about data it could not fill in."""
    model_config = ConfigDict(populate_by_name=True)

    step: str
    field: str
    type: str = "string"
    description: str = ""


class PlanStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    order: int = 0
    action: str
    parameters: JsonValue = Field(default_factory=dict)
    expected_output: JsonValue = Field(default_factory=dict, alias="expectedOutput")
    dependencies: list[str] = Field(default_factory=list)
    # Advisory only. Execution status is tracked on the Task.
    status: StepStatus = "pending"

    @field_validator("dependencies")
    @classmethod
    def _dedupe(cls, deps: list[str]) -> list[str]:
        return list(dict.fromkeys(deps))


class Plan(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    goal: str
    user_query: str = Field(default="", alias="userQuery")
    steps: list[PlanStep] = Field(default_factory=list)
    missing_data: list[MissingDataRef] = Field(default_factory=list, alias="missingData")

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]

    def step(self, step_id: str) -> PlanStep:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise KeyError(step_id)

    def missing_data_for(self, step_id: str, field: str) -> MissingDataRef | None:
        for ref in self.missing_data:
            if ref.step == step_id and ref.field == field:
                return ref
        return None

    @classmethod
    def from_file(cls, path: Path) -> "Plan":
        """Load a plan from a YAML or JSON file. The file stem is the default id."""
        with open(path) as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        data.setdefault("id", path.stem)
        return cls(**data)


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

class HistoryEntry(BaseModel):
    step_id: str
    timestamp: datetime
    status: HistoryStatus
    error: str | None = None
    duration: int | None = None  # milliseconds
    output: JsonValue = None
    attempt: int | None = None
    retry: bool = False


class PendingUserInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(alias="stepId")
    field: str
    description: str = ""
    type: str = "string"


class UserInput(BaseModel):
    """One value supplied on resume."""
    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(alias="stepId")
    field: str
    value: JsonValue = None


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    plan_id: str
    agent_config_id: str
    status: TaskStatus = "pending"

    step_statuses: dict[str, StepStatus] = Field(default_factory=dict)
    step_outputs: dict[str, JsonValue] = Field(default_factory=dict)
    user_inputs: dict[str, dict[str, JsonValue]] = Field(default_factory=dict)
    pending_user_inputs: list[PendingUserInput] = Field(default_factory=list)
    retry_count: dict[str, int] = Field(default_factory=dict)
    max_retries: int = 3
    current_step_index: int = 0
    execution_history: list[HistoryEntry] = Field(default_factory=list)
    error: str | None = None
    timeout: int = 30_000  # per-step, milliseconds

    lock_token: int | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_plan(cls, plan: Plan, agent_config_id: str, **overrides) -> "Task":
        return cls(
            plan_id=plan.id,
            agent_config_id=agent_config_id,
            step_statuses={s.id: "pending" for s in plan.steps},
            **overrides,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed", "cancelled")

    def steps_with_status(self, *statuses: str) -> list[str]:
        return [sid for sid, st in self.step_statuses.items() if st in statuses]

    def set_step_status(self, step_id: str, status: StepStatus) -> None:
        self.step_statuses[step_id] = status
        self.current_step_index = sum(
            1 for st in self.step_statuses.values() if st in TERMINAL_STEP_STATUSES
        )

    def record_output(self, step_id: str, output: JsonValue) -> None:
        if step_id in self.step_outputs:
            raise ValueError(f"Output for step {step_id} is already recorded")
        self.step_outputs[step_id] = output

    def append_history(self, step_id: str, status: HistoryStatus, **fields) -> HistoryEntry:
        """Append a history entry with a strictly increasing timestamp."""
        ts = utcnow()
        if self.execution_history:
            last = self.execution_history[-1].timestamp
            if ts <= last:
                ts = last + timedelta(microseconds=1)
        entry = HistoryEntry(step_id=step_id, timestamp=ts, status=status, **fields)
        self.execution_history.append(entry)
        return entry

    def last_error_for(self, step_id: str) -> str | None:
        for entry in reversed(self.execution_history):
            if entry.step_id == step_id and entry.error:
                return entry.error
        return None
