"""
Conductor persistence.

Task stores hold one document per task plus an integer version, which is
the lock token handed to the engine. Every write is a compare-and-swap
against that version. Plan sources are read-only to the engine.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

import yaml
from loguru import logger

from conductor.errors import ConflictError, PlanNotFoundError, TaskNotFoundError
from conductor.models import Plan, Task


class TaskStore(Protocol):
    def create(self, task: Task) -> int: ...

    def load(self, task_id: str) -> tuple[Task, int]: ...

    def compare_and_swap(self, task_id: str, expected_token: int, task: Task) -> int:
        """Persist task if the stored token still equals expected_token.

        Returns the new token. Raises ConflictError otherwise.
        """
        ...

    def list(
        self,
        plan_id: str | None = None,
        status: str | None = None,
        agent_config_id: str | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Task]: ...


class PlanSource(Protocol):
    def load(self, plan_id: str) -> Plan: ...


def _matches(task: Task, plan_id: str | None, status: str | None, agent_config_id: str | None) -> bool:
    return (
        (plan_id is None or task.plan_id == plan_id)
        and (status is None or task.status == status)
        and (agent_config_id is None or task.agent_config_id == agent_config_id)
    )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryTaskStore:
    """Thread-safe store for tests and embedding. Documents are kept as JSON."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._docs: dict[str, tuple[str, int]] = {}

    def create(self, task: Task) -> int:
        with self._lock:
            if task.id in self._docs:
                raise ConflictError(f"Task {task.id} already exists")
            task.lock_token = 1
            self._docs[task.id] = (task.model_dump_json(), 1)
            return 1

    def load(self, task_id: str) -> tuple[Task, int]:
        with self._lock:
            if task_id not in self._docs:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            doc, version = self._docs[task_id]
        task = Task.model_validate_json(doc)
        task.lock_token = version
        return task, version

    def compare_and_swap(self, task_id: str, expected_token: int, task: Task) -> int:
        with self._lock:
            if task_id not in self._docs:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            _, current = self._docs[task_id]
            if current != expected_token:
                raise ConflictError(
                    f"Task {task_id} changed: expected version {expected_token}, found {current}"
                )
            new_token = current + 1
            task.lock_token = new_token
            self._docs[task_id] = (task.model_dump_json(), new_token)
            return new_token

    def list(self, plan_id=None, status=None, agent_config_id=None, limit=50, skip=0) -> list[Task]:
        with self._lock:
            docs = list(self._docs.values())
        tasks = []
        for doc, version in docs:
            task = Task.model_validate_json(doc)
            task.lock_token = version
            if _matches(task, plan_id, status, agent_config_id):
                tasks.append(task)
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks[skip:skip + limit]


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

class SqliteTaskStore:
    """
    SQLite-backed task store.

    The version column is the lock token. A write succeeds only through
    UPDATE ... WHERE version = ?, so two connections (threads or processes)
    can never both advance the same version.
    """

    def __init__(self, db_path: str | Path = ".conductor/tasks.db"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                plan_id TEXT NOT NULL,
                agent_config_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                document TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_plan ON tasks(plan_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_tasks_agent_config ON tasks(agent_config_id, created_at);
        """)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def create(self, task: Task) -> int:
        task.lock_token = 1
        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO tasks
                    (id, plan_id, agent_config_id, status, version, created_at, updated_at, document)
                    VALUES (?, ?, ?, ?, 1, ?, ?, ?)
                    """,
                    (
                        task.id, task.plan_id, task.agent_config_id, task.status,
                        task.created_at.isoformat(), task.updated_at.isoformat(),
                        task.model_dump_json(),
                    ),
                )
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise ConflictError(f"Task {task.id} already exists") from e
        logger.debug(f"[STORE] Created task {task.id}")
        return 1

    def load(self, task_id: str) -> tuple[Task, int]:
        with self._lock:
            row = self.conn.execute(
                "SELECT document, version FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
        if not row:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        task = Task.model_validate_json(row["document"])
        task.lock_token = row["version"]
        return task, row["version"]

    def compare_and_swap(self, task_id: str, expected_token: int, task: Task) -> int:
        new_token = expected_token + 1
        task.lock_token = new_token
        with self._lock:
            cursor = self.conn.execute(
                """
                UPDATE tasks
                SET status = ?, version = ?, updated_at = ?, document = ?
                WHERE id = ? AND version = ?
                """,
                (
                    task.status, new_token, task.updated_at.isoformat(),
                    task.model_dump_json(), task_id, expected_token,
                ),
            )
            self.conn.commit()
            if cursor.rowcount == 1:
                return new_token
            exists = self.conn.execute(
                "SELECT version FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
        if not exists:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        raise ConflictError(
            f"Task {task_id} changed: expected version {expected_token}, found {exists['version']}"
        )

    def list(self, plan_id=None, status=None, agent_config_id=None, limit=50, skip=0) -> list[Task]:
        query = "SELECT document, version FROM tasks WHERE 1=1"
        params: list = []
        if plan_id:
            query += " AND plan_id = ?"
            params.append(plan_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        if agent_config_id:
            query += " AND agent_config_id = ?"
            params.append(agent_config_id)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, skip])

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()

        tasks = []
        for row in rows:
            task = Task.model_validate_json(row["document"])
            task.lock_token = row["version"]
            tasks.append(task)
        return tasks


# ---------------------------------------------------------------------------
# Plan sources
# ---------------------------------------------------------------------------

class InMemoryPlanSource:
    def __init__(self, plans: list[Plan] | None = None):
        self._plans: dict[str, Plan] = {p.id: p for p in plans or []}

    def add(self, plan: Plan) -> Plan:
        self._plans[plan.id] = plan
        return plan

    def load(self, plan_id: str) -> Plan:
        try:
            return self._plans[plan_id]
        except KeyError:
            raise PlanNotFoundError(f"Plan not found: {plan_id}") from None


class PlanDirectory:
    """Plans stored as <plan_id>.yaml / .yml / .json files in one directory."""

    SUFFIXES = (".yaml", ".yml", ".json")

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self, plan_id: str) -> Plan:
        for suffix in self.SUFFIXES:
            candidate = self.path / f"{plan_id}{suffix}"
            if candidate.exists():
                return Plan.from_file(candidate)
        raise PlanNotFoundError(f"Plan not found: {plan_id} (searched {self.path})")

    def save(self, plan: Plan) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        target = self.path / f"{plan.id}.yaml"
        data = plan.model_dump(mode="json")
        with open(target, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        logger.debug(f"[STORE] Saved plan {plan.id} → {target}")
        return target

    def list(self) -> list[str]:
        if not self.path.exists():
            return []
        return sorted(
            {p.stem for p in self.path.iterdir() if p.suffix in self.SUFFIXES}
        )
