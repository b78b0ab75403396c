from conductor.identity import __version__
from conductor.engine import ExecutionContext, TaskEngine
from conductor.models import Plan, PlanStep, Task, UserInput
from conductor.store import InMemoryPlanSource, InMemoryTaskStore, PlanDirectory, SqliteTaskStore
from conductor.tools import ToolError, ToolRegistry, ToolResult

__all__ = [
    "__version__",
    "ExecutionContext",
    "TaskEngine",
    "Plan",
    "PlanStep",
    "Task",
    "UserInput",
    "InMemoryPlanSource",
    "InMemoryTaskStore",
    "PlanDirectory",
    "SqliteTaskStore",
    "ToolError",
    "ToolRegistry",
    "ToolResult",
]
