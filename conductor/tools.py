"""
Conductor Tool Executor contract.

The engine never calls tools directly. It goes through a ToolExecutor,
which maps an action name plus resolved arguments to a ToolResult.
ToolRegistry is the in-process implementation: plain Python callables
registered under action names.
"""

from __future__ import annotations

import importlib
from typing import Any, Callable, Protocol, runtime_checkable

from loguru import logger
from pydantic import BaseModel, JsonValue


class ToolResult(BaseModel):
    ok: bool
    output: JsonValue = None
    error: str | None = None
    timed_out: bool = False
    # False for validation/auth style failures that will never succeed on retry
    retryable: bool = True

    @classmethod
    def success(cls, output: Any = None) -> "ToolResult":
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, message: str, retryable: bool = True) -> "ToolResult":
        return cls(ok=False, error=message, retryable=retryable)

    @classmethod
    def timeout(cls, message: str = "Tool call timed out") -> "ToolResult":
        return cls(ok=False, error=message, timed_out=True)


class ToolError(Exception):
    """Raised by a tool handler to report a classified tool-level failure."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@runtime_checkable
class ToolExecutor(Protocol):
    def has_action(self, action: str) -> bool: ...

    def execute(self, action: str, args: Any, deadline: float) -> ToolResult:
        """Run action with args. deadline is the time budget in seconds."""
        ...


class ToolRegistry:
    """
    Registry of in-process tools.

    Usage:
        tools = ToolRegistry()

        @tools.register("lookup_facility")
        def lookup_facility(name: str) -> dict: ...

    Dict arguments are passed as keyword arguments, anything else as a
    single positional argument. Handlers may return a ToolResult, raise
    ToolError for a tool-level failure, or return any JSON-like value.
    Other exceptions escape to the caller as transport failures.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}

    def register(self, name: str | None = None, handler: Callable[..., Any] | None = None):
        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self._handlers[name or fn.__name__] = fn
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)

    def has_action(self, action: str) -> bool:
        return action in self._handlers

    def execute(self, action: str, args: Any, deadline: float) -> ToolResult:
        handler = self._handlers.get(action)
        if handler is None:
            return ToolResult.failure(f"Tool not found: {action}", retryable=False)

        try:
            if isinstance(args, dict):
                result = handler(**args)
            elif args is None:
                result = handler()
            else:
                result = handler(args)
        except ToolError as e:
            return ToolResult.failure(str(e), retryable=e.retryable)

        if isinstance(result, ToolResult):
            return result
        return ToolResult.success(result)


def load_tools(ref: str) -> ToolExecutor:
    """
    Import a ToolExecutor from a 'package.module:attribute' string.

    The attribute may be an executor instance or a zero-argument factory.
    """
    module_name, _, attr = ref.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {ref!r}")

    module = importlib.import_module(module_name)
    target = getattr(module, attr)
    if isinstance(target, type) or (not isinstance(target, ToolExecutor) and callable(target)):
        target = target()
    if not isinstance(target, ToolExecutor):
        raise TypeError(f"{ref} is not a ToolExecutor")

    logger.debug(f"[TOOLS] Loaded executor from {ref}")
    return target
