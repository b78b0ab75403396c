import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field


class EngineEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    task_id: str
    step_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous event bus for task and step transitions."""

    def __init__(self):
        self._subscribers: List[Callable[[EngineEvent], None]] = []

    def subscribe(self, callback: Callable[[EngineEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(
        self,
        event_type: str,
        task_id: str,
        step_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> EngineEvent:
        """Construct and broadcast an EngineEvent to all subscribers."""
        event = EngineEvent(
            event_type=event_type,
            task_id=task_id,
            step_id=step_id,
            payload=payload or {},
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber (like a bad file write) must not stop the engine
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")

        return event
