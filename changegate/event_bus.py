import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field


class PipelineEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    task_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous event bus for pipeline observability.

    One bus per run, constructed by the caller and handed to the controller.
    """

    def __init__(self):
        self._subscribers: List[Callable[[PipelineEvent], None]] = []
        self.history: List[PipelineEvent] = []

    def subscribe(self, callback: Callable[[PipelineEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, task_id: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> PipelineEvent:
        """Construct and broadcast a PipelineEvent to all subscribers."""
        event = PipelineEvent(event_type=event_type, task_id=task_id, payload=payload or {})
        self.history.append(event)

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber must not break the run.
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")
        return event
