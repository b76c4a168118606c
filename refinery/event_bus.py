"""
REFINERY Event Bus — proposal lifecycle notifications.

Synchronous and in-process. The orchestrator owns one bus per
instance; the triage engine and the database publish onto it.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field


class RefineryEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    actor: str
    payload: Dict[str, Any]


Subscriber = Callable[[RefineryEvent], None]


class EventBus:
    """A lightweight, synchronous bus for proposal lifecycle events."""

    def __init__(self):
        self._subscribers: List[Tuple[Optional[str], Subscriber]] = []

    def subscribe(self, callback: Subscriber, event_type: Optional[str] = None) -> None:
        """Register *callback* for every event, or only for *event_type*."""
        self._subscribers.append((event_type, callback))

    def emit(self, event_type: str, actor: str, payload: Dict[str, Any]) -> RefineryEvent:
        """Construct and broadcast a RefineryEvent to matching subscribers."""
        event = RefineryEvent(
            event_type=event_type,
            actor=actor,
            payload=payload
        )

        for wanted, subscriber in self._subscribers:
            if wanted is not None and wanted != event_type:
                continue
            try:
                subscriber(event)
            except Exception:
                # A broken subscriber must not stop the pipeline.
                logger.exception(f"[EVENTS] Subscriber failed on {event_type}")

        return event
