"""
DECKHAND Event Bus

Synchronous fan-out of run events to observers (audit log, CLI).
A failing subscriber is logged and skipped; it never stops a run.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class DeckEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for run observability."""

    def __init__(self):
        self._subscribers: List[Callable[[DeckEvent], None]] = []

    def subscribe(self, callback: Callable[[DeckEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[DeckEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event_type: str, source: str, payload: Dict[str, Any]) -> DeckEvent:
        """Construct and broadcast a DeckEvent to all subscribers."""
        event = DeckEvent(event_type=event_type, source=source, payload=payload)

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(f"[EVENTS] Subscriber {subscriber!r} failed on {event_type}: {e}")
        return event
