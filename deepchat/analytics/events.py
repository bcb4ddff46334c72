"""Best-effort analytics events for store writes.

Emits a structured event whenever a thread or message is created or
updated. Listeners can be sync or async; a failing listener is logged
and never fails the write that triggered it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of analytics events."""

    THREAD_CREATED = "thread_created"
    THREAD_UPDATED = "thread_updated"
    THREAD_DELETED = "thread_deleted"
    MESSAGE_CREATED = "message_created"
    MESSAGE_UPDATED = "message_updated"
    TURN_ABORTED = "turn_aborted"
    TURN_FAILED = "turn_failed"


class AnalyticsEvent(BaseModel):
    """A single analytics event."""

    type: EventType = Field(description="Event type")
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix timestamp when the event occurred",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event payload, varies by event type",
    )


# Type alias for event listener callbacks
EventListener = Callable[[AnalyticsEvent], Any]


class AnalyticsEmitter:
    """Broadcasts analytics events to registered listeners.

    Stores take an optional emitter. When none is given, emit calls are
    skipped.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        """Register a listener to receive analytics events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        """Remove a previously registered listener."""
        self._listeners = [ln for ln in self._listeners if ln != listener]

    async def emit(self, event_type: EventType, **data: Any) -> None:
        """Emit an event to all registered listeners.

        Listener exceptions are logged but never propagate.
        """
        event = AnalyticsEvent(type=event_type, data=data)

        for listener in self._listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Analytics listener error for %s", event_type)
