"""In-process change feed for store collections.

Stores publish a fresh snapshot of a topic after every committed write.
Subscribers receive the full snapshot each time, never a diff.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]
SnapshotCallback = Callable[[Any], Any]


def messages_topic(thread_id: str) -> str:
    return f"messages:{thread_id}"


def thread_topic(thread_id: str) -> str:
    return f"thread:{thread_id}"


def threads_topic(user_id: str) -> str:
    return f"threads:{user_id}"


class ChangeFeed:
    """Maps topics to snapshot callbacks."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[SnapshotCallback]] = defaultdict(list)

    def subscribe(self, topic: str, callback: SnapshotCallback) -> Unsubscribe:
        """Register a callback for a topic and return its unsubscribe function."""
        self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(topic, [])
            self._subscribers[topic] = [cb for cb in callbacks if cb is not callback]
            if not self._subscribers[topic]:
                del self._subscribers[topic]

        return unsubscribe

    def has_subscribers(self, topic: str) -> bool:
        return bool(self._subscribers.get(topic))

    async def publish(self, topic: str, snapshot: Any) -> None:
        """Deliver a snapshot to every subscriber of a topic.

        Callback exceptions are logged and do not reach the writer.
        """
        for callback in list(self._subscribers.get(topic, [])):
            await deliver(callback, snapshot, topic)


async def deliver(callback: SnapshotCallback, snapshot: Any, topic: str) -> None:
    """Invoke one snapshot callback, awaiting it if it is async."""
    try:
        result = callback(snapshot)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Snapshot listener error for %s", topic)
