"""Thread store: create, read, list, update and delete threads.

Every write publishes fresh snapshots to the change feed and emits a
best-effort analytics event.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

import aiosqlite

from deepchat.analytics.events import AnalyticsEmitter, EventType
from deepchat.persistence.access import require_owner
from deepchat.persistence.database import storage_errors
from deepchat.persistence.feed import (
    ChangeFeed,
    SnapshotCallback,
    Unsubscribe,
    deliver,
    thread_topic,
    threads_topic,
)
from deepchat.schemas.config import GenerationParameters
from deepchat.schemas.messages import DEFAULT_THREAD_TITLE, Thread, utcnow

logger = logging.getLogger(__name__)


class ThreadStore:
    """Threads owned by one user, backed by SQLite."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        user_id: str,
        *,
        feed: ChangeFeed | None = None,
        emitter: AnalyticsEmitter | None = None,
    ) -> None:
        self._db = db
        self._user_id = user_id
        self._feed = feed or ChangeFeed()
        self._emitter = emitter

    @property
    def user_id(self) -> str:
        return self._user_id

    async def create_thread(
        self,
        title: str = DEFAULT_THREAD_TITLE,
        model: str = "deepseek-chat",
        parameters: GenerationParameters | None = None,
    ) -> str:
        """Create a thread for the current user and return its id."""
        thread_id = uuid.uuid4().hex
        now = utcnow().isoformat()
        params = parameters or GenerationParameters()

        async with storage_errors(self._db, "create_thread"):
            await self._db.execute(
                """
                INSERT INTO threads
                    (thread_id, user_id, title, model, parameters_json,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (thread_id, self._user_id, title, model,
                 params.model_dump_json(), now, now),
            )
            await self._db.commit()

        logger.info("Created thread %s for %s", thread_id, self._user_id)
        await self._emit(EventType.THREAD_CREATED, thread_id=thread_id, model=model)
        await self._publish(thread_id)
        return thread_id

    async def get_thread(self, thread_id: str) -> Thread:
        """Return a thread the current user owns."""
        row = await require_owner(self._db, thread_id, self._user_id)
        return _row_to_thread(row)

    async def list_threads(self) -> list[Thread]:
        """List the current user's threads, newest first."""
        async with self._db.execute(
            "SELECT * FROM threads WHERE user_id = ? ORDER BY created_at DESC",
            (self._user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_thread(row) for row in rows]

    async def update_thread(
        self,
        thread_id: str,
        *,
        title: str | None = None,
        model: str | None = None,
        parameters: GenerationParameters | None = None,
    ) -> None:
        """Update any of title, model and parameters; bumps updated_at."""
        await require_owner(self._db, thread_id, self._user_id)

        assignments: list[str] = ["updated_at = ?"]
        params: list[object] = [utcnow().isoformat()]
        if title is not None:
            assignments.append("title = ?")
            params.append(title)
        if model is not None:
            assignments.append("model = ?")
            params.append(model)
        if parameters is not None:
            assignments.append("parameters_json = ?")
            params.append(parameters.model_dump_json())
        params.append(thread_id)

        async with storage_errors(self._db, "update_thread"):
            await self._db.execute(
                f"UPDATE threads SET {', '.join(assignments)} WHERE thread_id = ?",  # noqa: S608
                params,
            )
            await self._db.commit()

        changed = [name for name, value in
                   (("title", title), ("model", model), ("parameters", parameters))
                   if value is not None]
        await self._emit(EventType.THREAD_UPDATED, thread_id=thread_id, fields=changed)
        await self._publish(thread_id)

    async def update_title(self, thread_id: str, title: str) -> None:
        await self.update_thread(thread_id, title=title)

    async def update_model(self, thread_id: str, model: str) -> None:
        await self.update_thread(thread_id, model=model)

    async def update_parameters(
        self, thread_id: str, parameters: GenerationParameters,
    ) -> None:
        await self.update_thread(thread_id, parameters=parameters)

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread and all of its messages.

        Returns True if a thread was deleted.
        """
        await require_owner(self._db, thread_id, self._user_id)

        async with storage_errors(self._db, "delete_thread"):
            cursor = await self._db.execute(
                "DELETE FROM threads WHERE thread_id = ?", (thread_id,),
            )
            await self._db.commit()

        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted thread %s", thread_id)
            await self._emit(EventType.THREAD_DELETED, thread_id=thread_id)
            await self._publish(thread_id)
        return deleted

    async def listen_thread(self, thread_id: str, callback: SnapshotCallback) -> Unsubscribe:
        """Subscribe to one thread document.

        The callback receives the current Thread right away and again after
        every change, or None once the thread is deleted.
        """
        await require_owner(self._db, thread_id, self._user_id)
        topic = thread_topic(thread_id)
        unsubscribe = self._feed.subscribe(topic, callback)
        await deliver(callback, await self._load_thread(thread_id), topic)
        return unsubscribe

    async def listen_threads(self, callback: SnapshotCallback) -> Unsubscribe:
        """Subscribe to the current user's thread list (newest first)."""
        topic = threads_topic(self._user_id)
        unsubscribe = self._feed.subscribe(topic, callback)
        await deliver(callback, await self.list_threads(), topic)
        return unsubscribe

    async def _load_thread(self, thread_id: str) -> Thread | None:
        async with self._db.execute(
            "SELECT * FROM threads WHERE thread_id = ? AND user_id = ?",
            (thread_id, self._user_id),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_thread(row) if row else None

    async def _publish(self, thread_id: str) -> None:
        topic = thread_topic(thread_id)
        if self._feed.has_subscribers(topic):
            await self._feed.publish(topic, await self._load_thread(thread_id))
        list_topic = threads_topic(self._user_id)
        if self._feed.has_subscribers(list_topic):
            await self._feed.publish(list_topic, await self.list_threads())

    async def _emit(self, event_type: EventType, **data: object) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, user_id=self._user_id, **data)


def _row_to_thread(row: aiosqlite.Row) -> Thread:
    return Thread(
        id=row["thread_id"],
        user_id=row["user_id"],
        title=row["title"],
        model=row["model"],
        parameters=GenerationParameters.model_validate_json(row["parameters_json"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
