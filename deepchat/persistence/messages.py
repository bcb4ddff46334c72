"""Message store: the per-thread message collection.

Implements the three persistence-sync operations the chat window relies
on: create a message, overwrite a message's content, and listen to the
ordered message set of a thread.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

import aiosqlite

from deepchat.analytics.events import AnalyticsEmitter, EventType
from deepchat.errors import NotFoundError
from deepchat.persistence.access import require_owner
from deepchat.persistence.database import storage_errors
from deepchat.persistence.feed import (
    ChangeFeed,
    SnapshotCallback,
    Unsubscribe,
    deliver,
    messages_topic,
)
from deepchat.schemas.messages import Message, Role, utcnow

logger = logging.getLogger(__name__)


class MessageStore:
    """Messages inside threads owned by one user."""

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
        # Threads already verified as owned by this user
        self._owned: set[str] = set()

    async def create_message(self, thread_id: str, role: Role | str, content: str) -> str:
        """Append a message to a thread and return its id.

        For assistant turns this is called once with empty content to
        reserve the id before streaming starts.
        """
        await self._check_owner(thread_id)
        role = Role(role)
        message_id = uuid.uuid4().hex

        async with storage_errors(self._db, "create_message"):
            await self._db.execute(
                """
                INSERT INTO messages (message_id, thread_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (message_id, thread_id, role.value, content, utcnow().isoformat()),
            )
            await self._db.commit()

        logger.debug("Created %s message %s in thread %s", role, message_id, thread_id)
        await self._emit(
            EventType.MESSAGE_CREATED,
            thread_id=thread_id, message_id=message_id, role=role.value,
        )
        await self._publish(thread_id)
        return message_id

    async def update_message(
        self,
        thread_id: str,
        message_id: str,
        content: str,
        *,
        thinking_content: str | None = None,
        finish_reason: str | None = None,
        token_count: int | None = None,
    ) -> None:
        """Overwrite a message's content.

        Raises:
            NotFoundError: If the message does not exist in the thread.
            StorageQuotaExceededError: If the database is over quota.
        """
        await self._check_owner(thread_id)

        async with storage_errors(self._db, "update_message"):
            cursor = await self._db.execute(
                """
                UPDATE messages
                SET content = ?,
                    thinking_content = COALESCE(?, thinking_content),
                    finish_reason = COALESCE(?, finish_reason),
                    token_count = COALESCE(?, token_count)
                WHERE message_id = ? AND thread_id = ?
                """,
                (content, thinking_content, finish_reason, token_count,
                 message_id, thread_id),
            )
            await self._db.commit()

        if cursor.rowcount == 0:
            raise NotFoundError(f"Message {message_id} not found in thread {thread_id}")

        await self._emit(
            EventType.MESSAGE_UPDATED,
            thread_id=thread_id, message_id=message_id, length=len(content),
        )
        await self._publish(thread_id)

    async def upsert_system_message(self, thread_id: str, content: str) -> str:
        """Create the thread's system message, or update it if present.

        Returns the system message id.
        """
        await self._check_owner(thread_id)
        async with self._db.execute(
            "SELECT message_id FROM messages WHERE thread_id = ? AND role = ? "
            "ORDER BY seq LIMIT 1",
            (thread_id, Role.SYSTEM.value),
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return await self.create_message(thread_id, Role.SYSTEM, content)
        await self.update_message(thread_id, row["message_id"], content)
        return row["message_id"]

    async def list_messages(self, thread_id: str) -> list[Message]:
        """Return a thread's messages ordered by creation time ascending."""
        await self._check_owner(thread_id)
        return await self._load(thread_id)

    async def listen_messages(
        self, thread_id: str, callback: SnapshotCallback,
    ) -> Unsubscribe:
        """Subscribe to a thread's ordered message set.

        The callback receives the full list right away and again after
        every change. Returns the unsubscribe function.
        """
        await self._check_owner(thread_id)
        topic = messages_topic(thread_id)
        unsubscribe = self._feed.subscribe(topic, callback)
        await deliver(callback, await self._load(thread_id), topic)
        return unsubscribe

    async def _check_owner(self, thread_id: str) -> None:
        if thread_id in self._owned:
            return
        await require_owner(self._db, thread_id, self._user_id)
        self._owned.add(thread_id)

    async def _load(self, thread_id: str) -> list[Message]:
        async with self._db.execute(
            "SELECT * FROM messages WHERE thread_id = ? ORDER BY created_at, seq",
            (thread_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]

    async def _publish(self, thread_id: str) -> None:
        topic = messages_topic(thread_id)
        if self._feed.has_subscribers(topic):
            await self._feed.publish(topic, await self._load(thread_id))

    async def _emit(self, event_type: EventType, **data: object) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, user_id=self._user_id, **data)


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["message_id"],
        thread_id=row["thread_id"],
        role=row["role"],
        content=row["content"],
        thinking_content=row["thinking_content"],
        finish_reason=row["finish_reason"],
        token_count=row["token_count"],
        created_at=datetime.fromisoformat(row["created_at"]),
        sequence=row["seq"],
    )
