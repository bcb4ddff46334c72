"""Ownership checks for thread-scoped documents.

A user may only read or write threads they own, and the messages inside
them. Denials surface as PermissionDeniedError.
"""

from __future__ import annotations

import logging

import aiosqlite

from deepchat.errors import NotFoundError, PermissionDeniedError

logger = logging.getLogger(__name__)


async def require_owner(
    db: aiosqlite.Connection, thread_id: str, user_id: str,
) -> aiosqlite.Row:
    """Return the thread row if ``user_id`` owns it.

    Raises:
        NotFoundError: If the thread does not exist.
        PermissionDeniedError: If another user owns the thread.
    """
    async with db.execute(
        "SELECT * FROM threads WHERE thread_id = ?", (thread_id,),
    ) as cursor:
        row = await cursor.fetchone()

    if row is None:
        raise NotFoundError(f"Thread {thread_id} not found")
    if row["user_id"] != user_id:
        logger.warning("User %s denied access to thread %s", user_id, thread_id)
        raise PermissionDeniedError(f"Thread {thread_id} is not owned by {user_id}")
    return row
