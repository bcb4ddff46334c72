"""SQLite database layer for the chat store.

Manages the SQLite connection, schema creation, and translation of
SQLite failures into deepchat storage errors. Uses aiosqlite for async
access with WAL mode for concurrent read performance.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from deepchat.errors import StorageError, StorageQuotaExceededError

logger = logging.getLogger(__name__)

# sqlite3 result code for "database or disk is full"
_SQLITE_FULL = 13

_SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    thread_id       TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    title           TEXT NOT NULL,
    model           TEXT NOT NULL,
    parameters_json TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    seq              INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id       TEXT NOT NULL UNIQUE,
    thread_id        TEXT NOT NULL REFERENCES threads(thread_id) ON DELETE CASCADE,
    role             TEXT NOT NULL,
    content          TEXT NOT NULL DEFAULT '',
    thinking_content TEXT,
    finish_reason    TEXT,
    token_count      INTEGER,
    created_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    user_id  TEXT PRIMARY KEY,
    theme    TEXT,
    language TEXT
);

CREATE TABLE IF NOT EXISTS stats (
    name  TEXT PRIMARY KEY,
    value INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, created_at, seq);
CREATE INDEX IF NOT EXISTS idx_threads_user ON threads(user_id, created_at);
"""


async def init_db(db_path: str, max_page_count: int | None = None) -> aiosqlite.Connection:
    """Initialize the database connection and create tables if needed.

    Creates parent directories if they don't exist, enables WAL mode
    and foreign keys, then runs the schema DDL.

    Args:
        db_path: Path to the SQLite database file, or ``:memory:``.
            Supports ~ expansion.
        max_page_count: Optional hard page quota. Writes past it fail with
            StorageQuotaExceededError.

    Returns:
        An open aiosqlite connection ready for use.
    """
    if db_path == ":memory:":
        target = db_path
    else:
        resolved = Path(db_path).expanduser()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        target = str(resolved)

    db = await aiosqlite.connect(target)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await db.executescript(_SCHEMA)
    if max_page_count is not None:
        await db.execute(f"PRAGMA max_page_count={int(max_page_count)}")
    await db.commit()

    logger.info("Chat database initialized at %s", target)
    return db


async def close_db(db: aiosqlite.Connection) -> None:
    """Close the database connection."""
    await db.close()


def is_quota_error(error: BaseException) -> bool:
    """True when a SQLite error means the database hit its size limit."""
    if getattr(error, "sqlite_errorcode", None) == _SQLITE_FULL:
        return True
    return "database or disk is full" in str(error).lower()


@asynccontextmanager
async def storage_errors(db: aiosqlite.Connection, operation: str) -> AsyncIterator[None]:
    """Translate SQLite failures inside the block into storage errors.

    Rolls back the open transaction, logs the failure, and re-raises it as
    StorageQuotaExceededError or StorageError.
    """
    try:
        yield
    except aiosqlite.Error as e:
        try:
            await db.rollback()
        except aiosqlite.Error:
            logger.debug("Rollback failed after %s", operation, exc_info=True)
        if is_quota_error(e):
            logger.error("Storage quota exceeded during %s: %s", operation, e)
            raise StorageQuotaExceededError(
                f"Storage quota exceeded during {operation}"
            ) from e
        logger.error("Storage error during %s: %s", operation, e)
        raise StorageError(f"{operation} failed: {e}") from e
