"""Chat store bundle.

Opens one database connection and wires the thread, message, preference
and stats stores to a shared change feed and analytics emitter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import aiosqlite

from deepchat.analytics.events import AnalyticsEmitter
from deepchat.persistence.database import close_db, init_db
from deepchat.persistence.feed import ChangeFeed
from deepchat.persistence.messages import MessageStore
from deepchat.persistence.preferences import PreferenceStore
from deepchat.persistence.stats import StatsStore
from deepchat.persistence.threads import ThreadStore

logger = logging.getLogger(__name__)


@dataclass
class ChatStore:
    """All stores for one signed-in user."""

    db: aiosqlite.Connection
    user_id: str
    feed: ChangeFeed
    emitter: AnalyticsEmitter
    threads: ThreadStore
    messages: MessageStore
    preferences: PreferenceStore
    stats: StatsStore

    async def close(self) -> None:
        await close_db(self.db)


async def open_chat_store(
    db_path: str,
    user_id: str,
    *,
    max_page_count: int | None = None,
    emitter: AnalyticsEmitter | None = None,
    count_events: bool = True,
) -> ChatStore:
    """Open the database and build the stores for ``user_id``.

    When ``count_events`` is set, every analytics event also bumps a
    counter in the stats collection.
    """
    db = await init_db(db_path, max_page_count=max_page_count)
    feed = ChangeFeed()
    emitter = emitter or AnalyticsEmitter()
    stats = StatsStore(db)
    if count_events:
        emitter.add_listener(stats.counting_listener())

    return ChatStore(
        db=db,
        user_id=user_id,
        feed=feed,
        emitter=emitter,
        threads=ThreadStore(db, user_id, feed=feed, emitter=emitter),
        messages=MessageStore(db, user_id, feed=feed, emitter=emitter),
        preferences=PreferenceStore(db, user_id),
        stats=stats,
    )
