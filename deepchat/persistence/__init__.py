"""deepchat persistence layer.

SQLite-backed document store for threads, messages, user preferences and
aggregate stats, with an in-process change feed for live snapshots.
"""

from deepchat.persistence.database import close_db, init_db
from deepchat.persistence.feed import ChangeFeed
from deepchat.persistence.messages import MessageStore
from deepchat.persistence.preferences import PreferenceStore
from deepchat.persistence.stats import StatsStore
from deepchat.persistence.store import ChatStore, open_chat_store
from deepchat.persistence.threads import ThreadStore

__all__ = [
    "ChangeFeed",
    "ChatStore",
    "MessageStore",
    "PreferenceStore",
    "StatsStore",
    "ThreadStore",
    "close_db",
    "init_db",
    "open_chat_store",
]
