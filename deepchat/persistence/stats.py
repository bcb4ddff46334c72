"""Aggregate usage counters.

The stats collection needs no user: counters are shared across all users
and fed from analytics events.
"""

from __future__ import annotations

import aiosqlite

from deepchat.analytics.events import AnalyticsEvent, EventListener
from deepchat.persistence.database import storage_errors


class StatsStore:
    """Named integer counters backed by the ``stats`` table."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def increment(self, name: str, amount: int = 1) -> None:
        async with storage_errors(self._db, "increment_stat"):
            await self._db.execute(
                "INSERT INTO stats (name, value) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value = value + excluded.value",
                (name, amount),
            )
            await self._db.commit()

    async def get(self, name: str) -> int:
        async with self._db.execute(
            "SELECT value FROM stats WHERE name = ?", (name,),
        ) as cursor:
            row = await cursor.fetchone()
        return row["value"] if row else 0

    async def all(self) -> dict[str, int]:
        async with self._db.execute("SELECT name, value FROM stats ORDER BY name") as cursor:
            rows = await cursor.fetchall()
        return {row["name"]: row["value"] for row in rows}

    def counting_listener(self) -> EventListener:
        """Return an analytics listener that counts events by type."""

        async def _count(event: AnalyticsEvent) -> None:
            await self.increment(event.type.value)

        return _count
