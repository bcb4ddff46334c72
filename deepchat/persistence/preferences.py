"""Per-user preference storage (theme and language)."""

from __future__ import annotations

import logging

import aiosqlite

from deepchat.persistence.database import storage_errors
from deepchat.schemas.preferences import (
    DEFAULT_LANGUAGE,
    DEFAULT_THEME,
    Language,
    ThemeMode,
    UserPreferences,
)

logger = logging.getLogger(__name__)


class PreferenceStore:
    """Reads and merges the current user's preference document."""

    def __init__(self, db: aiosqlite.Connection, user_id: str) -> None:
        self._db = db
        self._user_id = user_id

    async def fetch(self) -> UserPreferences:
        """Return stored preferences; unknown or missing values fall back to defaults."""
        async with self._db.execute(
            "SELECT theme, language FROM users WHERE user_id = ?", (self._user_id,),
        ) as cursor:
            row = await cursor.fetchone()

        theme, language = DEFAULT_THEME, DEFAULT_LANGUAGE
        if row is not None:
            if row["theme"] in ThemeMode.__members__.values():
                theme = ThemeMode(row["theme"])
            if row["language"] in Language.__members__.values():
                language = Language(row["language"])
        return UserPreferences(user_id=self._user_id, theme=theme, language=language)

    async def fetch_theme(self) -> ThemeMode:
        return (await self.fetch()).theme

    async def fetch_language(self) -> Language:
        return (await self.fetch()).language

    async def persist_theme(self, theme: ThemeMode | str) -> None:
        await self._merge("theme", ThemeMode(theme).value)

    async def persist_language(self, language: Language | str) -> None:
        await self._merge("language", Language(language).value)

    async def _merge(self, column: str, value: str) -> None:
        async with storage_errors(self._db, f"persist_{column}"):
            await self._db.execute(
                f"INSERT INTO users (user_id, {column}) VALUES (?, ?) "  # noqa: S608
                f"ON CONFLICT(user_id) DO UPDATE SET {column} = excluded.{column}",
                (self._user_id, value),
            )
            await self._db.commit()
        logger.debug("Saved %s=%s for %s", column, value, self._user_id)
