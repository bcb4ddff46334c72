"""Per-user preference schemas."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class ThemeMode(StrEnum):
    LIGHT = "light"
    DARK = "dark"


class Language(StrEnum):
    EN = "en"
    JA = "ja"


DEFAULT_THEME = ThemeMode.DARK
DEFAULT_LANGUAGE = Language.EN


class UserPreferences(BaseModel):
    """Stored preferences for one user."""

    user_id: str = Field(description="Owning user identifier")
    theme: ThemeMode = Field(default=DEFAULT_THEME, description="UI theme")
    language: Language = Field(default=DEFAULT_LANGUAGE, description="UI language")
