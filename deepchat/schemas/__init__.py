"""deepchat schema definitions.

All Pydantic v2 models shared by the store, provider and chat layers.
"""

from deepchat.schemas.config import ChatConfig, GenerationParameters, ModelConfig
from deepchat.schemas.messages import (
    DEFAULT_THREAD_TITLE,
    ChatMessageParam,
    Message,
    Role,
    Thread,
    sort_messages,
)
from deepchat.schemas.preferences import (
    DEFAULT_LANGUAGE,
    DEFAULT_THEME,
    Language,
    ThemeMode,
    UserPreferences,
)
from deepchat.schemas.streaming import StreamFragment

__all__ = [
    "DEFAULT_LANGUAGE",
    "DEFAULT_THEME",
    "DEFAULT_THREAD_TITLE",
    "ChatConfig",
    "ChatMessageParam",
    "GenerationParameters",
    "Language",
    "Message",
    "ModelConfig",
    "Role",
    "StreamFragment",
    "Thread",
    "ThemeMode",
    "UserPreferences",
    "sort_messages",
]
