"""Chat session state, the turn state machine, and conversation setup."""

from deepchat.chat.session import DEFAULT_SYSTEM_PROMPT, SessionState
from deepchat.chat.starter import NewConversation, generate_title, start_conversation
from deepchat.chat.tokens import count_tokens
from deepchat.chat.window import ChatWindow, TurnState, litellm_factory

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "ChatWindow",
    "NewConversation",
    "SessionState",
    "TurnState",
    "count_tokens",
    "generate_title",
    "litellm_factory",
    "start_conversation",
]
