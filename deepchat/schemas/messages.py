"""Message and thread schemas for the chat store.

Defines the durable Message and Thread documents, the role enum, and the
role/content pairs sent to the model provider.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from deepchat.schemas.config import GenerationParameters

DEFAULT_THREAD_TITLE = "New Chat"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Role(StrEnum):
    """Author of a message within a thread."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessageParam(BaseModel):
    """A single role/content pair sent to the model provider."""

    role: Role = Field(description="Message author role")
    content: str = Field(default="", description="Message text")

    def to_openai(self) -> dict[str, str]:
        """Return the OpenAI-format dict LiteLLM expects."""
        return {"role": self.role.value, "content": self.content}


class Message(BaseModel):
    """One turn within a thread.

    Durable messages come from the store. A message with ``draft=True`` is
    the local stand-in for an assistant reply that is still streaming (or
    whose final write failed); it shares its id with the durable placeholder.
    """

    id: str = Field(description="Document identifier")
    thread_id: str = Field(description="Parent thread identifier")
    role: Role = Field(description="Message author role")
    content: str = Field(default="", description="Primary message text")
    thinking_content: str | None = Field(
        default=None, description="Secondary reasoning text, if the model produced any",
    )
    finish_reason: str | None = Field(
        default=None, description="Upstream finish reason for assistant messages",
    )
    token_count: int | None = Field(
        default=None, ge=0, description="Approximate token count of the content",
    )
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    sequence: int = Field(
        default=0, ge=0, description="Insertion order, breaks created_at ties",
    )
    draft: bool = Field(
        default=False, description="True while the message exists only locally",
    )

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.sequence)


class Thread(BaseModel):
    """A persisted chat conversation owned by one user."""

    id: str = Field(description="Document identifier")
    user_id: str = Field(description="Owning user identifier")
    title: str = Field(default=DEFAULT_THREAD_TITLE, description="Display title")
    model: str = Field(default="deepseek-chat", description="Selected model key")
    parameters: GenerationParameters = Field(
        default_factory=GenerationParameters,
        description="Generation parameters used for this thread",
    )
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update time")


def sort_messages(messages: list[Message]) -> list[Message]:
    """Return messages ordered by creation time ascending."""
    return sorted(messages, key=lambda m: m.sort_key)
