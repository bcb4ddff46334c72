"""Streaming schemas for real-time token delivery.

Defines the StreamFragment model yielded by ChatStream while a
response is being generated.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class StreamFragment(BaseModel):
    """A single incremental piece of model output."""

    content: str = Field(default="", description="New primary text in this fragment")
    reasoning: str = Field(default="", description="New reasoning text in this fragment")
    finish_reason: str | None = Field(
        default=None, description="Set on the last fragment of a response",
    )

    @property
    def is_empty(self) -> bool:
        """True when the fragment carries no text at all."""
        return not self.content and not self.reasoning
