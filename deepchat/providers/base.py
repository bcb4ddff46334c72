"""Abstract base class for model providers.

Defines the ModelProvider interface the chat layer talks to. The chat
window never calls provider SDKs directly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Protocol

from deepchat.schemas.config import GenerationParameters, ModelConfig
from deepchat.schemas.messages import ChatMessageParam
from deepchat.schemas.streaming import StreamFragment


class FragmentStream(Protocol):
    """An open streaming response: iterate for fragments, abort to stop."""

    def __aiter__(self) -> AsyncIterator[StreamFragment]: ...

    def abort(self) -> None: ...

    async def aclose(self) -> None: ...


class ModelProvider(ABC):
    """Abstract interface for any LLM the chat window can stream from."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config

    # ── Identity ──────────────────────────────────────────────

    @property
    def provider_id(self) -> str:
        """Provider identifier (e.g. 'deepseek')."""
        return self._config.provider

    @property
    def model_id(self) -> str:
        """LiteLLM model identifier used for routing."""
        return self._config.model

    @property
    def display_name(self) -> str:
        """Human-friendly model name for CLI output."""
        return self._config.display_name

    @property
    def config(self) -> ModelConfig:
        """The full ModelConfig backing this provider."""
        return self._config

    # ── Core interface ────────────────────────────────────────

    @abstractmethod
    async def open_stream(
        self,
        messages: list[ChatMessageParam],
        parameters: GenerationParameters | None = None,
    ) -> FragmentStream:
        """Open a streaming completion and return the stream handle.

        The call returns once the upstream accepted the request; no
        fragment has been consumed yet.

        Args:
            messages: Ordered role/content pairs, system prompt first.
            parameters: Optional sampling parameters.

        Raises:
            CredentialError: If the API key is missing or rejected.
            StreamOpenError: If the request could not be opened.
        """

    @abstractmethod
    async def complete(
        self,
        messages: list[ChatMessageParam],
        parameters: GenerationParameters | None = None,
    ) -> str:
        """Send a non-streaming completion and return the full text."""
