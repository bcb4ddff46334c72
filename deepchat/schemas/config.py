"""Configuration schemas for the model registry and chat defaults.

Loaded from the TOML files in deepchat/config/ by
deepchat.providers.registry.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class GenerationParameters(BaseModel):
    """Optional sampling parameters forwarded to the model.

    Unset fields are omitted from the request so the provider default
    applies.
    """

    frequency_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    presence_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, gt=0)

    def to_request_kwargs(self) -> dict[str, float | int]:
        """Return only the parameters that were explicitly set."""
        return self.model_dump(exclude_none=True)


class ModelConfig(BaseModel):
    """Configuration for a single model in the registry.

    Loaded from models.toml. Each entry provides the LiteLLM routing
    information and capability flags.
    """

    provider: str = Field(description="Provider identifier (e.g. 'deepseek')")
    model: str = Field(description="LiteLLM model identifier (e.g. 'deepseek/deepseek-chat')")
    display_name: str = Field(description="Human-friendly model name for CLI output")
    api_key_env: str = Field(description="Environment variable name holding the API key")
    api_base: str = Field(default="", description="Custom API base URL (empty = provider default)")
    context_window: int = Field(gt=0, description="Maximum context window size in tokens")
    supports_thinking: bool = Field(
        default=False, description="Whether the model streams reasoning content",
    )


class ChatConfig(BaseModel):
    """Chat defaults loaded from defaults.toml."""

    default_model: str = Field(default="deepseek-chat", description="Registry key of the default model")
    system_prompt: str = Field(
        default="You are a helpful assistant.", description="System prompt for new threads",
    )
    title_model: str = Field(default="deepseek-chat", description="Model used to title new threads")
    title_prompt: str = Field(
        default=(
            "Create a short thread title (under 10 characters, no quotes) "
            'based on this message: "{message}"'
        ),
        description="Template for the title request; {message} is the first user message",
    )
    db_path: str = Field(default="~/.deepchat/deepchat.db", description="SQLite database path")
    local_store_path: str = Field(
        default="~/.deepchat/local.json", description="Local key-value store path",
    )
    max_page_count: int | None = Field(
        default=None, gt=0, description="Hard page quota for the database (None = unlimited)",
    )
    timeout: int = Field(default=600, gt=0, description="Request timeout in seconds")
    parameters: GenerationParameters = Field(
        default_factory=GenerationParameters, description="Default generation parameters",
    )
