"""Model registry and TOML configuration loader.

Loads model definitions from models.toml and chat defaults from
defaults.toml. Provides lookup for the model selected on a thread.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from deepchat.schemas.config import ChatConfig, GenerationParameters, ModelConfig

# Default config directory relative to the deepchat package
_CONFIG_DIR = Path(__file__).parent.parent / "config"


def load_models(config_path: Path | None = None) -> dict[str, ModelConfig]:
    """Load the model registry from a TOML file.

    Args:
        config_path: Path to models.toml. Defaults to deepchat/config/models.toml.

    Returns:
        Dictionary mapping model keys to ModelConfig instances.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the TOML structure is invalid.
    """
    path = config_path or _CONFIG_DIR / "models.toml"
    if not path.exists():
        raise FileNotFoundError(f"Model registry not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    models_section = raw.get("models")
    if not models_section or not isinstance(models_section, dict):
        raise ValueError(f"No [models] section found in {path}")

    registry: dict[str, ModelConfig] = {}
    for key, entry in models_section.items():
        if not isinstance(entry, dict):
            continue
        registry[key] = ModelConfig(**entry)

    return registry


def load_chat_config(config_path: Path | None = None) -> ChatConfig:
    """Load chat defaults from a TOML file.

    Args:
        config_path: Path to defaults.toml. Defaults to deepchat/config/defaults.toml.

    Returns:
        ChatConfig with values from the TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Chat config not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    chat_section = dict(raw.get("chat", {}))
    parameters = GenerationParameters(**chat_section.pop("parameters", {}))

    return ChatConfig(**chat_section, parameters=parameters)


def resolve_model(registry: dict[str, ModelConfig], key: str) -> ModelConfig:
    """Return the registry entry for a model key.

    Accepts either the registry key (``deepseek-chat``) or the LiteLLM
    identifier (``deepseek/deepseek-chat``).

    Raises:
        ValueError: If no entry matches.
    """
    if key in registry:
        return registry[key]
    for config in registry.values():
        if config.model == key:
            return config
    raise ValueError(
        f"Unknown model '{key}'. Available: {', '.join(sorted(registry))}"
    )
