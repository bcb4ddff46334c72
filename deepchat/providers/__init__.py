"""deepchat provider layer.

All model calls go through LiteLLMProvider via the ModelProvider interface.
"""

from deepchat.providers.base import FragmentStream, ModelProvider
from deepchat.providers.litellm_provider import ChatStream, LiteLLMProvider
from deepchat.providers.registry import load_chat_config, load_models, resolve_model

__all__ = [
    "ChatStream",
    "FragmentStream",
    "LiteLLMProvider",
    "ModelProvider",
    "load_chat_config",
    "load_models",
    "resolve_model",
]
