"""Tests for deepchat.providers.registry: TOML config loading and model lookup."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from deepchat.providers.registry import load_chat_config, load_models, resolve_model
from deepchat.schemas.config import ChatConfig, ModelConfig

# Path to the real config files shipped with the package
_CONFIG_DIR = Path(__file__).parent.parent / "deepchat" / "config"


class TestLoadModels:
    def test_loads_real_config(self):
        registry = load_models(_CONFIG_DIR / "models.toml")
        assert set(registry) >= {"deepseek-chat", "deepseek-reasoner"}

    def test_default_path(self):
        assert load_models() == load_models(_CONFIG_DIR / "models.toml")

    def test_model_config_types(self):
        registry = load_models(_CONFIG_DIR / "models.toml")
        for key, model in registry.items():
            assert isinstance(model, ModelConfig), f"{key} is not ModelConfig"
            assert model.provider != ""
            assert model.model != ""
            assert model.api_key_env == "DEEPSEEK_API_KEY"
            assert model.context_window > 0

    def test_reasoner_streams_thinking(self):
        registry = load_models(_CONFIG_DIR / "models.toml")
        assert registry["deepseek-reasoner"].supports_thinking is True
        assert registry["deepseek-chat"].supports_thinking is False

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Model registry not found"):
            load_models(tmp_path / "missing.toml")

    def test_missing_models_section_raises(self, tmp_path):
        path = tmp_path / "models.toml"
        path.write_text('[other]\nkey = "value"\n')
        with pytest.raises(ValueError, match="No \\[models\\] section"):
            load_models(path)

    def test_invalid_entry_raises(self, tmp_path):
        path = tmp_path / "models.toml"
        path.write_text('[models.broken]\nprovider = "deepseek"\n')
        with pytest.raises(ValidationError):
            load_models(path)

    def test_custom_model(self, tmp_path):
        path = tmp_path / "models.toml"
        path.write_text(
            "[models.local]\n"
            'provider = "openai"\n'
            'model = "openai/local-model"\n'
            'display_name = "Local"\n'
            'api_key_env = "LOCAL_KEY"\n'
            "context_window = 8192\n"
        )
        registry = load_models(path)
        assert registry["local"].api_base == ""
        assert registry["local"].supports_thinking is False


class TestLoadChatConfig:
    def test_loads_real_config(self):
        config = load_chat_config(_CONFIG_DIR / "defaults.toml")
        assert isinstance(config, ChatConfig)
        assert config.default_model == "deepseek-chat"
        assert config.system_prompt == "You are a helpful assistant."
        assert "{message}" in config.title_prompt

    def test_parameters_loaded(self):
        config = load_chat_config(_CONFIG_DIR / "defaults.toml")
        assert config.parameters.temperature == 1.0
        assert config.parameters.max_tokens == 4096

    def test_missing_section_uses_defaults(self, tmp_path):
        path = tmp_path / "defaults.toml"
        path.write_text("")
        config = load_chat_config(path)
        assert config == ChatConfig()
        assert config.parameters.to_request_kwargs() == {}

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Chat config not found"):
            load_chat_config(tmp_path / "missing.toml")

    def test_out_of_range_parameter_rejected(self, tmp_path):
        path = tmp_path / "defaults.toml"
        path.write_text("[chat.parameters]\ntemperature = 5.0\n")
        with pytest.raises(ValidationError):
            load_chat_config(path)


class TestResolveModel:
    @pytest.fixture
    def registry(self):
        return load_models(_CONFIG_DIR / "models.toml")

    def test_by_registry_key(self, registry):
        assert resolve_model(registry, "deepseek-chat").model == "deepseek/deepseek-chat"

    def test_by_litellm_id(self, registry):
        config = resolve_model(registry, "deepseek/deepseek-reasoner")
        assert config.display_name == "DeepSeek Reasoner"

    def test_unknown_model(self, registry):
        with pytest.raises(ValueError, match="Unknown model 'gpt-9'.*deepseek-chat"):
            resolve_model(registry, "gpt-9")
