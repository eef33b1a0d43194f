"""Tests for ModelRegistry activation, defaults and fallback selection."""

import pytest

from tutor_chat.config import AppConfig, ChatConfig, ModelConfig, ProviderConfig
from tutor_chat.core.model_registry import ModelRegistry
from tutor_chat.errors import ModelInactiveError, ModelNotFoundError


class TestActivation:
    """Which models are usable"""

    def test_available_models(self, registry):
        assert [m.id for m in registry.available()] == ["gpt-mini", "claude", "local"]

    def test_disabled_model_inactive(self, registry):
        assert registry.is_active(registry.get("gemini-off")) is False

    def test_placeholder_key_inactive(self, registry):
        assert registry.is_active(registry.get("deepseek-nokey")) is False

    def test_model_key_overrides_provider(self, providers):
        model = ModelConfig(id="own-key", provider="deepseek", model_id="deepseek-chat", api_key="sk-ds-own")
        reg = ModelRegistry([model], providers=providers)

        assert reg.api_key(model) == "sk-ds-own"
        assert reg.is_active(model)

    def test_custom_needs_base_url(self):
        model = ModelConfig(id="c", provider="custom", model_id="llama", api_key="k-123")
        assert ModelRegistry([model]).is_active(model) is False
        model.base_url = "http://localhost:8080/v1"
        assert ModelRegistry([model]).is_active(model) is True

    def test_unknown_provider_skipped(self):
        reg = ModelRegistry([ModelConfig(id="x", provider="mystery", model_id="x", api_key="k-1")])
        assert reg.get("x") is None

    def test_names_default_to_model_id(self):
        model = ModelConfig(id="x", provider="openai", model_id="gpt-4o")
        assert model.name == "gpt-4o"
        assert model.display_name == "gpt-4o"


class TestValidate:
    """Model validation"""

    def test_validate_active(self, registry):
        assert registry.validate("claude").id == "claude"

    def test_validate_unknown(self, registry):
        with pytest.raises(ModelNotFoundError):
            registry.validate("nope")

    def test_validate_inactive(self, registry):
        with pytest.raises(ModelInactiveError):
            registry.validate("gemini-off")


class TestDefaults:
    """Default model selection"""

    def test_is_default_flag(self, registry):
        assert registry.default().id == "gpt-mini"

    def test_configured_default_wins(self, model_configs, providers):
        reg = ModelRegistry(model_configs, providers=providers, default_model="claude")
        assert reg.default().id == "claude"

    def test_inactive_configured_default_ignored(self, model_configs, providers):
        reg = ModelRegistry(model_configs, providers=providers, default_model="gemini-off")
        assert reg.default().id == "gpt-mini"

    def test_first_active_without_flag(self, providers):
        models = [
            ModelConfig(id="b", display_name="Beta", provider="anthropic", model_id="b"),
            ModelConfig(id="a", display_name="Alpha", provider="openrouter", model_id="a"),
        ]
        assert ModelRegistry(models, providers=providers).default().id == "a"

    def test_no_active_models(self):
        assert ModelRegistry([]).default() is None

    def test_from_config(self, model_configs, providers):
        config = AppConfig(
            models=model_configs,
            providers=providers,
            chat=ChatConfig(default_model="local", fallback_providers=["anthropic"]),
        )
        reg = ModelRegistry.from_config(config)

        assert reg.default().id == "local"
        assert reg.pick_fallback("gpt-mini").id == "claude"


class TestFallbackAndUsage:
    """Fallback choice and usage counters"""

    def test_prefers_fallback_provider(self, registry):
        assert registry.pick_fallback("gpt-mini").id == "local"

    def test_any_other_active_model(self, registry):
        assert registry.pick_fallback("local").id == "gpt-mini"

    def test_no_fallback_when_alone(self, providers):
        only = ModelConfig(id="solo", provider="openrouter", model_id="x")
        assert ModelRegistry([only], providers=providers).pick_fallback("solo") is None

    def test_by_provider(self, registry):
        assert [m.id for m in registry.by_provider("anthropic")] == ["claude"]
        assert registry.by_provider("gemini") == []

    def test_record_usage(self, registry):
        registry.record_usage("claude")
        registry.record_usage("claude")

        usage = registry.usage("claude")
        assert usage.requests == 2
        assert usage.last_used is not None
        assert registry.usage("local").requests == 0

    def test_public_view_has_no_credentials(self):
        model = ModelConfig(id="k", provider="openai", model_id="gpt", api_key="sk-secret-1")
        reg = ModelRegistry([model], providers={"openai": ProviderConfig(api_key="sk-other")})

        public = reg.to_public(model)

        assert "sk-secret-1" not in str(public)
        assert public["displayName"] == "gpt"
        assert public["isActive"] is True
