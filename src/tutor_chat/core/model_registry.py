"""Registry of configured LLM models and their activation state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from tutor_chat.config import AppConfig, ModelConfig, ProviderConfig, is_configured_secret
from tutor_chat.core.types import Provider
from tutor_chat.errors import ModelInactiveError, ModelNotFoundError
from tutor_chat.log import get_logger
from tutor_chat.storage.models import utcnow

logger = get_logger(__name__)

_KNOWN_PROVIDERS = frozenset(p.value for p in Provider)


@dataclass
class ModelUsage:
    requests: int = 0
    last_used: Optional[datetime] = None


class ModelRegistry:
    """Looks up models by id and decides which of them can serve requests.

    A model is active when it is enabled and a real API key is available for
    it, either on the model itself or on its provider section. Custom
    endpoints also need a base URL.
    """

    def __init__(
        self,
        models: list[ModelConfig],
        providers: dict[str, ProviderConfig] | None = None,
        default_model: Optional[str] = None,
        fallback_providers: list[str] | None = None,
    ):
        self._providers = providers or {}
        self._default_id = default_model
        self._fallback_providers = list(fallback_providers or [])
        self._models: dict[str, ModelConfig] = {}
        self._usage: dict[str, ModelUsage] = {}

        for model in models:
            if model.provider not in _KNOWN_PROVIDERS:
                logger.warning("model_unknown_provider", model_id=model.id, provider=model.provider)
                continue
            if model.id in self._models:
                logger.warning("model_duplicate_id", model_id=model.id)
            self._models[model.id] = model

    @classmethod
    def from_config(cls, config: AppConfig) -> ModelRegistry:
        return cls(
            config.models,
            providers=config.providers,
            default_model=config.chat.default_model,
            fallback_providers=config.chat.fallback_providers,
        )

    def api_key(self, model: ModelConfig) -> str:
        if is_configured_secret(model.api_key):
            return model.api_key  # type: ignore[return-value]
        provider = self._providers.get(model.provider)
        return provider.api_key if provider else ""

    def base_url(self, model: ModelConfig) -> Optional[str]:
        provider = self._providers.get(model.provider)
        for url in (model.base_url, provider.base_url if provider else None):
            if is_configured_secret(url):
                return url
        return None

    def is_active(self, model: ModelConfig) -> bool:
        if model.provider == Provider.CUSTOM and self.base_url(model) is None:
            return False
        return model.enabled and is_configured_secret(self.api_key(model))

    def get(self, model_id: str) -> Optional[ModelConfig]:
        return self._models.get(model_id)

    def validate(self, model_id: str) -> ModelConfig:
        """Return the model, raising if it does not exist or cannot be used."""
        model = self._models.get(model_id)
        if model is None:
            raise ModelNotFoundError(f"Model with ID {model_id} not found")
        if not self.is_active(model):
            raise ModelInactiveError(f'Model "{model.display_name}" is not active')
        return model

    def default(self) -> Optional[ModelConfig]:
        """Configured default if active, else the first active ``is_default`` model, else any active one."""
        if self._default_id:
            model = self._models.get(self._default_id)
            if model is not None and self.is_active(model):
                return model
            logger.warning("model_default_unavailable", model_id=self._default_id)
        active = self.available()
        return next((m for m in active if m.is_default), active[0] if active else None)

    def available(self) -> list[ModelConfig]:
        """Active models, defaults first, then by display name."""
        active = [m for m in self._models.values() if self.is_active(m)]
        return sorted(active, key=lambda m: (not m.is_default, m.display_name.lower()))

    def by_provider(self, provider: str) -> list[ModelConfig]:
        return [m for m in self.available() if m.provider == provider]

    def pick_fallback(self, exclude_id: str) -> Optional[ModelConfig]:
        """An active model other than *exclude_id*, preferring the fallback providers."""
        candidates = [m for m in self.available() if m.id != exclude_id]
        for provider in self._fallback_providers:
            preferred = next((m for m in candidates if m.provider == provider), None)
            if preferred is not None:
                return preferred
        return candidates[0] if candidates else None

    def record_usage(self, model_id: str) -> None:
        usage = self._usage.setdefault(model_id, ModelUsage())
        usage.requests += 1
        usage.last_used = utcnow()

    def usage(self, model_id: str) -> ModelUsage:
        usage = self._usage.get(model_id, ModelUsage())
        return ModelUsage(requests=usage.requests, last_used=usage.last_used)

    def ids(self) -> list[str]:
        return list(self._models)

    def to_public(self, model: ModelConfig) -> dict[str, Any]:
        """Client-facing view of a model; never includes credentials."""
        usage = self.usage(model.id)
        return {
            "id": model.id,
            "name": model.name,
            "displayName": model.display_name,
            "provider": model.provider,
            "modelId": model.model_id,
            "description": model.description,
            "maxTokens": model.max_tokens,
            "temperature": model.temperature,
            "isDefault": model.is_default,
            "isActive": self.is_active(model),
            "usageCount": usage.requests,
            "lastUsed": usage.last_used.isoformat() if usage.last_used else None,
        }
