"""
Model registry — named adapters with one default, built from config.

Supported provider types:
  anthropic  → AnthropicAdapter (Claude models, native SSE streaming)
  ollama     → OllamaAdapter (local /api/chat, NDJSON streaming)
  openai     → OpenAICompatAdapter (api.openai.com)
  groq       → OpenAICompatAdapter (api.groq.com/openai/v1)
  openrouter → OpenAICompatAdapter (openrouter.ai/api/v1)
  together   → OpenAICompatAdapter (api.together.xyz/v1)
  <any>      → OpenAICompatAdapter if base_url is set in config
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

from codeforge.config import CodeForgeConfig, ProviderConfig
from codeforge.models.base import BaseModelAdapter, ModelInfo

logger = logging.getLogger(__name__)

# Well-known base URLs for providers that don't require base_url in config
_PROVIDER_DEFAULTS: dict[str, str] = {
    "openai":      "https://api.openai.com/v1",
    "groq":        "https://api.groq.com/openai/v1",
    "openrouter":  "https://openrouter.ai/api/v1",
    "together":    "https://api.together.xyz/v1",
    "mistral":     "https://api.mistral.ai/v1",
    "deepseek":    "https://api.deepseek.com/v1",
}


class ProviderRegistry:
    """Thread-safe map of provider name to adapter.

    The first registered provider becomes the default.
    """

    def __init__(self):
        self._providers: dict[str, BaseModelAdapter] = {}
        self._default: Optional[str] = None
        self._lock = threading.Lock()

    def register(self, name: str, adapter: BaseModelAdapter) -> None:
        with self._lock:
            if name in self._providers:
                raise ValueError(f"provider {name} already registered")
            self._providers[name] = adapter
            if self._default is None:
                self._default = name
        logger.info("Registered provider %s (%s)", name, adapter.default_model())

    def set_default(self, name: str) -> None:
        with self._lock:
            if name not in self._providers:
                raise ValueError(f"provider {name} not found")
            self._default = name

    @property
    def default(self) -> Optional[str]:
        with self._lock:
            return self._default

    def get(self, name: Optional[str] = None) -> BaseModelAdapter:
        with self._lock:
            key = name or self._default
            if key is None or key not in self._providers:
                raise ValueError(f"provider {key} not found")
            return self._providers[key]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._providers)

    def available_models(self) -> dict[str, list[ModelInfo]]:
        with self._lock:
            adapters = dict(self._providers)
        return {name: adapter.available_models() for name, adapter in adapters.items()}

    async def close(self) -> None:
        with self._lock:
            adapters = list(self._providers.values())
            self._providers.clear()
            self._default = None
        for adapter in adapters:
            await adapter.close()


def create_adapter(provider: ProviderConfig, config: CodeForgeConfig) -> BaseModelAdapter:
    api_key = config.get_provider_api_key(provider) or ""

    if provider.type == "anthropic":
        from codeforge.models.anthropic import DEFAULT_TOKEN_LIMIT, AnthropicAdapter
        if not api_key:
            raise ValueError(
                f"API key not set for provider '{provider.name}'. Set {provider.api_key_env} in .env"
            )
        kwargs = {"model_name": provider.model} if provider.model else {}
        return AnthropicAdapter(
            api_key=api_key,
            base_url=provider.base_url,
            token_limit=provider.token_limit or DEFAULT_TOKEN_LIMIT,
            models=provider.models or None,
            timeout=provider.timeout_seconds,
            **kwargs,
        )

    if provider.type == "ollama":
        from codeforge.models.ollama import DEFAULT_BASE_URL, DEFAULT_TOKEN_LIMIT, OllamaAdapter
        kwargs = {"model_name": provider.model} if provider.model else {}
        return OllamaAdapter(
            base_url=provider.base_url or DEFAULT_BASE_URL,
            token_limit=provider.token_limit or DEFAULT_TOKEN_LIMIT,
            models=provider.models or None,
            timeout=provider.timeout_seconds,
            **kwargs,
        )

    # Any OpenAI-compatible provider (openai, groq, openrouter, etc.)
    from codeforge.models.openai_compat import DEFAULT_TOKEN_LIMIT, OpenAICompatAdapter
    base_url = provider.base_url or _PROVIDER_DEFAULTS.get(provider.type)
    if not base_url:
        raise ValueError(f"provider '{provider.name}' of type {provider.type} needs a base_url")
    kwargs = {"model_name": provider.model} if provider.model else {}
    return OpenAICompatAdapter(
        name=provider.name,
        base_url=base_url,
        api_key=api_key or "no-key",
        token_limit=provider.token_limit or DEFAULT_TOKEN_LIMIT,
        models=provider.models or None,
        timeout=provider.timeout_seconds,
        **kwargs,
    )


def build_registry(config: CodeForgeConfig) -> ProviderRegistry:
    """Create and register an adapter for every enabled provider.

    Providers that cannot be created (e.g. a missing API key) are skipped
    with a warning so the rest remain usable.
    """
    registry = ProviderRegistry()
    for provider in config.providers:
        if not provider.enabled:
            continue
        try:
            adapter = create_adapter(provider, config)
        except ValueError as e:
            logger.warning("Skipping provider %s: %s", provider.name, e)
            continue
        registry.register(provider.name, adapter)

    if config.default_provider in registry.names():
        registry.set_default(config.default_provider)
    elif registry.default is not None:
        logger.warning(
            "Default provider %s unavailable, using %s",
            config.default_provider,
            registry.default,
        )
    return registry
