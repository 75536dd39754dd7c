"""Selects a text-generation provider by its configured name."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from ..config import SUPPORTED_PROVIDERS, ConfigurationError, ServiceConfig
from .base import TextProvider

LOGGER = logging.getLogger(__name__)


class ProviderRegistry:
    """Builds provider clients on first use and caches them per name."""

    def __init__(self, config: ServiceConfig, providers: Optional[Dict[str, TextProvider]] = None) -> None:
        self._config = config
        self._providers: Dict[str, TextProvider] = dict(providers or {})

    def is_configured(self, name: str) -> bool:
        if name in self._providers:
            return True
        return getattr(self._config, name, None) is not None and name in SUPPORTED_PROVIDERS

    def ensure_configured(self, name: str) -> None:
        """Fail fast when ``name`` is unknown or has no credentials."""

        if name in self._providers:
            return
        if name not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(f"Unknown text generation provider: {name!r}")
        if getattr(self._config, name, None) is None:
            raise ConfigurationError(f"Provider {name!r} has no credentials configured")

    def get(self, name: str) -> TextProvider:
        self.ensure_configured(name)
        provider = self._providers.get(name)
        if provider is not None:
            return provider
        if name == "openai":
            from .openai_client import OpenAITextProvider

            provider = OpenAITextProvider(self._config.openai)  # type: ignore[arg-type]
        else:
            from .deepseek_client import DeepSeekTextProvider

            provider = DeepSeekTextProvider(self._config.deepseek)  # type: ignore[arg-type]
        LOGGER.info("Initialised %s text provider", name)
        self._providers[name] = provider
        return provider

    async def aclose(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()


__all__ = ["ProviderRegistry"]
