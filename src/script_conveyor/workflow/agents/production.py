"""Factory for the agents backed by the configured text-generation providers."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ...config import ServiceConfig
from ...providers.registry import ProviderRegistry
from .base import EditorAgent, ScriptwriterAgent
from .dummy import create_dummy_agents
from .editor import LLMEditorAgent
from .scriptwriter import LLMScriptwriterAgent

LOGGER = logging.getLogger(__name__)


def create_production_agents(
    config: ServiceConfig, registry: Optional[ProviderRegistry] = None
) -> Tuple[ScriptwriterAgent, EditorAgent]:
    """Build the agent pair selected by ``config.agents.backend``."""

    if config.agents.backend == "dummy":
        LOGGER.warning("Using dummy agents; no provider will be called")
        return create_dummy_agents()

    registry = registry or ProviderRegistry(config)
    if not any(registry.is_configured(name) for name in ("openai", "deepseek")):
        LOGGER.warning(
            "No provider credentials configured; every generation will fail until one is added"
        )
    return LLMScriptwriterAgent(registry), LLMEditorAgent(registry)


__all__ = ["create_production_agents"]
