"""Text-generation providers used by the conveyor agents.

The provider implementations rely on third-party SDKs. Importing them eagerly
when :mod:`script_conveyor.providers` is loaded would pull the OpenAI SDK into
every process that only needs the transport contract (for example the unit
tests driving the agents with scripted providers).  The provider classes are
therefore exposed via ``__getattr__`` and only imported when requested.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

from .base import Completion, ProviderTransportError, TextProvider, ThinkingCallback

__all__ = [
    "Completion",
    "DeepSeekTextProvider",
    "OpenAITextProvider",
    "ProviderRegistry",
    "ProviderTransportError",
    "TextProvider",
    "ThinkingCallback",
]


if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .deepseek_client import DeepSeekTextProvider as DeepSeekTextProvider
    from .openai_client import OpenAITextProvider as OpenAITextProvider
    from .registry import ProviderRegistry as ProviderRegistry


_MODULE_MAP = {
    "OpenAITextProvider": "openai_client",
    "DeepSeekTextProvider": "deepseek_client",
    "ProviderRegistry": "registry",
}


def __getattr__(name: str) -> Any:  # pragma: no cover - thin wrapper
    try:
        module_name = _MODULE_MAP[name]
    except KeyError as exc:
        raise AttributeError(
            f"module 'script_conveyor.providers' has no attribute {name!r}"
        ) from exc

    module = import_module(f"{__name__}.{module_name}")
    return getattr(module, name)
