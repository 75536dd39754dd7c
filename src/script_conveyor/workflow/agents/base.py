"""Interfaces and shared plumbing for the Scriptwriter and Editor agents."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Tuple

from ...providers.base import ThinkingCallback
from ...providers.registry import ProviderRegistry
from ..models import AISettings, ContentItem, Review, ScriptVersion, Usage

LOGGER = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_JSON_BLOCK_RE = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")


class AgentValidationError(ValueError):
    """Raised when model output violates the agent's output contract."""


class AgentOutputError(AgentValidationError):
    """Raised when model output cannot be decoded as JSON at all."""


@dataclass
class ScriptwriterInput:
    content: ContentItem
    settings: AISettings
    version: int = 1
    previous_review: Optional[Review] = None
    on_thinking: Optional[ThinkingCallback] = None
    correction: Optional[str] = None
    avoid_instructions: List[str] = field(default_factory=list)


@dataclass
class EditorInput:
    content: ContentItem
    script_version: ScriptVersion
    settings: AISettings
    on_thinking: Optional[ThinkingCallback] = None
    correction: Optional[str] = None


class ScriptwriterAgent(Protocol):
    """Drafts the scenes of a short video from source content."""

    def ensure_ready(self, settings: AISettings) -> None:
        """Raise ``ConfigurationError`` if the agent cannot run with ``settings``."""

    async def process(self, data: ScriptwriterInput) -> ScriptVersion:
        """Produce a validated script version."""


class EditorAgent(Protocol):
    """Scores a script version and comments on its scenes."""

    def ensure_ready(self, settings: AISettings) -> None:
        """Raise ``ConfigurationError`` if the agent cannot run with ``settings``."""

    async def process(self, data: EditorInput) -> Review:
        """Produce a validated review."""


def parse_json_payload(text: str) -> Any:
    """Decode a JSON document from a model reply.

    Markdown code fences are stripped, and when the reply wraps the document
    in prose the outermost object or array is used.
    """

    candidate = (text or "").strip()
    if candidate.startswith("```"):
        candidate = _FENCE_RE.sub("", candidate).strip()
    if not candidate.startswith(("{", "[")):
        match = _JSON_BLOCK_RE.search(candidate)
        if match:
            candidate = match.group(1)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise AgentOutputError(
            f"Could not decode JSON from model reply: {exc.msg} (reply starts with {text[:80]!r})"
        ) from exc


def schema_reminder(error: Exception) -> str:
    return (
        f"Your previous reply was rejected: {error}. "
        "Reply with one JSON object that follows the required output format exactly, "
        "with no commentary before or after it."
    )


def require_number(value: Any) -> bool:
    """True for finite ints and floats; json.loads lets NaN and Infinity through."""

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not isinstance(value, float) or math.isfinite(value)


class LLMAgent:
    """Base class for agents that call a text-generation provider."""

    name = "Agent"
    max_tokens = 2048

    def __init__(self, registry: ProviderRegistry, *, max_tokens: Optional[int] = None) -> None:
        self._registry = registry
        if max_tokens is not None:
            self.max_tokens = max_tokens

    def ensure_ready(self, settings: AISettings) -> None:
        self._registry.ensure_configured(settings.provider)

    async def _call(
        self,
        settings: AISettings,
        system_prompt: str,
        user_prompt: str,
        on_thinking: Optional[ThinkingCallback] = None,
        correction: Optional[str] = None,
    ) -> Tuple[Any, Usage]:
        if correction:
            user_prompt = f"{user_prompt}\n\nIMPORTANT: {correction}"
        provider = self._registry.get(settings.provider)
        LOGGER.info("[%s] Calling %s provider", self.name, provider.name)
        completion = await provider.complete(
            system_prompt,
            user_prompt,
            max_tokens=self.max_tokens,
            on_thinking=on_thinking,
        )
        usage = Usage(
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            cost_usd=completion.cost_usd,
        )
        return parse_json_payload(completion.text), usage


__all__ = [
    "AgentOutputError",
    "AgentValidationError",
    "EditorAgent",
    "EditorInput",
    "LLMAgent",
    "ScriptwriterAgent",
    "ScriptwriterInput",
    "parse_json_payload",
    "require_number",
    "schema_reminder",
]
