"""Reading and updating per-tenant AI and conveyor settings."""

from __future__ import annotations

import logging
from dataclasses import fields
from typing import Any, Dict, Mapping

from ..config import SUPPORTED_PROVIDERS, ConfigurationError
from ..storage.repository import CONVEYOR_CONFIG_FIELDS, ConveyorRepository
from ..workflow.agents.scriptwriter import FORMALITY_DESCRIPTIONS, TONE_DESCRIPTIONS
from ..workflow.models import (
    AISettings,
    ConveyorSettings,
    DurationRange,
    StyleExample,
    StylePreferences,
)

LOGGER = logging.getLogger(__name__)

AI_FIELDS = frozenset(item.name for item in fields(AISettings))
MAX_ITERATIONS_LIMIT = 10


def _merge(base: Dict[str, Any], changes: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _int_in_range(label: str, value: Any, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{label} must be an integer")
    if not low <= value <= high:
        raise ConfigurationError(f"{label} must be between {low} and {high}")
    return value


def ai_settings_from_dict(data: Mapping[str, Any]) -> AISettings:
    """Build validated ``AISettings``; missing keys take their defaults."""

    unknown = set(data) - AI_FIELDS
    if unknown:
        raise ConfigurationError(f"Unknown AI settings: {', '.join(sorted(unknown))}")

    provider = str(data.get("provider", "openai")).strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigurationError(f"provider must be one of: {', '.join(SUPPORTED_PROVIDERS)}")

    style_data = dict(data.get("style") or {})
    try:
        style = StylePreferences(**style_data)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid style preferences: {exc}") from exc
    if style.formality not in FORMALITY_DESCRIPTIONS:
        raise ConfigurationError(f"style.formality must be one of: {', '.join(FORMALITY_DESCRIPTIONS)}")
    if style.tone not in TONE_DESCRIPTIONS:
        raise ConfigurationError(f"style.tone must be one of: {', '.join(TONE_DESCRIPTIONS)}")
    if not isinstance(style.language, str) or not style.language.strip():
        raise ConfigurationError("style.language must not be empty")

    duration_data = dict(data.get("duration_range") or {})
    try:
        duration = DurationRange(**duration_data)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid duration range: {exc}") from exc
    _int_in_range("duration_range.min", duration.min, 1, 600)
    _int_in_range("duration_range.max", duration.max, 1, 600)
    if duration.min > duration.max:
        raise ConfigurationError("duration_range.min must not exceed duration_range.max")

    examples = []
    for index, raw in enumerate(data.get("examples") or []):
        if not isinstance(raw, Mapping) or not isinstance(raw.get("content"), str):
            raise ConfigurationError(f"examples[{index}] must have string content")
        examples.append(StyleExample(content=raw["content"], title=str(raw.get("title") or "")))

    for name in ("scriptwriter_prompt", "editor_prompt"):
        if not isinstance(data.get(name, ""), str):
            raise ConfigurationError(f"{name} must be a string")
    if not isinstance(data.get("auto_escalate", False), bool):
        raise ConfigurationError("auto_escalate must be a boolean")

    return AISettings(
        provider=provider,
        scriptwriter_prompt=data.get("scriptwriter_prompt", ""),
        editor_prompt=data.get("editor_prompt", ""),
        max_iterations=_int_in_range(
            "max_iterations", data.get("max_iterations", 3), 1, MAX_ITERATIONS_LIMIT
        ),
        min_approval_score=_int_in_range(
            "min_approval_score", data.get("min_approval_score", 8), 1, 10
        ),
        auto_escalate=data.get("auto_escalate", False),
        examples=examples,
        style=style,
        duration_range=duration,
    )


def conveyor_changes_from_dict(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate the configurable part of the conveyor settings."""

    unknown = set(data) - CONVEYOR_CONFIG_FIELDS
    if unknown:
        raise ConfigurationError(
            f"Conveyor settings cannot be changed here: {', '.join(sorted(unknown))}"
        )

    changes: Dict[str, Any] = {}
    if "enabled" in data:
        if not isinstance(data["enabled"], bool):
            raise ConfigurationError("enabled must be a boolean")
        changes["enabled"] = data["enabled"]
    if "daily_limit" in data:
        changes["daily_limit"] = _int_in_range("daily_limit", data["daily_limit"], 0, 1000)
    if "monthly_budget_limit" in data:
        budget = data["monthly_budget_limit"]
        if isinstance(budget, bool) or not isinstance(budget, (int, float)) or budget < 0:
            raise ConfigurationError("monthly_budget_limit must be a non-negative number")
        changes["monthly_budget_limit"] = float(budget)
    if "min_score_threshold" in data:
        changes["min_score_threshold"] = _int_in_range(
            "min_score_threshold", data["min_score_threshold"], 0, 100
        )
    if "learned_threshold" in data:
        learned = data["learned_threshold"]
        changes["learned_threshold"] = (
            None if learned is None else _int_in_range("learned_threshold", learned, 0, 100)
        )
    if "max_age_days" in data:
        max_age = data["max_age_days"]
        changes["max_age_days"] = (
            None if max_age is None else _int_in_range("max_age_days", max_age, 1, 3650)
        )
    if "avoided_topics" in data:
        topics = data["avoided_topics"]
        if not isinstance(topics, list) or not all(isinstance(topic, str) for topic in topics):
            raise ConfigurationError("avoided_topics must be a list of strings")
        changes["avoided_topics"] = [topic.strip() for topic in topics if topic.strip()]
    return changes


class SettingsService:
    """PUT-style replacement and PATCH-style merging of tenant settings."""

    def __init__(self, repository: ConveyorRepository) -> None:
        self.repository = repository

    async def get_ai_settings(self, user_id: str) -> AISettings:
        return await self.repository.get_ai_settings(user_id)

    async def replace_ai_settings(self, user_id: str, data: Mapping[str, Any]) -> AISettings:
        settings = ai_settings_from_dict(data)
        LOGGER.info("AI settings replaced for user %s", user_id)
        return await self.repository.save_ai_settings(user_id, settings)

    async def merge_ai_settings(self, user_id: str, data: Mapping[str, Any]) -> AISettings:
        current = await self.repository.get_ai_settings(user_id)
        settings = ai_settings_from_dict(_merge(current.to_dict(), data))
        LOGGER.info("AI settings updated for user %s: %s", user_id, ", ".join(sorted(data)))
        return await self.repository.save_ai_settings(user_id, settings)

    async def get_conveyor_settings(self, user_id: str) -> ConveyorSettings:
        return await self.repository.get_conveyor_settings(user_id)

    async def replace_conveyor_settings(self, user_id: str, data: Mapping[str, Any]) -> ConveyorSettings:
        defaults = ConveyorSettings()
        document = {name: getattr(defaults, name) for name in CONVEYOR_CONFIG_FIELDS}
        document.update(data)
        changes = conveyor_changes_from_dict(document)
        LOGGER.info("Conveyor settings replaced for user %s", user_id)
        return await self.repository.update_conveyor_settings(user_id, **changes)

    async def merge_conveyor_settings(self, user_id: str, data: Mapping[str, Any]) -> ConveyorSettings:
        changes = conveyor_changes_from_dict(data)
        LOGGER.info("Conveyor settings updated for user %s: %s", user_id, ", ".join(sorted(changes)))
        return await self.repository.update_conveyor_settings(user_id, **changes)


__all__ = [
    "SettingsService",
    "ai_settings_from_dict",
    "conveyor_changes_from_dict",
]
