from __future__ import annotations

import pytest

from script_conveyor.config import ConfigurationError
from script_conveyor.services.settings import SettingsService, ai_settings_from_dict


def test_missing_fields_take_defaults() -> None:
    settings = ai_settings_from_dict({"provider": "DeepSeek", "max_iterations": 5})

    assert settings.provider == "deepseek"
    assert settings.max_iterations == 5
    assert settings.min_approval_score == 8
    assert settings.duration_range.min == 30


@pytest.mark.parametrize(
    "document",
    [
        {"provider": "anthropic"},
        {"max_iterations": 0},
        {"max_iterations": 11},
        {"min_approval_score": "8"},
        {"duration_range": {"min": 90, "max": 30}},
        {"style": {"tone": "sarcastic"}},
        {"examples": [{"title": "no content"}]},
        {"unknown": True},
    ],
)
def test_invalid_ai_settings_are_rejected(document) -> None:
    with pytest.raises(ConfigurationError):
        ai_settings_from_dict(document)


@pytest.mark.asyncio
async def test_merge_keeps_unmentioned_fields(repository) -> None:
    service = SettingsService(repository)
    await service.replace_ai_settings(
        "u1", {"editor_prompt": "Be strict", "style": {"tone": "funny", "language": "ru"}}
    )

    merged = await service.merge_ai_settings("u1", {"style": {"tone": "serious"}, "auto_escalate": True})

    assert merged.editor_prompt == "Be strict"
    assert merged.style.tone == "serious"
    assert merged.style.language == "ru"
    assert merged.auto_escalate is True


@pytest.mark.asyncio
async def test_replace_resets_unmentioned_fields(repository) -> None:
    service = SettingsService(repository)
    await service.merge_ai_settings("u1", {"editor_prompt": "Be strict"})

    replaced = await service.replace_ai_settings("u1", {"max_iterations": 2})

    assert replaced.editor_prompt == ""
    assert replaced.max_iterations == 2


@pytest.mark.asyncio
async def test_conveyor_counters_are_read_only(repository) -> None:
    service = SettingsService(repository)

    with pytest.raises(ConfigurationError):
        await service.merge_conveyor_settings("u1", {"items_processed_today": 0})
    with pytest.raises(ConfigurationError):
        await service.merge_conveyor_settings("u1", {"rejection_patterns": {"no_hook": 9}})


@pytest.mark.asyncio
async def test_conveyor_merge_and_replace(repository) -> None:
    service = SettingsService(repository)
    await repository.reserve_slot("u1")

    merged = await service.merge_conveyor_settings("u1", {"daily_limit": 4, "avoided_topics": [" crypto ", ""]})
    assert merged.daily_limit == 4
    assert merged.avoided_topics == ["crypto"]
    assert merged.items_in_flight == 1

    replaced = await service.replace_conveyor_settings("u1", {"min_score_threshold": 80})
    assert replaced.daily_limit == 10
    assert replaced.min_score_threshold == 80
    assert replaced.items_in_flight == 1

    with pytest.raises(ConfigurationError):
        await service.merge_conveyor_settings("u1", {"monthly_budget_limit": -1})
