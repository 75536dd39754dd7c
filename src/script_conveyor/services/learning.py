"""Adjusts a tenant's selection threshold, avoided topics and rejection patterns from human reviews."""

from __future__ import annotations

import logging
from typing import List, Optional

from ..storage.repository import ConveyorRepository, NotFoundError
from ..workflow.models import ConveyorSettings, Script

LOGGER = logging.getLogger(__name__)

LEARNING_MIN_HISTORY = 10
LEARNED_THRESHOLD_FLOOR = 60
LEARNED_THRESHOLD_CEILING = 90
BORDERLINE_SCORE = 75

REJECTION_CATEGORIES = frozenset(
    {
        "too_long",
        "too_short",
        "boring_intro",
        "weak_cta",
        "too_formal",
        "too_casual",
        "boring_topic",
        "wrong_tone",
        "no_hook",
        "too_complex",
        "off_topic",
        "other",
    }
)

# What the scriptwriter is told once a category keeps coming back.
CATEGORY_INSTRUCTIONS = {
    "too_long": "Keep the script under 60 seconds",
    "too_short": "Make the script at least 45 seconds long",
    "boring_intro": "Open with a provocation, a question or a shock",
    "weak_cta": "End with a strong call to action",
    "too_formal": "Write conversationally, like talking to a friend",
    "too_casual": "Add expertise and concrete facts",
    "boring_topic": "Find a more interesting angle on the story",
    "wrong_tone": "Use the tone that fits the audience",
    "no_hook": "The first 5 seconds must grab attention",
    "too_complex": "Simplify, explain it as you would to a 12-year-old",
    "off_topic": "Stick strictly to the subject of the article",
    "other": "",
}
REPEATED_REJECTION_MIN = 2


def effective_threshold(settings: ConveyorSettings) -> int:
    """Minimum item score the scheduler accepts for ``settings``."""

    decided = settings.total_approved + settings.total_rejected
    if settings.learned_threshold is not None and decided >= LEARNING_MIN_HISTORY:
        return settings.learned_threshold
    return settings.min_score_threshold


def rejection_instructions(settings: ConveyorSettings) -> List[str]:
    """Instructions for the categories a reviewer rejected at least twice."""

    return [
        CATEGORY_INSTRUCTIONS[category]
        for category, count in sorted(settings.rejection_patterns.items())
        if count >= REPEATED_REJECTION_MIN and CATEGORY_INSTRUCTIONS.get(category)
    ]


class LearningService:
    def __init__(self, repository: ConveyorRepository) -> None:
        self.repository = repository

    async def record_outcome(
        self,
        user_id: str,
        script: Script,
        approved: bool,
        category: Optional[str] = None,
    ) -> ConveyorSettings:
        """Count a human decision and nudge the learned threshold.

        The approval rate used for the adjustment is the one before this
        decision is counted.
        """

        before = await self.repository.get_conveyor_settings(user_id)
        settings = await self.repository.record_decision(user_id, approved, category)
        current = before.learned_threshold
        if current is None:
            current = before.min_score_threshold

        changes = {}
        if approved:
            rate = before.approval_rate or 0.0
            score = await self._item_score(script)
            if score is not None and score < BORDERLINE_SCORE and rate > 0.8:
                changes["learned_threshold"] = max(current - 2, LEARNED_THRESHOLD_FLOOR)
        else:
            rate = before.approval_rate if before.approval_rate is not None else 0.5
            if category == "boring_topic" and script.title and script.title not in settings.avoided_topics:
                changes["avoided_topics"] = settings.avoided_topics + [script.title]
                LOGGER.info("User %s now avoids topic %r", user_id, script.title)
            if rate < 0.5:
                changes["learned_threshold"] = min(current + 5, LEARNED_THRESHOLD_CEILING)

        if "learned_threshold" in changes:
            LOGGER.info(
                "Learned threshold for user %s: %s -> %s",
                user_id,
                current,
                changes["learned_threshold"],
            )
        if changes:
            settings = await self.repository.update_conveyor_settings(user_id, **changes)
        return settings

    async def reset(self, user_id: str) -> ConveyorSettings:
        LOGGER.info("Resetting learned data for user %s", user_id)
        return await self.repository.update_conveyor_settings(
            user_id, learned_threshold=None, avoided_topics=[], rejection_patterns={}
        )

    async def _item_score(self, script: Script) -> Optional[int]:
        try:
            item = await self.repository.get_content_item(script.content_item_id)
        except NotFoundError:
            return None
        return item.score


__all__ = [
    "CATEGORY_INSTRUCTIONS",
    "LEARNING_MIN_HISTORY",
    "LearningService",
    "REJECTION_CATEGORIES",
    "effective_threshold",
    "rejection_instructions",
]
