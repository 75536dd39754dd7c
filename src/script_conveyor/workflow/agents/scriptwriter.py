"""Scriptwriter agent: turns source content into an ordered list of scenes."""

from __future__ import annotations

import logging
from typing import Any, List

from ..models import CommentType, Review, Scene, ScriptVersion, Usage
from .base import (
    AgentValidationError,
    LLMAgent,
    ScriptwriterInput,
    require_number,
)

LOGGER = logging.getLogger(__name__)

MAX_PROMPT_EXAMPLES = 5
EXPECTED_SCENE_RANGE = range(3, 9)

COMMENT_LABELS = {
    CommentType.POSITIVE: "Keep",
    CommentType.NEGATIVE: "Fix",
    CommentType.SUGGESTION: "Suggestion",
    CommentType.INFO: "Note",
}

FORMALITY_DESCRIPTIONS = {
    "formal": "formal, professional, businesslike",
    "conversational": "conversational, as if telling a friend",
    "casual": "casual and relaxed, light slang is fine",
}

TONE_DESCRIPTIONS = {
    "serious": "serious and informative, no jokes",
    "engaging": "engaging, with emotional triggers",
    "funny": "humorous, with jokes and irony",
    "motivational": "motivating, inspiring and energetic",
}

LANGUAGE_INSTRUCTIONS = {
    "en": "Write the script in English.",
    "ru": "Write the script in Russian.",
}


class LLMScriptwriterAgent(LLMAgent):
    """Drafts short-form video scripts, revising them from Editor feedback."""

    name = "Scriptwriter"
    max_tokens = 3072

    async def process(self, data: ScriptwriterInput) -> ScriptVersion:
        LOGGER.info(
            "[%s] Drafting version %s for %r", self.name, data.version, data.content.title
        )
        payload, usage = await self._call(
            data.settings,
            build_system_prompt(data),
            build_user_prompt(data),
            on_thinking=data.on_thinking,
            correction=data.correction,
        )
        version = parse_script_version(payload, usage)
        LOGGER.info(
            "[%s] Drafted %s scenes, %ss total",
            self.name,
            len(version.scenes),
            version.total_duration,
        )
        return version


def build_system_prompt(data: ScriptwriterInput) -> str:
    settings = data.settings
    min_duration = settings.duration_range.min
    max_duration = settings.duration_range.max
    style = settings.style
    formality = FORMALITY_DESCRIPTIONS.get(style.formality, FORMALITY_DESCRIPTIONS["conversational"])
    tone = TONE_DESCRIPTIONS.get(style.tone, TONE_DESCRIPTIONS["engaging"])
    language = LANGUAGE_INSTRUCTIONS.get(style.language, f"Write the script in {style.language}.")

    prompt = f"""You are a professional scriptwriter for short viral social-media videos.

TASK:
Write a script for a short video ({min_duration}-{max_duration} seconds) based on the content below.
{language}

OUTPUT FORMAT (strict JSON):
{{
  "scenes": [
    {{
      "number": 1,
      "text": "Narration for this scene",
      "visual": "What the viewer sees during this scene",
      "duration": 5
    }}
  ],
  "totalDuration": {round((min_duration + max_duration) / 2)}
}}

SCRIPT REQUIREMENTS:
1. Hook (first 3 seconds) that grabs attention
2. Context: briefly explain what this is about
3. Body: unpack the topic with facts
4. Twist or insight: an unexpected angle or fact
5. CTA: a call to action (follow, comment)
6. Total duration between {min_duration} and {max_duration} seconds
7. Number scenes consecutively starting at 1; every duration is a positive number of seconds

STYLE AND TONE:
- {formality}
- {tone}
- Short sentences (15 words at most)
- Concrete numbers and facts"""

    if settings.scriptwriter_prompt.strip():
        prompt += f"\n\nADDITIONAL REQUIREMENTS:\n{settings.scriptwriter_prompt.strip()}"

    if data.avoid_instructions:
        lines = "\n".join(f"- {instruction}" for instruction in data.avoid_instructions)
        prompt += f"\n\nMUST AVOID (the reviewer rejected scripts for this before):\n{lines}"

    examples = [example for example in settings.examples if example.content.strip()]
    if examples:
        prompt += "\n\nEXAMPLES OF GOOD SCRIPTS:\n"
        for index, example in enumerate(examples[:MAX_PROMPT_EXAMPLES], start=1):
            heading = f"Example {index}"
            if example.title:
                heading += f" ({example.title})"
            prompt += f"\n{heading}:\n{example.content.strip()}\n"

    return prompt


def build_user_prompt(data: ScriptwriterInput) -> str:
    content = data.content
    prompt = (
        "CONTENT:\n"
        f"Title: {content.title}\n"
        f"Body: {content.body or 'No body text'}"
    )
    if data.previous_review is not None and data.version > 1:
        prompt += "\n\n" + format_feedback(data.previous_review, data.version)
    return prompt


def format_feedback(review: Review, version: int) -> str:
    """Restate the Editor's comments so the next draft can address them."""

    lines = [
        f"IMPORTANT: This is version {version}. Address the editor's feedback:",
        review.overall_comment or "No overall comment",
        "",
        "Scene-by-scene notes:",
    ]
    for scene_comment in sorted(review.scene_comments, key=lambda item: item.scene_number):
        if not scene_comment.comments:
            continue
        lines.append("")
        lines.append(f"Scene {scene_comment.scene_number}:")
        for comment in scene_comment.comments:
            lines.append(f"{COMMENT_LABELS[comment.type]}: {comment.text}")
    return "\n".join(lines)


def parse_script_version(payload: Any, usage: Usage = Usage()) -> ScriptVersion:
    """Validate the model's JSON and convert it into a ``ScriptVersion``."""

    if not isinstance(payload, dict):
        raise AgentValidationError("Script output must be a JSON object")
    scenes_payload = payload.get("scenes")
    if not isinstance(scenes_payload, list) or not scenes_payload:
        raise AgentValidationError("Script output must contain a non-empty 'scenes' list")

    scenes: List[Scene] = []
    for index, item in enumerate(scenes_payload, start=1):
        if not isinstance(item, dict):
            raise AgentValidationError(f"Scene {index}: expected an object")
        number = item.get("number")
        if not require_number(number) or int(number) != number:
            raise AgentValidationError(f"Scene {index}: 'number' must be an integer")
        text = item.get("text")
        if not isinstance(text, str) or not text.strip():
            raise AgentValidationError(f"Scene {index}: 'text' must be a non-empty string")
        visual = item.get("visual")
        if not isinstance(visual, str) or not visual.strip():
            raise AgentValidationError(f"Scene {index}: 'visual' must be a non-empty string")
        duration = item.get("duration")
        if not require_number(duration) or duration <= 0:
            raise AgentValidationError(f"Scene {index}: 'duration' must be a positive number")
        scenes.append(
            Scene(
                number=int(number),
                text=text.strip(),
                visual=visual.strip(),
                duration=float(duration),
            )
        )

    scenes.sort(key=lambda scene: scene.number)
    expected = list(range(1, len(scenes) + 1))
    if [scene.number for scene in scenes] != expected:
        raise AgentValidationError(
            "Scene numbers must be contiguous starting at 1, got "
            + ", ".join(str(scene.number) for scene in scenes)
        )

    if len(scenes) not in EXPECTED_SCENE_RANGE:
        LOGGER.warning("Unusual scene count: %s", len(scenes))

    total = payload.get("totalDuration")
    if total is None:
        total_duration = sum(scene.duration for scene in scenes)
    elif require_number(total) and total > 0:
        total_duration = float(total)
    else:
        raise AgentValidationError("'totalDuration' must be a positive number")

    return ScriptVersion(scenes=scenes, total_duration=total_duration, usage=usage)


__all__ = [
    "COMMENT_LABELS",
    "LLMScriptwriterAgent",
    "MAX_PROMPT_EXAMPLES",
    "build_system_prompt",
    "build_user_prompt",
    "format_feedback",
    "parse_script_version",
]
