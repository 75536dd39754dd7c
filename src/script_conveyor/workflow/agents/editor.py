"""Editor agent: scores a script draft and critiques it scene by scene."""

from __future__ import annotations

import logging
from typing import Any, List

from ..models import (
    Comment,
    CommentType,
    Review,
    SceneComment,
    ScriptVersion,
    Usage,
    Verdict,
)
from .base import AgentValidationError, EditorInput, LLMAgent, require_number

LOGGER = logging.getLogger(__name__)

EDITOR_SYSTEM_PROMPT = """You are a strict editor of viral short-form content. Assess the script and give constructive criticism.

TASK:
Analyse the script and score it on a 1-10 scale.

OUTPUT FORMAT (strict JSON):
{
  "overallScore": 8,
  "overallComment": "Overall comment on the script",
  "verdict": "approved",
  "sceneComments": [
    {
      "sceneNumber": 1,
      "comments": [
        {"type": "positive", "text": "A specific comment"}
      ]
    }
  ]
}

SCORING CRITERIA:
1. Hook (0-2 points): does the first scene grab attention?
2. Structure (0-2 points): does it develop logically?
3. Facts (0-2 points): do they match the original content?
4. Emotion (0-2 points): does it provoke a reaction?
5. CTA (0-2 points): is there a call to action?

VERDICT:
- "approved" (8-10): ready for production
- "needs_revision" (5-7): needs work
- "rejected" (1-4): rewrite from scratch

COMMENT TYPES:
- positive: what works, keep it
- negative: what is wrong, must be fixed
- suggestion: an optional improvement
- info: context worth considering

Only reference scene numbers that exist in the script."""


class LLMEditorAgent(LLMAgent):
    """Reviews script drafts against the original content."""

    name = "Editor"
    max_tokens = 2048

    async def process(self, data: EditorInput) -> Review:
        LOGGER.info("[%s] Reviewing script for %r", self.name, data.content.title)
        payload, usage = await self._call(
            data.settings,
            build_system_prompt(data),
            build_user_prompt(data),
            on_thinking=data.on_thinking,
            correction=data.correction,
        )
        review = parse_review(payload, data.script_version, usage)
        LOGGER.info(
            "[%s] Score %s/10, verdict %s",
            self.name,
            review.overall_score,
            review.verdict.value,
        )
        return review


def build_system_prompt(data: EditorInput) -> str:
    custom = data.settings.editor_prompt.strip()
    if custom:
        return f"{EDITOR_SYSTEM_PROMPT}\n\nADDITIONAL REQUIREMENTS:\n{custom}"
    return EDITOR_SYSTEM_PROMPT


def build_user_prompt(data: EditorInput) -> str:
    content = data.content
    lines = [
        "ORIGINAL CONTENT (for fact-checking):",
        f"Title: {content.title}",
        f"Body: {content.body or 'No body text'}",
        "",
        "SCRIPT TO REVIEW:",
        "",
    ]
    for scene in data.script_version.scenes:
        lines.append(f"Scene {scene.number} ({scene.duration:g} sec):")
        lines.append(f"Text: {scene.text}")
        lines.append(f"Visual: {scene.visual}")
        lines.append("")
    lines.append(f"Total duration: {data.script_version.total_duration:g} seconds")
    lines.append("")
    lines.append("Analyse the script and give your assessment.")
    return "\n".join(lines)


def parse_review(payload: Any, script_version: ScriptVersion, usage: Usage = Usage()) -> Review:
    """Validate the model's JSON and convert it into a ``Review``."""

    if not isinstance(payload, dict):
        raise AgentValidationError("Review output must be a JSON object")

    score = payload.get("overallScore")
    if not require_number(score) or int(score) != score or not 1 <= score <= 10:
        raise AgentValidationError("'overallScore' must be an integer from 1 to 10")

    comment = payload.get("overallComment")
    if not isinstance(comment, str) or not comment.strip():
        raise AgentValidationError("'overallComment' must be a non-empty string")

    try:
        verdict = Verdict(payload.get("verdict"))
    except ValueError as exc:
        allowed = ", ".join(item.value for item in Verdict)
        raise AgentValidationError(f"'verdict' must be one of: {allowed}") from exc

    scene_comments_payload = payload.get("sceneComments")
    if not isinstance(scene_comments_payload, list):
        raise AgentValidationError("'sceneComments' must be a list")

    scene_numbers = {scene.number for scene in script_version.scenes}
    scene_comments: List[SceneComment] = []
    for index, item in enumerate(scene_comments_payload):
        if not isinstance(item, dict):
            raise AgentValidationError(f"sceneComments[{index}] must be an object")
        scene_number = item.get("sceneNumber")
        if not require_number(scene_number) or int(scene_number) not in scene_numbers:
            raise AgentValidationError(
                f"sceneComments[{index}]: 'sceneNumber' must reference an existing scene"
            )
        comments_payload = item.get("comments")
        if not isinstance(comments_payload, list):
            raise AgentValidationError(f"sceneComments[{index}]: 'comments' must be a list")
        comments: List[Comment] = []
        for comment_index, raw in enumerate(comments_payload):
            where = f"sceneComments[{index}].comments[{comment_index}]"
            if not isinstance(raw, dict):
                raise AgentValidationError(f"{where} must be an object")
            try:
                comment_type = CommentType(raw.get("type"))
            except ValueError as exc:
                allowed = ", ".join(item.value for item in CommentType)
                raise AgentValidationError(f"{where}: 'type' must be one of: {allowed}") from exc
            text = raw.get("text")
            if not isinstance(text, str) or not text.strip():
                raise AgentValidationError(f"{where}: 'text' must be a non-empty string")
            comments.append(Comment(type=comment_type, text=text.strip()))
        scene_comments.append(SceneComment(scene_number=int(scene_number), comments=comments))

    review = Review(
        overall_score=int(score),
        overall_comment=comment.strip(),
        verdict=verdict,
        scene_comments=scene_comments,
        usage=usage,
    )
    if not review.is_consistent():
        LOGGER.warning(
            "overallScore %s does not match verdict %s",
            review.overall_score,
            review.verdict.value,
        )
    return review


__all__ = [
    "EDITOR_SYSTEM_PROMPT",
    "LLMEditorAgent",
    "build_system_prompt",
    "build_user_prompt",
    "parse_review",
]
