"""Deterministic placeholder agents used for local development and testing."""

from __future__ import annotations

from collections import OrderedDict
from typing import Optional, Sequence, Tuple

from ..models import (
    AISettings,
    Comment,
    CommentType,
    Review,
    Scene,
    SceneComment,
    ScriptVersion,
    Verdict,
)
from .base import EditorInput, ScriptwriterInput

MAX_TRACKED_ITEMS = 1000

DEFAULT_REVIEW_PLAN: Tuple[Tuple[Verdict, int], ...] = (
    (Verdict.NEEDS_REVISION, 6),
    (Verdict.APPROVED, 9),
)


class DummyScriptwriterAgent:
    """Produces a fixed four-scene script built around the content title."""

    def ensure_ready(self, settings: AISettings) -> None:
        return None

    async def process(self, data: ScriptwriterInput) -> ScriptVersion:
        title = data.content.title
        if data.on_thinking is not None:
            data.on_thinking(f"Looking for the hook in {title!r}")
        beats = [
            (f"Stop scrolling: {title}.", "Bold headline over a fast zoom", 4.0),
            ("Here is what actually happened.", "Archive footage with captions", 12.0),
            ("And this is the part nobody mentions.", "Close-up with a highlighted number", 10.0),
            ("Follow for the next update.", "Channel logo with subscribe prompt", 4.0),
        ]
        if data.version > 1:
            beats[0] = (f"Version {data.version}: {title}, in thirty seconds.", beats[0][1], beats[0][2])
        scenes = [
            Scene(number=index, text=text, visual=visual, duration=duration)
            for index, (text, visual, duration) in enumerate(beats, start=1)
        ]
        return ScriptVersion(scenes=scenes, total_duration=sum(scene.duration for scene in scenes))


class DummyEditorAgent:
    """Walks through a fixed verdict plan, one entry per review of an item."""

    def __init__(self, plan: Optional[Sequence[Tuple[Verdict, int]]] = None) -> None:
        self._plan = tuple(plan or DEFAULT_REVIEW_PLAN)
        self._reviews: "OrderedDict[str, int]" = OrderedDict()

    def ensure_ready(self, settings: AISettings) -> None:
        return None

    async def process(self, data: EditorInput) -> Review:
        count = self._reviews.pop(data.content.id, 0)
        self._reviews[data.content.id] = count + 1
        while len(self._reviews) > MAX_TRACKED_ITEMS:
            self._reviews.popitem(last=False)
        verdict, score = self._plan[min(count, len(self._plan) - 1)]
        if data.on_thinking is not None:
            data.on_thinking("Checking the hook against the source facts")
        first_scene = data.script_version.scenes[0].number
        comment_type = CommentType.POSITIVE if verdict is Verdict.APPROVED else CommentType.NEGATIVE
        return Review(
            overall_score=score,
            overall_comment=f"Draft scored {score}/10.",
            verdict=verdict,
            scene_comments=[
                SceneComment(
                    scene_number=first_scene,
                    comments=[Comment(type=comment_type, text="Opening line sets the pace.")],
                )
            ],
        )


def create_dummy_agents(plan: Optional[Sequence[Tuple[Verdict, int]]] = None):
    """Factory returning a scriptwriter/editor pair that never calls a provider."""

    return DummyScriptwriterAgent(), DummyEditorAgent(plan)


__all__ = ["DummyEditorAgent", "DummyScriptwriterAgent", "create_dummy_agents"]
