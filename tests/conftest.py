from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence, Union

import pytest

from script_conveyor.config import RetrySettings
from script_conveyor.providers.base import Completion
from script_conveyor.services.event_stream import EventStream
from script_conveyor.storage.repository import InMemoryRepository
from script_conveyor.workflow.models import (
    Comment,
    CommentType,
    ContentItem,
    ContentStatus,
    Review,
    Scene,
    SceneComment,
    ScriptVersion,
    Usage,
    Verdict,
)
from script_conveyor.workflow.orchestrator import IterationController

NOW = datetime(2024, 5, 14, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeProvider:
    """Returns scripted completions; exceptions in the script are raised."""

    name = "fake"

    def __init__(self, responses: Sequence[Union[str, Exception]], thinking: Optional[str] = None) -> None:
        self.responses = list(responses)
        self.thinking = thinking
        self.calls: List[dict] = []

    async def complete(self, system_prompt, user_prompt, *, max_tokens, on_thinking=None) -> Completion:
        self.calls.append(
            {"system": system_prompt, "user": user_prompt, "max_tokens": max_tokens}
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if self.thinking and on_thinking is not None:
            on_thinking(self.thinking)
        return Completion(
            text=response,
            provider=self.name,
            model="fake-model",
            input_tokens=120,
            output_tokens=80,
            cost_usd=0.002,
        )


def make_version(scene_count: int = 4, cost: float = 0.01) -> ScriptVersion:
    scenes = [
        Scene(number=index, text=f"Line {index}", visual=f"Shot {index}", duration=8.0)
        for index in range(1, scene_count + 1)
    ]
    return ScriptVersion(
        scenes=scenes,
        total_duration=8.0 * scene_count,
        usage=Usage(input_tokens=100, output_tokens=200, cost_usd=cost),
    )


def make_review(verdict: Verdict, score: int, cost: float = 0.01) -> Review:
    return Review(
        overall_score=score,
        overall_comment=f"{verdict.value} at {score}",
        verdict=verdict,
        scene_comments=[
            SceneComment(
                scene_number=1,
                comments=[Comment(type=CommentType.NEGATIVE, text="Hook is too slow")],
            )
        ],
        usage=Usage(input_tokens=50, output_tokens=60, cost_usd=cost),
    )


def script_payload(scene_count: int = 4) -> str:
    return json.dumps(
        {
            "scenes": [
                {"number": index, "text": f"Line {index}", "visual": f"Shot {index}", "duration": 7}
                for index in range(1, scene_count + 1)
            ],
            "totalDuration": 7 * scene_count,
        }
    )


def review_payload(verdict: str = "approved", score: int = 9) -> str:
    return json.dumps(
        {
            "overallScore": score,
            "overallComment": "Tight and factual",
            "verdict": verdict,
            "sceneComments": [
                {"sceneNumber": 1, "comments": [{"type": "positive", "text": "Strong hook"}]}
            ],
        }
    )


class ScriptedScriptwriter:
    def __init__(self, outcomes: Sequence[Any] = (), ready_error: Optional[Exception] = None) -> None:
        self.outcomes = list(outcomes)
        self.ready_error = ready_error
        self.inputs: List[Any] = []

    def ensure_ready(self, settings) -> None:
        if self.ready_error is not None:
            raise self.ready_error

    async def process(self, data) -> ScriptVersion:
        self.inputs.append(data)
        if data.on_thinking is not None:
            data.on_thinking("drafting")
        outcome = self.outcomes.pop(0) if self.outcomes else make_version()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ScriptedEditor:
    def __init__(self, outcomes: Sequence[Any] = ()) -> None:
        self.outcomes = list(outcomes)
        self.inputs: List[Any] = []
        self.on_process = None

    def ensure_ready(self, settings) -> None:
        return None

    async def process(self, data) -> Review:
        self.inputs.append(data)
        if self.on_process is not None:
            await self.on_process(data)
        outcome = self.outcomes.pop(0) if self.outcomes else make_review(Verdict.APPROVED, 9)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, tuple):
            return make_review(*outcome)
        return outcome


def make_item(
    item_id: str = "item-1",
    user_id: str = "u1",
    score: Optional[int] = 80,
    status: ContentStatus = ContentStatus.SCORED,
    title: str = "City opens a floating solar farm",
    published_at: Optional[datetime] = None,
) -> ContentItem:
    return ContentItem(
        id=item_id,
        user_id=user_id,
        title=title,
        body="The farm powers four thousand homes.",
        source="Local Herald",
        published_at=published_at or NOW - timedelta(hours=2),
        status=status,
        score=score,
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def repository(clock: Clock) -> InMemoryRepository:
    return InMemoryRepository(clock=clock)


@pytest.fixture
def events() -> EventStream:
    return EventStream()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def build_controller(repository, events, sleep):
    def factory(scriptwriter=None, editor=None, retry: Optional[RetrySettings] = None) -> IterationController:
        return IterationController(
            repository,
            scriptwriter or ScriptedScriptwriter(),
            editor or ScriptedEditor(),
            events,
            retry or RetrySettings(transport_attempts=3, backoff_seconds=1.0),
            sleep=sleep,
        )

    return factory
