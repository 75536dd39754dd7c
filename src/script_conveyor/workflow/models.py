"""Data models for content items, scripts and their generation history."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentStatus(str, Enum):
    """Lifecycle of an ingested news article or social post."""

    NEW = "new"
    SCORED = "scored"
    SELECTED = "selected"
    USED = "used"
    DISMISSED = "dismissed"


class SourceType(str, Enum):
    NEWS = "news"
    INSTAGRAM = "instagram"


class ScriptStatus(str, Enum):
    """Enumerates the lifecycle of a script generation attempt."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    HUMAN_REVIEW = "human_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class ScriptOutcome(str, Enum):
    """Why a script left the generation loop."""

    APPROVED = "approved"
    ESCALATED = "escalated"
    REJECTED = "rejected"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    TRANSPORT_FAILURE = "transport_failure"
    VALIDATION_FAILURE = "validation_failure"
    CONFIGURATION_ERROR = "configuration_error"
    INTERNAL_ERROR = "internal_error"


class Verdict(str, Enum):
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    REJECTED = "rejected"


class CommentType(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    SUGGESTION = "suggestion"
    INFO = "info"


ALLOWED_TRANSITIONS: Dict[ScriptStatus, frozenset] = {
    ScriptStatus.PENDING: frozenset({ScriptStatus.IN_PROGRESS}),
    ScriptStatus.IN_PROGRESS: frozenset(
        {
            ScriptStatus.COMPLETED,
            ScriptStatus.HUMAN_REVIEW,
            ScriptStatus.REJECTED,
            ScriptStatus.FAILED,
        }
    ),
    ScriptStatus.COMPLETED: frozenset({ScriptStatus.APPROVED, ScriptStatus.HUMAN_REVIEW}),
    ScriptStatus.HUMAN_REVIEW: frozenset({ScriptStatus.APPROVED, ScriptStatus.REJECTED}),
    ScriptStatus.APPROVED: frozenset(),
    ScriptStatus.REJECTED: frozenset(),
    ScriptStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {
        ScriptStatus.HUMAN_REVIEW,
        ScriptStatus.APPROVED,
        ScriptStatus.REJECTED,
        ScriptStatus.FAILED,
    }
)

# Score bands the Editor is asked to follow for each verdict.
VERDICT_SCORE_BANDS: Dict[Verdict, range] = {
    Verdict.APPROVED: range(8, 11),
    Verdict.NEEDS_REVISION: range(5, 8),
    Verdict.REJECTED: range(1, 5),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a script is moved to a status its current status forbids."""


def _convert(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value):
        return {k: _convert(v) for k, v in asdict(value).items()}
    if isinstance(value, (list, tuple)):
        return [_convert(item) for item in value]
    if isinstance(value, dict):
        return {k: _convert(v) for k, v in value.items()}
    return value


class _Serializable:
    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation."""

        return {k: _convert(v) for k, v in asdict(self).items()}  # type: ignore[arg-type]


@dataclass
class ContentItem(_Serializable):
    """A news article or social-media post eligible for script generation."""

    id: str
    user_id: str
    title: str
    body: str = ""
    source_type: SourceType = SourceType.NEWS
    source: str = ""
    published_at: Optional[datetime] = None
    status: ContentStatus = ContentStatus.NEW
    score: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def freshness(self) -> datetime:
        return self.published_at or self.created_at


@dataclass(frozen=True)
class Usage(_Serializable):
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost_usd=round(self.cost_usd + other.cost_usd, 6),
        )


@dataclass(frozen=True)
class Scene(_Serializable):
    """A single scene of a short video script."""

    number: int
    text: str
    visual: str
    duration: float


@dataclass(frozen=True)
class ScriptVersion(_Serializable):
    """The Scriptwriter's output for one iteration."""

    scenes: List[Scene]
    total_duration: float
    usage: Usage = field(default_factory=Usage)

    @property
    def full_text(self) -> str:
        return "\n\n".join(scene.text for scene in self.scenes)


def scenes_to_json(scenes: List[Scene]) -> str:
    """Serialise scenes in the wire format the agents exchange."""

    return json.dumps(
        [
            {
                "number": scene.number,
                "text": scene.text,
                "visual": scene.visual,
                "duration": scene.duration,
            }
            for scene in scenes
        ],
        ensure_ascii=False,
    )


def scenes_from_json(payload: str) -> List[Scene]:
    return [
        Scene(
            number=int(item["number"]),
            text=str(item["text"]),
            visual=str(item["visual"]),
            duration=float(item["duration"]),
        )
        for item in json.loads(payload)
    ]


@dataclass(frozen=True)
class Comment(_Serializable):
    type: CommentType
    text: str


@dataclass(frozen=True)
class SceneComment(_Serializable):
    scene_number: int
    comments: List[Comment] = field(default_factory=list)


@dataclass(frozen=True)
class Review(_Serializable):
    """The Editor's assessment of one script version."""

    overall_score: int
    overall_comment: str
    verdict: Verdict
    scene_comments: List[SceneComment] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)

    def is_consistent(self) -> bool:
        """Whether the score falls in the band expected for the verdict."""

        return self.overall_score in VERDICT_SCORE_BANDS[self.verdict]


@dataclass
class StylePreferences(_Serializable):
    formality: str = "conversational"
    tone: str = "engaging"
    language: str = "en"


@dataclass
class DurationRange(_Serializable):
    min: int = 30
    max: int = 90


@dataclass
class StyleExample(_Serializable):
    content: str
    title: str = ""


@dataclass
class AISettings(_Serializable):
    """Per-tenant generation settings captured at the start of each iteration."""

    provider: str = "openai"
    scriptwriter_prompt: str = ""
    editor_prompt: str = ""
    max_iterations: int = 3
    min_approval_score: int = 8
    auto_escalate: bool = False
    examples: List[StyleExample] = field(default_factory=list)
    style: StylePreferences = field(default_factory=StylePreferences)
    duration_range: DurationRange = field(default_factory=DurationRange)


@dataclass(frozen=True)
class Iteration(_Serializable):
    """One Scriptwriter to Editor round. Never edited after the review lands."""

    version: int
    script_version: ScriptVersion
    review: Optional[Review] = None
    created_at: datetime = field(default_factory=utcnow)
    settings_snapshot: Optional[AISettings] = None


@dataclass
class Script(_Serializable):
    """One full generation attempt for a content item."""

    id: str
    user_id: str
    content_item_id: str
    title: str
    max_iterations: int
    status: ScriptStatus = ScriptStatus.PENDING
    current_iteration: int = 0
    final_score: Optional[int] = None
    outcome: Optional[ScriptOutcome] = None
    error: Optional[str] = None
    total_cost_usd: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: ScriptStatus) -> None:
        """Move the script to ``status`` if the state machine allows it."""

        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Script {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.updated_at = utcnow()


@dataclass
class ConveyorSettings(_Serializable):
    """Scheduler configuration together with the running counters it gates on."""

    enabled: bool = True
    daily_limit: int = 10
    monthly_budget_limit: float = 10.0
    min_score_threshold: int = 70
    learned_threshold: Optional[int] = None
    avoided_topics: List[str] = field(default_factory=list)
    rejection_patterns: Dict[str, int] = field(default_factory=dict)
    max_age_days: Optional[int] = None
    items_processed_today: int = 0
    items_in_flight: int = 0
    current_month_cost: float = 0.0
    last_daily_reset: Optional[date] = None
    last_monthly_reset: Optional[date] = None
    total_processed: int = 0
    total_passed: int = 0
    total_failed: int = 0
    total_approved: int = 0
    total_rejected: int = 0

    @property
    def approval_rate(self) -> Optional[float]:
        decided = self.total_approved + self.total_rejected
        if not decided:
            return None
        return self.total_approved / decided

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["approval_rate"] = self.approval_rate
        return data


__all__ = [
    "AISettings",
    "ALLOWED_TRANSITIONS",
    "Comment",
    "CommentType",
    "ContentItem",
    "ContentStatus",
    "ConveyorSettings",
    "DurationRange",
    "InvalidTransitionError",
    "Iteration",
    "Review",
    "Scene",
    "SceneComment",
    "Script",
    "ScriptOutcome",
    "ScriptStatus",
    "ScriptVersion",
    "SourceType",
    "StyleExample",
    "StylePreferences",
    "TERMINAL_STATUSES",
    "Usage",
    "Verdict",
    "scenes_from_json",
    "scenes_to_json",
    "utcnow",
]
