"""Wires configuration, storage, agents and services into one conveyor runtime."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Tuple

from ..config import ServiceConfig, load_service_config
from ..providers.registry import ProviderRegistry
from ..storage.repository import ConveyorRepository, InMemoryRepository, NotFoundError
from ..workflow.agents.base import EditorAgent, ScriptwriterAgent
from ..workflow.agents.production import create_production_agents
from ..workflow.models import (
    AISettings,
    ContentItem,
    ContentStatus,
    Script,
    ScriptStatus,
    SourceType,
)
from ..workflow.orchestrator import IterationController
from .event_stream import EventStream
from .learning import REJECTION_CATEGORIES, LearningService
from .scheduler import ConveyorScheduler
from .settings import SettingsService

LOGGER = logging.getLogger(__name__)


def content_item_from_dict(user_id: str, data: Mapping[str, Any]) -> ContentItem:
    """Build a content item from an ingestion payload."""

    title = str(data.get("title") or "").strip()
    if not title:
        raise ValueError("Content item title must not be empty")
    score = data.get("score")
    if score is not None and (isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100):
        raise ValueError("Content item score must be an integer from 0 to 100")
    published_at = data.get("published_at")
    if isinstance(published_at, str):
        published_at = datetime.fromisoformat(published_at.replace("Z", "+00:00"))
    status = data.get("status")
    if status is None:
        status = ContentStatus.NEW if score is None else ContentStatus.SCORED
    return ContentItem(
        id=str(data.get("id") or uuid.uuid4().hex),
        user_id=user_id,
        title=title,
        body=str(data.get("body") or ""),
        source_type=SourceType(data.get("source_type", SourceType.NEWS.value)),
        source=str(data.get("source") or ""),
        published_at=published_at,
        status=ContentStatus(status),
        score=score,
    )


class ConveyorRuntime:
    """Holds the long-lived conveyor objects for the API server and the CLI."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        repository: Optional[ConveyorRepository] = None,
        agents: Optional[Tuple[ScriptwriterAgent, EditorAgent]] = None,
        registry: Optional[ProviderRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or load_service_config()
        self.registry = registry or ProviderRegistry(self.config)
        self.repository = repository or InMemoryRepository(
            default_ai_settings=AISettings(provider=self.config.text_generation.provider)
        )
        self.events = EventStream.from_settings(self.config.events)
        scriptwriter, editor = agents or create_production_agents(self.config, self.registry)
        self.controller = IterationController(
            self.repository,
            scriptwriter,
            editor,
            self.events,
            self.config.retry,
            sleep=sleep,
        )
        self.learning = LearningService(self.repository)
        self.settings = SettingsService(self.repository)
        self.scheduler = ConveyorScheduler(self.repository, self.controller, self.events)
        self._stop: Optional[asyncio.Event] = None
        self._periodic: Optional[asyncio.Task] = None
        LOGGER.info(
            "Conveyor runtime initialised (agents: %s)", self.config.agents.backend
        )

    async def add_content_items(self, user_id: str, payloads: Iterable[Mapping[str, Any]]) -> List[ContentItem]:
        items = []
        for payload in payloads:
            items.append(await self.repository.add_content_item(content_item_from_dict(user_id, payload)))
        LOGGER.info("Ingested %s content item(s) for user %s", len(items), user_id)
        return items

    async def get_script(self, user_id: str, script_id: str) -> Script:
        script = await self.repository.get_script(script_id)
        if script.user_id != user_id:
            raise NotFoundError(f"Script {script_id} not found")
        return script

    async def review_script(
        self,
        user_id: str,
        script_id: str,
        approved: bool,
        category: Optional[str] = None,
    ) -> Script:
        """Record a human decision on a script waiting in ``human_review``."""

        if category is not None and category not in REJECTION_CATEGORIES:
            raise ValueError(f"Unknown rejection category: {category!r}")
        script = await self.get_script(user_id, script_id)
        script.transition(ScriptStatus.APPROVED if approved else ScriptStatus.REJECTED)
        script = await self.repository.save_script(script)
        await self.learning.record_outcome(user_id, script, approved, category)
        LOGGER.info(
            "Script %s %s by reviewer", script.id, "approved" if approved else "rejected"
        )
        return script

    def start_periodic(self) -> None:
        if self._periodic is not None:
            return
        self._stop = asyncio.Event()
        self._periodic = asyncio.create_task(
            self.scheduler.run_periodic(self.config.scheduler.interval_seconds, self._stop)
        )

    async def shutdown(self) -> None:
        self.events.close()
        if self._periodic is not None and self._stop is not None:
            self._stop.set()
            await self._periodic
            self._periodic = None
        await self.scheduler.wait_idle()
        await self.registry.aclose()


__all__ = ["ConveyorRuntime", "content_item_from_dict"]
