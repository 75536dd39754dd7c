"""Conveyor scheduler: picks eligible content and starts script generation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import ConfigurationError
from ..storage.repository import (
    BudgetExceededError,
    ConveyorRepository,
    QuotaExceededError,
    RepositoryError,
)
from ..workflow.models import (
    AISettings,
    ContentItem,
    ContentStatus,
    ConveyorSettings,
    _Serializable,
    utcnow,
)
from ..workflow.orchestrator import GenerationResult, IterationController
from .event_stream import EventStream
from .learning import effective_threshold

LOGGER = logging.getLogger(__name__)

ELIGIBLE_STATUSES = (ContentStatus.SCORED, ContentStatus.SELECTED)


class TriggerCode(str, Enum):
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    CONFIGURATION_ERROR = "configuration_error"
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    BUDGET_LIMIT_REACHED = "budget_limit_reached"
    NO_ITEMS = "no_items"


@dataclass
class TriggerResult(_Serializable):
    success: bool
    message: str
    code: TriggerCode
    script_ids: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "code": self.code.value,
            "scriptIds": list(self.script_ids),
        }


@dataclass
class _Job:
    user_id: str
    item_id: str
    task: "asyncio.Task[Optional[GenerationResult]]"


class ConveyorScheduler:
    """Selects content for each tenant within its quota and budget."""

    def __init__(
        self,
        repository: ConveyorRepository,
        controller: IterationController,
        events: EventStream,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.controller = controller
        self.events = events
        self._clock = clock
        self._jobs: Dict[str, _Job] = {}
        self._trigger_locks: Dict[str, asyncio.Lock] = {}

    # ----- Scheduling ----------------------------------------------------------------
    async def trigger(self, user_id: str) -> TriggerResult:
        """Run one scheduling pass for ``user_id``."""

        lock = self._trigger_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            return await self._trigger(user_id)

    async def _trigger(self, user_id: str) -> TriggerResult:
        settings = await self.repository.get_conveyor_settings(user_id)
        if not settings.enabled:
            return TriggerResult(False, "Conveyor is paused", TriggerCode.PAUSED)

        ai_settings = await self.repository.get_ai_settings(user_id)
        try:
            self.controller.preflight(ai_settings)
        except ConfigurationError as exc:
            LOGGER.warning("Conveyor for user %s is not configured: %s", user_id, exc)
            return TriggerResult(False, str(exc), TriggerCode.CONFIGURATION_ERROR)

        refusal = self._limit_refusal(settings)
        if refusal is not None:
            return refusal

        candidates = await self.eligible_items(user_id, settings)
        if not candidates:
            return TriggerResult(False, "No eligible content items", TriggerCode.NO_ITEMS)

        script_ids: List[str] = []
        for item in candidates:
            try:
                await self.repository.reserve_slot(user_id)
            except QuotaExceededError as exc:
                refusal = TriggerResult(False, str(exc), TriggerCode.DAILY_LIMIT_REACHED)
                break
            except BudgetExceededError as exc:
                refusal = TriggerResult(False, str(exc), TriggerCode.BUDGET_LIMIT_REACHED)
                break
            try:
                script_ids.append(await self._enqueue(item, ai_settings))
            except RepositoryError:
                LOGGER.exception("Could not enqueue content item %s", item.id)
                await self.repository.release_slot(user_id)

        if script_ids:
            LOGGER.info("Started %s script(s) for user %s", len(script_ids), user_id)
            return TriggerResult(
                True, f"Started {len(script_ids)} script(s)", TriggerCode.STARTED, script_ids
            )
        if refusal is not None:
            return refusal
        return TriggerResult(False, "No eligible content items", TriggerCode.NO_ITEMS)

    @staticmethod
    def _limit_refusal(settings: ConveyorSettings) -> Optional[TriggerResult]:
        if settings.items_processed_today + settings.items_in_flight >= settings.daily_limit:
            return TriggerResult(
                False,
                f"Daily limit reached ({settings.daily_limit} items)",
                TriggerCode.DAILY_LIMIT_REACHED,
            )
        if settings.current_month_cost >= settings.monthly_budget_limit:
            return TriggerResult(
                False,
                f"Monthly budget reached (${settings.monthly_budget_limit:.2f})",
                TriggerCode.BUDGET_LIMIT_REACHED,
            )
        return None

    async def eligible_items(
        self, user_id: str, settings: Optional[ConveyorSettings] = None
    ) -> List[ContentItem]:
        """Items the next pass may pick, best candidates first."""

        settings = settings or await self.repository.get_conveyor_settings(user_id)
        threshold = effective_threshold(settings)
        busy = {job.item_id for job in self._jobs.values()}
        oldest: Optional[datetime] = None
        if settings.max_age_days is not None:
            oldest = self._clock() - timedelta(days=settings.max_age_days)
        avoided = [topic.lower() for topic in settings.avoided_topics if topic.strip()]

        eligible = []
        for item in await self.repository.list_content_items(user_id, ELIGIBLE_STATUSES):
            if item.id in busy or item.score is None or item.score < threshold:
                continue
            if oldest is not None and item.freshness < oldest:
                continue
            title = item.title.lower()
            if any(topic in title for topic in avoided):
                continue
            eligible.append(item)

        eligible.sort(
            key=lambda item: (
                item.status is not ContentStatus.SELECTED,
                -(item.score or 0),
                -item.freshness.timestamp(),
            )
        )
        return eligible

    async def _enqueue(self, item: ContentItem, ai_settings: AISettings) -> str:
        script = await self.repository.create_script(item, ai_settings.max_iterations)
        await self.repository.set_content_status(item.id, ContentStatus.SELECTED)
        task = asyncio.create_task(self._process(item.user_id, script.id, item.id))
        self._jobs[script.id] = _Job(user_id=item.user_id, item_id=item.id, task=task)
        task.add_done_callback(lambda _: self._jobs.pop(script.id, None))
        return script.id

    async def _process(self, user_id: str, script_id: str, item_id: str) -> Optional[GenerationResult]:
        try:
            result = await self.controller.run(script_id)
        except Exception:
            LOGGER.exception("Unexpected error while generating script %s", script_id)
            try:
                await self.repository.release_slot(user_id)
                await self.repository.set_content_status(item_id, ContentStatus.SCORED)
            except RepositoryError:
                LOGGER.exception("Could not release the slot of script %s", script_id)
            return None

        try:
            await self.repository.complete_slot(user_id, result.cost_usd, result.passed)
            status = ContentStatus.SCORED if result.infrastructure_failure else ContentStatus.USED
            await self.repository.set_content_status(item_id, status)
        except Exception:
            LOGGER.exception("Bookkeeping failed for script %s", script_id)
        return result

    # ----- Control -------------------------------------------------------------------
    async def pause(self, user_id: str) -> TriggerResult:
        await self.repository.update_conveyor_settings(user_id, enabled=False)
        LOGGER.info("Conveyor paused for user %s", user_id)
        return TriggerResult(True, "Conveyor paused", TriggerCode.PAUSED)

    async def resume(self, user_id: str) -> TriggerResult:
        await self.repository.update_conveyor_settings(user_id, enabled=True)
        LOGGER.info("Conveyor resumed for user %s", user_id)
        return TriggerResult(True, "Conveyor resumed", TriggerCode.RESUMED)

    async def status(self, user_id: str) -> Dict[str, Any]:
        settings = await self.repository.get_conveyor_settings(user_id)
        data = settings.to_dict()
        data["effective_threshold"] = effective_threshold(settings)
        data["active_scripts"] = sorted(
            script_id for script_id, job in self._jobs.items() if job.user_id == user_id
        )
        return data

    async def run_periodic(
        self, interval_seconds: float, stop_event: Optional[asyncio.Event] = None
    ) -> None:
        """Trigger every enabled tenant each ``interval_seconds`` until stopped."""

        stop_event = stop_event or asyncio.Event()
        LOGGER.info("Periodic conveyor runner started (every %ss)", interval_seconds)
        while not stop_event.is_set():
            for user_id in await self.repository.list_tenants():
                try:
                    settings = await self.repository.get_conveyor_settings(user_id)
                    if not settings.enabled:
                        continue
                    result = await self.trigger(user_id)
                    LOGGER.info("Periodic trigger for user %s: %s", user_id, result.code.value)
                except Exception:
                    LOGGER.exception("Periodic trigger failed for user %s", user_id)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
        LOGGER.info("Periodic conveyor runner stopped")

    async def wait_idle(self) -> None:
        """Wait until every started script has finished."""

        while self._jobs:
            await asyncio.gather(*(job.task for job in list(self._jobs.values())), return_exceptions=True)
            # Done callbacks run on the next loop iteration.
            await asyncio.sleep(0)

    def in_flight(self, user_id: Optional[str] = None) -> int:
        return sum(1 for job in self._jobs.values() if user_id is None or job.user_id == user_id)


__all__ = ["ConveyorScheduler", "TriggerCode", "TriggerResult"]
