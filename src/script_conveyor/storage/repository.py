"""Repository interface consumed by the conveyor plus an in-memory implementation.

The relational schema lives outside this package; the scheduler and the
iteration controller only talk to :class:`ConveyorRepository`.  Counter
updates are serialised per tenant so the daily limit and the monthly budget
remain upper bounds when several scripts finish at the same time.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
import uuid
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from ..workflow.models import (
    AISettings,
    ContentItem,
    ContentStatus,
    ConveyorSettings,
    Iteration,
    Review,
    Script,
    ScriptStatus,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

# Fields a settings update may touch; counters move only through the slot methods.
CONVEYOR_CONFIG_FIELDS = frozenset(
    {
        "enabled",
        "daily_limit",
        "monthly_budget_limit",
        "min_score_threshold",
        "learned_threshold",
        "avoided_topics",
        "max_age_days",
    }
)
# Learned state that only the learning service writes.
LEARNED_FIELDS = frozenset({"rejection_patterns"})


class RepositoryError(RuntimeError):
    """Base class for repository failures."""


class NotFoundError(RepositoryError):
    """Raised when a requested record does not exist."""


class IterationOrderError(RepositoryError):
    """Raised when an iteration would break the contiguous, reviewed-in-order history."""


class ContentInUseError(RepositoryError):
    """Raised when deleting a content item that a script still references."""


class QuotaExceededError(RuntimeError):
    """Raised when the tenant has used up its daily item limit."""


class BudgetExceededError(RuntimeError):
    """Raised when the tenant's spend for the month reached the budget."""


class ConveyorRepository(Protocol):
    async def add_content_item(self, item: ContentItem) -> ContentItem: ...

    async def get_content_item(self, item_id: str) -> ContentItem: ...

    async def list_content_items(
        self, user_id: str, statuses: Optional[Iterable[ContentStatus]] = None
    ) -> List[ContentItem]: ...

    async def set_content_status(self, item_id: str, status: ContentStatus) -> ContentItem: ...

    async def create_script(self, item: ContentItem, max_iterations: int) -> Script: ...

    async def get_script(self, script_id: str) -> Script: ...

    async def save_script(self, script: Script) -> Script: ...

    async def list_scripts(self, user_id: str, status: Optional[ScriptStatus] = None) -> List[Script]: ...

    async def add_iteration(self, script_id: str, iteration: Iteration) -> Iteration: ...

    async def attach_review(self, script_id: str, version: int, review: Review) -> Iteration: ...

    async def list_iterations(self, script_id: str) -> List[Iteration]: ...

    async def get_ai_settings(self, user_id: str) -> AISettings: ...

    async def save_ai_settings(self, user_id: str, settings: AISettings) -> AISettings: ...

    async def get_conveyor_settings(self, user_id: str) -> ConveyorSettings: ...

    async def update_conveyor_settings(self, user_id: str, **changes) -> ConveyorSettings: ...

    async def list_tenants(self) -> List[str]: ...

    async def reserve_slot(self, user_id: str) -> ConveyorSettings: ...

    async def release_slot(self, user_id: str) -> ConveyorSettings: ...

    async def complete_slot(self, user_id: str, cost_usd: float, passed: bool) -> ConveyorSettings: ...

    async def record_decision(
        self, user_id: str, approved: bool, category: Optional[str] = None
    ) -> ConveyorSettings: ...


class InMemoryRepository:
    """Dictionary-backed repository for a single process."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        default_ai_settings: Optional[AISettings] = None,
        default_conveyor_settings: Optional[ConveyorSettings] = None,
    ) -> None:
        self._clock = clock
        self._default_ai = default_ai_settings or AISettings()
        self._default_conveyor = default_conveyor_settings or ConveyorSettings()
        self._items: Dict[str, ContentItem] = {}
        self._scripts: Dict[str, Script] = {}
        self._iterations: Dict[str, List[Iteration]] = {}
        self._ai_settings: Dict[str, AISettings] = {}
        self._conveyor: Dict[str, ConveyorSettings] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    # ----- Content items -------------------------------------------------------------
    async def add_content_item(self, item: ContentItem) -> ContentItem:
        self._items[item.id] = copy.deepcopy(item)
        self._ensure_tenant(item.user_id)
        return copy.deepcopy(item)

    async def get_content_item(self, item_id: str) -> ContentItem:
        try:
            return copy.deepcopy(self._items[item_id])
        except KeyError:
            raise NotFoundError(f"Content item {item_id} not found") from None

    async def list_content_items(
        self, user_id: str, statuses: Optional[Iterable[ContentStatus]] = None
    ) -> List[ContentItem]:
        wanted = set(statuses) if statuses is not None else None
        return [
            copy.deepcopy(item)
            for item in self._items.values()
            if item.user_id == user_id and (wanted is None or item.status in wanted)
        ]

    async def set_content_status(self, item_id: str, status: ContentStatus) -> ContentItem:
        if item_id not in self._items:
            raise NotFoundError(f"Content item {item_id} not found")
        self._items[item_id].status = status
        return copy.deepcopy(self._items[item_id])

    async def delete_content_item(self, item_id: str) -> None:
        if any(script.content_item_id == item_id for script in self._scripts.values()):
            raise ContentInUseError(f"Content item {item_id} is referenced by a script")
        self._items.pop(item_id, None)

    # ----- Scripts -------------------------------------------------------------------
    async def create_script(self, item: ContentItem, max_iterations: int) -> Script:
        script = Script(
            id=uuid.uuid4().hex,
            user_id=item.user_id,
            content_item_id=item.id,
            title=item.title,
            max_iterations=max_iterations,
            created_at=self._clock(),
            updated_at=self._clock(),
        )
        self._scripts[script.id] = script
        self._iterations[script.id] = []
        return copy.deepcopy(script)

    async def get_script(self, script_id: str) -> Script:
        try:
            return copy.deepcopy(self._scripts[script_id])
        except KeyError:
            raise NotFoundError(f"Script {script_id} not found") from None

    async def save_script(self, script: Script) -> Script:
        if script.id not in self._scripts:
            raise NotFoundError(f"Script {script.id} not found")
        self._scripts[script.id] = copy.deepcopy(script)
        return copy.deepcopy(script)

    async def list_scripts(self, user_id: str, status: Optional[ScriptStatus] = None) -> List[Script]:
        scripts = [
            copy.deepcopy(script)
            for script in self._scripts.values()
            if script.user_id == user_id and (status is None or script.status == status)
        ]
        scripts.sort(key=lambda script: script.created_at, reverse=True)
        return scripts

    # ----- Iterations ----------------------------------------------------------------
    async def add_iteration(self, script_id: str, iteration: Iteration) -> Iteration:
        history = self._history(script_id)
        expected = len(history) + 1
        if iteration.version != expected:
            raise IterationOrderError(
                f"Script {script_id} expects iteration {expected}, got {iteration.version}"
            )
        if history and history[-1].review is None:
            raise IterationOrderError(
                f"Script {script_id} iteration {history[-1].version} has no review yet"
            )
        history.append(iteration)
        return iteration

    async def attach_review(self, script_id: str, version: int, review: Review) -> Iteration:
        history = self._history(script_id)
        if not history or history[-1].version != version:
            raise IterationOrderError(
                f"Script {script_id} can only review its latest iteration"
            )
        if history[-1].review is not None:
            raise IterationOrderError(
                f"Script {script_id} iteration {version} is already reviewed"
            )
        reviewed = dataclasses.replace(history[-1], review=review)
        history[-1] = reviewed
        return reviewed

    async def list_iterations(self, script_id: str) -> List[Iteration]:
        return list(self._history(script_id))

    def _history(self, script_id: str) -> List[Iteration]:
        try:
            return self._iterations[script_id]
        except KeyError:
            raise NotFoundError(f"Script {script_id} not found") from None

    # ----- Settings ------------------------------------------------------------------
    def _ensure_tenant(self, user_id: str) -> None:
        if user_id not in self._ai_settings:
            self._ai_settings[user_id] = copy.deepcopy(self._default_ai)
        if user_id not in self._conveyor:
            settings = copy.deepcopy(self._default_conveyor)
            today = self._clock().date()
            settings.last_daily_reset = today
            settings.last_monthly_reset = today.replace(day=1)
            self._conveyor[user_id] = settings

    async def get_ai_settings(self, user_id: str) -> AISettings:
        self._ensure_tenant(user_id)
        return copy.deepcopy(self._ai_settings[user_id])

    async def save_ai_settings(self, user_id: str, settings: AISettings) -> AISettings:
        self._ensure_tenant(user_id)
        self._ai_settings[user_id] = copy.deepcopy(settings)
        return copy.deepcopy(settings)

    async def get_conveyor_settings(self, user_id: str) -> ConveyorSettings:
        async with self._lock(user_id):
            return copy.deepcopy(self._current(user_id))

    async def update_conveyor_settings(self, user_id: str, **changes) -> ConveyorSettings:
        unknown = set(changes) - CONVEYOR_CONFIG_FIELDS - LEARNED_FIELDS
        if unknown:
            raise RepositoryError(f"Cannot update conveyor fields: {', '.join(sorted(unknown))}")
        async with self._lock(user_id):
            settings = self._current(user_id)
            for name, value in changes.items():
                setattr(settings, name, copy.deepcopy(value))
            return copy.deepcopy(settings)

    async def list_tenants(self) -> List[str]:
        return sorted(self._conveyor)

    # ----- Counters ------------------------------------------------------------------
    def _current(self, user_id: str) -> ConveyorSettings:
        """Return the live settings record after applying day/month rollovers."""

        self._ensure_tenant(user_id)
        settings = self._conveyor[user_id]
        today = self._clock().date()
        if settings.last_daily_reset != today:
            LOGGER.info(
                "Daily count reset for user %s (previous count %s)",
                user_id,
                settings.items_processed_today,
            )
            settings.items_processed_today = 0
            settings.last_daily_reset = today
        month_start: date = today.replace(day=1)
        if settings.last_monthly_reset != month_start:
            LOGGER.info(
                "Monthly cost reset for user %s (previous cost %.4f)",
                user_id,
                settings.current_month_cost,
            )
            settings.current_month_cost = 0.0
            settings.last_monthly_reset = month_start
        return settings

    async def reserve_slot(self, user_id: str) -> ConveyorSettings:
        """Claim one of today's slots, or raise if the quota or budget is exhausted."""

        async with self._lock(user_id):
            settings = self._current(user_id)
            if settings.items_processed_today + settings.items_in_flight >= settings.daily_limit:
                raise QuotaExceededError(
                    f"Daily limit reached ({settings.daily_limit} items)"
                )
            if settings.current_month_cost >= settings.monthly_budget_limit:
                raise BudgetExceededError(
                    f"Monthly budget reached (${settings.monthly_budget_limit:.2f})"
                )
            settings.items_in_flight += 1
            return copy.deepcopy(settings)

    async def release_slot(self, user_id: str) -> ConveyorSettings:
        async with self._lock(user_id):
            settings = self._current(user_id)
            settings.items_in_flight = max(settings.items_in_flight - 1, 0)
            return copy.deepcopy(settings)

    async def complete_slot(self, user_id: str, cost_usd: float, passed: bool) -> ConveyorSettings:
        """Turn a reservation into a processed item and book its cost."""

        async with self._lock(user_id):
            settings = self._current(user_id)
            settings.items_in_flight = max(settings.items_in_flight - 1, 0)
            settings.items_processed_today += 1
            settings.total_processed += 1
            settings.current_month_cost = round(settings.current_month_cost + cost_usd, 6)
            if passed:
                settings.total_passed += 1
            else:
                settings.total_failed += 1
            return copy.deepcopy(settings)

    async def record_decision(
        self, user_id: str, approved: bool, category: Optional[str] = None
    ) -> ConveyorSettings:
        async with self._lock(user_id):
            settings = self._current(user_id)
            if approved:
                settings.total_approved += 1
            else:
                settings.total_rejected += 1
                if category is not None:
                    patterns = settings.rejection_patterns
                    patterns[category] = patterns.get(category, 0) + 1
            return copy.deepcopy(settings)


__all__ = [
    "BudgetExceededError",
    "CONVEYOR_CONFIG_FIELDS",
    "ContentInUseError",
    "ConveyorRepository",
    "InMemoryRepository",
    "IterationOrderError",
    "LEARNED_FIELDS",
    "NotFoundError",
    "QuotaExceededError",
    "RepositoryError",
]
