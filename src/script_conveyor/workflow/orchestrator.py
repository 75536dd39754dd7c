"""Iteration controller driving a script through the Scriptwriter/Editor loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set, TypeVar

from ..config import ConfigurationError, RetrySettings
from ..providers.base import ProviderTransportError
from ..services.event_stream import EventStream, EventType
from ..services.learning import rejection_instructions
from ..storage.repository import ConveyorRepository
from .agents.base import (
    AgentValidationError,
    EditorAgent,
    EditorInput,
    ScriptwriterAgent,
    ScriptwriterInput,
    schema_reminder,
)
from .models import (
    AISettings,
    ContentItem,
    Iteration,
    Review,
    Script,
    ScriptOutcome,
    ScriptStatus,
    ScriptVersion,
    Verdict,
    _Serializable,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

SCRIPTWRITER_STAGE = 1
EDITOR_STAGE = 2
STAGE_NAMES = {SCRIPTWRITER_STAGE: "Scriptwriter", EDITOR_STAGE: "Editor"}

PASSED_OUTCOMES = frozenset({ScriptOutcome.APPROVED, ScriptOutcome.ESCALATED})
INFRASTRUCTURE_OUTCOMES = frozenset(
    {
        ScriptOutcome.TRANSPORT_FAILURE,
        ScriptOutcome.CONFIGURATION_ERROR,
        ScriptOutcome.INTERNAL_ERROR,
    }
)


class ScriptBusyError(RuntimeError):
    """Raised when a script is already being generated."""


class StepFailed(RuntimeError):
    """Raised when an agent step cannot produce a usable result."""

    def __init__(self, outcome: ScriptOutcome, message: str) -> None:
        super().__init__(message)
        self.outcome = outcome


@dataclass
class GenerationResult(_Serializable):
    script_id: str
    status: ScriptStatus
    outcome: Optional[ScriptOutcome]
    final_score: Optional[int]
    iterations: int
    cost_usd: float
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.outcome in PASSED_OUTCOMES

    @property
    def infrastructure_failure(self) -> bool:
        return self.outcome in INFRASTRUCTURE_OUTCOMES


class IterationController:
    """Runs the draft, review, decide loop for one script at a time per id."""

    def __init__(
        self,
        repository: ConveyorRepository,
        scriptwriter: ScriptwriterAgent,
        editor: EditorAgent,
        events: EventStream,
        retry: Optional[RetrySettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.scriptwriter = scriptwriter
        self.editor = editor
        self.events = events
        self.retry = retry or RetrySettings()
        self._sleep = sleep
        self._active: Set[str] = set()

    @property
    def active_scripts(self) -> frozenset:
        return frozenset(self._active)

    def preflight(self, settings: AISettings) -> None:
        """Raise ``ConfigurationError`` if either agent cannot run with ``settings``."""

        self.scriptwriter.ensure_ready(settings)
        self.editor.ensure_ready(settings)

    async def run(self, script_id: str) -> GenerationResult:
        if script_id in self._active:
            raise ScriptBusyError(f"Script {script_id} is already being generated")
        self._active.add(script_id)
        try:
            return await self._run(script_id)
        finally:
            self._active.discard(script_id)

    async def _run(self, script_id: str) -> GenerationResult:
        script = await self.repository.get_script(script_id)
        content = await self.repository.get_content_item(script.content_item_id)

        script.transition(ScriptStatus.IN_PROGRESS)
        script = await self.repository.save_script(script)
        LOGGER.info("Generating script %s for %r", script.id, content.title)
        self.events.emit(
            EventType.ITEM_STARTED,
            script.user_id,
            content.id,
            message=f"Started processing: {content.title!r}",
            result={"scriptId": script.id},
        )

        previous_review: Optional[Review] = None
        try:
            while True:
                settings = await self.repository.get_ai_settings(script.user_id)
                try:
                    self.preflight(settings)
                except ConfigurationError as exc:
                    raise StepFailed(ScriptOutcome.CONFIGURATION_ERROR, str(exc)) from exc

                version = script.current_iteration + 1
                script_version = await self._draft(script, content, settings, version, previous_review)
                await self.repository.add_iteration(
                    script.id,
                    Iteration(
                        version=version,
                        script_version=script_version,
                        created_at=utcnow(),
                        settings_snapshot=settings,
                    ),
                )
                script.current_iteration = version
                script.total_cost_usd = round(script.total_cost_usd + script_version.usage.cost_usd, 6)
                script = await self.repository.save_script(script)

                review = await self._review(script, content, settings, version, script_version)
                await self.repository.attach_review(script.id, version, review)
                script.total_cost_usd = round(script.total_cost_usd + review.usage.cost_usd, 6)

                if review.verdict is Verdict.APPROVED and review.overall_score >= settings.min_approval_score:
                    script.final_score = review.overall_score
                    script.transition(ScriptStatus.COMPLETED)
                    if settings.auto_escalate:
                        script.transition(ScriptStatus.HUMAN_REVIEW)
                        script.outcome = ScriptOutcome.ESCALATED
                    else:
                        script.transition(ScriptStatus.APPROVED)
                        script.outcome = ScriptOutcome.APPROVED
                    return await self._finish(script, content)

                if review.verdict is Verdict.REJECTED:
                    script.final_score = review.overall_score
                    script.transition(ScriptStatus.REJECTED)
                    script.outcome = ScriptOutcome.REJECTED
                    return await self._finish(script, content)

                if review.verdict is Verdict.APPROVED:
                    LOGGER.info(
                        "Script %s approved with score %s below the minimum %s; revising",
                        script.id,
                        review.overall_score,
                        settings.min_approval_score,
                    )
                if version >= script.max_iterations:
                    script.final_score = review.overall_score
                    script.transition(ScriptStatus.HUMAN_REVIEW)
                    script.outcome = ScriptOutcome.MAX_ITERATIONS_REACHED
                    return await self._finish(script, content)

                script = await self.repository.save_script(script)
                previous_review = review
        except StepFailed as failure:
            return await self._fail(script, content, failure.outcome, str(failure))
        except Exception as exc:
            LOGGER.exception("Unexpected error while generating script %s", script_id)
            # The in-memory copy may already be past in_progress; the stored one is not.
            script = await self.repository.get_script(script_id)
            if script.is_terminal:
                return self._result(script)
            return await self._fail(
                script,
                content,
                ScriptOutcome.INTERNAL_ERROR,
                f"Unexpected error: {type(exc).__name__}: {exc}",
            )

    # ----- Agent steps ---------------------------------------------------------------
    async def _draft(
        self,
        script: Script,
        content: ContentItem,
        settings: AISettings,
        version: int,
        previous_review: Optional[Review],
    ) -> ScriptVersion:
        self._stage(script, content, SCRIPTWRITER_STAGE, version, f"Drafting version {version}", done=False)
        avoid = rejection_instructions(await self.repository.get_conveyor_settings(script.user_id))

        async def call(correction: Optional[str]) -> ScriptVersion:
            return await self.scriptwriter.process(
                ScriptwriterInput(
                    content=content,
                    settings=settings,
                    version=version,
                    previous_review=previous_review,
                    on_thinking=self._thinking_sink(script, content, SCRIPTWRITER_STAGE),
                    correction=correction,
                    avoid_instructions=avoid,
                )
            )

        script_version = await self._with_retries(SCRIPTWRITER_STAGE, call)
        self._stage(
            script,
            content,
            SCRIPTWRITER_STAGE,
            version,
            f"Version {version} drafted with {len(script_version.scenes)} scenes",
            done=True,
        )
        return script_version

    async def _review(
        self,
        script: Script,
        content: ContentItem,
        settings: AISettings,
        version: int,
        script_version: ScriptVersion,
    ) -> Review:
        self._stage(script, content, EDITOR_STAGE, version, f"Reviewing version {version}", done=False)

        async def call(correction: Optional[str]) -> Review:
            return await self.editor.process(
                EditorInput(
                    content=content,
                    script_version=script_version,
                    settings=settings,
                    on_thinking=self._thinking_sink(script, content, EDITOR_STAGE),
                    correction=correction,
                )
            )

        review = await self._with_retries(EDITOR_STAGE, call)
        self._stage(
            script,
            content,
            EDITOR_STAGE,
            version,
            f"Version {version} scored {review.overall_score}/10 ({review.verdict.value})",
            done=True,
        )
        return review

    async def _with_retries(self, stage: int, call: Callable[[Optional[str]], Awaitable[T]]) -> T:
        """Invoke an agent, retrying transport faults with backoff and bad output once."""

        name = STAGE_NAMES[stage]
        transport_failures = 0
        correction: Optional[str] = None
        while True:
            try:
                return await call(correction)
            except ProviderTransportError as exc:
                transport_failures += 1
                if not exc.retryable or transport_failures >= self.retry.transport_attempts:
                    raise StepFailed(
                        ScriptOutcome.TRANSPORT_FAILURE, f"{name} request failed: {exc}"
                    ) from exc
                delay = self.retry.delay_for(transport_failures - 1)
                LOGGER.warning(
                    "%s request failed (attempt %s/%s), retrying in %.1fs: %s",
                    name,
                    transport_failures,
                    self.retry.transport_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
            except AgentValidationError as exc:
                if correction is not None:
                    raise StepFailed(
                        ScriptOutcome.VALIDATION_FAILURE, f"{name} returned invalid output: {exc}"
                    ) from exc
                LOGGER.warning("%s returned invalid output, asking again: %s", name, exc)
                correction = schema_reminder(exc)
            except ConfigurationError as exc:
                raise StepFailed(ScriptOutcome.CONFIGURATION_ERROR, str(exc)) from exc

    # ----- Events --------------------------------------------------------------------
    def _stage(
        self,
        script: Script,
        content: ContentItem,
        stage: int,
        version: int,
        message: str,
        *,
        done: bool,
    ) -> None:
        steps_total = script.max_iterations * 2
        steps_done = (version - 1) * 2 + (stage - 1) + (1 if done else 0)
        self.events.emit(
            EventType.STAGE,
            script.user_id,
            content.id,
            stage=stage,
            stage_name=STAGE_NAMES[stage],
            message=message,
            progress=min(100, int(steps_done * 100 / steps_total)),
        )

    def _thinking_sink(self, script: Script, content: ContentItem, stage: int) -> Callable[[str], None]:
        def sink(chunk: str) -> None:
            if chunk:
                self.events.emit(
                    EventType.THINKING,
                    script.user_id,
                    content.id,
                    stage=stage,
                    stage_name=STAGE_NAMES[stage],
                    thinking=chunk,
                )

        return sink

    # ----- Terminal states -----------------------------------------------------------
    def _result(self, script: Script) -> GenerationResult:
        return GenerationResult(
            script_id=script.id,
            status=script.status,
            outcome=script.outcome,
            final_score=script.final_score,
            iterations=script.current_iteration,
            cost_usd=script.total_cost_usd,
            error=script.error,
        )

    async def _finish(self, script: Script, content: ContentItem) -> GenerationResult:
        script = await self.repository.save_script(script)
        result = self._result(script)
        LOGGER.info(
            "Script %s finished as %s after %s iteration(s), score %s",
            script.id,
            script.status.value,
            script.current_iteration,
            script.final_score,
        )
        self.events.emit(
            EventType.ITEM_COMPLETED,
            script.user_id,
            content.id,
            message=f"Script {script.status.value.replace('_', ' ')}",
            progress=100,
            result={
                "scriptId": script.id,
                "status": script.status.value,
                "outcome": script.outcome.value if script.outcome else None,
                "finalScore": script.final_score,
                "iterations": script.current_iteration,
                "costUsd": script.total_cost_usd,
            },
        )
        return result

    async def _fail(
        self, script: Script, content: ContentItem, outcome: ScriptOutcome, message: str
    ) -> GenerationResult:
        script.error = message
        script.outcome = outcome
        script.transition(ScriptStatus.FAILED)
        script = await self.repository.save_script(script)
        LOGGER.warning("Script %s failed (%s): %s", script.id, outcome.value, message)
        self.events.emit(EventType.ERROR, script.user_id, content.id, message=message, error=outcome.value)
        self.events.emit(
            EventType.ITEM_FAILED,
            script.user_id,
            content.id,
            message="Script generation failed",
            error=message,
            result={"scriptId": script.id, "outcome": outcome.value},
        )
        return self._result(script)


__all__ = [
    "GenerationResult",
    "IterationController",
    "PASSED_OUTCOMES",
    "STAGE_NAMES",
    "ScriptBusyError",
    "StepFailed",
]
