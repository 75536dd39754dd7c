"""FastAPI server exposing the script conveyor."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..config import ConfigurationError
from ..services.runtime import ConveyorRuntime
from ..services.scheduler import TriggerCode, TriggerResult
from ..storage.repository import NotFoundError
from ..workflow.models import ContentStatus, InvalidTransitionError, ScriptStatus

LOGGER = logging.getLogger(__name__)

TRIGGER_STATUS_CODES = {
    TriggerCode.STARTED: 200,
    TriggerCode.PAUSED: 409,
    TriggerCode.RESUMED: 200,
    TriggerCode.CONFIGURATION_ERROR: 503,
    TriggerCode.DAILY_LIMIT_REACHED: 429,
    TriggerCode.BUDGET_LIMIT_REACHED: 429,
    TriggerCode.NO_ITEMS: 404,
}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StylePayload(_Payload):
    formality: Optional[str] = None
    tone: Optional[str] = None
    language: Optional[str] = None


class DurationRangePayload(_Payload):
    min: Optional[int] = None
    max: Optional[int] = None


class StyleExamplePayload(_Payload):
    content: str
    title: str = ""


class AISettingsPayload(_Payload):
    provider: Optional[str] = None
    scriptwriter_prompt: Optional[str] = None
    editor_prompt: Optional[str] = None
    max_iterations: Optional[int] = None
    min_approval_score: Optional[int] = None
    auto_escalate: Optional[bool] = None
    examples: Optional[List[StyleExamplePayload]] = None
    style: Optional[StylePayload] = None
    duration_range: Optional[DurationRangePayload] = None


class ConveyorSettingsPayload(_Payload):
    enabled: Optional[bool] = None
    daily_limit: Optional[int] = None
    monthly_budget_limit: Optional[float] = None
    min_score_threshold: Optional[int] = None
    learned_threshold: Optional[int] = None
    avoided_topics: Optional[List[str]] = None
    max_age_days: Optional[int] = None


class ContentItemPayload(_Payload):
    id: Optional[str] = None
    title: str = Field(min_length=1)
    body: str = ""
    source_type: str = "news"
    source: str = ""
    published_at: Optional[datetime] = None
    score: Optional[int] = Field(default=None, ge=0, le=100)
    status: Optional[ContentStatus] = None


class ReviewPayload(_Payload):
    approved: bool
    category: Optional[str] = None


def tenant(x_user_id: str = Header(default="default")) -> str:
    return x_user_id.strip() or "default"


def _trigger_response(result: TriggerResult) -> JSONResponse:
    return JSONResponse(
        status_code=TRIGGER_STATUS_CODES[result.code], content=result.to_payload()
    )


def create_app(runtime: Optional[ConveyorRuntime] = None, run_periodic: bool = True) -> FastAPI:
    """Build the FastAPI application around ``runtime``."""

    runtime = runtime or ConveyorRuntime()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if run_periodic:
            runtime.start_periodic()
        try:
            yield
        finally:
            await runtime.shutdown()

    app = FastAPI(title="Script Conveyor", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def invalid_settings(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # ----- Events --------------------------------------------------------------------
    @app.get("/api/events/stream")
    async def stream_events(request: Request, user_id: str = Depends(tenant)) -> StreamingResponse:
        LOGGER.info("GET %s (user %s)", request.url.path, user_id)
        keepalive = runtime.config.events.keepalive_seconds

        async def body() -> AsyncIterator[str]:
            async with runtime.events.subscribe(user_id) as subscription:
                yield ": connected\n\n"
                while not await request.is_disconnected():
                    try:
                        event = await subscription.get(timeout=keepalive)
                    except asyncio.TimeoutError:
                        yield ": keep-alive\n\n"
                        continue
                    if event is None:
                        break
                    yield event.to_sse()

        return StreamingResponse(
            body(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/events/history")
    async def event_history(
        limit: Optional[int] = Query(default=None, ge=1),
        item_id: Optional[str] = Query(default=None, alias="itemId"),
        user_id: str = Depends(tenant),
    ) -> List[Dict[str, Any]]:
        limit = limit or runtime.config.events.history_limit
        events = runtime.events.history(user_id, limit=limit, item_id=item_id)
        return [event.to_payload() for event in events]

    # ----- Conveyor control ----------------------------------------------------------
    @app.post("/api/conveyor/trigger")
    async def trigger(request: Request, user_id: str = Depends(tenant)) -> JSONResponse:
        LOGGER.info("POST %s (user %s)", request.url.path, user_id)
        return _trigger_response(await runtime.scheduler.trigger(user_id))

    @app.post("/api/conveyor/pause")
    async def pause(request: Request, user_id: str = Depends(tenant)) -> JSONResponse:
        LOGGER.info("POST %s (user %s)", request.url.path, user_id)
        return JSONResponse(content=(await runtime.scheduler.pause(user_id)).to_payload())

    @app.post("/api/conveyor/resume")
    async def resume(request: Request, user_id: str = Depends(tenant)) -> JSONResponse:
        LOGGER.info("POST %s (user %s)", request.url.path, user_id)
        return JSONResponse(content=(await runtime.scheduler.resume(user_id)).to_payload())

    @app.get("/api/conveyor/status")
    async def conveyor_status(user_id: str = Depends(tenant)) -> Dict[str, Any]:
        return await runtime.scheduler.status(user_id)

    # ----- Settings ------------------------------------------------------------------
    @app.get("/api/settings/ai")
    async def get_ai_settings(user_id: str = Depends(tenant)) -> Dict[str, Any]:
        return (await runtime.settings.get_ai_settings(user_id)).to_dict()

    @app.put("/api/settings/ai")
    async def put_ai_settings(body: AISettingsPayload, user_id: str = Depends(tenant)) -> Dict[str, Any]:
        settings = await runtime.settings.replace_ai_settings(user_id, body.model_dump(exclude_unset=True))
        return settings.to_dict()

    @app.patch("/api/settings/ai")
    async def patch_ai_settings(body: AISettingsPayload, user_id: str = Depends(tenant)) -> Dict[str, Any]:
        settings = await runtime.settings.merge_ai_settings(user_id, body.model_dump(exclude_unset=True))
        return settings.to_dict()

    @app.get("/api/settings/conveyor")
    async def get_conveyor_settings(user_id: str = Depends(tenant)) -> Dict[str, Any]:
        return (await runtime.settings.get_conveyor_settings(user_id)).to_dict()

    @app.put("/api/settings/conveyor")
    async def put_conveyor_settings(
        body: ConveyorSettingsPayload, user_id: str = Depends(tenant)
    ) -> Dict[str, Any]:
        settings = await runtime.settings.replace_conveyor_settings(
            user_id, body.model_dump(exclude_unset=True)
        )
        return settings.to_dict()

    @app.patch("/api/settings/conveyor")
    async def patch_conveyor_settings(
        body: ConveyorSettingsPayload, user_id: str = Depends(tenant)
    ) -> Dict[str, Any]:
        settings = await runtime.settings.merge_conveyor_settings(
            user_id, body.model_dump(exclude_unset=True)
        )
        return settings.to_dict()

    # ----- Content and scripts -------------------------------------------------------
    @app.post("/api/content-items", status_code=201)
    async def create_content_item(
        request: Request, body: ContentItemPayload, user_id: str = Depends(tenant)
    ) -> Dict[str, Any]:
        LOGGER.info("POST %s (user %s)", request.url.path, user_id)
        payload = body.model_dump(exclude_none=True)
        try:
            (item,) = await runtime.add_content_items(user_id, [payload])
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return item.to_dict()

    @app.get("/api/content-items")
    async def list_content_items(
        status: Optional[ContentStatus] = None, user_id: str = Depends(tenant)
    ) -> List[Dict[str, Any]]:
        statuses = [status] if status is not None else None
        items = await runtime.repository.list_content_items(user_id, statuses)
        return [item.to_dict() for item in items]

    @app.get("/api/scripts")
    async def list_scripts(
        status: Optional[ScriptStatus] = None, user_id: str = Depends(tenant)
    ) -> List[Dict[str, Any]]:
        scripts = await runtime.repository.list_scripts(user_id, status)
        return [script.to_dict() for script in scripts]

    @app.get("/api/scripts/{script_id}")
    async def get_script(script_id: str, user_id: str = Depends(tenant)) -> Dict[str, Any]:
        script = await runtime.get_script(user_id, script_id)
        iterations = await runtime.repository.list_iterations(script_id)
        return {
            "script": script.to_dict(),
            "iterations": [iteration.to_dict() for iteration in iterations],
        }

    @app.post("/api/scripts/{script_id}/review")
    async def review_script(
        request: Request, script_id: str, body: ReviewPayload, user_id: str = Depends(tenant)
    ) -> Dict[str, Any]:
        LOGGER.info("POST %s (user %s)", request.url.path, user_id)
        try:
            script = await runtime.review_script(user_id, script_id, body.approved, body.category)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return script.to_dict()

    return app


__all__ = ["create_app", "tenant"]
