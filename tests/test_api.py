"""HTTP tests for the FastAPI server running on dummy agents."""

from __future__ import annotations

import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

from script_conveyor.api.server import create_app
from script_conveyor.config import AgentSettings, ServiceConfig
from script_conveyor.services.event_stream import EventType
from script_conveyor.services.runtime import ConveyorRuntime

USER = {"X-User-Id": "u1"}


async def _no_sleep(delay: float) -> None:
    return None


def _runtime(backend: str = "dummy") -> ConveyorRuntime:
    return ConveyorRuntime(ServiceConfig(agents=AgentSettings(backend=backend)), sleep=_no_sleep)


@pytest.fixture
def client():
    with TestClient(create_app(_runtime(), run_periodic=False)) as test_client:
        yield test_client


def _add_item(client: TestClient, **overrides) -> dict:
    payload = {"id": "item-1", "title": "City opens a floating solar farm", "score": 85}
    payload.update(overrides)
    response = client.post("/api/content-items", json=payload, headers=USER)
    assert response.status_code == 201
    return response.json()


def _wait_for_script(client: TestClient, script_id: str) -> dict:
    for _ in range(200):
        active = client.get("/api/conveyor/status", headers=USER).json()["active_scripts"]
        if script_id not in active:
            return client.get(f"/api/scripts/{script_id}", headers=USER).json()
        time.sleep(0.01)
    raise AssertionError(f"Script {script_id} did not finish")


def test_content_items_are_scoped_to_the_tenant(client: TestClient) -> None:
    created = _add_item(client)

    assert created["status"] == "scored"
    assert [item["id"] for item in client.get("/api/content-items", headers=USER).json()] == ["item-1"]
    assert client.get("/api/content-items", headers={"X-User-Id": "u2"}).json() == []


def test_content_item_validation(client: TestClient) -> None:
    assert client.post("/api/content-items", json={"title": ""}, headers=USER).status_code == 422
    assert client.post("/api/content-items", json={"title": "x", "score": 101}, headers=USER).status_code == 422
    response = client.post("/api/content-items", json={"title": "x", "source_type": "tiktok"}, headers=USER)
    assert response.status_code == 422


def test_trigger_generates_an_approved_script(client: TestClient) -> None:
    _add_item(client)

    response = client.post("/api/conveyor/trigger", headers=USER)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["code"] == "started"
    (script_id,) = body["scriptIds"]

    detail = _wait_for_script(client, script_id)
    assert detail["script"]["status"] == "approved"
    assert detail["script"]["outcome"] == "approved"
    assert detail["script"]["final_score"] == 9
    assert [iteration["version"] for iteration in detail["iterations"]] == [1, 2]
    assert detail["iterations"][0]["review"]["verdict"] == "needs_revision"

    items = client.get("/api/content-items", headers=USER).json()
    assert items[0]["status"] == "used"

    history = client.get("/api/events/history", params={"itemId": "item-1"}, headers=USER).json()
    assert history[0]["type"] == "item:started"
    assert history[-1]["type"] == "item:completed"
    assert history[-1]["data"]["progress"] == 100

    status = client.get("/api/conveyor/status", headers=USER).json()
    assert status["items_processed_today"] == 1
    assert status["items_in_flight"] == 0


def test_trigger_without_items_returns_not_found(client: TestClient) -> None:
    response = client.post("/api/conveyor/trigger", headers=USER)

    assert response.status_code == 404
    assert response.json()["code"] == "no_items"


def test_paused_conveyor_refuses_to_trigger(client: TestClient) -> None:
    _add_item(client)
    assert client.post("/api/conveyor/pause", headers=USER).json()["code"] == "paused"

    response = client.post("/api/conveyor/trigger", headers=USER)
    assert response.status_code == 409
    assert response.json()["success"] is False

    assert client.post("/api/conveyor/resume", headers=USER).json()["code"] == "resumed"
    assert client.get("/api/conveyor/status", headers=USER).json()["enabled"] is True


def test_daily_limit_refusal(client: TestClient) -> None:
    _add_item(client)
    assert client.patch("/api/settings/conveyor", json={"daily_limit": 0}, headers=USER).status_code == 200

    response = client.post("/api/conveyor/trigger", headers=USER)

    assert response.status_code == 429
    assert response.json()["code"] == "daily_limit_reached"


def test_missing_provider_credentials_refuse_to_trigger() -> None:
    with TestClient(create_app(_runtime(backend="llm"), run_periodic=False)) as test_client:
        response = test_client.post("/api/conveyor/trigger", headers=USER)

    assert response.status_code == 503
    assert response.json()["code"] == "configuration_error"


def test_ai_settings_put_and_patch(client: TestClient) -> None:
    response = client.put(
        "/api/settings/ai",
        json={"editor_prompt": "Be strict", "style": {"tone": "funny"}},
        headers=USER,
    )
    assert response.status_code == 200
    assert response.json()["style"]["tone"] == "funny"

    patched = client.patch("/api/settings/ai", json={"max_iterations": 2}, headers=USER).json()
    assert patched["editor_prompt"] == "Be strict"
    assert patched["max_iterations"] == 2

    assert client.patch("/api/settings/ai", json={"max_iterations": 0}, headers=USER).status_code == 422
    assert client.patch("/api/settings/ai", json={"unknown": 1}, headers=USER).status_code == 422
    assert client.get("/api/settings/ai", headers={"X-User-Id": "u2"}).json()["editor_prompt"] == ""


def test_conveyor_settings_reject_counters(client: TestClient) -> None:
    response = client.patch("/api/settings/conveyor", json={"items_processed_today": 0}, headers=USER)

    assert response.status_code == 422


def test_human_review_decision(client: TestClient) -> None:
    client.patch("/api/settings/ai", json={"max_iterations": 1}, headers=USER)
    _add_item(client)
    (script_id,) = client.post("/api/conveyor/trigger", headers=USER).json()["scriptIds"]
    detail = _wait_for_script(client, script_id)
    assert detail["script"]["status"] == "human_review"
    assert detail["script"]["outcome"] == "max_iterations_reached"

    bad = client.post(f"/api/scripts/{script_id}/review", json={"approved": False, "category": "meh"}, headers=USER)
    assert bad.status_code == 422

    response = client.post(f"/api/scripts/{script_id}/review", json={"approved": True}, headers=USER)
    assert response.status_code == 200
    assert response.json()["status"] == "approved"

    again = client.post(f"/api/scripts/{script_id}/review", json={"approved": False}, headers=USER)
    assert again.status_code == 409
    assert client.get("/api/conveyor/status", headers=USER).json()["total_approved"] == 1


def test_unknown_script_is_not_found(client: TestClient) -> None:
    assert client.get("/api/scripts/missing", headers=USER).status_code == 404


def test_event_stream_delivers_events_as_sse() -> None:
    runtime = _runtime()
    with TestClient(create_app(runtime, run_periodic=False)) as client:

        def publish_then_close() -> None:
            runtime.events.emit(EventType.ITEM_STARTED, "u1", "item-1", message="Started")
            runtime.events.emit(EventType.ITEM_STARTED, "u2", "item-9", message="Not yours")
            runtime.events.close("u1")

        def publisher() -> None:
            for _ in range(500):
                if runtime.events.subscriber_count("u1"):
                    client.portal.call(publish_then_close)
                    return
                time.sleep(0.01)

        thread = threading.Thread(target=publisher)
        thread.start()
        response = client.get("/api/events/stream", headers=USER)
        thread.join()

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.text.startswith(": connected\n\n")
    frames = [frame for frame in response.text.split("\n\n") if frame.startswith("event: ")]
    (frame,) = frames
    event_line, data_line = frame.split("\n")
    assert event_line == "event: item:started"
    payload = json.loads(data_line[len("data: "):])
    assert payload["itemId"] == "item-1"
    assert payload["data"] == {"message": "Started"}
    assert runtime.events.subscriber_count("u1") == 0
