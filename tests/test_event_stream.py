from __future__ import annotations

import asyncio
import json

import pytest

from script_conveyor.config import EventSettings
from script_conveyor.services.event_stream import ConveyorEvent, EventData, EventStream, EventType


def test_payload_is_camel_case_without_empty_fields() -> None:
    event = ConveyorEvent(
        type=EventType.STAGE,
        user_id="u1",
        item_id="item-1",
        data=EventData(stage=2, stage_name="Editor", progress=50),
    )

    payload = event.to_payload()

    assert payload["userId"] == "u1"
    assert payload["itemId"] == "item-1"
    assert payload["data"] == {"stage": 2, "stageName": "Editor", "progress": 50}


def test_sse_frame_format() -> None:
    event = ConveyorEvent(type=EventType.THINKING, user_id="u1", item_id="i", data=EventData(thinking="hmm"))

    frame = event.to_sse()

    assert frame.startswith("event: thinking\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1])["data"] == {"thinking": "hmm"}


@pytest.mark.asyncio
async def test_subscribers_receive_only_their_tenant() -> None:
    stream = EventStream()

    async with stream.subscribe("u1") as mine, stream.subscribe("u2") as theirs:
        stream.emit(EventType.ITEM_STARTED, "u1", "a", message="go")
        event = await mine.get(timeout=1)

        assert event.item_id == "a"
        assert event.data.message == "go"
        with pytest.raises(asyncio.TimeoutError):
            await theirs.get(timeout=0.01)

    assert stream.subscriber_count("u1") == 0


@pytest.mark.asyncio
async def test_per_item_order_is_preserved() -> None:
    stream = EventStream()
    received = []

    async with stream.subscribe("u1") as subscription:
        for index in range(5):
            stream.emit(EventType.STAGE, "u1", "a", progress=index * 20)
        async for event in subscription:
            received.append(event.data.progress)
            if len(received) == 5:
                break

    assert received == [0, 20, 40, 60, 80]


@pytest.mark.asyncio
async def test_full_subscriber_queue_drops_events() -> None:
    stream = EventStream(subscriber_queue_size=2)

    async with stream.subscribe("u1") as subscription:
        for index in range(4):
            stream.emit(EventType.THINKING, "u1", "a", thinking=str(index))

        assert subscription.dropped == 2
        assert (await subscription.get()).data.thinking == "0"

    assert len(stream.history("u1")) == 4


def test_history_is_bounded_per_item_and_in_emission_order() -> None:
    stream = EventStream(replay_buffer_size=3)
    for index in range(5):
        stream.emit(EventType.STAGE, "u1", "a", progress=index)
    stream.emit(EventType.STAGE, "u1", "b", progress=99)

    assert [event.data.progress for event in stream.history("u1", item_id="a")] == [2, 3, 4]
    assert [event.data.progress for event in stream.history("u1")] == [2, 3, 4, 99]
    assert [event.data.progress for event in stream.history("u1", limit=2)] == [4, 99]
    assert stream.history("u2") == []


def test_oldest_items_are_forgotten() -> None:
    stream = EventStream(max_tracked_items=2)
    for item_id in ("a", "b", "c"):
        stream.emit(EventType.ITEM_STARTED, "u1", item_id)

    assert {event.item_id for event in stream.history("u1")} == {"b", "c"}


def test_sequence_numbers_increase() -> None:
    stream = EventStream()
    first = stream.emit(EventType.ITEM_STARTED, "u1", "a")
    second = stream.emit(EventType.ITEM_COMPLETED, "u1", "a")

    assert second.seq > first.seq


def test_built_from_settings() -> None:
    stream = EventStream.from_settings(
        EventSettings(replay_buffer_size=7, subscriber_queue_size=3, max_tracked_tenants=4)
    )

    assert stream.replay_buffer_size == 7
    assert stream.subscriber_queue_size == 3
    assert stream.max_tracked_tenants == 4


def test_least_recent_tenants_are_forgotten() -> None:
    stream = EventStream(max_tracked_tenants=2)
    stream.emit(EventType.ITEM_STARTED, "u1", "a")
    stream.emit(EventType.ITEM_STARTED, "u2", "a")
    stream.emit(EventType.STAGE, "u1", "a")
    stream.emit(EventType.ITEM_STARTED, "u3", "a")

    assert len(stream.history("u1")) == 2
    assert stream.history("u2") == []
    assert len(stream.history("u3")) == 1


@pytest.mark.asyncio
async def test_close_ends_live_subscriptions() -> None:
    stream = EventStream()
    received = []

    async with stream.subscribe("u1") as first, stream.subscribe("u2") as second:
        stream.emit(EventType.ITEM_STARTED, "u1", "a")
        stream.close("u1")
        async for event in first:
            received.append(event.type)

        assert received == [EventType.ITEM_STARTED]
        assert second.offer(ConveyorEvent(type=EventType.STAGE, user_id="u2", item_id="a"))

        stream.close()
        assert await second.get(timeout=1) is not None
        assert await second.get(timeout=1) is None
