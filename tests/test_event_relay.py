# tests/test_event_relay.py

from __future__ import annotations

import asyncio

import pytest

from wallet_orchestrator.events.relay import EventRelay, TaskEvent, TaskEventName


def test_observers_receive_events_in_emission_order() -> None:
    relay = EventRelay()
    seen: list[TaskEvent] = []
    relay.subscribe(seen.append)

    relay.emit("taskCreated", "t1", {"id": "t1"})
    relay.emit("taskStarted", "t1", {"id": "t1"})

    assert [e.name for e in seen] == [TaskEventName.TASK_CREATED, TaskEventName.TASK_STARTED]
    assert seen[0].payload == {"id": "t1"}


def test_filtered_subscription_and_unsubscribe() -> None:
    relay = EventRelay()
    seen: list[str] = []

    with relay.subscribe(lambda e: seen.append(e.task_id), events=[TaskEventName.TASK_FINISHED]) as sub:
        relay.emit("taskStarted", "t1", {})
        relay.emit("taskFinished", "t1", {})
        assert sub.active

    relay.emit("taskFinished", "t2", {})
    assert seen == ["t1"]
    assert not sub.active
    assert len(relay) == 0


def test_failing_observer_is_isolated() -> None:
    relay = EventRelay()
    seen: list[str] = []

    def broken(_e: TaskEvent) -> None:
        raise RuntimeError("boom")

    relay.subscribe(broken)
    relay.subscribe(lambda e: seen.append(e.name.value))

    relay.emit("taskLog", "t1", {"message": "hi"})
    assert seen == ["taskLog"]


def test_unknown_event_name_is_rejected() -> None:
    relay = EventRelay()
    with pytest.raises(ValueError):
        relay.emit("taskExploded", "t1", {})


@pytest.mark.asyncio
async def test_stream_yields_events_and_unsubscribes_on_close() -> None:
    relay = EventRelay()
    stream = relay.stream(events=["taskProgress"])

    async def consume() -> list[int]:
        out: list[int] = []
        async for event in stream:
            out.append(event.payload["progress"])
            if len(out) == 2:
                break
        return out

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)

    relay.emit("taskProgress", "t1", {"progress": 10})
    relay.emit("taskStarted", "t1", {})
    relay.emit("taskProgress", "t1", {"progress": 20})

    assert await asyncio.wait_for(consumer, timeout=1.0) == [10, 20]
    await stream.aclose()
    assert len(relay) == 0
