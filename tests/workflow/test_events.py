"""Tests for the execution event emitter."""

import logging

from mediaflow.workflow.events import (
    ExecutionEvent,
    ExecutionEventEmitter,
    ExecutionEventType,
)
from mediaflow.workflow.parser import parse_definition


async def test_typed_and_catch_all_listeners() -> None:
    emitter = ExecutionEventEmitter()
    typed: list[ExecutionEvent] = []
    everything: list[ExecutionEvent] = []

    async def on_retry(event: ExecutionEvent) -> None:
        typed.append(event)

    async def on_any(event: ExecutionEvent) -> None:
        everything.append(event)

    emitter.on(ExecutionEventType.NODE_RETRY, on_retry)
    emitter.on_any(on_any)

    await emitter.emit(ExecutionEvent(ExecutionEventType.NODE_ENTERED, node_name="A"))
    await emitter.emit(ExecutionEvent(ExecutionEventType.NODE_RETRY, node_name="A"))

    assert [e.type for e in typed] == [ExecutionEventType.NODE_RETRY]
    assert len(everything) == 2
    assert list(emitter.listeners) == [ExecutionEventType.NODE_RETRY]


async def test_callback_errors_are_logged_not_raised(caplog) -> None:
    emitter = ExecutionEventEmitter()
    received: list[ExecutionEvent] = []

    async def broken(event: ExecutionEvent) -> None:
        raise RuntimeError("listener bug")

    async def healthy(event: ExecutionEvent) -> None:
        received.append(event)

    emitter.on(ExecutionEventType.EXECUTION_FAILED, broken)
    emitter.on(ExecutionEventType.EXECUTION_FAILED, healthy)

    with caplog.at_level(logging.ERROR, logger="mediaflow.workflow.events"):
        await emitter.emit(ExecutionEvent(ExecutionEventType.EXECUTION_FAILED))

    assert len(received) == 1
    assert "listener bug" in caplog.text


async def test_nested_events_carry_paths(make_engine, events) -> None:
    definition = parse_definition({
        "name": "Nested",
        "start_at": "Items",
        "nodes": {
            "Items": {
                "type": "Map",
                "items_path": "$.items",
                "processor": {"start_at": "Work", "nodes": {
                    "Work": {"type": "Task", "worker": "work", "end": True},
                }},
                "end": True,
            },
        },
    })

    async def work(payload):
        return payload

    engine = make_engine([definition], {"work": work})
    await engine.run("Nested", {"items": [{"k": "x"}, {"k": "y"}]})

    started = [e for e in events if e.type is ExecutionEventType.MAP_ITERATION_STARTED]
    assert sorted(e.data["index"] for e in started) == [0, 1]
    entered = {e.path for e in events if e.type is ExecutionEventType.NODE_ENTERED}
    assert entered == {"Items", "Items/0/Work", "Items/1/Work"}
    completed = [e for e in events if e.type is ExecutionEventType.MAP_ITERATION_COMPLETED]
    assert all(e.data["failed"] is False for e in completed)
