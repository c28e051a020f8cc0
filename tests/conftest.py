"""Shared fixtures for the workflow and worker tests."""

from __future__ import annotations

from collections.abc import Callable, Mapping

import pytest

from mediaflow.workers.client import LocalWorkerClient, WorkerFunction
from mediaflow.workers.middleware import InvocationRecorder
from mediaflow.workflow.clock import Clock, ManualClock
from mediaflow.workflow.engine import ExecutionEngine
from mediaflow.workflow.events import ExecutionEvent, ExecutionEventEmitter
from mediaflow.workflow.models import PipelineDefinition
from mediaflow.workflow.registry import PipelineRegistry
from mediaflow.workflow.store import ExecutionStore

START_TIME = 1_000.0


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=START_TIME)


@pytest.fixture
def recorder() -> InvocationRecorder:
    return InvocationRecorder()


@pytest.fixture
def events() -> list[ExecutionEvent]:
    return []


@pytest.fixture
def make_engine(
    clock: ManualClock,
    recorder: InvocationRecorder,
    events: list[ExecutionEvent],
) -> Callable[..., ExecutionEngine]:
    """Factory: ``make_engine(definitions, workers, store=None, clock=None)``.

    The engine runs on the manual clock unless another is passed, records
    invocations in ``recorder`` and collects every event in ``events``.
    """

    def factory(
        definitions: PipelineRegistry | list[PipelineDefinition],
        workers: Mapping[str, WorkerFunction],
        store: ExecutionStore | None = None,
        clock_override: Clock | None = None,
    ) -> ExecutionEngine:
        registry = (
            definitions
            if isinstance(definitions, PipelineRegistry)
            else PipelineRegistry(definitions)
        )
        emitter = ExecutionEventEmitter()

        async def collect(event: ExecutionEvent) -> None:
            events.append(event)

        emitter.on_any(collect)
        return ExecutionEngine(
            registry=registry,
            client=LocalWorkerClient(workers, middleware=[recorder]),
            store=store,
            clock=clock_override or clock,
            event_emitter=emitter,
        )

    return factory
