"""Tests for node handlers evaluated against a stub scope."""

from typing import Any

import pytest

from mediaflow.workers.client import LocalWorkerClient
from mediaflow.workflow.clock import ManualClock
from mediaflow.workflow.errors import NodeFailure
from mediaflow.workflow.handlers import (
    ChoiceHandler,
    ExecutionScope,
    FailHandler,
    HandlerRegistry,
    NodeHandler,
    TaskHandler,
    WaitHandler,
    create_default_registry,
)
from mediaflow.workflow.models import (
    Advance,
    ChoiceNode,
    ChoiceRule,
    Complete,
    ExecutionStatus,
    FailNode,
    NodeType,
    Suspend,
    TaskNode,
    WaitNode,
)


class StubScope:
    """Minimal ExecutionScope for evaluating one node in isolation."""

    def __init__(self, client: Any = None, clock: ManualClock | None = None) -> None:
        self.client = client or LocalWorkerClient()
        self.clock = clock or ManualClock(start=500.0)
        self.emitted: list[tuple[Any, str, dict[str, Any]]] = []

    def path_for(self, node_name: str) -> str:
        return f"Outer/0/{node_name}"

    def context_object(self, map_item=None) -> dict[str, Any]:
        return {"Execution": {"Id": "e1", "Name": "e1", "Pipeline": "P", "StartTime": 0}}

    async def emit(self, event_type, node, **data) -> None:
        self.emitted.append((event_type, node.name, data))

    async def run_graph(self, graph, input, prefix, map_item=None) -> Any:
        raise NotImplementedError


def test_stub_scope_satisfies_protocol() -> None:
    assert isinstance(StubScope(), ExecutionScope)


class TestHandlerRegistry:
    def test_default_registry_covers_every_node_type(self) -> None:
        registry = create_default_registry()
        assert set(registry.registered_types) == set(NodeType)
        for node_type in NodeType:
            assert isinstance(registry.get(node_type), NodeHandler)

    def test_missing_handler(self) -> None:
        registry = HandlerRegistry()
        assert not registry.has(NodeType.WAIT)
        with pytest.raises(KeyError, match="Wait"):
            registry.get(NodeType.WAIT)

    def test_register_replaces(self) -> None:
        registry = create_default_registry()
        replacement = WaitHandler()
        registry.register(NodeType.WAIT, replacement)
        assert registry.get(NodeType.WAIT) is replacement


async def test_task_handler_shapes_payload_and_result() -> None:
    received: list[dict[str, Any]] = []

    async def worker(payload: dict[str, Any]) -> dict[str, Any]:
        received.append(payload)
        return {"status": "ok"}

    node = TaskNode(
        name="Call",
        end=True,
        worker="w",
        input_path="$.job",
        parameters={"type": "check", "id.$": "$.id", "run.$": "$$.Execution.Id"},
        result_path="$.result",
        output_path="$",
    )
    scope = StubScope(client=LocalWorkerClient({"w": worker}))

    evaluation = await TaskHandler().execute(node, {"job": {"id": 7}, "keep": 1}, scope)

    assert received == [{"type": "check", "id": 7, "run": "e1"}]
    assert evaluation.context == {"job": {"id": 7}, "keep": 1, "result": {"status": "ok"}}
    assert evaluation.outcome == Advance(None)


class TestChoiceHandler:
    node = ChoiceNode(
        name="Ready",
        choices=(ChoiceRule("boolean_equals", "$.ready", True, next="Go"),),
        default="Wait",
    )

    async def test_rule_match(self) -> None:
        evaluation = await ChoiceHandler().execute(self.node, {"ready": True}, StubScope())
        assert evaluation.outcome == Advance("Go")

    async def test_default(self) -> None:
        evaluation = await ChoiceHandler().execute(self.node, {}, StubScope())
        assert evaluation.outcome == Advance("Wait")

    async def test_no_match_no_default(self) -> None:
        node = ChoiceNode(name="Ready", choices=self.node.choices)
        with pytest.raises(NodeFailure) as excinfo:
            await ChoiceHandler().execute(node, {}, StubScope())
        assert excinfo.value.error == "NoChoiceMatched"
        assert excinfo.value.path == "Outer/0/Ready"


async def test_wait_handler_suspends_until_expiry() -> None:
    node = WaitNode(name="Pause", next="Check", seconds=10)
    evaluation = await WaitHandler().execute(node, {"a": 1}, StubScope())
    assert evaluation.outcome == Suspend(resume_at=510.0, next_node="Check")
    assert evaluation.context == {"a": 1}


async def test_fail_handler_completes_failed() -> None:
    node = FailNode(name="Stop", error="Rejected", cause="bad input")
    evaluation = await FailHandler().execute(node, {}, StubScope())
    assert evaluation.outcome == Complete(ExecutionStatus.FAILED, "Rejected", "bad input")
