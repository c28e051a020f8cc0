"""State node evaluators.

Each handler implements the :class:`NodeHandler` protocol: a single
``execute`` async method that receives the node, the current context and
the :class:`ExecutionScope` it runs in, and returns an
:class:`~mediaflow.workflow.models.Evaluation` (new context plus
``Advance``/``Suspend``/``Complete``).

Handlers evaluate a node exactly once.  Retry policy, deadlines,
history and persistence belong to the engine, which reaches handlers
through the :class:`HandlerRegistry`.  Map and Parallel run their inner
graphs through :meth:`ExecutionScope.run_graph`.

Failures are raised, not returned: a :class:`NodeFailure` for a
classified failure, :class:`PathError` when a reference path does not
resolve, and worker failures straight from the client.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
from typing import Any, Protocol, runtime_checkable

from mediaflow.workers.client import WorkerClient
from mediaflow.workflow.clock import Clock
from mediaflow.workflow.conditions import first_match
from mediaflow.workflow.errors import (
    BRANCH_FAILED,
    NO_CHOICE_MATCHED,
    NodeFailure,
    PathError,
)
from mediaflow.workflow.events import ExecutionEventType
from mediaflow.workflow.models import (
    Advance,
    ChoiceNode,
    Complete,
    Evaluation,
    ExecutionStatus,
    FailNode,
    Graph,
    MapNode,
    NodeType,
    ParallelNode,
    StateNode,
    SucceedNode,
    Suspend,
    TaskNode,
    WaitNode,
)
from mediaflow.workflow.paths import get_path, resolve_template, select, set_path

logger = logging.getLogger(__name__)


@runtime_checkable
class ExecutionScope(Protocol):
    """What a handler may use from the running execution."""

    @property
    def client(self) -> WorkerClient: ...

    @property
    def clock(self) -> Clock: ...

    def path_for(self, node_name: str) -> str: ...

    def context_object(self, map_item: tuple[int, Any] | None = None) -> dict[str, Any]: ...

    async def emit(
        self, event_type: ExecutionEventType, node: StateNode, **data: Any
    ) -> None: ...

    async def run_graph(
        self,
        graph: Graph,
        input: Any,
        prefix: str,
        map_item: tuple[int, Any] | None = None,
    ) -> Any: ...


@runtime_checkable
class NodeHandler(Protocol):
    """Protocol that all node handlers must satisfy."""

    async def execute(
        self, node: Any, context: Any, scope: ExecutionScope
    ) -> Evaluation: ...


class HandlerRegistry:
    """Registry mapping node types to handler instances.

    Used by :class:`~mediaflow.workflow.engine.ExecutionEngine` to
    dispatch evaluation based on the node's type tag.
    """

    def __init__(self) -> None:
        self._handlers: dict[NodeType, NodeHandler] = {}

    def register(self, node_type: NodeType, handler: NodeHandler) -> None:
        """Register *handler* for *node_type*, replacing any previous one."""
        self._handlers[node_type] = handler

    def get(self, node_type: NodeType) -> NodeHandler:
        """Return the handler for *node_type*.

        Raises:
            KeyError: If no handler is registered.
        """
        try:
            return self._handlers[node_type]
        except KeyError:
            raise KeyError(f"No handler registered for node type '{node_type.value}'") from None

    def has(self, node_type: NodeType) -> bool:
        return node_type in self._handlers

    @property
    def registered_types(self) -> list[NodeType]:
        return list(self._handlers)


def _next_outcome(node: StateNode) -> Advance:
    return Advance(None if node.end else node.next)


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


class TaskHandler:
    """Invoke the node's worker once.

    ``input_path`` selects the effective input, ``parameters`` shapes the
    payload, the worker output is placed at ``result_path`` in the
    original context and ``output_path`` selects what flows on.
    """

    async def execute(
        self, node: TaskNode, context: Any, scope: ExecutionScope
    ) -> Evaluation:
        effective = select(context, node.input_path)
        if node.parameters is not None:
            payload = resolve_template(node.parameters, effective, scope.context_object())
        else:
            payload = copy.deepcopy(effective)

        output = await scope.client.invoke(node.worker, payload)

        merged = set_path(context, node.result_path, output)
        return Evaluation(
            context=select(merged, node.output_path),
            outcome=_next_outcome(node),
        )


# ---------------------------------------------------------------------------
# Map
# ---------------------------------------------------------------------------


class MapHandler:
    """Run the processor graph once per item, at most ``max_concurrency`` at a time.

    Results keep item order.  The first item failure that exceeds the
    tolerated failures stops further dispatch; items already running are
    allowed to finish before the Map fails.
    """

    async def execute(
        self, node: MapNode, context: Any, scope: ExecutionScope
    ) -> Evaluation:
        effective = select(context, node.input_path)
        items = get_path(effective, node.items_path, scope.context_object())
        if not isinstance(items, list):
            raise PathError(
                f"items_path {node.items_path!r} resolved to "
                f"{type(items).__name__}, expected an array"
            )

        total = len(items)
        path = scope.path_for(node.name)
        results: list[Any] = [None] * total
        failures: list[NodeFailure] = []
        stopped = False

        semaphore = (
            asyncio.Semaphore(node.max_concurrency) if node.max_concurrency > 0 else None
        )

        def exceeded() -> bool:
            if not node.tolerates_failures:
                return bool(failures)
            count = node.tolerated_failure_count
            pct = node.tolerated_failure_percentage
            if count is not None and len(failures) > count:
                return True
            return pct is not None and total > 0 and len(failures) * 100.0 / total > pct

        async def run_item(index: int, item: Any) -> None:
            nonlocal stopped
            async with semaphore if semaphore is not None else contextlib.nullcontext():
                if stopped:
                    return
                await scope.emit(
                    ExecutionEventType.MAP_ITERATION_STARTED, node, index=index
                )
                map_item = (index, item)
                if node.item_selector is not None:
                    item_input = resolve_template(
                        node.item_selector, effective, scope.context_object(map_item)
                    )
                else:
                    item_input = copy.deepcopy(item)
                failed = False
                try:
                    results[index] = await scope.run_graph(
                        node.processor, item_input, f"{path}/{index}/", map_item
                    )
                except NodeFailure as failure:
                    failed = True
                    failures.append(failure)
                    results[index] = {"Error": failure.error, "Cause": failure.cause}
                    if exceeded() and not stopped:
                        stopped = True
                        logger.error(
                            "Map '%s' item %d failed (%s); no further items dispatched",
                            path, index, failure.error,
                        )
                await scope.emit(
                    ExecutionEventType.MAP_ITERATION_COMPLETED,
                    node,
                    index=index,
                    failed=failed,
                )

        tasks = [asyncio.create_task(run_item(i, item)) for i, item in enumerate(items)]
        await _gather_or_cancel(tasks)

        if exceeded():
            if not node.tolerates_failures:
                raise failures[0]
            first = failures[0]
            raise NodeFailure(
                node.name,
                BRANCH_FAILED,
                f"{len(failures)} of {total} items failed; first at "
                f"{first.path}: {first.error}: {first.cause}",
                path=path,
            )

        merged = set_path(context, node.result_path, results)
        return Evaluation(
            context=select(merged, node.output_path),
            outcome=_next_outcome(node),
        )


async def _gather_or_cancel(tasks: list[asyncio.Task[Any]]) -> list[Any]:
    """Await *tasks*; if one raises, cancel the rest and re-raise."""
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        raise


# ---------------------------------------------------------------------------
# Parallel
# ---------------------------------------------------------------------------


class ParallelHandler:
    """Run every branch concurrently to completion.

    Results are an array in branch declaration order.  If any branch
    fails the node fails with the first failure observed, after the
    sibling branches have finished.
    """

    async def execute(
        self, node: ParallelNode, context: Any, scope: ExecutionScope
    ) -> Evaluation:
        effective = select(context, node.input_path)
        path = scope.path_for(node.name)
        results: list[Any] = [None] * len(node.branches)
        failures: list[NodeFailure] = []

        async def run_branch(index: int, branch: Graph) -> None:
            await scope.emit(
                ExecutionEventType.PARALLEL_BRANCH_STARTED, node, branch=index
            )
            status = "succeeded"
            try:
                results[index] = await scope.run_graph(
                    branch, copy.deepcopy(effective), f"{path}/{index}/"
                )
            except NodeFailure as failure:
                status = "failed"
                failures.append(failure)
                logger.error(
                    "Parallel '%s' branch %d failed at %s: %s",
                    path, index, failure.path, failure.error,
                )
            await scope.emit(
                ExecutionEventType.PARALLEL_BRANCH_COMPLETED,
                node,
                branch=index,
                status=status,
            )

        tasks = [
            asyncio.create_task(run_branch(i, branch))
            for i, branch in enumerate(node.branches)
        ]
        await _gather_or_cancel(tasks)

        if failures:
            raise failures[0]

        merged = set_path(context, node.result_path, results)
        return Evaluation(
            context=select(merged, node.output_path),
            outcome=_next_outcome(node),
        )


# ---------------------------------------------------------------------------
# Choice / Wait / terminals
# ---------------------------------------------------------------------------


class ChoiceHandler:
    """First matching rule wins, else the default edge."""

    async def execute(
        self, node: ChoiceNode, context: Any, scope: ExecutionScope
    ) -> Evaluation:
        rule = first_match(node.choices, context)
        target = rule.next if rule is not None else node.default
        if target is None:
            raise NodeFailure(
                node.name,
                NO_CHOICE_MATCHED,
                "No choice rule matched and no default is declared",
                path=scope.path_for(node.name),
            )
        logger.debug("Choice '%s' -> '%s'", node.name, target)
        return Evaluation(context=context, outcome=Advance(target))


class WaitHandler:
    """Suspend for the configured duration; the engine schedules the resume."""

    async def execute(
        self, node: WaitNode, context: Any, scope: ExecutionScope
    ) -> Evaluation:
        resume_at = scope.clock.now() + node.seconds
        return Evaluation(
            context=context,
            outcome=Suspend(resume_at=resume_at, next_node=None if node.end else node.next),
        )


class SucceedHandler:
    async def execute(
        self, node: SucceedNode, context: Any, scope: ExecutionScope
    ) -> Evaluation:
        return Evaluation(context=context, outcome=Complete(ExecutionStatus.SUCCEEDED))


class FailHandler:
    async def execute(
        self, node: FailNode, context: Any, scope: ExecutionScope
    ) -> Evaluation:
        return Evaluation(
            context=context,
            outcome=Complete(ExecutionStatus.FAILED, error=node.error, cause=node.cause),
        )


def create_default_registry() -> HandlerRegistry:
    """Create a :class:`HandlerRegistry` pre-loaded with the built-in handlers."""
    registry = HandlerRegistry()
    registry.register(NodeType.TASK, TaskHandler())
    registry.register(NodeType.MAP, MapHandler())
    registry.register(NodeType.PARALLEL, ParallelHandler())
    registry.register(NodeType.CHOICE, ChoiceHandler())
    registry.register(NodeType.WAIT, WaitHandler())
    registry.register(NodeType.SUCCEED, SucceedHandler())
    registry.register(NodeType.FAIL, FailHandler())
    return registry
