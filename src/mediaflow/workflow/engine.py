"""Execution engine.

Drives one pipeline execution at a time per asyncio task: walks the
graph from its start node, dispatches each node to its registered
handler, applies the Task retry policy, enforces the execution deadline
and records history and context in the Execution Store after every node.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from mediaflow.workers.client import WorkerClient
from mediaflow.workers.errors import TransportError, WorkerFailure
from mediaflow.workflow.clock import Clock, SystemClock
from mediaflow.workflow.errors import (
    ABORTED,
    PATH_ERROR,
    TIMEOUT_ERROR,
    ExecutionClosedError,
    ExecutionTimeoutError,
    NodeFailure,
    PathError,
)
from mediaflow.workflow.events import (
    ExecutionEvent,
    ExecutionEventEmitter,
    ExecutionEventType,
)
from mediaflow.workflow.handlers import HandlerRegistry, create_default_registry
from mediaflow.workflow.models import (
    Advance,
    Complete,
    Evaluation,
    Execution,
    ExecutionStatus,
    Graph,
    HistoryEntry,
    NodeType,
    PipelineDefinition,
    Retrier,
    StateNode,
    Suspend,
    TaskNode,
)
from mediaflow.workflow.registry import PipelineRegistry
from mediaflow.workflow.store import ExecutionStore, InMemoryExecutionStore, diff_context

logger = logging.getLogger(__name__)

_NOT_RETRIED = frozenset({TIMEOUT_ERROR, PATH_ERROR})

_TERMINAL_EVENTS = {
    ExecutionStatus.SUCCEEDED: ExecutionEventType.EXECUTION_SUCCEEDED,
    ExecutionStatus.FAILED: ExecutionEventType.EXECUTION_FAILED,
    ExecutionStatus.TIMED_OUT: ExecutionEventType.EXECUTION_TIMED_OUT,
    ExecutionStatus.ABORTED: ExecutionEventType.EXECUTION_ABORTED,
}


class ExecutionEngine:
    """Runs pipeline executions to a terminal status.

    Each execution gets its own asyncio task.  Within an execution the
    engine:

    1. Checks the deadline before every node (nested ones included).
    2. Dispatches the node to the handler registered for its type,
       retrying Task nodes per their retry rules.
    3. Appends a history entry and persists the context delta.
    4. Advances, suspends on a timer (Wait), or completes.

    A watchdog abandons in-flight work at the deadline so the execution
    reaches ``TIMED_OUT`` without waiting for a hung worker.

    Args:
        registry: Pipeline definitions by name.
        client: Worker invocation client used by Task nodes.
        store: Execution store (in-memory if omitted).
        clock: Time source (real time if omitted).
        event_emitter: Optional observer for lifecycle events.
        handlers: Node handlers (the built-in set if omitted).
        owner: Lease owner name used with the store's single-writer lease.
    """

    def __init__(
        self,
        registry: PipelineRegistry,
        client: WorkerClient,
        store: ExecutionStore | None = None,
        clock: Clock | None = None,
        event_emitter: ExecutionEventEmitter | None = None,
        handlers: HandlerRegistry | None = None,
        owner: str | None = None,
    ) -> None:
        self._registry = registry
        self._client = client
        self._store: ExecutionStore = store or InMemoryExecutionStore()
        self._clock: Clock = clock or SystemClock()
        self._event_emitter = event_emitter
        self._handlers = handlers or create_default_registry()
        self._owner = owner or f"engine-{uuid.uuid4().hex[:8]}"
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def store(self) -> ExecutionStore:
        return self._store

    @property
    def registry(self) -> PipelineRegistry:
        return self._registry

    @property
    def clock(self) -> Clock:
        return self._clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_execution(
        self,
        pipeline_name: str,
        input: Any = None,
        name: str | None = None,
    ) -> str:
        """Submit a new execution and return its id without waiting.

        Args:
            pipeline_name: Registered pipeline to run.
            input: Initial context document (``{}`` if omitted).
            name: Optional execution id; generated when omitted.

        Raises:
            PipelineNotFoundError: If *pipeline_name* is not registered.
            ExecutionConflictError: If *name* is already in use.
        """
        definition = self._registry.get(pipeline_name)
        now = self._clock.now()
        execution_id = await self._store.create(
            definition.name,
            {} if input is None else input,
            deadline=now + definition.timeout_seconds,
            execution_id=name,
            started_at=now,
            current_node=definition.start_at,
        )
        await self._store.claim(execution_id, self._owner)
        logger.info(
            "Starting execution '%s' of pipeline '%s'", execution_id, definition.name
        )
        self._spawn(definition, execution_id)
        return execution_id

    async def describe_execution(self, execution_id: str) -> Execution:
        """Return status, current context and history of an execution.

        Raises:
            ExecutionNotFoundError: If no such execution exists.
        """
        return await self._store.get(execution_id)

    async def wait_for(self, execution_id: str) -> Execution:
        """Wait until the execution's task (if running here) finishes."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait({task})
        return await self.describe_execution(execution_id)

    async def run(
        self,
        pipeline_name: str,
        input: Any = None,
        name: str | None = None,
    ) -> Execution:
        """Submit an execution and wait for its terminal status."""
        execution_id = await self.start_execution(pipeline_name, input, name=name)
        return await self.wait_for(execution_id)

    async def resume_execution(self, execution_id: str, force: bool = False) -> str:
        """Continue a persisted RUNNING execution from its resume point.

        A pending Wait (``resume_at``) is honoured; an expired deadline
        times the execution out immediately.  An execution whose last
        node already completed is only finished, never re-run.

        Args:
            execution_id: The execution to continue.
            force: Break a lease left behind by a crashed owner first.

        Raises:
            ExecutionNotFoundError: If no such execution exists.
            ExecutionClosedError: If the execution is already terminal.
            ExecutionConflictError: If another engine owns the execution.
        """
        execution = await self._store.get(execution_id)
        if execution.status.is_terminal:
            raise ExecutionClosedError(
                f"Execution '{execution_id}' is {execution.status.value}"
            )
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            return execution_id
        definition = self._registry.get(execution.pipeline_name)
        if force:
            await self._store.break_lease(execution_id)
        await self._store.claim(execution_id, self._owner)
        logger.info(
            "Resuming execution '%s' at node '%s'",
            execution_id,
            execution.current_node,
        )
        self._spawn(definition, execution_id)
        return execution_id

    async def stop_execution(
        self,
        execution_id: str,
        error: str = ABORTED,
        cause: str = "Stopped by request",
    ) -> Execution:
        """Abort a RUNNING execution.

        The status is written first so any late write from the run is
        rejected, then the run task is cancelled.

        Raises:
            ExecutionClosedError: If the execution is already terminal.
        """
        await self._store.set_status(
            execution_id,
            ExecutionStatus.ABORTED,
            error=error,
            cause=cause,
            stopped_at=self._clock.now(),
        )
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            task.cancel()
        execution = await self._store.get(execution_id)
        logger.warning("Execution '%s' aborted: %s", execution_id, cause)
        await self._emit(
            ExecutionEventType.EXECUTION_ABORTED,
            execution_id,
            execution.pipeline_name,
            data={"error": error, "cause": cause},
        )
        return execution

    # ------------------------------------------------------------------
    # Execution lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, definition: PipelineDefinition, execution_id: str) -> None:
        task = asyncio.create_task(
            self._drive(definition, execution_id), name=f"execution-{execution_id}"
        )
        self._tasks[execution_id] = task

    async def _drive(self, definition: PipelineDefinition, execution_id: str) -> None:
        """Run the execution under the deadline watchdog and record its end."""
        execution = await self._store.get(execution_id)
        scope = _Scope(
            self,
            execution_id,
            definition.name,
            execution.started_at,
            execution.deadline,
        )
        await self._emit(
            ExecutionEventType.EXECUTION_STARTED,
            execution_id,
            definition.name,
            data={"resumed": bool(execution.history)},
        )

        run_task = asyncio.create_task(self._run_top_level(definition, execution, scope))
        run_task.add_done_callback(_retrieve_result)
        try:
            remaining = None
            if execution.deadline is not None:
                remaining = max(0.0, execution.deadline - self._clock.now())
            done, _ = await asyncio.wait({run_task}, timeout=remaining)
            if run_task in done:
                try:
                    status, error, cause = run_task.result()
                except ExecutionClosedError:
                    raise
                except Exception as exc:
                    logger.exception("Execution '%s' crashed", execution_id)
                    status, error, cause = (
                        ExecutionStatus.FAILED,
                        type(exc).__name__,
                        str(exc),
                    )
            else:
                # Abandon in-flight work without waiting for it to unwind.
                run_task.cancel()
                logger.error(
                    "Execution '%s' passed its deadline; abandoning in-flight work",
                    execution_id,
                )
                status, error, cause = (
                    ExecutionStatus.TIMED_OUT,
                    TIMEOUT_ERROR,
                    "Execution deadline exceeded",
                )
            await self._finish(execution_id, definition.name, status, error, cause)
        except ExecutionClosedError:
            logger.info("Execution '%s' was closed while running", execution_id)
        except asyncio.CancelledError:
            run_task.cancel()
            raise
        finally:
            await self._store.release(execution_id, self._owner)

    async def _run_top_level(
        self,
        definition: PipelineDefinition,
        execution: Execution,
        scope: _Scope,
    ) -> tuple[ExecutionStatus, str | None, str | None]:
        if execution.current_node is None and execution.history:
            # The last node finished before the run could record its end.
            logger.info(
                "Execution '%s' already completed its last node; finishing it",
                execution.execution_id,
            )
            return _completion_from_history(execution.history)
        node_name = execution.current_node or definition.start_at
        try:
            if execution.resume_at is not None:
                await scope.sleep_until(execution.resume_at)
            _, outcome, _ = await self._walk(
                definition.graph, execution.context, node_name, scope, persist=True
            )
        except ExecutionTimeoutError:
            return ExecutionStatus.TIMED_OUT, TIMEOUT_ERROR, "Execution deadline exceeded"
        except NodeFailure as failure:
            return ExecutionStatus.FAILED, failure.error, failure.cause
        return outcome.status, outcome.error, outcome.cause

    async def _finish(
        self,
        execution_id: str,
        pipeline_name: str,
        status: ExecutionStatus,
        error: str | None,
        cause: str | None,
    ) -> None:
        await self._store.set_status(
            execution_id, status, error=error, cause=cause, stopped_at=self._clock.now()
        )
        if status is ExecutionStatus.SUCCEEDED:
            logger.info("Execution '%s' succeeded", execution_id)
        else:
            logger.error(
                "Execution '%s' %s: %s: %s", execution_id, status.value, error, cause
            )
        await self._emit(
            _TERMINAL_EVENTS[status],
            execution_id,
            pipeline_name,
            data={"error": error, "cause": cause},
        )

    # ------------------------------------------------------------------
    # Graph traversal
    # ------------------------------------------------------------------

    async def _walk(
        self,
        graph: Graph,
        context: Any,
        node_name: str,
        scope: _Scope,
        persist: bool = False,
    ) -> tuple[Any, Complete, StateNode]:
        """Evaluate nodes from *node_name* until the graph completes.

        Returns:
            ``(final_context, completion, last_node)``.

        Raises:
            NodeFailure: If a node fails.
            ExecutionTimeoutError: If the deadline passes.
        """
        while True:
            scope.check_deadline()
            node = graph.node(node_name)
            evaluation = await self._evaluate(node, context, scope)
            outcome = evaluation.outcome

            if isinstance(outcome, Complete):
                if persist:
                    await self._persist(scope, context, evaluation.context, None, None)
                return evaluation.context, outcome, node

            resume_at = outcome.resume_at if isinstance(outcome, Suspend) else None
            if persist:
                await self._persist(
                    scope, context, evaluation.context, outcome.next_node, resume_at
                )
            context = evaluation.context

            if resume_at is not None:
                await scope.emit(
                    ExecutionEventType.WAIT_STARTED, node, resume_at=resume_at
                )
                await scope.sleep_until(resume_at)

            if outcome.next_node is None:
                return context, Complete(ExecutionStatus.SUCCEEDED), node
            node_name = outcome.next_node

    async def _persist(
        self,
        scope: _Scope,
        old: Any,
        new: Any,
        next_node: str | None,
        resume_at: float | None,
    ) -> None:
        await self._store.update_context(
            scope.execution_id,
            diff_context(old, new),
            current_node=next_node,
            resume_at=resume_at,
        )

    async def _evaluate(self, node: StateNode, context: Any, scope: _Scope) -> Evaluation:
        """Evaluate one node and record its history entry."""
        path = scope.path_for(node.name)
        entered_at = self._clock.now()
        logger.info("Entering node '%s' (%s)", path, node.type.value)
        await scope.emit(ExecutionEventType.NODE_ENTERED, node)

        try:
            if isinstance(node, TaskNode):
                evaluation = await self._execute_task(node, context, scope, path)
            else:
                handler = self._handlers.get(node.type)
                evaluation = await handler.execute(node, context, scope)
        except PathError as exc:
            failure = NodeFailure(node.name, PATH_ERROR, str(exc), path=path)
            await self._record_failure(node, path, entered_at, failure, scope)
            raise failure from exc
        except NodeFailure as failure:
            await self._record_failure(node, path, entered_at, failure, scope)
            raise
        except ExecutionTimeoutError:
            await self._record_failure(
                node,
                path,
                entered_at,
                NodeFailure(node.name, TIMEOUT_ERROR, "Execution deadline exceeded", path),
                scope,
            )
            raise

        outcome = evaluation.outcome
        entry = HistoryEntry(
            node_id=node.name,
            path=path,
            node_type=node.type.value,
            entered_at=entered_at,
            exited_at=self._clock.now(),
            outcome=_outcome_label(outcome),
            attempts=evaluation.attempts,
        )
        if isinstance(outcome, Suspend):
            entry.resume_at = outcome.resume_at
        elif isinstance(outcome, Complete) and outcome.status is ExecutionStatus.FAILED:
            entry.error = outcome.error
            entry.cause = outcome.cause
        await self._store.append_history(scope.execution_id, entry)
        await scope.emit(ExecutionEventType.NODE_EXITED, node, outcome=entry.outcome)
        return evaluation

    async def _record_failure(
        self,
        node: StateNode,
        path: str,
        entered_at: float,
        failure: NodeFailure,
        scope: _Scope,
    ) -> None:
        own = failure.path == path
        entry = HistoryEntry(
            node_id=node.name,
            path=path,
            node_type=node.type.value,
            entered_at=entered_at,
            exited_at=self._clock.now(),
            outcome="failed",
            attempts=failure.attempts if own else 0,
            error=failure.error,
            cause=failure.cause if own else f"{failure.path}: {failure.cause}",
        )
        await self._store.append_history(scope.execution_id, entry)
        await scope.emit(
            ExecutionEventType.NODE_FAILED,
            node,
            error=failure.error,
            cause=failure.cause,
            origin=failure.path,
        )

    # ------------------------------------------------------------------
    # Task retry loop
    # ------------------------------------------------------------------

    async def _execute_task(
        self, node: TaskNode, context: Any, scope: _Scope, path: str
    ) -> Evaluation:
        """Invoke a Task node, retrying per its first matching retry rule.

        Each retry rule counts its own attempts; a rule with
        ``max_attempts=N`` allows N invocations while failures keep
        matching it.
        """
        handler = self._handlers.get(NodeType.TASK)
        retries: dict[int, int] = {}
        attempt = 0

        while True:
            if attempt > 0:
                scope.check_deadline()
            attempt += 1
            explicit_only = False
            retry_after: float | None = None
            try:
                if node.timeout_seconds is not None:
                    evaluation = await asyncio.wait_for(
                        handler.execute(node, context, scope),
                        timeout=node.timeout_seconds,
                    )
                else:
                    evaluation = await handler.execute(node, context, scope)
                evaluation.attempts = attempt
                return evaluation
            except asyncio.TimeoutError:
                error = TIMEOUT_ERROR
                cause = f"Task timed out after {node.timeout_seconds}s"
            except WorkerFailure as exc:
                error = exc.error_name
                cause = str(exc)
                if isinstance(exc, TransportError):
                    explicit_only = not exc.is_retryable
                    retry_after = exc.retry_after
            except PathError as exc:
                raise NodeFailure(
                    node.name, PATH_ERROR, str(exc), path=path, attempts=attempt
                ) from exc

            match = _match_retrier(node.retry, error, explicit_only)
            if match is None:
                logger.error("Task '%s' failed: %s: %s", path, error, cause)
                raise NodeFailure(node.name, error, cause, path=path, attempts=attempt)

            index, retrier = match
            used = retries.get(index, 0)
            if used + 1 >= retrier.max_attempts:
                logger.error(
                    "Task '%s' failed after %d attempts: %s: %s",
                    path,
                    attempt,
                    error,
                    cause,
                )
                raise NodeFailure(node.name, error, cause, path=path, attempts=attempt)

            retries[index] = used + 1
            delay = retrier.delay_for_retry(used + 1)
            if retry_after is not None:
                delay = max(delay, retry_after)
            logger.warning(
                "Retrying task '%s' after %s (attempt %d/%d) in %.1fs",
                path,
                error,
                used + 2,
                retrier.max_attempts,
                delay,
            )
            await scope.emit(
                ExecutionEventType.NODE_RETRY,
                node,
                attempt=attempt + 1,
                max_attempts=retrier.max_attempts,
                error=error,
                delay=delay,
            )
            await scope.sleep(delay)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit(
        self,
        event_type: ExecutionEventType,
        execution_id: str,
        pipeline_name: str,
        node_name: str = "",
        path: str = "",
        data: dict[str, Any] | None = None,
    ) -> None:
        """Emit an execution event if an emitter is configured."""
        if self._event_emitter is None:
            return
        await self._event_emitter.emit(ExecutionEvent(
            type=event_type,
            execution_id=execution_id,
            pipeline_name=pipeline_name,
            node_name=node_name,
            path=path,
            timestamp=self._clock.now(),
            data=data or {},
        ))


class _Scope:
    """The running execution as seen by handlers at one nesting level."""

    def __init__(
        self,
        engine: ExecutionEngine,
        execution_id: str,
        pipeline_name: str,
        started_at: float,
        deadline: float | None,
        prefix: str = "",
        map_item: tuple[int, Any] | None = None,
    ) -> None:
        self._engine = engine
        self._execution_id = execution_id
        self._started_at = started_at
        self._deadline = deadline
        self._pipeline_name = pipeline_name
        self._prefix = prefix
        self._map_item = map_item

    @property
    def execution_id(self) -> str:
        return self._execution_id

    @property
    def client(self) -> WorkerClient:
        return self._engine._client

    @property
    def clock(self) -> Clock:
        return self._engine._clock

    def path_for(self, node_name: str) -> str:
        return f"{self._prefix}{node_name}"

    def context_object(self, map_item: tuple[int, Any] | None = None) -> dict[str, Any]:
        obj: dict[str, Any] = {
            "Execution": {
                "Id": self._execution_id,
                "Name": self._execution_id,
                "Pipeline": self._pipeline_name,
                "StartTime": self._started_at,
            }
        }
        item = map_item if map_item is not None else self._map_item
        if item is not None:
            obj["Map"] = {"Item": {"Index": item[0], "Value": item[1]}}
        return obj

    async def emit(
        self, event_type: ExecutionEventType, node: StateNode, **data: Any
    ) -> None:
        await self._engine._emit(
            event_type,
            self._execution_id,
            self._pipeline_name,
            node_name=node.name,
            path=self.path_for(node.name),
            data=data,
        )

    async def run_graph(
        self,
        graph: Graph,
        input: Any,
        prefix: str,
        map_item: tuple[int, Any] | None = None,
    ) -> Any:
        """Run a nested graph (Map item or Parallel branch) to completion.

        Raises:
            NodeFailure: If the graph fails, naming the innermost node.
        """
        child = _Scope(
            self._engine,
            self._execution_id,
            self._pipeline_name,
            self._started_at,
            self._deadline,
            prefix=prefix,
            map_item=map_item if map_item is not None else self._map_item,
        )

        context, outcome, last = await self._engine._walk(
            graph, input, graph.start_at, child
        )
        if outcome.status is ExecutionStatus.FAILED:
            raise NodeFailure(
                last.name,
                outcome.error or "Failed",
                outcome.cause or "",
                path=child.path_for(last.name),
            )
        return context

    def check_deadline(self) -> None:
        if self._deadline is not None and self.clock.now() >= self._deadline:
            raise ExecutionTimeoutError(
                f"Execution '{self._execution_id}' passed its deadline"
            )

    async def sleep_until(self, when: float) -> None:
        """Sleep until *when*, but never past the deadline.

        Raises:
            ExecutionTimeoutError: If the deadline arrives first.
        """
        target = when if self._deadline is None else min(when, self._deadline)
        delay = target - self.clock.now()
        if delay > 0:
            await self.clock.sleep(delay)
        if self._deadline is not None and when >= self._deadline:
            raise ExecutionTimeoutError(
                f"Execution '{self._execution_id}' reached its deadline while waiting"
            )

    async def sleep(self, seconds: float) -> None:
        await self.sleep_until(self.clock.now() + seconds)


def _match_retrier(
    retriers: tuple[Retrier, ...], error: str, explicit_only: bool = False
) -> tuple[int, Retrier] | None:
    """First retry rule covering *error*.

    With *explicit_only*, wildcards and class prefixes do not count; the
    rule must list *error* itself.
    """
    if error in _NOT_RETRIED:
        return None
    for index, retrier in enumerate(retriers):
        if explicit_only:
            if error in retrier.error_equals:
                return index, retrier
        elif retrier.matches(error):
            return index, retrier
    return None


def _completion_from_history(
    history: list[HistoryEntry],
) -> tuple[ExecutionStatus, str | None, str | None]:
    top_level = [entry for entry in history if "/" not in entry.path]
    last = top_level[-1] if top_level else history[-1]
    if last.outcome == "failed":
        return ExecutionStatus.FAILED, last.error, last.cause
    return ExecutionStatus.SUCCEEDED, None, None


def _outcome_label(outcome: Advance | Suspend | Complete) -> str:
    if isinstance(outcome, Suspend):
        return "suspended"
    if isinstance(outcome, Complete):
        return "succeeded" if outcome.status is ExecutionStatus.SUCCEEDED else "failed"
    return "advanced"


def _retrieve_result(task: asyncio.Task[Any]) -> None:
    """Mark an abandoned task's exception as retrieved."""
    if not task.cancelled():
        task.exception()
