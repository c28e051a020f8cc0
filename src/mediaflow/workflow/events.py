"""Execution event system for observability.

Typed events emitted while executions run, for CLI progress output,
logging and metrics integration.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class ExecutionEventType(str, enum.Enum):
    """Typed event categories emitted during execution."""

    EXECUTION_STARTED = "execution_started"
    EXECUTION_SUCCEEDED = "execution_succeeded"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_TIMED_OUT = "execution_timed_out"
    EXECUTION_ABORTED = "execution_aborted"
    NODE_ENTERED = "node_entered"
    NODE_EXITED = "node_exited"
    NODE_RETRY = "node_retry"
    NODE_FAILED = "node_failed"
    WAIT_STARTED = "wait_started"
    MAP_ITERATION_STARTED = "map_iteration_started"
    MAP_ITERATION_COMPLETED = "map_iteration_completed"
    PARALLEL_BRANCH_STARTED = "parallel_branch_started"
    PARALLEL_BRANCH_COMPLETED = "parallel_branch_completed"


@dataclass
class ExecutionEvent:
    """A single execution lifecycle event.

    Attributes:
        type: The event category.
        execution_id: Execution emitting this event.
        pipeline_name: Pipeline being executed.
        node_name: Relevant node (empty for execution-level events).
        path: History path of the node within nested branches.
        timestamp: UNIX epoch when the event occurred.
        data: Event-specific payload.
    """

    type: ExecutionEventType
    execution_id: str = ""
    pipeline_name: str = ""
    node_name: str = ""
    path: str = ""
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)


# Callback type: async function that receives an ExecutionEvent
EventCallback = Callable[[ExecutionEvent], Coroutine[Any, Any, None]]


class ExecutionEventEmitter:
    """Observer-pattern event emitter for execution lifecycle events.

    Register callbacks with :meth:`on` (one event type) or :meth:`on_any`
    (every event) and fire events with :meth:`emit`.
    """

    def __init__(self) -> None:
        self._listeners: dict[ExecutionEventType, list[EventCallback]] = defaultdict(
            list
        )
        self._any: list[EventCallback] = []

    @property
    def listeners(self) -> dict[ExecutionEventType, list[EventCallback]]:
        """Return the mapping of event types to registered callbacks."""
        return dict(self._listeners)

    def on(self, event_type: ExecutionEventType, callback: EventCallback) -> None:
        """Register a callback for a specific event type.

        Args:
            event_type: The event category to listen for.
            callback: Async callable invoked when the event fires.
        """
        self._listeners[event_type].append(callback)

    def on_any(self, callback: EventCallback) -> None:
        """Register a callback for every event type."""
        self._any.append(callback)

    async def emit(self, event: ExecutionEvent) -> None:
        """Fire an event, invoking all registered callbacks.

        Exceptions in callbacks are logged but do not prevent
        other callbacks from running.

        Args:
            event: The event to emit.
        """
        for callback in [*self._listeners.get(event.type, []), *self._any]:
            try:
                await callback(event)
            except Exception as exc:
                logger.error(
                    "Event callback error for %s: %s",
                    event.type.value,
                    exc,
                )
