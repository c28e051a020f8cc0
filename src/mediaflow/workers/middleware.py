"""Middleware system for worker invocations.

Middleware can inspect and transform payloads before they reach a worker
and results after they return, enabling cross-cutting concerns like
logging and invocation accounting.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from mediaflow.workers.errors import WorkerFailure

logger = logging.getLogger(__name__)


@runtime_checkable
class Middleware(Protocol):
    """Protocol for invocation middleware."""

    async def before_invoke(
        self, worker_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Transform or inspect a payload before the worker is invoked.

        Args:
            worker_id: The worker about to be invoked.
            payload: The outgoing input document.

        Returns:
            The (potentially modified) payload to forward downstream.
        """
        ...

    async def after_invoke(
        self, worker_id: str, result: dict[str, Any]
    ) -> dict[str, Any]:
        """Transform or inspect a worker's output document.

        Args:
            worker_id: The worker that produced *result*.
            result: The output document.

        Returns:
            The (potentially modified) result to return upstream.
        """
        ...

    async def on_error(self, worker_id: str, error: WorkerFailure) -> None:
        """Observe a failed invocation.  The error is re-raised afterwards."""
        ...


# ---------------------------------------------------------------------------
# Built-in Middleware
# ---------------------------------------------------------------------------


class LoggingMiddleware:
    """Logs each invocation and its outcome."""

    def __init__(self, log_level: int = logging.INFO) -> None:
        self._level = log_level

    async def before_invoke(
        self, worker_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        logger.log(
            self._level,
            "Worker request: worker=%s keys=%s",
            worker_id,
            sorted(payload) if isinstance(payload, dict) else type(payload).__name__,
        )
        return payload

    async def after_invoke(
        self, worker_id: str, result: dict[str, Any]
    ) -> dict[str, Any]:
        logger.log(self._level, "Worker response: worker=%s", worker_id)
        return result

    async def on_error(self, worker_id: str, error: WorkerFailure) -> None:
        logger.warning(
            "Worker failure: worker=%s error=%s cause=%s",
            worker_id,
            error.error_name,
            error.cause,
        )


@dataclass
class InvocationRecorder:
    """Counts invocations and tracks peak in-flight concurrency per worker."""

    calls: Counter[str] = field(default_factory=Counter)
    failures: Counter[str] = field(default_factory=Counter)
    in_flight: Counter[str] = field(default_factory=Counter)
    peak_in_flight: Counter[str] = field(default_factory=Counter)
    payloads: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    async def before_invoke(
        self, worker_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self.calls[worker_id] += 1
        self.payloads.append((worker_id, payload))
        self.in_flight[worker_id] += 1
        if self.in_flight[worker_id] > self.peak_in_flight[worker_id]:
            self.peak_in_flight[worker_id] = self.in_flight[worker_id]
        return payload

    async def after_invoke(
        self, worker_id: str, result: dict[str, Any]
    ) -> dict[str, Any]:
        self.in_flight[worker_id] -= 1
        return result

    async def on_error(self, worker_id: str, error: WorkerFailure) -> None:
        self.in_flight[worker_id] -= 1
        self.failures[worker_id] += 1
