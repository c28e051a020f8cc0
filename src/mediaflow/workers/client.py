"""Worker Invocation Clients.

A worker is an external compute unit invoked with a JSON-shaped document
that answers with a JSON-shaped document or a classified failure.  The
engine only sees :class:`WorkerClient`; two implementations ship here:

- :class:`LocalWorkerClient` dispatches to in-process callables.
- :class:`HttpWorkerClient` POSTs to one HTTP endpoint per worker using
  ``httpx``.

Both apply a middleware pipeline around every call.  Calls are plain
coroutines, so cancelling the calling task abandons the invocation.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

import httpx

from mediaflow.workers.errors import (
    InvocationAbandoned,
    MalformedRequestError,
    WorkerError,
    WorkerFailure,
    WorkerTimeoutError,
    WorkerUnreachableError,
    error_from_status,
)
from mediaflow.workers.middleware import Middleware

logger = logging.getLogger(__name__)

# A worker implementation: payload in, output document out (sync or async)
WorkerFunction = Callable[[dict[str, Any]], Any]


@runtime_checkable
class WorkerClient(Protocol):
    """Protocol every worker invocation client satisfies."""

    async def invoke(self, worker_id: str, payload: dict[str, Any]) -> Any:
        """Invoke *worker_id* with *payload* and return its output document.

        Raises:
            WorkerError: The worker ran and reported a failure.
            TransportError: The worker could not be reached or invoked.
        """
        ...


class _MiddlewareClient:
    """Shared middleware plumbing for the concrete clients."""

    def __init__(self, middleware: list[Middleware] | None = None) -> None:
        self._middleware: list[Middleware] = list(middleware or [])

    def add_middleware(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    async def invoke(self, worker_id: str, payload: dict[str, Any]) -> Any:
        for mw in self._middleware:
            payload = await mw.before_invoke(worker_id, payload)
        try:
            result = await self._invoke(worker_id, payload)
        except WorkerFailure as exc:
            for mw in reversed(self._middleware):
                await mw.on_error(worker_id, exc)
            raise
        except asyncio.CancelledError:
            abandoned = InvocationAbandoned(
                "invocation abandoned by caller", worker_id=worker_id
            )
            for mw in reversed(self._middleware):
                await mw.on_error(worker_id, abandoned)
            raise
        for mw in reversed(self._middleware):
            result = await mw.after_invoke(worker_id, result)
        return result

    async def _invoke(self, worker_id: str, payload: dict[str, Any]) -> Any:
        raise NotImplementedError


class LocalWorkerClient(_MiddlewareClient):
    """Dispatch invocations to in-process callables.

    Synchronous callables run in a worker thread via
    :func:`asyncio.to_thread` so they never block the event loop.  A
    callable that raises :class:`WorkerFailure` has it propagated as-is;
    any other exception is reported as a :class:`WorkerError` whose code
    is the exception class name.
    """

    def __init__(
        self,
        workers: Mapping[str, WorkerFunction] | None = None,
        middleware: list[Middleware] | None = None,
    ) -> None:
        super().__init__(middleware)
        self._workers: dict[str, WorkerFunction] = dict(workers or {})

    def register(self, worker_id: str, fn: WorkerFunction) -> None:
        """Register *fn* as the implementation of *worker_id*."""
        self._workers[worker_id] = fn

    @property
    def worker_ids(self) -> list[str]:
        return list(self._workers)

    async def _invoke(self, worker_id: str, payload: dict[str, Any]) -> Any:
        fn = self._workers.get(worker_id)
        if fn is None:
            raise WorkerUnreachableError(
                f"No worker registered as '{worker_id}'", worker_id=worker_id
            )
        try:
            if inspect.iscoroutinefunction(fn):
                return await fn(payload)
            result = await asyncio.to_thread(fn, payload)
            if inspect.isawaitable(result):
                result = await result
            return result
        except WorkerFailure as exc:
            if not exc.worker_id:
                exc.worker_id = worker_id
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Worker '%s' raised %r", worker_id, exc)
            raise WorkerError(
                type(exc).__name__, str(exc), worker_id=worker_id
            ) from exc


class HttpWorkerClient(_MiddlewareClient):
    """Invoke workers exposed as HTTP endpoints.

    Each worker id maps to a URL that accepts ``POST`` with a JSON body.
    Response handling:

    - 2xx with a JSON body → the output document, unless the body is an
      error document (``{"errorType": ..., "errorMessage": ...}``), which
      becomes a :class:`WorkerError`.
    - 422 → :class:`WorkerError` from the error document.
    - Other statuses → :func:`error_from_status`.
    - Connection failures → :class:`WorkerUnreachableError`; read
      timeouts → :class:`WorkerTimeoutError`.

    Args:
        endpoints: Mapping of worker id → URL.
        timeout: Per-invocation timeout in seconds.
        middleware: Optional middleware pipeline.
        http_client: Pre-built ``httpx.AsyncClient`` (tests inject one
            with a mock transport).
    """

    def __init__(
        self,
        endpoints: Mapping[str, str],
        timeout: float = 300.0,
        middleware: list[Middleware] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(middleware)
        self._endpoints = dict(endpoints)
        self._timeout = timeout
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> HttpWorkerClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _invoke(self, worker_id: str, payload: dict[str, Any]) -> Any:
        url = self._endpoints.get(worker_id)
        if url is None:
            raise WorkerUnreachableError(
                f"No endpoint configured for worker '{worker_id}'",
                worker_id=worker_id,
            )

        try:
            response = await self._http.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise WorkerTimeoutError(
                f"Timed out after {self._timeout}s: {exc}", worker_id=worker_id
            ) from exc
        except httpx.TransportError as exc:
            raise WorkerUnreachableError(str(exc), worker_id=worker_id) from exc

        body = _json_body(response)

        if response.status_code == 422 or (
            response.is_success and _is_error_document(body)
        ):
            raise _worker_error(worker_id, body)

        if not response.is_success:
            raise error_from_status(
                response.status_code,
                _error_message(body, response),
                worker_id=worker_id,
                retry_after=_retry_after(response),
            )

        if body is _NO_BODY:
            raise MalformedRequestError(
                "Worker returned a non-JSON body", worker_id=worker_id
            )
        return body


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

_NO_BODY: Any = object()


def _json_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return _NO_BODY


def _is_error_document(body: Any) -> bool:
    return isinstance(body, dict) and "errorType" in body


def _worker_error(worker_id: str, body: Any) -> WorkerError:
    if isinstance(body, dict):
        return WorkerError(
            str(body.get("errorType") or body.get("error") or "Unknown"),
            str(body.get("errorMessage") or body.get("cause") or ""),
            worker_id=worker_id,
            raw=body,
        )
    return WorkerError("Unknown", str(body), worker_id=worker_id)


def _error_message(body: Any, response: httpx.Response) -> str:
    if isinstance(body, dict):
        for key in ("errorMessage", "message", "error"):
            if key in body:
                return str(body[key])
    return f"HTTP {response.status_code} {response.reason_phrase}"


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
