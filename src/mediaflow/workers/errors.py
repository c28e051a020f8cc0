"""Error hierarchy for worker invocations.

Maps the ways a worker call can go wrong onto two families with
retryability information: :class:`WorkerError` (the worker ran and
reported a business failure) and :class:`TransportError` (the worker
could not be reached or invoked).  Clients raise these errors so the
engine's retry policy can decide whether to re-invoke or fail the node.
"""

from __future__ import annotations

from typing import Any


class WorkerFailure(Exception):
    """Base exception for all worker invocation failures.

    Attributes:
        worker_id: The worker that was being invoked.
        cause: Human-readable description of the failure.
    """

    error_name: str = "WorkerFailure"

    def __init__(self, cause: str = "", *, worker_id: str = "") -> None:
        super().__init__(cause)
        self.worker_id = worker_id
        self.cause = cause

    @property
    def is_retryable(self) -> bool:
        """Whether a blind re-invocation is considered safe."""
        return False


class WorkerError(WorkerFailure):
    """The worker ran and returned a business failure.

    Only retried when a node's retry policy whitelists it.

    Attributes:
        code: Worker-reported error type (e.g. ``"ThumbnailFailed"``).
        raw: Raw error document returned by the worker.
    """

    def __init__(
        self,
        code: str,
        cause: str = "",
        *,
        worker_id: str = "",
        raw: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(cause, worker_id=worker_id)
        self.code = code or "Unknown"
        self.raw = raw

    @property
    def error_name(self) -> str:  # type: ignore[override]
        return f"WorkerError.{self.code}"

    def __str__(self) -> str:
        if self.cause:
            return f"{self.code}: {self.cause}"
        return self.code


class TransportError(WorkerFailure):
    """The worker could not be reached or invoked.

    Attributes:
        status_code: HTTP status code, if applicable.
        retry_after: Seconds the transport asked us to wait.
    """

    error_name = "TransportError"

    def __init__(
        self,
        cause: str = "",
        *,
        worker_id: str = "",
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(cause, worker_id=worker_id)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_retryable(self) -> bool:
        return True


class WorkerUnreachableError(TransportError):
    """Connection refused, DNS failure, unknown worker."""


class ThrottledError(TransportError):
    """429: the worker's capacity is exhausted."""


class WorkerTimeoutError(TransportError):
    """The transport gave up waiting for the worker's response."""


class MalformedRequestError(TransportError):
    """The request was rejected before the worker ran (400, 404, 413).

    Re-sending the same request cannot succeed, so only a retry rule
    naming ``TransportError.MalformedRequest`` itself re-invokes it.
    """

    error_name = "TransportError.MalformedRequest"

    @property
    def is_retryable(self) -> bool:
        return False


class ServiceError(TransportError):
    """500-599: the invocation service itself failed."""


# ---------------------------------------------------------------------------
# HTTP status code mapping
# ---------------------------------------------------------------------------

_STATUS_TO_ERROR: dict[int, type[TransportError]] = {
    400: MalformedRequestError,
    404: MalformedRequestError,
    408: WorkerTimeoutError,
    413: MalformedRequestError,
    429: ThrottledError,
    500: ServiceError,
    502: ServiceError,
    503: ServiceError,
    504: WorkerTimeoutError,
}


def error_from_status(
    status_code: int,
    message: str,
    *,
    worker_id: str = "",
    retry_after: float | None = None,
) -> TransportError:
    """Create the appropriate :class:`TransportError` from an HTTP status.

    Unknown 5xx codes map to :class:`ServiceError`, unknown 4xx codes to
    :class:`MalformedRequestError`, anything else to a plain
    :class:`TransportError`.

    Args:
        status_code: HTTP status code from the worker endpoint.
        message: Error message.
        worker_id: The worker that was invoked.
        retry_after: Seconds to wait before retrying (from Retry-After).

    Returns:
        An instance of the appropriate TransportError subclass.
    """
    cls = _STATUS_TO_ERROR.get(status_code)
    if cls is None:
        if 500 <= status_code < 600:
            cls = ServiceError
        elif 400 <= status_code < 500:
            cls = MalformedRequestError
        else:
            cls = TransportError
    return cls(
        message,
        worker_id=worker_id,
        status_code=status_code,
        retry_after=retry_after,
    )


class InvocationAbandoned(WorkerFailure):
    """The caller stopped waiting (deadline expiry or stop request).

    Only reported to middleware; the underlying cancellation propagates.
    """

    error_name = "InvocationAbandoned"
