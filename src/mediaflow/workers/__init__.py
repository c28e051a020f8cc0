"""Worker Invocation Client.

Synchronous request/response bridge from the workflow engine to the
external compute units ("workers") that do the actual media processing.
"""

from mediaflow.workers.client import (
    HttpWorkerClient,
    LocalWorkerClient,
    WorkerClient,
)
from mediaflow.workers.errors import (
    InvocationAbandoned,
    MalformedRequestError,
    ServiceError,
    ThrottledError,
    TransportError,
    WorkerError,
    WorkerFailure,
    WorkerTimeoutError,
    WorkerUnreachableError,
    error_from_status,
)
from mediaflow.workers.middleware import (
    InvocationRecorder,
    LoggingMiddleware,
    Middleware,
)

__all__ = [
    "HttpWorkerClient",
    "InvocationAbandoned",
    "InvocationRecorder",
    "LocalWorkerClient",
    "LoggingMiddleware",
    "MalformedRequestError",
    "Middleware",
    "ServiceError",
    "ThrottledError",
    "TransportError",
    "WorkerClient",
    "WorkerError",
    "WorkerFailure",
    "WorkerTimeoutError",
    "WorkerUnreachableError",
    "error_from_status",
]
