"""Engine-side error taxonomy.

Worker failures live in :mod:`mediaflow.workers.errors`; this module
covers everything the engine itself raises: malformed definitions,
runtime path errors, node failures that escape their retry policy,
deadline expiry and store conflicts.
"""

from __future__ import annotations

from typing import Any

# Error names recorded in history and matched by retry filters
TIMEOUT_ERROR = "TimeoutError"
PATH_ERROR = "PathError"
NO_CHOICE_MATCHED = "NoChoiceMatched"
BRANCH_FAILED = "BranchFailed"
ABORTED = "Aborted"
WILDCARD = "*"


class WorkflowError(Exception):
    """Base exception for engine errors."""


class DefinitionError(WorkflowError):
    """A pipeline graph is malformed.  Raised at load time, never at runtime.

    Attributes:
        findings: The validation findings that caused the rejection.
    """

    def __init__(self, message: str, findings: list[Any] | None = None) -> None:
        self.findings = list(findings or [])
        if self.findings:
            details = "\n".join(f"  - {f}" for f in self.findings)
            message = f"{message}\n{details}"
        super().__init__(message)


class PathError(WorkflowError):
    """A reference path did not resolve against the current document."""

    error_name = PATH_ERROR


class NodeFailure(WorkflowError):
    """A node terminated in failure after its retry policy was applied.

    Attributes:
        node_id: The node where the failure originated (innermost).
        error: Classified error name (e.g. ``"TransportError"``).
        cause: Human-readable description.
        path: History path of the originating node.
        attempts: Worker invocations made by the originating node.
    """

    def __init__(
        self,
        node_id: str,
        error: str,
        cause: str = "",
        path: str = "",
        attempts: int = 0,
    ) -> None:
        super().__init__(f"{node_id}: {error}: {cause}" if cause else f"{node_id}: {error}")
        self.node_id = node_id
        self.error = error
        self.cause = cause
        self.path = path or node_id
        self.attempts = attempts


class ExecutionTimeoutError(WorkflowError):
    """The execution's overall deadline passed."""

    error_name = TIMEOUT_ERROR


class ExecutionNotFoundError(WorkflowError, KeyError):
    """No execution exists with the requested id."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class ExecutionConflictError(WorkflowError):
    """Another engine already owns the execution (single-writer violation)."""


class ExecutionClosedError(WorkflowError):
    """A write was attempted on an execution in a terminal status."""


class PipelineNotFoundError(WorkflowError, KeyError):
    """No pipeline definition is registered under the requested name."""

    def __str__(self) -> str:
        return Exception.__str__(self)
