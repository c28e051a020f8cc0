"""mediaflow workflow runtime.

Interprets the pipeline graphs held by the :class:`PipelineRegistry`
(Task, Map, Parallel, Choice, Wait, Succeed and Fail nodes), enforcing
concurrency ceilings, retry policy and execution deadlines, and records
every execution in an :class:`ExecutionStore`.
"""

from mediaflow.workflow.clock import Clock, ManualClock, SystemClock
from mediaflow.workflow.engine import ExecutionEngine
from mediaflow.workflow.errors import (
    DefinitionError,
    ExecutionClosedError,
    ExecutionConflictError,
    ExecutionNotFoundError,
    ExecutionTimeoutError,
    NodeFailure,
    PathError,
    PipelineNotFoundError,
    WorkflowError,
)
from mediaflow.workflow.events import (
    ExecutionEvent,
    ExecutionEventEmitter,
    ExecutionEventType,
)
from mediaflow.workflow.handlers import HandlerRegistry, create_default_registry
from mediaflow.workflow.models import (
    Execution,
    ExecutionStatus,
    HistoryEntry,
    NodeType,
    PipelineDefinition,
    Retrier,
)
from mediaflow.workflow.parser import parse_definition_file, parse_definition_string
from mediaflow.workflow.registry import PipelineRegistry
from mediaflow.workflow.store import (
    ContextDelta,
    ExecutionStore,
    FileExecutionStore,
    InMemoryExecutionStore,
    diff_context,
)
from mediaflow.workflow.validator import (
    ValidationLevel,
    has_errors,
    validate_definition,
    validate_or_raise,
)

__all__ = [
    "Clock",
    "ContextDelta",
    "DefinitionError",
    "Execution",
    "ExecutionClosedError",
    "ExecutionConflictError",
    "ExecutionEngine",
    "ExecutionEvent",
    "ExecutionEventEmitter",
    "ExecutionEventType",
    "ExecutionNotFoundError",
    "ExecutionStatus",
    "ExecutionStore",
    "ExecutionTimeoutError",
    "FileExecutionStore",
    "HandlerRegistry",
    "HistoryEntry",
    "InMemoryExecutionStore",
    "ManualClock",
    "NodeFailure",
    "NodeType",
    "PathError",
    "PipelineDefinition",
    "PipelineNotFoundError",
    "PipelineRegistry",
    "Retrier",
    "SystemClock",
    "ValidationLevel",
    "WorkflowError",
    "create_default_registry",
    "diff_context",
    "has_errors",
    "parse_definition_file",
    "parse_definition_string",
    "validate_definition",
    "validate_or_raise",
]
