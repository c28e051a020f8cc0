"""Workflow data models.

Defines the pipeline graph (a closed family of state node types), the
retry policy, node evaluation outcomes, and the execution record with
its history, used throughout the workflow engine.
"""

from __future__ import annotations

import copy
import enum
import json
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union


class NodeType(str, enum.Enum):
    """Tag of each state node variant."""

    TASK = "Task"
    MAP = "Map"
    PARALLEL = "Parallel"
    CHOICE = "Choice"
    WAIT = "Wait"
    SUCCEED = "Succeed"
    FAIL = "Fail"


class ExecutionStatus(str, enum.Enum):
    """Lifecycle status of an execution.  All but RUNNING are terminal."""

    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | int | float) -> float:
    """Parse a duration like ``10``, ``"3s"``, ``"30m"``, ``"250ms"`` into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    value = value.strip()
    for suffix, multiplier in sorted(
        _DURATION_UNITS.items(), key=lambda x: -len(x[0])
    ):
        if value.endswith(suffix):
            return float(value[: -len(suffix)]) * multiplier
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid duration: {value!r}") from None


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Retrier:
    """One retry rule of a Task node.

    Attributes:
        error_equals: Error names this rule applies to.  ``"*"`` matches
            every error except ``TimeoutError``; a class prefix such as
            ``"WorkerError"`` matches ``"WorkerError.<code>"``.
        max_attempts: Total invocations allowed while failures keep
            matching this rule (1 means no retry).
        interval_seconds: Delay before the first retry.
        backoff_rate: Multiplier applied to the delay on each retry.
        max_delay_seconds: Cap on any single delay.
        jitter: ``"NONE"`` or ``"FULL"`` (uniform in ``[0, delay]``).
    """

    error_equals: tuple[str, ...] = ("*",)
    max_attempts: int = 3
    interval_seconds: float = 1.0
    backoff_rate: float = 2.0
    max_delay_seconds: float | None = None
    jitter: str = "NONE"

    def matches(self, error_name: str) -> bool:
        """Return ``True`` if this rule applies to *error_name*."""
        for pattern in self.error_equals:
            if pattern == "*":
                if error_name != "TimeoutError":
                    return True
            elif error_name == pattern or error_name.startswith(pattern + "."):
                return True
        return False

    def delay_for_retry(self, retry: int) -> float:
        """Backoff before retry number *retry* (1-based).

        ``interval * backoff_rate ** (retry - 1)``, capped at
        ``max_delay_seconds``.
        """
        delay = self.interval_seconds * (self.backoff_rate ** (retry - 1))
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        if self.jitter == "FULL":
            delay = random.uniform(0, delay)
        return max(0.0, delay)


# ---------------------------------------------------------------------------
# Choice rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChoiceRule:
    """A predicate over the context plus the node to go to when it holds.

    A rule is either a comparison (``variable`` + ``operator`` +
    ``value``) or a composition (``operator`` in ``and``/``or``/``not``
    over ``rules``).  Nested rules carry no ``next``.
    """

    operator: str
    variable: str = ""
    value: Any = None
    rules: tuple[ChoiceRule, ...] = ()
    next: str = ""


# ---------------------------------------------------------------------------
# State nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BaseNode:
    """Fields shared by every state node.

    Attributes:
        name: Node identifier, unique within its graph.
        comment: Free-form description.
        next: Name of the node that follows (non-terminal nodes).
        end: Whether completing this node ends its graph.
    """

    name: str
    comment: str = ""
    next: str | None = None
    end: bool = False

    type = NodeType.SUCCEED  # overridden by each variant

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class Graph:
    """A set of named nodes with a designated start node.

    Used for whole pipelines and for Map processors / Parallel branches.
    """

    start_at: str
    nodes: dict[str, StateNode] = field(default_factory=dict)

    def node(self, name: str) -> StateNode:
        return self.nodes[name]


@dataclass(frozen=True)
class TaskNode(BaseNode):
    """Invoke a worker.

    Attributes:
        worker: Worker identifier passed to the invocation client.
        input_path: Selects the effective input from the context.
        parameters: Payload template (keys ending in ``.$`` are paths).
        result_path: Where the worker output lands (``"$"`` replaces).
        output_path: Selects what is passed on to the next node.
        retry: Ordered retry rules; the first matching one applies.
        timeout_seconds: Fixed per-invocation timeout.
    """

    worker: str = ""
    input_path: str | None = "$"
    parameters: Any = None
    result_path: str | None = "$"
    output_path: str | None = "$"
    retry: tuple[Retrier, ...] = ()
    timeout_seconds: float | None = None

    type = NodeType.TASK


@dataclass(frozen=True)
class MapNode(BaseNode):
    """Run a processor graph once per item of an array.

    Attributes:
        items_path: Path to the array in the (input-path-selected) context.
        item_selector: Per-item input template; ``$$.Map.Item.Value`` and
            ``$$.Map.Item.Index`` address the current item.  ``None``
            passes the item value itself.
        max_concurrency: Hard ceiling on in-flight items (0 = unbounded).
        processor: Graph run for each item.
        tolerated_failure_count: Item failures allowed before the Map fails.
        tolerated_failure_percentage: Same, as a percentage of items.
    """

    items_path: str = "$"
    item_selector: Any = None
    max_concurrency: int = 0
    processor: Graph | None = None
    input_path: str | None = "$"
    result_path: str | None = "$"
    output_path: str | None = "$"
    tolerated_failure_count: int | None = None
    tolerated_failure_percentage: float | None = None

    type = NodeType.MAP

    @property
    def tolerates_failures(self) -> bool:
        return (
            self.tolerated_failure_count is not None
            or self.tolerated_failure_percentage is not None
        )


@dataclass(frozen=True)
class ParallelNode(BaseNode):
    """Run every branch graph concurrently; results keep declaration order."""

    branches: tuple[Graph, ...] = ()
    input_path: str | None = "$"
    result_path: str | None = "$"
    output_path: str | None = "$"

    type = NodeType.PARALLEL


@dataclass(frozen=True)
class ChoiceNode(BaseNode):
    """Branch on the first matching rule, else take ``default``."""

    choices: tuple[ChoiceRule, ...] = ()
    default: str | None = None

    type = NodeType.CHOICE


@dataclass(frozen=True)
class WaitNode(BaseNode):
    """Suspend for ``seconds`` then continue at ``next``."""

    seconds: float = 0.0

    type = NodeType.WAIT


@dataclass(frozen=True)
class SucceedNode(BaseNode):
    """Terminal success."""

    type = NodeType.SUCCEED

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class FailNode(BaseNode):
    """Terminal failure carrying an error classification."""

    error: str = "Failed"
    cause: str = ""

    type = NodeType.FAIL

    @property
    def is_terminal(self) -> bool:
        return True


StateNode = Union[
    TaskNode, MapNode, ParallelNode, ChoiceNode, WaitNode, SucceedNode, FailNode
]


@dataclass(frozen=True)
class PipelineDefinition:
    """Immutable pipeline graph loaded from static configuration.

    Attributes:
        name: Pipeline identifier used by ``StartExecution``.
        graph: Top-level nodes and start node.
        comment: Human-readable description.
        timeout_seconds: Overall execution deadline.
    """

    name: str
    graph: Graph
    comment: str = ""
    timeout_seconds: float = 1800.0

    @property
    def start_at(self) -> str:
        return self.graph.start_at

    @property
    def nodes(self) -> dict[str, StateNode]:
        return self.graph.nodes


# ---------------------------------------------------------------------------
# Evaluation outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Advance:
    """Continue with ``next_node`` (``None`` ends the graph successfully)."""

    next_node: str | None


@dataclass(frozen=True)
class Suspend:
    """Resume at ``next_node`` once the clock reaches ``resume_at``."""

    resume_at: float
    next_node: str | None


@dataclass(frozen=True)
class Complete:
    """The graph reached a terminal node."""

    status: ExecutionStatus
    error: str | None = None
    cause: str | None = None


Outcome = Union[Advance, Suspend, Complete]


@dataclass
class Evaluation:
    """Result of evaluating one node: the new context plus what happens next.

    Attributes:
        context: The context after the node (the node's output).
        outcome: Where the execution goes next.
        attempts: Worker invocations made (Task nodes).
    """

    context: Any
    outcome: Outcome
    attempts: int = 0


# ---------------------------------------------------------------------------
# Execution record
# ---------------------------------------------------------------------------


@dataclass
class HistoryEntry:
    """One node visit.

    Attributes:
        node_id: Name of the node.
        path: Location of the node within nested branches, e.g.
            ``"ParallelEnhance/0/PhotoEnhancementMap/2/EnhancePhoto"``.
        node_type: The node's variant tag.
        entered_at: UNIX time when evaluation began.
        exited_at: UNIX time when evaluation finished.
        outcome: ``"advanced"``, ``"suspended"``, ``"succeeded"`` or
            ``"failed"``.
        attempts: Worker invocations made (Task nodes).
        error: Error classification on failure.
        cause: Failure description.
        resume_at: Resume time for suspended entries.
    """

    node_id: str
    path: str
    node_type: str
    entered_at: float
    exited_at: float
    outcome: str
    attempts: int = 0
    error: str | None = None
    cause: str | None = None
    resume_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "path": self.path,
            "node_type": self.node_type,
            "entered_at": self.entered_at,
            "exited_at": self.exited_at,
            "outcome": self.outcome,
            "attempts": self.attempts,
            "error": self.error,
            "cause": self.cause,
            "resume_at": self.resume_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            node_id=data["node_id"],
            path=data.get("path", data["node_id"]),
            node_type=data.get("node_type", ""),
            entered_at=data["entered_at"],
            exited_at=data["exited_at"],
            outcome=data["outcome"],
            attempts=data.get("attempts", 0),
            error=data.get("error"),
            cause=data.get("cause"),
            resume_at=data.get("resume_at"),
        )


@dataclass
class Execution:
    """One run of a pipeline from submission to a terminal status.

    Attributes:
        execution_id: Unique identifier.
        pipeline_name: Definition being executed.
        input: The document submitted with ``StartExecution``.
        context: Current working document.
        status: Lifecycle status.
        started_at: UNIX time of creation.
        deadline: UNIX time after which the execution times out.
        stopped_at: UNIX time a terminal status was reached.
        current_node: Node to evaluate next (resume point).
        resume_at: Pending Wait expiry, if suspended.
        error: Error classification for FAILED/TIMED_OUT/ABORTED.
        cause: Failure description.
        history: Node visits in write order.
    """

    execution_id: str
    pipeline_name: str
    input: Any = None
    context: Any = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: float = field(default_factory=time.time)
    deadline: float | None = None
    stopped_at: float | None = None
    current_node: str | None = None
    resume_at: float | None = None
    error: str | None = None
    cause: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)

    def failed_entries(self) -> list[HistoryEntry]:
        """History entries whose outcome is ``"failed"``."""
        return [h for h in self.history if h.outcome == "failed"]

    def snapshot(self) -> Execution:
        """Deep copy, safe to hand to callers while the run continues."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the execution to a JSON-compatible dictionary."""
        return {
            "execution_id": self.execution_id,
            "pipeline_name": self.pipeline_name,
            "input": self.input,
            "context": self.context,
            "status": self.status.value,
            "started_at": self.started_at,
            "deadline": self.deadline,
            "stopped_at": self.stopped_at,
            "current_node": self.current_node,
            "resume_at": self.resume_at,
            "error": self.error,
            "cause": self.cause,
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Execution:
        """Reconstruct an execution from :meth:`to_dict` output."""
        return cls(
            execution_id=data["execution_id"],
            pipeline_name=data["pipeline_name"],
            input=data.get("input"),
            context=data.get("context"),
            status=ExecutionStatus(data["status"]),
            started_at=data["started_at"],
            deadline=data.get("deadline"),
            stopped_at=data.get("stopped_at"),
            current_node=data.get("current_node"),
            resume_at=data.get("resume_at"),
            error=data.get("error"),
            cause=data.get("cause"),
            history=[HistoryEntry.from_dict(h) for h in data.get("history", [])],
        )

    def save_to_file(self, path: str | Path) -> None:
        """Write this execution to a JSON file, replacing it atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2, default=str))
        tmp.replace(path)

    @classmethod
    def load_from_file(cls, path: str | Path) -> Execution:
        return cls.from_dict(json.loads(Path(path).read_text()))
