"""JSON definition parser for pipeline graphs.

Turns the JSON-shaped pipeline definitions shipped in
:mod:`mediaflow.definitions` (or supplied by a deployment) into
:class:`~mediaflow.workflow.models.PipelineDefinition` objects.

Document layout::

    {
      "name": "TriagePipeline",
      "comment": "...",
      "timeout_seconds": 1800,
      "start_at": "TriageInitSession",
      "nodes": {
        "TriageInitSession": {"type": "Task", "worker": "triage", "next": "..."},
        "TriageAllProcessed": {
          "type": "Choice",
          "choices": [
            {"variable": "$.allProcessed", "boolean_equals": true, "next": "..."}
          ],
          "default": "TriageProcessingWait"
        },
        ...
      }
    }

Map nodes nest a ``processor`` graph and Parallel nodes a ``branches``
list of graphs, each ``{"start_at": ..., "nodes": {...}}``.

Deployment overrides for Wait durations and Map concurrency are applied
while parsing, keyed by node name or ``"<pipeline>.<node>"``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from mediaflow.workflow.conditions import COMPARISON_OPERATORS
from mediaflow.workflow.errors import DefinitionError
from mediaflow.workflow.models import (
    ChoiceNode,
    ChoiceRule,
    FailNode,
    Graph,
    MapNode,
    NodeType,
    ParallelNode,
    PipelineDefinition,
    Retrier,
    StateNode,
    SucceedNode,
    TaskNode,
    WaitNode,
    parse_duration,
)


class ParseError(DefinitionError):
    """Raised when a definition document cannot be turned into a graph."""


_NODE_KEYS: dict[str, set[str]] = {
    "Task": {
        "worker", "input_path", "parameters", "result_path", "output_path",
        "retry", "timeout_seconds",
    },
    "Map": {
        "items_path", "item_selector", "max_concurrency", "processor",
        "input_path", "result_path", "output_path",
        "tolerated_failure_count", "tolerated_failure_percentage",
    },
    "Parallel": {"branches", "input_path", "result_path", "output_path"},
    "Choice": {"choices", "default"},
    "Wait": {"seconds"},
    "Succeed": set(),
    "Fail": {"error", "cause"},
}
_COMMON_KEYS = {"type", "comment", "next", "end"}

_RETRIER_KEYS = {
    "error_equals", "max_attempts", "interval_seconds", "backoff_rate",
    "max_delay_seconds", "jitter",
}


def parse_definition_file(
    path: str | Path,
    wait_overrides: Mapping[str, float] | None = None,
    concurrency_overrides: Mapping[str, int] | None = None,
    timeout_override: float | None = None,
) -> PipelineDefinition:
    """Parse the JSON definition at *path*.

    Raises:
        ParseError: If the file is not valid JSON or not a valid definition.
        FileNotFoundError: If *path* does not exist.
    """
    path = Path(path)
    return parse_definition_string(
        path.read_text(),
        name=path.stem,
        wait_overrides=wait_overrides,
        concurrency_overrides=concurrency_overrides,
        timeout_override=timeout_override,
    )


def parse_definition_string(
    content: str,
    name: str = "pipeline",
    wait_overrides: Mapping[str, float] | None = None,
    concurrency_overrides: Mapping[str, int] | None = None,
    timeout_override: float | None = None,
) -> PipelineDefinition:
    """Parse a JSON string.  *name* is used when the document has none."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON in definition '{name}': {exc}") from exc
    if isinstance(data, dict):
        data.setdefault("name", name)
    return parse_definition(
        data,
        wait_overrides=wait_overrides,
        concurrency_overrides=concurrency_overrides,
        timeout_override=timeout_override,
    )


def parse_definition(
    data: Mapping[str, Any],
    wait_overrides: Mapping[str, float] | None = None,
    concurrency_overrides: Mapping[str, int] | None = None,
    timeout_override: float | None = None,
) -> PipelineDefinition:
    """Build a :class:`PipelineDefinition` from a decoded document.

    Args:
        data: The decoded JSON document.
        wait_overrides: Wait durations (seconds) replacing the defaults.
        concurrency_overrides: Map concurrency ceilings replacing the defaults.
        timeout_override: Execution deadline replacing the definition's.

    Raises:
        ParseError: If the document does not describe a graph.
    """
    if not isinstance(data, Mapping):
        raise ParseError("Definition must be a JSON object")
    name = data.get("name")
    if not name or not isinstance(name, str):
        raise ParseError("Definition has no 'name'")

    overrides = _Overrides(
        pipeline=name,
        waits=dict(wait_overrides or {}),
        concurrency=dict(concurrency_overrides or {}),
    )
    graph = _parse_graph(data, overrides, where=name)

    timeout = data.get("timeout_seconds", 1800)
    if timeout_override is not None:
        timeout = timeout_override
    try:
        timeout_seconds = parse_duration(timeout)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"{name}: invalid timeout_seconds {timeout!r}") from exc

    return PipelineDefinition(
        name=name,
        graph=graph,
        comment=str(data.get("comment", "")),
        timeout_seconds=timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


class _Overrides:
    def __init__(
        self,
        pipeline: str,
        waits: dict[str, float],
        concurrency: dict[str, int],
    ) -> None:
        self.pipeline = pipeline
        self.waits = waits
        self.concurrency = concurrency

    def lookup(self, table: dict[str, Any], node_name: str) -> Any:
        qualified = f"{self.pipeline}.{node_name}"
        if qualified in table:
            return table[qualified]
        return table.get(node_name)


def _parse_graph(data: Mapping[str, Any], overrides: _Overrides, where: str) -> Graph:
    start_at = data.get("start_at")
    raw_nodes = data.get("nodes")
    if not isinstance(start_at, str) or not start_at:
        raise ParseError(f"{where}: missing 'start_at'")
    if not isinstance(raw_nodes, Mapping) or not raw_nodes:
        raise ParseError(f"{where}: 'nodes' must be a non-empty object")

    nodes: dict[str, StateNode] = {}
    for node_name, raw in raw_nodes.items():
        nodes[node_name] = _parse_node(node_name, raw, overrides, f"{where}.{node_name}")
    return Graph(start_at=start_at, nodes=nodes)


def _parse_node(
    name: str, raw: Any, overrides: _Overrides, where: str
) -> StateNode:
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where}: node must be an object")
    type_name = raw.get("type")
    try:
        node_type = NodeType(type_name)
    except ValueError:
        raise ParseError(f"{where}: unknown node type {type_name!r}") from None

    unknown = set(raw) - _COMMON_KEYS - _NODE_KEYS[node_type.value]
    if unknown:
        raise ParseError(f"{where}: unknown keys {sorted(unknown)}")

    common: dict[str, Any] = {
        "name": name,
        "comment": str(raw.get("comment", "")),
        "next": raw.get("next"),
        "end": bool(raw.get("end", False)),
    }

    if node_type is NodeType.TASK:
        timeout = raw.get("timeout_seconds")
        return TaskNode(
            **common,
            worker=raw.get("worker", ""),
            input_path=raw.get("input_path", "$"),
            parameters=raw.get("parameters"),
            result_path=raw.get("result_path", "$"),
            output_path=raw.get("output_path", "$"),
            retry=tuple(
                _parse_retrier(r, f"{where}.retry[{i}]")
                for i, r in enumerate(raw.get("retry", []))
            ),
            timeout_seconds=_duration(timeout, where) if timeout is not None else None,
        )

    if node_type is NodeType.MAP:
        processor = raw.get("processor")
        if not isinstance(processor, Mapping):
            raise ParseError(f"{where}: Map needs a 'processor' graph")
        concurrency = overrides.lookup(overrides.concurrency, name)
        if concurrency is None:
            concurrency = raw.get("max_concurrency", 0)
        elif isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise ParseError(
                f"{where}: concurrency override must be a positive integer, got {concurrency!r}"
            )
        return MapNode(
            **common,
            items_path=raw.get("items_path", "$"),
            item_selector=raw.get("item_selector"),
            max_concurrency=_int(concurrency, where, "max_concurrency"),
            processor=_parse_graph(processor, overrides, f"{where}.processor"),
            input_path=raw.get("input_path", "$"),
            result_path=raw.get("result_path", "$"),
            output_path=raw.get("output_path", "$"),
            tolerated_failure_count=raw.get("tolerated_failure_count"),
            tolerated_failure_percentage=raw.get("tolerated_failure_percentage"),
        )

    if node_type is NodeType.PARALLEL:
        branches = raw.get("branches")
        if not isinstance(branches, list) or not branches:
            raise ParseError(f"{where}: Parallel needs a non-empty 'branches' list")
        return ParallelNode(
            **common,
            branches=tuple(
                _parse_graph(b, overrides, f"{where}.branches[{i}]")
                if isinstance(b, Mapping)
                else _raise(f"{where}.branches[{i}]: branch must be an object")
                for i, b in enumerate(branches)
            ),
            input_path=raw.get("input_path", "$"),
            result_path=raw.get("result_path", "$"),
            output_path=raw.get("output_path", "$"),
        )

    if node_type is NodeType.CHOICE:
        choices = raw.get("choices")
        if not isinstance(choices, list):
            raise ParseError(f"{where}: Choice needs a 'choices' list")
        return ChoiceNode(
            **common,
            choices=tuple(
                _parse_rule(c, f"{where}.choices[{i}]") for i, c in enumerate(choices)
            ),
            default=raw.get("default"),
        )

    if node_type is NodeType.WAIT:
        seconds = overrides.lookup(overrides.waits, name)
        if seconds is None:
            if "seconds" not in raw:
                raise ParseError(f"{where}: Wait needs 'seconds'")
            seconds = raw["seconds"]
        return WaitNode(**common, seconds=_duration(seconds, where))

    if node_type is NodeType.FAIL:
        return FailNode(
            **common,
            error=str(raw.get("error", "Failed")),
            cause=str(raw.get("cause", "")),
        )

    return SucceedNode(**common)


def _parse_retrier(raw: Any, where: str) -> Retrier:
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where}: retrier must be an object")
    unknown = set(raw) - _RETRIER_KEYS
    if unknown:
        raise ParseError(f"{where}: unknown keys {sorted(unknown)}")
    errors = raw.get("error_equals", ["*"])
    if isinstance(errors, str):
        errors = [errors]
    max_delay = raw.get("max_delay_seconds")
    return Retrier(
        error_equals=tuple(str(e) for e in errors),
        max_attempts=_int(raw.get("max_attempts", 3), where, "max_attempts"),
        interval_seconds=_duration(raw.get("interval_seconds", 1), where),
        backoff_rate=float(raw.get("backoff_rate", 2.0)),
        max_delay_seconds=_duration(max_delay, where) if max_delay is not None else None,
        jitter=str(raw.get("jitter", "NONE")).upper(),
    )


def _parse_rule(raw: Any, where: str, nested: bool = False) -> ChoiceRule:
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where}: choice rule must be an object")
    next_node = "" if nested else str(raw.get("next", ""))

    for op in ("and", "or"):
        if op in raw:
            children = raw[op]
            if not isinstance(children, list):
                raise ParseError(f"{where}: '{op}' must be a list of rules")
            return ChoiceRule(
                operator=op,
                rules=tuple(
                    _parse_rule(c, f"{where}.{op}[{i}]", nested=True)
                    for i, c in enumerate(children)
                ),
                next=next_node,
            )
    if "not" in raw:
        return ChoiceRule(
            operator="not",
            rules=(_parse_rule(raw["not"], f"{where}.not", nested=True),),
            next=next_node,
        )

    operators = [op for op in COMPARISON_OPERATORS if op in raw]
    if len(operators) != 1:
        raise ParseError(
            f"{where}: rule needs exactly one operator, found {sorted(operators) or 'none'}"
        )
    op = operators[0]
    return ChoiceRule(
        operator=op,
        variable=str(raw.get("variable", "")),
        value=raw[op],
        next=next_node,
    )


def _duration(value: Any, where: str) -> float:
    try:
        return parse_duration(value)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"{where}: {exc}") from exc


def _int(value: Any, where: str, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(f"{where}: '{key}' must be an integer, got {value!r}")
    return value


def _raise(message: str) -> Any:
    raise ParseError(message)

