"""Pipeline definition validation.

Statically checks a :class:`PipelineDefinition` (and every nested Map
processor and Parallel branch graph) for structural errors and warnings
before it is registered.  Malformed graphs are rejected at load time so
they can never fail at runtime.
"""

from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from mediaflow.workflow.conditions import validate_rule
from mediaflow.workflow.errors import DefinitionError
from mediaflow.workflow.models import (
    ChoiceNode,
    FailNode,
    Graph,
    MapNode,
    ParallelNode,
    PipelineDefinition,
    StateNode,
    SucceedNode,
    TaskNode,
    WaitNode,
)
from mediaflow.workflow.paths import is_valid_path, template_paths

_VALID_JITTER = {"NONE", "FULL"}


class ValidationLevel(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationError:
    """A single validation finding.

    Attributes:
        level: Severity.
        message: What is wrong.
        node_name: Qualified node location (``Map.processor.Task``).
        rule: Short identifier of the check that produced the finding.
    """

    level: ValidationLevel
    message: str
    node_name: str | None = None
    rule: str = ""

    def __str__(self) -> str:
        location = f" (node '{self.node_name}')" if self.node_name else ""
        rule_tag = f" [{self.rule}]" if self.rule else ""
        return f"[{self.level.value.upper()}]{location}{rule_tag} {self.message}"


@runtime_checkable
class LintRule(Protocol):
    """Protocol for deployment-specific validation rules."""

    name: str

    def check(self, definition: PipelineDefinition) -> list[ValidationError]: ...


def validate_definition(
    definition: PipelineDefinition,
    extra_rules: list[LintRule] | None = None,
) -> list[ValidationError]:
    """Run all validation checks on *definition*.

    Returns:
        A list of :class:`ValidationError` findings, possibly empty.
    """
    errors: list[ValidationError] = []

    if definition.timeout_seconds <= 0:
        errors.append(_error("timeout_seconds must be positive", None, "timeout"))

    _check_graph(definition.graph, "", errors)

    for rule in extra_rules or []:
        errors.extend(rule.check(definition))

    return errors


def has_errors(findings: list[ValidationError]) -> bool:
    """Return True if any finding is an error (not just a warning)."""
    return any(f.level == ValidationLevel.ERROR for f in findings)


def validate_or_raise(
    definition: PipelineDefinition,
    extra_rules: list[LintRule] | None = None,
) -> list[ValidationError]:
    """Run validation and raise on any ERROR-level finding.

    Returns:
        The full list of findings (only warnings if no exception).

    Raises:
        DefinitionError: If any ERROR-level findings exist.
    """
    findings = validate_definition(definition, extra_rules=extra_rules)
    error_findings = [f for f in findings if f.level == ValidationLevel.ERROR]
    if error_findings:
        raise DefinitionError(
            f"Pipeline '{definition.name}' is malformed", error_findings
        )
    return findings


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _error(message: str, node: str | None, rule: str) -> ValidationError:
    return ValidationError(ValidationLevel.ERROR, message, node, rule)


def _warning(message: str, node: str | None, rule: str) -> ValidationError:
    return ValidationError(ValidationLevel.WARNING, message, node, rule)


def _check_graph(graph: Graph, prefix: str, errors: list[ValidationError]) -> None:
    where = prefix.rstrip(".") or None
    if graph.start_at not in graph.nodes:
        errors.append(
            _error(f"Start node '{graph.start_at}' does not exist", where, "start_node")
        )

    for name, node in graph.nodes.items():
        qualified = f"{prefix}{name}"
        if node.name != name:
            errors.append(
                _error(f"Node is registered under '{name}' but named '{node.name}'",
                       qualified, "node_name")
            )
        _check_transition(node, graph, qualified, errors)
        _check_node(node, qualified, errors)

    if not any(_ends_graph(n) for n in graph.nodes.values()):
        errors.append(_error("Graph has no terminal node", where, "terminal_node"))

    _check_reachability(graph, prefix, errors)


def _ends_graph(node: StateNode) -> bool:
    return node.is_terminal or node.end


def _check_transition(
    node: StateNode, graph: Graph, where: str, errors: list[ValidationError]
) -> None:
    """Every non-terminal node resolves its successor in exactly one way."""
    if isinstance(node, (SucceedNode, FailNode)):
        if node.next or node.end:
            errors.append(
                _error("Terminal node must not declare 'next' or 'end'", where, "terminal_next")
            )
        return

    if isinstance(node, ChoiceNode):
        if node.next or node.end:
            errors.append(
                _error("Choice node routes through its rules; remove 'next'/'end'",
                       where, "choice_next")
            )
        targets = [r.next for r in node.choices]
        if node.default:
            targets.append(node.default)
        for target in targets:
            if target and target not in graph.nodes:
                errors.append(
                    _error(f"Choice target '{target}' does not exist", where, "next_exists")
                )
        return

    if bool(node.next) == bool(node.end):
        errors.append(
            _error("Node must declare exactly one of 'next' or 'end'", where, "one_next")
        )
    elif node.next and node.next not in graph.nodes:
        errors.append(
            _error(f"Next node '{node.next}' does not exist", where, "next_exists")
        )


def _check_node(node: StateNode, where: str, errors: list[ValidationError]) -> None:
    if isinstance(node, TaskNode):
        if not node.worker:
            errors.append(_error("Task has no worker", where, "task_worker"))
        _check_paths(where, errors, node.input_path, node.result_path, node.output_path)
        _check_template(node.parameters, where, errors)
        if node.timeout_seconds is not None and node.timeout_seconds <= 0:
            errors.append(_error("timeout_seconds must be positive", where, "timeout"))
        for i, retrier in enumerate(node.retry):
            rwhere = f"{where}.retry[{i}]"
            if retrier.max_attempts < 1:
                errors.append(_error("max_attempts must be >= 1", rwhere, "retry"))
            if retrier.interval_seconds < 0:
                errors.append(_error("interval_seconds must be >= 0", rwhere, "retry"))
            if retrier.backoff_rate < 1.0:
                errors.append(_error("backoff_rate must be >= 1.0", rwhere, "retry"))
            if retrier.jitter not in _VALID_JITTER:
                errors.append(
                    _error(f"jitter must be one of {sorted(_VALID_JITTER)}", rwhere, "retry")
                )
            if not retrier.error_equals:
                errors.append(_error("error_equals must not be empty", rwhere, "retry"))
            if "TimeoutError" in retrier.error_equals:
                errors.append(
                    _warning("TimeoutError is never retried", rwhere, "retry_timeout")
                )

    elif isinstance(node, MapNode):
        _check_paths(where, errors, node.input_path, node.result_path, node.output_path)
        if not is_valid_path(node.items_path):
            errors.append(_error(f"Invalid items_path {node.items_path!r}", where, "path"))
        _check_template(node.item_selector, where, errors)
        if node.max_concurrency < 0:
            errors.append(_error("max_concurrency must be >= 0", where, "concurrency"))
        if node.tolerated_failure_count is not None and (
            isinstance(node.tolerated_failure_count, bool)
            or not isinstance(node.tolerated_failure_count, int)
            or node.tolerated_failure_count < 0
        ):
            errors.append(
                _error("tolerated_failure_count must be a non-negative integer",
                       where, "tolerance")
            )
        pct = node.tolerated_failure_percentage
        if pct is not None and (
            isinstance(pct, bool) or not isinstance(pct, (int, float)) or not 0 <= pct <= 100
        ):
            errors.append(
                _error("tolerated_failure_percentage must be within 0-100", where, "tolerance")
            )
        if node.processor is None:
            errors.append(_error("Map has no processor", where, "map_processor"))
        else:
            _check_graph(node.processor, f"{where}.processor.", errors)

    elif isinstance(node, ParallelNode):
        _check_paths(where, errors, node.input_path, node.result_path, node.output_path)
        if not node.branches:
            errors.append(_error("Parallel has no branches", where, "parallel_branches"))
        for i, branch in enumerate(node.branches):
            _check_graph(branch, f"{where}.branches[{i}].", errors)

    elif isinstance(node, ChoiceNode):
        if not node.choices:
            errors.append(_error("Choice has no rules", where, "choice_rules"))
        if node.default is None:
            errors.append(
                _warning("Choice has no default; an unmatched context fails the node",
                         where, "choice_default")
            )
        for i, rule in enumerate(node.choices):
            problem = validate_rule(rule)
            if problem:
                errors.append(
                    _error(f"Invalid rule: {problem}", f"{where}.choices[{i}]", "choice_rule")
                )

    elif isinstance(node, WaitNode):
        if node.seconds < 0:
            errors.append(_error("Wait seconds must be >= 0", where, "wait_seconds"))


def _check_paths(
    where: str, errors: list[ValidationError], *paths: str | None
) -> None:
    for path in paths:
        if path is not None and not is_valid_path(path):
            errors.append(_error(f"Invalid reference path {path!r}", where, "path"))


def _check_template(template: object, where: str, errors: list[ValidationError]) -> None:
    for path in template_paths(template):
        if not is_valid_path(path):
            errors.append(_error(f"Invalid template path {path!r}", where, "path"))


def _successors(node: StateNode) -> list[str]:
    if isinstance(node, ChoiceNode):
        targets = [r.next for r in node.choices if r.next]
        if node.default:
            targets.append(node.default)
        return targets
    return [node.next] if node.next else []


def _check_reachability(
    graph: Graph, prefix: str, errors: list[ValidationError]
) -> None:
    """Warn about nodes unreachable from the start node."""
    if graph.start_at not in graph.nodes:
        return

    reachable: set[str] = set()
    queue: deque[str] = deque([graph.start_at])
    while queue:
        current = queue.popleft()
        if current in reachable or current not in graph.nodes:
            continue
        reachable.add(current)
        for neighbor in _successors(graph.nodes[current]):
            if neighbor not in reachable:
                queue.append(neighbor)

    for name in graph.nodes:
        if name not in reachable:
            errors.append(
                _warning("Node is unreachable from start", f"{prefix}{name}", "reachability")
            )
