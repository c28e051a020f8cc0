"""Choice rule evaluation.

Evaluates the predicates of a Choice node against the context.  Rules
are pure, side-effect-free functions of the document.

Supported operators
~~~~~~~~~~~~~~~~~~~
- Equality: ``boolean_equals``, ``string_equals``, ``numeric_equals``
- Ordering: ``numeric_less_than``, ``numeric_greater_than``
- Presence: ``is_present`` (value ``true``/``false``)
- Composition: ``and``, ``or`` (over ``rules``), ``not`` (one rule)

Type-strict: a ``boolean_equals`` rule never matches the string
``"true"``, and a missing variable makes every comparison false rather
than raising.

Examples::

    evaluate_rule(ChoiceRule("boolean_equals", "$.allProcessed", True), ctx)
    evaluate_rule(ChoiceRule("numeric_equals", "$.processed", 3), ctx)
"""

from __future__ import annotations

from typing import Any

from mediaflow.workflow.errors import PathError
from mediaflow.workflow.models import ChoiceRule
from mediaflow.workflow.paths import get_path, is_valid_path

COMPARISON_OPERATORS = frozenset({
    "boolean_equals",
    "string_equals",
    "numeric_equals",
    "numeric_less_than",
    "numeric_greater_than",
    "is_present",
})
COMPOSITE_OPERATORS = frozenset({"and", "or", "not"})


class ConditionError(Exception):
    """Raised when a rule is structurally invalid."""


_MISSING = object()


def evaluate_rule(rule: ChoiceRule, document: Any) -> bool:
    """Evaluate *rule* against *document* and return a boolean.

    Raises:
        ConditionError: If the rule uses an unknown operator.
    """
    op = rule.operator

    if op == "and":
        return all(evaluate_rule(r, document) for r in rule.rules)
    if op == "or":
        return any(evaluate_rule(r, document) for r in rule.rules)
    if op == "not":
        return not evaluate_rule(rule.rules[0], document)

    if op not in COMPARISON_OPERATORS:
        raise ConditionError(f"Unsupported choice operator: {op!r}")

    actual = _lookup(document, rule.variable)

    if op == "is_present":
        return (actual is not _MISSING) == bool(rule.value)
    if actual is _MISSING:
        return False

    if op == "boolean_equals":
        return isinstance(actual, bool) and actual == rule.value
    if op == "string_equals":
        return isinstance(actual, str) and actual == rule.value
    if not _is_number(actual):
        return False
    if op == "numeric_equals":
        return actual == rule.value
    if op == "numeric_less_than":
        return actual < rule.value
    return actual > rule.value


def first_match(rules: tuple[ChoiceRule, ...] | list[ChoiceRule], document: Any) -> ChoiceRule | None:
    """Return the first rule that holds, in declaration order."""
    for rule in rules:
        if evaluate_rule(rule, document):
            return rule
    return None


def validate_rule(rule: ChoiceRule, top_level: bool = True) -> str | None:
    """Check whether *rule* is structurally valid.

    Returns:
        ``None`` if valid, or an error message string.
    """
    op = rule.operator
    if op in COMPOSITE_OPERATORS:
        if op == "not" and len(rule.rules) != 1:
            return "'not' takes exactly one rule"
        if op != "not" and not rule.rules:
            return f"'{op}' needs at least one rule"
        for child in rule.rules:
            if child.next:
                return "nested rules cannot declare 'next'"
            problem = validate_rule(child, top_level=False)
            if problem:
                return problem
    elif op in COMPARISON_OPERATORS:
        if not rule.variable or not is_valid_path(rule.variable):
            return f"invalid variable path {rule.variable!r}"
        problem = _check_value_type(op, rule.value)
        if problem:
            return problem
    else:
        return f"unsupported operator {op!r}"

    if top_level and not rule.next:
        return "rule has no 'next'"
    return None


def _check_value_type(op: str, value: Any) -> str | None:
    if op in ("boolean_equals", "is_present") and not isinstance(value, bool):
        return f"'{op}' needs a boolean value, got {value!r}"
    if op == "string_equals" and not isinstance(value, str):
        return f"'{op}' needs a string value, got {value!r}"
    if op.startswith("numeric_") and not _is_number(value):
        return f"'{op}' needs a numeric value, got {value!r}"
    return None


def _lookup(document: Any, variable: str) -> Any:
    try:
        return get_path(document, variable)
    except PathError:
        return _MISSING


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
