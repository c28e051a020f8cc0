"""Reference paths and payload templates over JSON-shaped documents.

Paths address a document with a minimal syntax, parsed by hand (no
``eval``):

- ``$`` is the document root, ``$$`` the context object (execution
  metadata and the current Map item).
- ``.field`` selects a map key, ``['field']`` a key with odd characters,
  ``[n]`` an array element.

Templates are documents whose keys ending in ``.$`` are resolved as
paths; everything else is copied literally, recursively::

    resolve_template(
        {"type": "triage-run", "sessionId.$": "$.sessionId"},
        {"sessionId": "s-1", "jobId": "j-9"},
    )
    # -> {"type": "triage-run", "sessionId": "s-1"}
"""

from __future__ import annotations

import copy
import re
from typing import Any

from mediaflow.workflow.errors import PathError

_TOKEN_RE = re.compile(
    r"""
    \.(?P<field>[^.\[\]]+)            # .field
    | \[(?P<index>-?\d+)\]            # [0]
    | \[['"](?P<quoted>[^'"]+)['"]\]  # ['field']
    """,
    re.VERBOSE,
)

_MISSING = object()


def parse_path(path: str) -> tuple[bool, list[str | int]]:
    """Split *path* into ``(is_context_object, steps)``.

    Raises:
        PathError: If *path* is not a valid reference path.
    """
    if not isinstance(path, str) or not path.startswith("$"):
        raise PathError(f"Invalid reference path: {path!r}")

    is_context_object = path.startswith("$$")
    rest = path[2:] if is_context_object else path[1:]

    steps: list[str | int] = []
    pos = 0
    while pos < len(rest):
        match = _TOKEN_RE.match(rest, pos)
        if match is None:
            raise PathError(f"Invalid reference path: {path!r} (at offset {pos})")
        if match.group("field") is not None:
            steps.append(match.group("field"))
        elif match.group("index") is not None:
            steps.append(int(match.group("index")))
        else:
            steps.append(match.group("quoted"))
        pos = match.end()
    return is_context_object, steps


def is_valid_path(path: str) -> bool:
    """Return ``True`` if *path* parses."""
    try:
        parse_path(path)
    except PathError:
        return False
    return True


def get_path(
    document: Any,
    path: str,
    context_object: dict[str, Any] | None = None,
) -> Any:
    """Return the value at *path*.

    Raises:
        PathError: If any step does not exist.
    """
    is_context_object, steps = parse_path(path)
    current = (context_object or {}) if is_context_object else document
    for step in steps:
        current = _step(current, step)
        if current is _MISSING:
            raise PathError(f"Path {path!r} not found in document")
    return current


def has_path(
    document: Any,
    path: str,
    context_object: dict[str, Any] | None = None,
) -> bool:
    """Return ``True`` if *path* resolves against *document*."""
    try:
        get_path(document, path, context_object)
    except PathError:
        return False
    return True


def set_path(document: Any, path: str | None, value: Any) -> Any:
    """Return a copy of *document* with *value* placed at *path*.

    ``"$"`` replaces the whole document and ``None`` discards *value*
    (returning the document unchanged).  Missing intermediate maps are
    created.

    Raises:
        PathError: If an intermediate step is not a map, or *path*
            addresses the context object.
    """
    if path is None:
        return document
    is_context_object, steps = parse_path(path)
    if is_context_object:
        raise PathError(f"Cannot write to the context object: {path!r}")
    if not steps:
        return value

    if not isinstance(document, dict):
        raise PathError(
            f"Cannot set {path!r}: document root is {type(document).__name__}, not a map"
        )
    root = copy.copy(document)
    current = root
    for step in steps[:-1]:
        if isinstance(step, int):
            raise PathError(f"Cannot set {path!r}: array steps are read-only")
        child = current.get(step)
        if child is None:
            child = {}
        elif not isinstance(child, dict):
            raise PathError(
                f"Cannot set {path!r}: {step!r} is {type(child).__name__}, not a map"
            )
        else:
            child = copy.copy(child)
        current[step] = child
        current = child
    last = steps[-1]
    if isinstance(last, int):
        raise PathError(f"Cannot set {path!r}: array steps are read-only")
    current[last] = value
    return root


def select(
    document: Any,
    path: str | None,
    context_object: dict[str, Any] | None = None,
) -> Any:
    """Apply an InputPath/OutputPath: ``None`` yields ``{}``."""
    if path is None:
        return {}
    return get_path(document, path, context_object)


def resolve_template(
    template: Any,
    document: Any,
    context_object: dict[str, Any] | None = None,
) -> Any:
    """Resolve a payload template against *document*.

    Raises:
        PathError: If a ``.$`` key's path does not resolve.
    """
    if isinstance(template, dict):
        resolved: dict[str, Any] = {}
        for key, value in template.items():
            if key.endswith(".$"):
                if not isinstance(value, str):
                    raise PathError(f"Template key {key!r} must map to a path string")
                resolved[key[:-2]] = copy.deepcopy(
                    get_path(document, value, context_object)
                )
            else:
                resolved[key] = resolve_template(value, document, context_object)
        return resolved
    if isinstance(template, list):
        return [resolve_template(v, document, context_object) for v in template]
    return copy.deepcopy(template)


def template_paths(template: Any) -> list[str]:
    """Return every path referenced by *template* (for static validation)."""
    found: list[str] = []
    if isinstance(template, dict):
        for key, value in template.items():
            if key.endswith(".$") and isinstance(value, str):
                found.append(value)
            else:
                found.extend(template_paths(value))
    elif isinstance(template, list):
        for v in template:
            found.extend(template_paths(v))
    return found


def _step(current: Any, step: str | int) -> Any:
    if isinstance(step, int):
        if isinstance(current, list) and -len(current) <= step < len(current):
            return current[step]
        return _MISSING
    if isinstance(current, dict) and step in current:
        return current[step]
    return _MISSING
