"""Deployment settings.

Read from ``MEDIAFLOW_*`` environment variables, after loading a
``.env`` file from the working directory when one exists::

    MEDIAFLOW_STORE_DIR=.mediaflow/executions
    MEDIAFLOW_WORKER_ENDPOINTS={"thumbnail": "http://localhost:9001/invoke"}
    MEDIAFLOW_WORKER_TIMEOUT=300
    MEDIAFLOW_WAIT_OVERRIDES={"TriageProcessingWait": 5}
    MEDIAFLOW_CONCURRENCY_OVERRIDES={"ThumbnailMap": 8}
    MEDIAFLOW_EXECUTION_TIMEOUT=3600

Wait durations and Map concurrency ceilings default to the values in the
bundled definitions; overrides are keyed by node name or
``"<pipeline>.<node>"``.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

ENV_PREFIX = "MEDIAFLOW_"

DEFAULT_STORE_DIR = ".mediaflow/executions"
DEFAULT_WORKER_TIMEOUT = 300.0


@dataclass
class Settings:
    """Resolved deployment settings.

    Attributes:
        store_dir: Directory of the file execution store.
        worker_endpoints: Worker id to HTTP endpoint URL.
        worker_timeout: Per-request timeout of the HTTP worker client.
        wait_overrides: Wait node durations replacing the defaults.
        concurrency_overrides: Map concurrency ceilings replacing the defaults.
        execution_timeout: Deadline replacing every definition's own.
    """

    store_dir: Path = field(default_factory=lambda: Path(DEFAULT_STORE_DIR))
    worker_endpoints: dict[str, str] = field(default_factory=dict)
    worker_timeout: float = DEFAULT_WORKER_TIMEOUT
    wait_overrides: dict[str, float] = field(default_factory=dict)
    concurrency_overrides: dict[str, int] = field(default_factory=dict)
    execution_timeout: float | None = None

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        dotenv_path: str | Path | None = ".env",
    ) -> Settings:
        """Build settings from the environment.

        Args:
            environ: Variables to read (``os.environ`` if omitted).
            dotenv_path: ``.env`` file loaded into ``os.environ`` first;
                ``None`` skips it.  Existing variables are not overridden.

        Raises:
            ValueError: If a variable holds an invalid value.
        """
        if dotenv_path is not None and environ is None:
            load_dotenv(dotenv_path, override=False)
        env = os.environ if environ is None else environ

        settings = cls()
        if store_dir := env.get(f"{ENV_PREFIX}STORE_DIR"):
            settings.store_dir = Path(store_dir)
        settings.worker_endpoints = {
            str(k): str(v)
            for k, v in _json_object(env, "WORKER_ENDPOINTS").items()
        }
        if (timeout := _number(env, "WORKER_TIMEOUT")) is not None:
            settings.worker_timeout = timeout
        settings.wait_overrides = {
            str(k): _coerce_number(v, "WAIT_OVERRIDES", k)
            for k, v in _json_object(env, "WAIT_OVERRIDES").items()
        }
        settings.concurrency_overrides = {
            str(k): _coerce_positive_int(v, "CONCURRENCY_OVERRIDES", k)
            for k, v in _json_object(env, "CONCURRENCY_OVERRIDES").items()
        }
        settings.execution_timeout = _number(env, "EXECUTION_TIMEOUT")
        return settings


def _json_object(env: Mapping[str, str], key: str) -> dict[str, Any]:
    raw = env.get(ENV_PREFIX + key)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{ENV_PREFIX}{key} is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ValueError(f"{ENV_PREFIX}{key} must be a JSON object")
    return value


def _number(env: Mapping[str, str], key: str) -> float | None:
    raw = env.get(ENV_PREFIX + key)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{key} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{ENV_PREFIX}{key} must be positive, got {raw!r}")
    return value


def _coerce_number(value: Any, key: str, entry: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(
            f"{ENV_PREFIX}{key}[{entry!r}] must be a non-negative number, got {value!r}"
        )
    return float(value)


def _coerce_positive_int(value: Any, key: str, entry: str) -> int:
    # 0 would lift the ceiling entirely.
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(
            f"{ENV_PREFIX}{key}[{entry!r}] must be a positive integer, got {value!r}"
        )
    return value
