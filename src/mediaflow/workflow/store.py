"""Execution Store: durable record of every execution.

Holds each execution's status, context and history so runs can be
inspected and resumed.  All writes for one execution are serialised by a
per-execution :class:`asyncio.Lock`, so concurrent Map/Parallel branches
can append history safely and a status transition never interleaves
with a pending append.  Once an execution reaches a terminal status the
store rejects further writes.

Two implementations ship here:

- :class:`InMemoryExecutionStore` for tests and one-shot runs.
- :class:`FileExecutionStore`, one JSON document per execution in a
  directory, replaced atomically on every write.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from mediaflow.workflow.errors import (
    ExecutionClosedError,
    ExecutionConflictError,
    ExecutionNotFoundError,
)
from mediaflow.workflow.models import Execution, ExecutionStatus, HistoryEntry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Context deltas
# ---------------------------------------------------------------------------


@dataclass
class ContextDelta:
    """The change between two contexts.

    Top-level keys of map-shaped contexts are diffed; any other change
    (a non-map on either side) is recorded as a whole-document
    replacement.

    Attributes:
        set_keys: Keys added or changed, with their new values.
        removed_keys: Keys no longer present.
        replaces: Whether :attr:`replacement` replaces the whole context.
        replacement: The new document when :attr:`replaces` is set.
    """

    set_keys: dict[str, Any] = field(default_factory=dict)
    removed_keys: list[str] = field(default_factory=list)
    replaces: bool = False
    replacement: Any = None

    @property
    def is_empty(self) -> bool:
        return not (self.set_keys or self.removed_keys or self.replaces)

    def apply(self, context: Any) -> Any:
        """Return a new context with this delta applied to *context*."""
        if self.replaces:
            return copy.deepcopy(self.replacement)
        result = dict(context) if isinstance(context, dict) else {}
        for key in self.removed_keys:
            result.pop(key, None)
        for key, value in self.set_keys.items():
            result[key] = copy.deepcopy(value)
        return result


def diff_context(old: Any, new: Any) -> ContextDelta:
    """Compute the :class:`ContextDelta` turning *old* into *new*."""
    if not isinstance(old, dict) or not isinstance(new, dict):
        if old == new:
            return ContextDelta()
        return ContextDelta(replaces=True, replacement=new)
    return ContextDelta(
        set_keys={k: v for k, v in new.items() if k not in old or old[k] != v},
        removed_keys=[k for k in old if k not in new],
    )


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ExecutionStore(Protocol):
    """Durable backing for executions."""

    async def create(
        self,
        pipeline_name: str,
        input: Any,
        deadline: float,
        execution_id: str | None = None,
        started_at: float | None = None,
        current_node: str | None = None,
    ) -> str: ...

    async def append_history(self, execution_id: str, entry: HistoryEntry) -> None: ...

    async def update_context(
        self,
        execution_id: str,
        delta: ContextDelta,
        current_node: str | None = None,
        resume_at: float | None = None,
    ) -> None: ...

    async def get(self, execution_id: str) -> Execution: ...

    async def set_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: str | None = None,
        cause: str | None = None,
        stopped_at: float | None = None,
    ) -> None: ...

    async def list_ids(self) -> list[str]: ...

    async def claim(self, execution_id: str, owner: str) -> None: ...

    async def release(self, execution_id: str, owner: str) -> None: ...

    async def break_lease(self, execution_id: str) -> str | None: ...


class InMemoryExecutionStore:
    """Execution store holding every record in process memory.

    Subclasses persist by overriding :meth:`_persist`, :meth:`_load` and
    the lease hooks.
    """

    def __init__(self) -> None:
        self._executions: dict[str, Execution] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._owners: dict[str, str] = {}

    def _lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    # -- persistence hooks --------------------------------------------------

    def _persist(self, execution: Execution) -> None:
        """Write *execution* to durable storage (no-op in memory)."""

    def _load(self, execution_id: str) -> Execution | None:
        return None

    def _known_ids(self) -> list[str]:
        return list(self._executions)

    # -- internals ----------------------------------------------------------

    def _record(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            execution = self._load(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"No execution '{execution_id}'")
            self._executions[execution_id] = execution
        return execution

    def _writable(self, execution_id: str) -> Execution:
        execution = self._record(execution_id)
        if execution.status.is_terminal:
            raise ExecutionClosedError(
                f"Execution '{execution_id}' is {execution.status.value}; "
                f"no further writes accepted"
            )
        return execution

    # -- ExecutionStore -----------------------------------------------------

    async def create(
        self,
        pipeline_name: str,
        input: Any,
        deadline: float,
        execution_id: str | None = None,
        started_at: float | None = None,
        current_node: str | None = None,
    ) -> str:
        """Create a RUNNING execution and return its id.

        Raises:
            ExecutionConflictError: If *execution_id* is already taken.
        """
        execution_id = execution_id or uuid.uuid4().hex
        async with self._lock(execution_id):
            if execution_id in self._executions or self._load(execution_id) is not None:
                raise ExecutionConflictError(
                    f"Execution '{execution_id}' already exists"
                )
            execution = Execution(
                execution_id=execution_id,
                pipeline_name=pipeline_name,
                input=copy.deepcopy(input),
                context=copy.deepcopy(input),
                deadline=deadline,
                current_node=current_node,
            )
            if started_at is not None:
                execution.started_at = started_at
            self._executions[execution_id] = execution
            self._persist(execution)
        logger.debug("Created execution '%s' of '%s'", execution_id, pipeline_name)
        return execution_id

    async def append_history(self, execution_id: str, entry: HistoryEntry) -> None:
        async with self._lock(execution_id):
            execution = self._writable(execution_id)
            execution.history.append(copy.deepcopy(entry))
            self._persist(execution)

    async def update_context(
        self,
        execution_id: str,
        delta: ContextDelta,
        current_node: str | None = None,
        resume_at: float | None = None,
    ) -> None:
        """Apply *delta* and record the resume point.

        *current_node* and *resume_at* are stored as given, so ``None``
        clears them.
        """
        async with self._lock(execution_id):
            execution = self._writable(execution_id)
            if not delta.is_empty:
                execution.context = delta.apply(execution.context)
            execution.current_node = current_node
            execution.resume_at = resume_at
            self._persist(execution)
        logger.debug(
            "Execution '%s' context updated (next=%s)", execution_id, current_node
        )

    async def get(self, execution_id: str) -> Execution:
        """Return a snapshot of the execution.

        Raises:
            ExecutionNotFoundError: If no such execution exists.
        """
        async with self._lock(execution_id):
            return self._record(execution_id).snapshot()

    async def set_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: str | None = None,
        cause: str | None = None,
        stopped_at: float | None = None,
    ) -> None:
        """Transition the execution to *status*.

        Raises:
            ExecutionClosedError: If the execution is already terminal.
        """
        async with self._lock(execution_id):
            execution = self._writable(execution_id)
            execution.status = status
            execution.error = error
            execution.cause = cause
            if status.is_terminal:
                execution.stopped_at = stopped_at
                execution.resume_at = None
            self._persist(execution)
        logger.debug("Execution '%s' status -> %s", execution_id, status.value)

    async def list_ids(self) -> list[str]:
        return sorted(set(self._known_ids()) | set(self._executions))

    async def claim(self, execution_id: str, owner: str) -> None:
        """Take the single-writer lease on *execution_id*.

        Raises:
            ExecutionConflictError: If another owner holds the lease.
        """
        async with self._lock(execution_id):
            self._record(execution_id)
            holder = self._owners.get(execution_id)
            if holder is not None and holder != owner:
                raise ExecutionConflictError(
                    f"Execution '{execution_id}' is owned by '{holder}'"
                )
            self._acquire_lease(execution_id, owner)
            self._owners[execution_id] = owner

    async def release(self, execution_id: str, owner: str) -> None:
        async with self._lock(execution_id):
            if self._owners.get(execution_id) == owner:
                del self._owners[execution_id]
                self._release_lease(execution_id)

    async def break_lease(self, execution_id: str) -> str | None:
        """Drop whatever lease is held on *execution_id*.

        Used to take over an execution whose owner crashed.  Returns the
        previous holder, if any.
        """
        async with self._lock(execution_id):
            self._record(execution_id)
            holder = self._owners.pop(execution_id, None) or self._lease_holder(execution_id)
            self._release_lease(execution_id)
        if holder is not None:
            logger.warning("Broke lease of '%s' on execution '%s'", holder, execution_id)
        return holder

    def _acquire_lease(self, execution_id: str, owner: str) -> None:
        """Hook for cross-process leases."""

    def _release_lease(self, execution_id: str) -> None:
        """Hook for cross-process leases."""

    def _lease_holder(self, execution_id: str) -> str | None:
        return None


class FileExecutionStore(InMemoryExecutionStore):
    """Execution store writing one JSON document per execution.

    Files are named ``<execution_id>.json`` inside *directory* and are
    replaced atomically on every write.  The single-writer lease is an
    ``<execution_id>.owner`` file created exclusively, so two processes
    cannot drive the same execution.  The file records the owner's pid
    and host; a lease left by a dead process on this host is taken
    over, anything else needs :meth:`break_lease`.
    """

    def __init__(self, directory: str | Path) -> None:
        super().__init__()
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, execution_id: str) -> Path:
        return self._dir / f"{execution_id}.json"

    def _owner_path(self, execution_id: str) -> Path:
        return self._dir / f"{execution_id}.owner"

    def _persist(self, execution: Execution) -> None:
        execution.save_to_file(self._path(execution.execution_id))

    def _load(self, execution_id: str) -> Execution | None:
        path = self._path(execution_id)
        if not path.exists():
            return None
        logger.debug("Loading execution '%s' from %s", execution_id, path)
        return Execution.load_from_file(path)

    def _known_ids(self) -> list[str]:
        return [p.stem for p in self._dir.glob("*.json")]

    def _acquire_lease(self, execution_id: str, owner: str) -> None:
        path = self._owner_path(execution_id)
        lease = {"owner": owner, "pid": os.getpid(), "host": socket.gethostname()}
        for _ in range(2):
            try:
                with open(path, "x") as f:
                    json.dump(lease, f)
                return
            except FileExistsError:
                held = self._read_lease(path)
                if held.get("owner") == owner:
                    return
                if not _lease_is_stale(held):
                    raise ExecutionConflictError(
                        f"Execution '{execution_id}' is owned by '{held.get('owner')}'"
                    ) from None
                logger.warning(
                    "Taking over execution '%s' from '%s' (pid %s is gone)",
                    execution_id, held.get("owner"), held.get("pid"),
                )
                path.unlink(missing_ok=True)
        raise ExecutionConflictError(
            f"Execution '{execution_id}' lease changed hands while claiming"
        )

    def _release_lease(self, execution_id: str) -> None:
        self._owner_path(execution_id).unlink(missing_ok=True)

    def _lease_holder(self, execution_id: str) -> str | None:
        path = self._owner_path(execution_id)
        if not path.exists():
            return None
        return self._read_lease(path).get("owner")

    @staticmethod
    def _read_lease(path: Path) -> dict[str, Any]:
        text = path.read_text().strip()
        try:
            lease = json.loads(text)
        except json.JSONDecodeError:
            # Bare owner name: no pid, so it can only be broken explicitly.
            return {"owner": text}
        return lease if isinstance(lease, dict) else {"owner": text}


def _lease_is_stale(lease: dict[str, Any]) -> bool:
    """A lease is stale when it names a dead process on this host."""
    pid = lease.get("pid")
    if not isinstance(pid, int) or lease.get("host") != socket.gethostname():
        return False
    return not _process_alive(pid)


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
