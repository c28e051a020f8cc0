"""Tests for the in-process worker client, middleware and error mapping."""

import asyncio
import logging
from typing import Any

import pytest

from mediaflow.workers.client import LocalWorkerClient, WorkerClient
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
from mediaflow.workers.middleware import InvocationRecorder, LoggingMiddleware


class TestLocalWorkerClient:
    async def test_async_and_sync_workers(self) -> None:
        async def thumbnail(payload: dict[str, Any]) -> dict[str, Any]:
            return {"thumb": payload["key"]}

        def selection(payload: dict[str, Any]) -> dict[str, Any]:
            return {"chosen": "b_d"}

        client = LocalWorkerClient({"thumbnail": thumbnail})
        client.register("selection", selection)

        assert isinstance(client, WorkerClient)
        assert client.worker_ids == ["thumbnail", "selection"]
        assert await client.invoke("thumbnail", {"key": "a"}) == {"thumb": "a"}
        assert await client.invoke("selection", {}) == {"chosen": "b_d"}

    async def test_unknown_worker(self) -> None:
        with pytest.raises(WorkerUnreachableError):
            await LocalWorkerClient().invoke("missing", {})

    async def test_worker_failure_passes_through_with_worker_id(self) -> None:
        async def throttled(payload: dict[str, Any]) -> dict[str, Any]:
            raise ThrottledError("slow down")

        client = LocalWorkerClient({"enhancement": throttled})
        with pytest.raises(ThrottledError) as excinfo:
            await client.invoke("enhancement", {})
        assert excinfo.value.worker_id == "enhancement"

    async def test_unexpected_exception_becomes_worker_error(self) -> None:
        async def buggy(payload: dict[str, Any]) -> dict[str, Any]:
            raise KeyError("sessionId")

        client = LocalWorkerClient({"triage": buggy})
        with pytest.raises(WorkerError) as excinfo:
            await client.invoke("triage", {})
        assert excinfo.value.error_name == "WorkerError.KeyError"
        assert isinstance(excinfo.value.__cause__, KeyError)

    async def test_cancellation_reports_abandoned_invocation(self) -> None:
        errors: list[WorkerFailure] = []

        class Watcher:
            async def before_invoke(self, worker_id, payload):
                return payload

            async def after_invoke(self, worker_id, result):
                return result

            async def on_error(self, worker_id, error):
                errors.append(error)

        async def hang(payload: dict[str, Any]) -> dict[str, Any]:
            await asyncio.sleep(30)
            return {}

        client = LocalWorkerClient({"video": hang}, middleware=[Watcher()])
        task = asyncio.create_task(client.invoke("video", {}))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(errors) == 1
        assert isinstance(errors[0], InvocationAbandoned)
        assert errors[0].worker_id == "video"


class TestMiddleware:
    async def test_middleware_order_and_transforms(self) -> None:
        order: list[str] = []

        class Tagger:
            def __init__(self, tag: str) -> None:
                self.tag = tag

            async def before_invoke(self, worker_id, payload):
                order.append(f"before:{self.tag}")
                return {**payload, self.tag: True}

            async def after_invoke(self, worker_id, result):
                order.append(f"after:{self.tag}")
                return result

            async def on_error(self, worker_id, error):
                order.append(f"error:{self.tag}")

        async def echo(payload: dict[str, Any]) -> dict[str, Any]:
            return payload

        client = LocalWorkerClient({"echo": echo}, middleware=[Tagger("outer")])
        client.add_middleware(Tagger("inner"))

        result = await client.invoke("echo", {})

        assert result == {"outer": True, "inner": True}
        assert order == ["before:outer", "before:inner", "after:inner", "after:outer"]

    async def test_recorder_tracks_peak_in_flight(self) -> None:
        recorder = InvocationRecorder()

        async def slow(payload: dict[str, Any]) -> dict[str, Any]:
            await asyncio.sleep(0.01)
            return {}

        client = LocalWorkerClient({"slow": slow}, middleware=[recorder])
        await asyncio.gather(*(client.invoke("slow", {"n": i}) for i in range(4)))

        assert recorder.calls["slow"] == 4
        assert recorder.peak_in_flight["slow"] == 4
        assert recorder.in_flight["slow"] == 0
        assert len(recorder.payloads) == 4

    async def test_logging_middleware(self, caplog) -> None:
        async def fail(payload: dict[str, Any]) -> dict[str, Any]:
            raise WorkerError("Broken", "bad frame")

        client = LocalWorkerClient({"video": fail}, middleware=[LoggingMiddleware()])
        with caplog.at_level(logging.INFO, logger="mediaflow.workers.middleware"):
            with pytest.raises(WorkerError):
                await client.invoke("video", {"key": "v"})

        assert "worker=video" in caplog.text
        assert "bad frame" in caplog.text


class TestErrorMapping:
    @pytest.mark.parametrize(
        "status, expected",
        [
            (400, MalformedRequestError),
            (408, WorkerTimeoutError),
            (418, MalformedRequestError),
            (429, ThrottledError),
            (502, ServiceError),
            (599, ServiceError),
            (302, TransportError),
        ],
    )
    def test_error_from_status(self, status, expected) -> None:
        error = error_from_status(status, "msg", worker_id="w")
        assert type(error) is expected
        assert error.worker_id == "w"

    def test_retryability(self) -> None:
        assert WorkerUnreachableError("x").is_retryable
        assert not MalformedRequestError("x").is_retryable
        assert not WorkerError("Bad").is_retryable

    def test_worker_error_names(self) -> None:
        error = WorkerError("", "no code")
        assert error.code == "Unknown"
        assert error.error_name == "WorkerError.Unknown"
        assert str(WorkerError("Bad", "detail")) == "Bad: detail"
        assert str(WorkerError("Bad")) == "Bad"
