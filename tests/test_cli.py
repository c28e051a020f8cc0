"""Tests for the mediaflow command line."""

import asyncio
import json
import time

import pytest
from click.testing import CliRunner

from mediaflow.cli import definition_to_dot, main
from mediaflow.workflow.registry import PipelineRegistry
from mediaflow.workflow.store import FileExecutionStore

TRIVIAL = {
    "name": "Trivial",
    "comment": "Echoes its input.",
    "start_at": "Done",
    "nodes": {"Done": {"type": "Succeed"}},
}


@pytest.fixture
def runner(tmp_path, monkeypatch) -> CliRunner:
    # Keep any .env in the developer's checkout out of the settings.
    monkeypatch.chdir(tmp_path)
    for key in ("MEDIAFLOW_STORE_DIR", "MEDIAFLOW_WORKER_TIMEOUT", "MEDIAFLOW_EXECUTION_TIMEOUT"):
        monkeypatch.delenv(key, raising=False)
    return CliRunner()


@pytest.fixture
def definitions_dir(tmp_path):
    directory = tmp_path / "definitions"
    directory.mkdir()
    (directory / "trivial.json").write_text(json.dumps(TRIVIAL))
    return directory


def test_pipelines_lists_bundled_definitions(runner) -> None:
    result = runner.invoke(main, ["pipelines"])
    assert result.exit_code == 0, result.output
    for name in ("EnhancementPipeline", "PublishPipeline", "SelectionPipeline", "TriagePipeline"):
        assert name in result.output


def test_pipelines_includes_extra_directory(runner, definitions_dir) -> None:
    result = runner.invoke(main, ["pipelines", "--definitions", str(definitions_dir)])
    assert result.exit_code == 0, result.output
    assert "Trivial" in result.output


def test_validate_bundled(runner) -> None:
    result = runner.invoke(main, ["validate"])
    assert result.exit_code == 0, result.output
    assert "SelectionPipeline is valid." in result.output


def test_validate_reports_errors(runner, tmp_path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({
        "name": "Broken",
        "start_at": "Go",
        "nodes": {"Go": {"type": "Task", "worker": "w", "next": "Nowhere"}},
    }))

    result = runner.invoke(main, ["validate", str(broken)])

    assert result.exit_code == 1
    assert "Nowhere" in result.output


def test_validate_unparseable_file(runner, tmp_path) -> None:
    garbage = tmp_path / "garbage.json"
    garbage.write_text("{not json")

    result = runner.invoke(main, ["validate", str(garbage)])

    assert result.exit_code == 1
    assert "Failed to parse" in result.output


def test_graph_prints_dot(runner) -> None:
    result = runner.invoke(main, ["graph", "PublishPipeline"])
    assert result.exit_code == 0, result.output
    assert "digraph" in result.output
    assert "PublishCheckVideo" in result.output


def test_graph_unknown_pipeline(runner) -> None:
    result = runner.invoke(main, ["graph", "NoSuchPipeline"])
    assert result.exit_code == 1


def test_definition_to_dot_clusters_nested_graphs() -> None:
    definition = PipelineRegistry.from_package().get("SelectionPipeline")
    dot = definition_to_dot(definition)
    assert [g.get_name() for g in dot.get_subgraphs()] == ["cluster_ThumbnailMap_processor"]


def test_run_then_describe(runner, definitions_dir, tmp_path) -> None:
    store_dir = tmp_path / "store"

    result = runner.invoke(main, [
        "run", "Trivial",
        "--input", '{"mediaKeys": ["a"]}',
        "--name", "exec-1",
        "--definitions", str(definitions_dir),
        "--store-dir", str(store_dir),
    ])
    assert result.exit_code == 0, result.output
    assert "SUCCEEDED" in result.output
    assert (store_dir / "exec-1.json").exists()

    result = runner.invoke(main, ["describe", "exec-1", "--store-dir", str(store_dir)])
    assert result.exit_code == 0, result.output
    assert "SUCCEEDED" in result.output
    assert "mediaKeys" in result.output


def test_run_rejects_invalid_input(runner, definitions_dir, tmp_path) -> None:
    result = runner.invoke(main, [
        "run", "Trivial",
        "--input", "{broken",
        "--definitions", str(definitions_dir),
        "--store-dir", str(tmp_path / "store"),
    ])
    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_describe_unknown_execution(runner, tmp_path) -> None:
    result = runner.invoke(main, ["describe", "missing", "--store-dir", str(tmp_path / "store")])
    assert result.exit_code == 1


def test_invalid_configuration_exits(runner) -> None:
    result = runner.invoke(main, ["pipelines"], env={"MEDIAFLOW_WORKER_TIMEOUT": "soon"})
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_resume_force_takes_over_stale_lease(runner, definitions_dir, tmp_path) -> None:
    store_dir = tmp_path / "store"

    async def _leave_crashed_execution() -> None:
        store = FileExecutionStore(store_dir)
        await store.create(
            "Trivial", {"a": 1}, deadline=time.time() + 600,
            execution_id="exec-2", started_at=time.time(), current_node="Done",
        )
        await store.claim("exec-2", "engine-crashed")

    asyncio.run(_leave_crashed_execution())
    args = ["resume", "exec-2", "--definitions", str(definitions_dir), "--store-dir", str(store_dir)]

    result = runner.invoke(main, args)
    assert result.exit_code == 1
    assert "engine-crashed" in result.output

    result = runner.invoke(main, [*args, "--force"])
    assert result.exit_code == 0, result.output
    assert "SUCCEEDED" in result.output
