"""CLI entry point for the mediaflow workflow engine.

Provides ``pipelines``, ``validate``, ``run``, ``describe``, ``resume``
and ``graph`` sub-commands using Click and Rich for output formatting.

Usage::

    mediaflow pipelines
    mediaflow validate extra/my-pipeline.json --strict
    mediaflow run SelectionPipeline --input input.json --verbose
    mediaflow describe 3f2a9c...
    mediaflow resume 3f2a9c...
    mediaflow graph PublishPipeline --output publish.dot
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click
import pydot
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from mediaflow.config import Settings
from mediaflow.workers.client import HttpWorkerClient
from mediaflow.workers.middleware import LoggingMiddleware
from mediaflow.workflow.engine import ExecutionEngine
from mediaflow.workflow.errors import DefinitionError, WorkflowError
from mediaflow.workflow.events import ExecutionEvent, ExecutionEventEmitter
from mediaflow.workflow.models import (
    ChoiceNode,
    Execution,
    ExecutionStatus,
    FailNode,
    Graph,
    MapNode,
    ParallelNode,
    PipelineDefinition,
    SucceedNode,
    WaitNode,
)
from mediaflow.workflow.parser import parse_definition_file
from mediaflow.workflow.registry import PipelineRegistry
from mediaflow.workflow.store import FileExecutionStore
from mediaflow.workflow.validator import ValidationLevel, has_errors, validate_definition

console = Console()

_STATUS_STYLES = {
    ExecutionStatus.RUNNING: "cyan",
    ExecutionStatus.SUCCEEDED: "green",
    ExecutionStatus.FAILED: "red",
    ExecutionStatus.TIMED_OUT: "magenta",
    ExecutionStatus.ABORTED: "yellow",
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_settings(store_dir: str | None) -> Settings:
    try:
        settings = Settings.from_env()
    except ValueError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise SystemExit(1) from exc
    if store_dir:
        settings.store_dir = Path(store_dir)
    return settings


def _load_registry(settings: Settings, definitions_dir: str | None) -> PipelineRegistry:
    overrides = {
        "wait_overrides": settings.wait_overrides,
        "concurrency_overrides": settings.concurrency_overrides,
        "timeout_override": settings.execution_timeout,
    }
    try:
        registry = PipelineRegistry.from_package(**overrides)
        if definitions_dir:
            registry.load_directory(definitions_dir, **overrides)
    except DefinitionError as exc:
        console.print(f"[red]Failed to load pipelines:[/red] {exc}")
        raise SystemExit(1) from exc
    return registry


def _build_engine(
    settings: Settings, registry: PipelineRegistry, show_events: bool
) -> tuple[ExecutionEngine, HttpWorkerClient]:
    client = HttpWorkerClient(
        settings.worker_endpoints,
        timeout=settings.worker_timeout,
        middleware=[LoggingMiddleware(log_level=logging.DEBUG)],
    )
    emitter = None
    if show_events:
        emitter = ExecutionEventEmitter()
        emitter.on_any(_print_event)
    engine = ExecutionEngine(
        registry=registry,
        client=client,
        store=FileExecutionStore(settings.store_dir),
        event_emitter=emitter,
    )
    return engine, client


async def _print_event(event: ExecutionEvent) -> None:
    target = event.path or event.execution_id
    console.print(f"[dim]{event.type.value}[/dim] {target}")


@click.group()
@click.version_option(package_name="mediaflow")
def main() -> None:
    """mediaflow - run the media processing pipelines."""


@main.command()
@click.option("--definitions", "definitions_dir", type=click.Path(exists=True, file_okay=False),
              default=None, help="Directory of extra pipeline definitions.")
def pipelines(definitions_dir: str | None) -> None:
    """List the registered pipelines."""
    settings = _load_settings(None)
    registry = _load_registry(settings, definitions_dir)

    table = Table(title="Pipelines")
    table.add_column("Name", style="cyan")
    table.add_column("Start")
    table.add_column("Nodes", justify="right")
    table.add_column("Timeout", justify="right")
    table.add_column("Description")
    for name in registry.names():
        definition = registry.get(name)
        table.add_row(
            name,
            definition.start_at,
            str(_count_nodes(definition.graph)),
            f"{definition.timeout_seconds:g}s",
            definition.comment,
        )
    console.print(table)


@main.command()
@click.argument("files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
@click.option("--strict", is_flag=True, help="Treat warnings as errors.")
def validate(files: tuple[str, ...], strict: bool) -> None:
    """Validate definition FILES (the bundled pipelines if none are given)."""
    definitions: list[PipelineDefinition] = []
    if files:
        for path in files:
            try:
                definitions.append(parse_definition_file(path))
            except DefinitionError as exc:
                console.print(f"[red]Failed to parse {path}:[/red] {exc}")
                raise SystemExit(1) from exc
    else:
        registry = _load_registry(Settings(), None)
        definitions = [registry.get(name) for name in registry.names()]

    failed = False
    for definition in definitions:
        findings = validate_definition(definition)
        if not findings:
            console.print(f"[green]{definition.name} is valid.[/green]")
            continue

        table = Table(title=f"Validation Results: {definition.name}")
        table.add_column("Level", style="bold")
        table.add_column("Location")
        table.add_column("Message")
        for f in findings:
            level_style = "red" if f.level == ValidationLevel.ERROR else "yellow"
            table.add_row(
                f"[{level_style}]{f.level.value}[/{level_style}]",
                f.node_name or "",
                f.message,
            )
        console.print(table)
        if has_errors(findings) or strict:
            failed = True

    if failed:
        raise SystemExit(1)


@main.command()
@click.argument("pipeline_name")
@click.option("--input", "input_doc", default="{}",
              help="Input document: a JSON string or a path to a JSON file.")
@click.option("--name", default=None, help="Execution id (generated if omitted).")
@click.option("--definitions", "definitions_dir", type=click.Path(exists=True, file_okay=False),
              default=None, help="Directory of extra pipeline definitions.")
@click.option("--store-dir", type=click.Path(file_okay=False), default=None,
              help="Execution store directory.")
@click.option("--events", "show_events", is_flag=True, help="Print execution events.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def run(
    pipeline_name: str,
    input_doc: str,
    name: str | None,
    definitions_dir: str | None,
    store_dir: str | None,
    show_events: bool,
    verbose: bool,
) -> None:
    """Run PIPELINE_NAME against the configured HTTP workers."""
    _setup_logging(verbose)
    settings = _load_settings(store_dir)
    registry = _load_registry(settings, definitions_dir)
    document = _read_input(input_doc)

    async def _run() -> Execution:
        engine, client = _build_engine(settings, registry, show_events)
        async with client:
            return await engine.run(pipeline_name, document, name=name)

    console.print(f"[bold green]Running pipeline:[/bold green] {pipeline_name}")
    try:
        execution = asyncio.run(_run())
    except WorkflowError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc

    _print_execution(execution)
    if execution.status is not ExecutionStatus.SUCCEEDED:
        raise SystemExit(1)


@main.command()
@click.argument("execution_id")
@click.option("--store-dir", type=click.Path(file_okay=False), default=None,
              help="Execution store directory.")
def describe(execution_id: str, store_dir: str | None) -> None:
    """Show status, context and history of EXECUTION_ID."""
    settings = _load_settings(store_dir)
    store = FileExecutionStore(settings.store_dir)
    try:
        execution = asyncio.run(store.get(execution_id))
    except WorkflowError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc
    _print_execution(execution)


@main.command()
@click.argument("execution_id")
@click.option("--definitions", "definitions_dir", type=click.Path(exists=True, file_okay=False),
              default=None, help="Directory of extra pipeline definitions.")
@click.option("--store-dir", type=click.Path(file_okay=False), default=None,
              help="Execution store directory.")
@click.option("--force", is_flag=True,
              help="Take over the execution even if another owner holds its lease.")
@click.option("--events", "show_events", is_flag=True, help="Print execution events.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def resume(
    execution_id: str,
    definitions_dir: str | None,
    store_dir: str | None,
    show_events: bool,
    verbose: bool,
    force: bool,
) -> None:
    """Continue a persisted RUNNING execution.

    Use --force after a crash left the execution leased to a dead engine.
    """
    _setup_logging(verbose)
    settings = _load_settings(store_dir)
    registry = _load_registry(settings, definitions_dir)

    async def _resume() -> Execution:
        engine, client = _build_engine(settings, registry, show_events)
        async with client:
            await engine.resume_execution(execution_id, force=force)
            return await engine.wait_for(execution_id)

    console.print(f"[bold green]Resuming execution:[/bold green] {execution_id}")
    try:
        execution = asyncio.run(_resume())
    except WorkflowError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc

    _print_execution(execution)
    if execution.status is not ExecutionStatus.SUCCEEDED:
        raise SystemExit(1)


@main.command()
@click.argument("pipeline_name")
@click.option("--definitions", "definitions_dir", type=click.Path(exists=True, file_okay=False),
              default=None, help="Directory of extra pipeline definitions.")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None,
              help="Write the DOT source to this file instead of stdout.")
def graph(pipeline_name: str, definitions_dir: str | None, output: str | None) -> None:
    """Render PIPELINE_NAME as a GraphViz DOT graph."""
    registry = _load_registry(_load_settings(None), definitions_dir)
    try:
        definition = registry.get(pipeline_name)
    except WorkflowError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc

    source = definition_to_dot(definition).to_string()
    if output:
        Path(output).write_text(source)
        console.print(f"[green]Wrote {output}[/green]")
    else:
        click.echo(source)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def definition_to_dot(definition: PipelineDefinition) -> pydot.Dot:
    """Build a DOT graph of *definition*; nested graphs become clusters."""
    dot = pydot.Dot(definition.name, graph_type="digraph", rankdir="TB")
    dot.add_node(pydot.Node("__start__", shape="point"))
    _add_graph(dot, definition.graph, prefix="")
    dot.add_edge(pydot.Edge("__start__", _dot_id("", definition.start_at)))
    return dot


def _dot_id(prefix: str, name: str) -> str:
    return json.dumps(f"{prefix}{name}")


def _add_graph(container: Any, graph: Graph, prefix: str) -> None:
    for name, node in graph.nodes.items():
        node_id = _dot_id(prefix, name)
        label = f"{name}\\n[{node.type.value}]"
        shape = "box"
        if isinstance(node, ChoiceNode):
            shape = "diamond"
        elif isinstance(node, WaitNode):
            label = f"{name}\\n[Wait {node.seconds:g}s]"
            shape = "ellipse"
        elif isinstance(node, (SucceedNode, FailNode)):
            shape = "doublecircle"
        container.add_node(pydot.Node(node_id, label=f"\"{label}\"", shape=shape))

        if isinstance(node, MapNode) and node.processor is not None:
            cluster = pydot.Cluster(
                f"{prefix}{name}_processor".replace("/", "_"),
                label=f"{name} (max {node.max_concurrency or 'unbounded'})",
            )
            _add_graph(cluster, node.processor, f"{prefix}{name}/")
            container.add_subgraph(cluster)
            container.add_edge(pydot.Edge(
                node_id, _dot_id(f"{prefix}{name}/", node.processor.start_at),
                style="dashed",
            ))
        elif isinstance(node, ParallelNode):
            for i, branch in enumerate(node.branches):
                branch_prefix = f"{prefix}{name}/{i}/"
                cluster = pydot.Cluster(
                    branch_prefix.replace("/", "_").rstrip("_"),
                    label=f"{name} branch {i}",
                )
                _add_graph(cluster, branch, branch_prefix)
                container.add_subgraph(cluster)
                container.add_edge(pydot.Edge(
                    node_id, _dot_id(branch_prefix, branch.start_at), style="dashed"
                ))

        if isinstance(node, ChoiceNode):
            for rule in node.choices:
                container.add_edge(pydot.Edge(
                    node_id, _dot_id(prefix, rule.next),
                    label=json.dumps(_rule_label(rule)),
                ))
            if node.default:
                container.add_edge(pydot.Edge(
                    node_id, _dot_id(prefix, node.default), label="default", style="dotted"
                ))
        elif node.next:
            container.add_edge(pydot.Edge(node_id, _dot_id(prefix, node.next)))


def _rule_label(rule: Any) -> str:
    if rule.rules:
        return f"{rule.operator}(...)"
    return f"{rule.variable} {rule.operator} {json.dumps(rule.value)}"


def _count_nodes(graph: Graph) -> int:
    total = 0
    for node in graph.nodes.values():
        total += 1
        if isinstance(node, MapNode) and node.processor is not None:
            total += _count_nodes(node.processor)
        elif isinstance(node, ParallelNode):
            total += sum(_count_nodes(b) for b in node.branches)
    return total


def _read_input(value: str) -> Any:
    text = value
    if not value.lstrip().startswith(("{", "[")):
        path = Path(value)
        if path.is_file():
            text = path.read_text()
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        console.print(f"[red]Input is not valid JSON:[/red] {exc}")
        raise SystemExit(1) from exc


def _print_execution(execution: Execution) -> None:
    style = _STATUS_STYLES[execution.status]
    console.print(
        f"Execution [bold]{execution.execution_id}[/bold] "
        f"({execution.pipeline_name}): [{style}]{execution.status.value}[/{style}]"
    )
    if execution.error:
        console.print(f"  [red]{execution.error}[/red]: {execution.cause or ''}")

    if execution.history:
        table = Table(title="History")
        table.add_column("#", justify="right")
        table.add_column("Node", style="cyan")
        table.add_column("Type")
        table.add_column("Outcome")
        table.add_column("Attempts", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Error")
        for i, entry in enumerate(execution.history, 1):
            table.add_row(
                str(i),
                entry.path,
                entry.node_type,
                entry.outcome,
                str(entry.attempts) if entry.attempts else "",
                f"{entry.exited_at - entry.entered_at:.2f}s",
                entry.error or "",
            )
        console.print(table)

    console.print("[bold]Context:[/bold]")
    console.print_json(json.dumps(execution.context, default=str))


if __name__ == "__main__":
    main()
