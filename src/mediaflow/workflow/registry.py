"""Pipeline Registry.

Pure lookup of immutable :class:`PipelineDefinition` objects by name.
Definitions are parsed and validated when they are registered, so a
malformed graph is rejected at load time and never reaches the engine.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from importlib import resources
from pathlib import Path

from mediaflow.workflow.errors import DefinitionError, PipelineNotFoundError
from mediaflow.workflow.models import PipelineDefinition
from mediaflow.workflow.parser import parse_definition_file, parse_definition_string
from mediaflow.workflow.validator import validate_or_raise

logger = logging.getLogger(__name__)

DEFINITIONS_PACKAGE = "mediaflow.definitions"


class PipelineRegistry:
    """Registry of pipeline definitions keyed by name."""

    def __init__(self, definitions: Iterable[PipelineDefinition] = ()) -> None:
        self._definitions: dict[str, PipelineDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: PipelineDefinition) -> None:
        """Validate and add *definition*.

        Raises:
            DefinitionError: If the graph is malformed or the name is taken.
        """
        if definition.name in self._definitions:
            raise DefinitionError(f"Pipeline '{definition.name}' is already registered")
        for finding in validate_or_raise(definition):
            logger.warning("Pipeline '%s': %s", definition.name, finding)
        self._definitions[definition.name] = definition
        logger.debug("Registered pipeline '%s'", definition.name)

    def get(self, name: str) -> PipelineDefinition:
        """Return the definition registered as *name*.

        Raises:
            PipelineNotFoundError: If no such pipeline exists.
        """
        try:
            return self._definitions[name]
        except KeyError:
            raise PipelineNotFoundError(
                f"No pipeline named '{name}' (known: {', '.join(self.names()) or 'none'})"
            ) from None

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def load_directory(
        self,
        directory: str | Path,
        wait_overrides: Mapping[str, float] | None = None,
        concurrency_overrides: Mapping[str, int] | None = None,
        timeout_override: float | None = None,
    ) -> list[str]:
        """Parse, validate and register every ``*.json`` file in *directory*.

        Returns:
            Names of the pipelines registered.
        """
        loaded: list[str] = []
        for path in sorted(Path(directory).glob("*.json")):
            definition = parse_definition_file(
                path,
                wait_overrides=wait_overrides,
                concurrency_overrides=concurrency_overrides,
                timeout_override=timeout_override,
            )
            self.register(definition)
            loaded.append(definition.name)
        logger.info("Loaded %d pipeline(s) from %s", len(loaded), directory)
        return loaded

    @classmethod
    def from_package(
        cls,
        wait_overrides: Mapping[str, float] | None = None,
        concurrency_overrides: Mapping[str, int] | None = None,
        timeout_override: float | None = None,
    ) -> PipelineRegistry:
        """Build a registry holding the bundled Selection, Enhancement,
        Triage and Publish pipelines, with deployment overrides applied."""
        registry = cls()
        files = sorted(
            (f for f in resources.files(DEFINITIONS_PACKAGE).iterdir()
             if f.name.endswith(".json")),
            key=lambda f: f.name,
        )
        for resource in files:
            definition = parse_definition_string(
                resource.read_text(encoding="utf-8"),
                name=resource.name.removesuffix(".json"),
                wait_overrides=wait_overrides,
                concurrency_overrides=concurrency_overrides,
                timeout_override=timeout_override,
            )
            registry.register(definition)
        return registry
