"""Bundled pipeline definitions, loaded by ``PipelineRegistry.from_package()``."""
