"""Schema validation helpers for manifests, render configs and build configs."""

from __future__ import annotations

import json
from functools import lru_cache
from importlib import resources
from typing import Any, Mapping

import jsonschema

MANIFEST_SCHEMA = "manifest.schema.json"
RENDER_CONFIG_SCHEMA = "render_config.schema.json"
BUILD_CONFIG_SCHEMA = "build_config.schema.json"


@lru_cache(maxsize=None)
def _load_schema(name: str) -> dict[str, Any]:
    """Load a JSON schema bundled in the package."""
    schema_file = resources.files("osm2pmtiles.schemas").joinpath(name)
    with schema_file.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def validate_manifest(manifest: Mapping[str, Any]) -> None:
    """Validate a build manifest payload against the schema."""
    jsonschema.validate(manifest, _load_schema(MANIFEST_SCHEMA))


def validate_render_config(config: Mapping[str, Any]) -> None:
    """Validate a renderer configuration against the schema."""
    jsonschema.validate(config, _load_schema(RENDER_CONFIG_SCHEMA))


def validate_build_config(config: Mapping[str, Any]) -> None:
    """Validate a build config file payload against the schema."""
    jsonschema.validate(config, _load_schema(BUILD_CONFIG_SCHEMA))
