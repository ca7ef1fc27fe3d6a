"""Materialize the renderer configuration for a run.

The renderer takes a JSON layer config and a Lua processing script. Both
start from a template: the one bundled with this package, or, when that
template does not suit the installed renderer, the template shipped with the
renderer itself. The run's zoom window is clamped into every layer and the
result is written next to a fingerprint sidecar, which lets the next run
reuse it without re-deriving.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import posixpath
import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Mapping

import jsonschema

from osm2pmtiles import __version__
from osm2pmtiles.contracts import validate_render_config
from osm2pmtiles.errors import ConfigurationError
from osm2pmtiles.run_config import validate_zoom_window
from osm2pmtiles.runners.base import CommandRunner

LOGGER = logging.getLogger(__name__)

TEMPLATE_CONFIG_NAME = "config-openmaptiles.json"
TEMPLATE_PROCESS_NAME = "process-openmaptiles.lua"
CONFIG_NAME = "config.json"
PROCESS_NAME = "process.lua"
FINGERPRINT_NAME = "config.fingerprint.json"

MIN_PROCESS_LINES = 40
REQUIRED_FUNCTIONS = ("node_function", "way_function")
# tilemaker 3.0 dropped the object argument from the Lua callbacks.
MODERN_API_MAJOR = 3

_CALLBACK_PATTERN = re.compile(r"function\s+(?:node|way)_function\s*\(\s*(\w*)\s*\)")
_VERSION_PATTERN = re.compile(r"v?(\d+)\.(\d+)(?:\.(\d+))?")


@dataclass(frozen=True)
class RenderTemplate:
    """Template text for the layer config and processing script."""

    config_text: str
    process_text: str
    origin: str

    def digest(self) -> str:
        hasher = hashlib.sha256()
        hasher.update(normalize_newlines(self.config_text).encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(normalize_newlines(self.process_text).encode("utf-8"))
        return hasher.hexdigest()


@dataclass(frozen=True)
class MaterializedConfig:
    """Files handed to the renderer for this run."""

    directory: Path
    config_path: Path
    process_path: Path
    config: dict[str, Any]
    origin: str
    reused: bool = False


def normalize_newlines(text: str) -> str:
    """Convert CRLF/CR line endings to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def load_bundled_template() -> RenderTemplate:
    """Return the template shipped in ``osm2pmtiles.resources``."""
    package = resources.files("osm2pmtiles.resources")
    return RenderTemplate(
        config_text=package.joinpath(TEMPLATE_CONFIG_NAME).read_text(encoding="utf-8"),
        process_text=package.joinpath(TEMPLATE_PROCESS_NAME).read_text(encoding="utf-8"),
        origin="bundled",
    )


def parse_renderer_version(output: str) -> tuple[int, int, int] | None:
    """Parse a version tuple from renderer ``--help`` output."""
    for line in output.splitlines():
        if "tilemaker" not in line.lower() and "version" not in line.lower():
            continue
        match = _VERSION_PATTERN.search(line)
        if match:
            return int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)
    return None


def detect_renderer_version(
    runner: CommandRunner, renderer: tuple[str, ...]
) -> tuple[int, int, int] | None:
    """Ask the renderer for its version; None when it cannot be determined."""
    result = runner.run([*renderer, "--help"], timeout=60)
    return parse_renderer_version(f"{result.stdout}\n{result.stderr}")


def lua_api_style(process_text: str) -> str | None:
    """Return 'modern' for argument-less callbacks, 'legacy' otherwise."""
    match = _CALLBACK_PATTERN.search(process_text)
    if not match:
        return None
    return "legacy" if match.group(1) else "modern"


def process_script_problems(
    process_text: str,
    renderer_version: tuple[int, int, int] | None,
) -> list[str]:
    """List reasons a processing script will not work with the renderer."""
    problems: list[str] = []
    for name in REQUIRED_FUNCTIONS:
        if not re.search(rf"function\s+{name}\s*\(", process_text):
            problems.append(f"missing {name}()")
    line_count = len(normalize_newlines(process_text).splitlines())
    if line_count < MIN_PROCESS_LINES:
        problems.append(f"only {line_count} lines (expected at least {MIN_PROCESS_LINES})")
    style = lua_api_style(process_text)
    if renderer_version is not None and style is not None:
        expected = "modern" if renderer_version[0] >= MODERN_API_MAJOR else "legacy"
        if style != expected:
            version = ".".join(str(part) for part in renderer_version)
            problems.append(f"{style} Lua callbacks do not match renderer {version}")
    return problems


def read_renderer_template(
    runner: CommandRunner, resources_dir: str
) -> RenderTemplate | None:
    """Read the template installed alongside the renderer."""
    config_text = runner.read_text(posixpath.join(resources_dir, TEMPLATE_CONFIG_NAME))
    process_text = runner.read_text(posixpath.join(resources_dir, TEMPLATE_PROCESS_NAME))
    if config_text is None or process_text is None:
        return None
    return RenderTemplate(config_text, process_text, origin=f"renderer:{resources_dir}")


def resolve_template(
    *,
    bundled: RenderTemplate,
    renderer_version: tuple[int, int, int] | None,
    runner: CommandRunner | None = None,
    renderer_resources: str | None = None,
) -> RenderTemplate:
    """Pick the bundled template unless it looks incompatible with the renderer."""
    problems = process_script_problems(bundled.process_text, renderer_version)
    if not problems:
        return bundled
    LOGGER.warning("Bundled template is unsuitable: %s", "; ".join(problems))
    if runner is None or not renderer_resources:
        raise ConfigurationError(
            "Bundled renderer template is incompatible ("
            + "; ".join(problems)
            + ") and no renderer resources directory is configured."
        )
    fetched = read_renderer_template(runner, renderer_resources)
    if fetched is None:
        raise ConfigurationError(
            f"Cannot read renderer template from {renderer_resources} via {runner.name}."
        )
    LOGGER.info("Using renderer template from %s", renderer_resources)
    return fetched


def clamp_layer(layer: Mapping[str, Any], min_zoom: int, max_zoom: int) -> dict[str, Any]:
    """Clamp a layer's zoom bounds into ``[min_zoom, max_zoom]``.

    A bound that is absent stays absent.
    """
    clamped = dict(layer)
    if isinstance(clamped.get("minzoom"), int):
        clamped["minzoom"] = max(clamped["minzoom"], min_zoom)
    if isinstance(clamped.get("maxzoom"), int):
        clamped["maxzoom"] = min(clamped["maxzoom"], max_zoom)
    return clamped


def clamp_config(config: Mapping[str, Any], min_zoom: int, max_zoom: int) -> dict[str, Any]:
    """Return a copy of ``config`` with every layer (and settings) clamped."""
    result = copy.deepcopy(dict(config))
    layers = result.get("layers")
    if isinstance(layers, list):
        result["layers"] = [
            clamp_layer(layer, min_zoom, max_zoom) if isinstance(layer, Mapping) else layer
            for layer in layers
        ]
    elif isinstance(layers, Mapping):
        result["layers"] = {
            name: clamp_layer(layer, min_zoom, max_zoom) if isinstance(layer, Mapping) else layer
            for name, layer in layers.items()
        }
    settings = result.get("settings")
    if isinstance(settings, Mapping):
        result["settings"] = clamp_layer(settings, min_zoom, max_zoom)
    return result


def rebase_sources(config: Mapping[str, Any], data_root: str) -> dict[str, Any]:
    """Point relative layer ``source`` shapefiles at the auxiliary data root."""
    result = dict(config)
    layers = result.get("layers")
    items = layers.values() if isinstance(layers, Mapping) else layers or []
    for layer in items:
        if not isinstance(layer, dict):
            continue
        source = layer.get("source")
        if isinstance(source, str) and source and not _is_absolute(source):
            layer["source"] = posixpath.join(data_root, source)
    return result


def _is_absolute(path: str) -> bool:
    return path.startswith("/") or bool(re.match(r"^[A-Za-z]:[\\/]", path))


def _fingerprint(
    template: RenderTemplate,
    *,
    min_zoom: int,
    max_zoom: int,
    data_root: str,
    renderer_version: tuple[int, int, int] | None,
) -> dict[str, Any]:
    return {
        "generator": f"osm2pmtiles {__version__}",
        "template_origin": template.origin,
        "template_sha256": template.digest(),
        "renderer_version": list(renderer_version) if renderer_version else None,
        "min_zoom": min_zoom,
        "max_zoom": max_zoom,
        "data_root": data_root,
    }


def _load_reusable(
    directory: Path,
    expected: Mapping[str, Any],
    renderer_version: tuple[int, int, int] | None,
) -> MaterializedConfig | None:
    config_path = directory / CONFIG_NAME
    process_path = directory / PROCESS_NAME
    fingerprint_path = directory / FINGERPRINT_NAME
    try:
        recorded = json.loads(fingerprint_path.read_text(encoding="utf-8"))
        config = json.loads(config_path.read_text(encoding="utf-8"))
        process_text = process_path.read_text(encoding="utf-8")
    except (OSError, json.JSONDecodeError):
        return None
    if recorded.get("fingerprint") != dict(expected):
        LOGGER.info("Materialized renderer config is stale; regenerating")
        return None
    problems = process_script_problems(process_text, renderer_version)
    if problems:
        LOGGER.info(
            "Materialized process script is unusable (%s); regenerating", "; ".join(problems)
        )
        return None
    return MaterializedConfig(
        directory=directory,
        config_path=config_path,
        process_path=process_path,
        config=config,
        origin=str(recorded.get("origin", "reused")),
        reused=True,
    )


def materialize(
    work_dir: Path,
    min_zoom: int,
    max_zoom: int,
    *,
    data_root: str,
    runner: CommandRunner | None = None,
    renderer_version: tuple[int, int, int] | None = None,
    renderer_resources: str | None = None,
    bundled: RenderTemplate | None = None,
) -> MaterializedConfig:
    """Produce ``config.json`` and ``process.lua`` for this run in ``work_dir``.

    ``data_root`` is the auxiliary data directory as the renderer sees it.
    """
    validate_zoom_window(min_zoom, max_zoom)
    bundled = bundled or load_bundled_template()
    work_dir.mkdir(parents=True, exist_ok=True)
    template = resolve_template(
        bundled=bundled,
        renderer_version=renderer_version,
        runner=runner,
        renderer_resources=renderer_resources,
    )
    expected = _fingerprint(
        template,
        min_zoom=min_zoom,
        max_zoom=max_zoom,
        data_root=data_root,
        renderer_version=renderer_version,
    )
    reusable = _load_reusable(work_dir, expected, renderer_version)
    if reusable is not None:
        LOGGER.info("Reusing renderer config in %s", work_dir)
        return reusable

    try:
        raw_config = json.loads(normalize_newlines(template.config_text))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"Renderer template config is not JSON ({template.origin}): {exc}"
        ) from exc
    config = rebase_sources(clamp_config(raw_config, min_zoom, max_zoom), data_root)
    try:
        validate_render_config(config)
    except jsonschema.ValidationError as exc:
        raise ConfigurationError(f"Renderer template config is invalid: {exc.message}") from exc

    config_path = work_dir / CONFIG_NAME
    process_path = work_dir / PROCESS_NAME
    config_path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8", newline="\n")
    process_path.write_text(
        normalize_newlines(template.process_text), encoding="utf-8", newline="\n"
    )
    (work_dir / FINGERPRINT_NAME).write_text(
        json.dumps({"fingerprint": expected, "origin": template.origin}, indent=2) + "\n",
        encoding="utf-8",
        newline="\n",
    )
    LOGGER.info(
        "Materialized renderer config (%s) for zoom %s-%s", template.origin, min_zoom, max_zoom
    )
    return MaterializedConfig(
        directory=work_dir,
        config_path=config_path,
        process_path=process_path,
        config=config,
        origin=template.origin,
    )
