"""Immutable run configuration and build-config file loading."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import jsonschema

from osm2pmtiles.contracts import validate_build_config
from osm2pmtiles.errors import ConfigurationError
from osm2pmtiles.runners.registry import list_runners

RENDERER_MAX_ZOOM = 15
DEFAULT_MIN_ZOOM = 0
DEFAULT_MAX_ZOOM = 14


@dataclass(frozen=True)
class RunConfig:
    """Every run-time input of one pipeline run.

    Built once at start and handed to each component; nothing downstream
    reads the environment or CLI arguments directly.
    """

    output_dir: Path
    work_dir: Path
    data_dir: Path
    min_zoom: int = DEFAULT_MIN_ZOOM
    max_zoom: int = DEFAULT_MAX_ZOOM
    fetch_attempts: int = 3
    extract_attempts: int = 3
    lock_attempts: int = 5
    fetch_timeout: float = 60.0
    tool_timeout: float | None = None
    min_free_gb: float = 0.0
    verify_checksums: bool = True
    auto_download_datasets: bool = True
    execution_mode: str = "native"
    bridge_target: str | None = None
    mount_root: str = "/mnt"
    publish_url_prefix: str = ""
    keep_rendered: bool = False
    continue_on_error: bool = False
    renderer: tuple[str, ...] = ("tilemaker",)
    converter: tuple[str, ...] = ("pmtiles",)
    bulk_transport: tuple[str, ...] | None = None
    renderer_resources: str | None = None
    checksum_algorithm: str = "md5"
    format_tag: str = "pmtiles"
    run_log: bool = True

    @property
    def store_dir(self) -> Path:
        """Scratch directory handed to the renderer."""
        return self.work_dir / "store"

    @property
    def logs_dir(self) -> Path:
        return self.work_dir / "logs"

    @property
    def manifest_path(self) -> Path:
        return self.output_dir / "manifest.json"

    def with_overrides(self, **changes: Any) -> "RunConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("output_dir", "work_dir", "data_dir"):
            payload[key] = str(payload[key])
        for key in ("renderer", "converter", "bulk_transport"):
            if payload[key] is not None:
                payload[key] = list(payload[key])
        return payload


def validate_zoom_window(min_zoom: int, max_zoom: int) -> None:
    """Reject zoom windows the renderer cannot honour."""
    if not 0 <= min_zoom <= max_zoom <= RENDERER_MAX_ZOOM:
        raise ConfigurationError(
            f"Invalid zoom window [{min_zoom}, {max_zoom}]; expected "
            f"0 <= min_zoom <= max_zoom <= {RENDERER_MAX_ZOOM}."
        )


def _normalize_command(value: object) -> tuple[str, ...] | None:
    """Normalize a command input into a tuple of strings."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        command = tuple(str(item) for item in value)
        return command or None
    if isinstance(value, str):
        return (value,) if value else None
    raise TypeError("Command must be a string or list of strings.")


_PATH_FIELDS = {"output_dir", "work_dir", "data_dir"}
_COMMAND_FIELDS = {"renderer", "converter", "bulk_transport"}
_NULLABLE_FIELDS = {"bridge_target", "renderer_resources", "bulk_transport", "tool_timeout"}
_FIELD_NAMES = {field.name for field in fields(RunConfig)}


def build_run_config(values: Mapping[str, Any]) -> RunConfig:
    """Create a RunConfig from a flat mapping, filling derived directories.

    ``work_dir`` defaults to ``<output_dir>/work`` and ``data_dir`` to
    ``<work_dir>/data``. Unknown keys raise ``ConfigurationError``.
    """
    unknown = sorted(set(values) - _FIELD_NAMES)
    if unknown:
        raise ConfigurationError(f"Unknown run options: {', '.join(unknown)}")
    if not values.get("output_dir"):
        raise ConfigurationError("An output directory is required.")
    normalized: dict[str, Any] = {}
    for key, value in values.items():
        if value is None and key not in _NULLABLE_FIELDS:
            continue
        if key in _PATH_FIELDS:
            normalized[key] = Path(value).expanduser()
        elif key in _COMMAND_FIELDS:
            command = _normalize_command(value)
            if command is None and key != "bulk_transport":
                raise ConfigurationError(f"Tool command '{key}' must not be empty.")
            normalized[key] = command
        else:
            normalized[key] = value
    output_dir = normalized["output_dir"]
    work_dir = normalized.setdefault("work_dir", output_dir / "work")
    normalized.setdefault("data_dir", work_dir / "data")

    mode = normalized.get("execution_mode", "native")
    modes = list_runners()
    if mode not in modes:
        raise ConfigurationError(
            f"Unknown execution mode '{mode}'; choose from {', '.join(modes)}."
        )
    config = RunConfig(**normalized)
    validate_zoom_window(config.min_zoom, config.max_zoom)
    if config.fetch_attempts < 1:
        raise ConfigurationError("fetch_attempts must be at least 1.")
    return config


def load_build_config(path: Path) -> dict[str, Any]:
    """Load and validate a JSON build config file from disk."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read build config {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Build config {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError("Build config must be a JSON object.")
    try:
        validate_build_config(payload)
    except jsonschema.ValidationError as exc:
        raise ConfigurationError(f"Build config {path} is invalid: {exc.message}") from exc
    return payload


def flatten_build_config(payload: Mapping[str, Any], *, base_dir: Path) -> dict[str, Any]:
    """Flatten a build config's options and tools into RunConfig keys.

    Relative directories are resolved against ``base_dir`` (the config
    file's folder).
    """
    values: dict[str, Any] = {}
    output_dir = payload.get("output_dir")
    if output_dir:
        values["output_dir"] = output_dir
    options = payload.get("options")
    if isinstance(options, Mapping):
        values.update(options)
    tools = payload.get("tools")
    if isinstance(tools, Mapping):
        for key in _COMMAND_FIELDS:
            if key in tools:
                values[key] = tools[key]
    for key in _PATH_FIELDS:
        if key in values and values[key] and not Path(values[key]).is_absolute():
            values[key] = str(base_dir / values[key])
    return values
