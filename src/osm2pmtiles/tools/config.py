"""Tool discovery configuration helpers."""

from __future__ import annotations

import json
import os
from pathlib import Path

ENV_TOOL_PATHS = "OSM2PMTILES_TOOL_PATHS"
TOOL_PATHS_NAME = "tool_paths.json"
BULK_TRANSPORT_TOOLS = ("aria2c", "curl", "wget")


def _default_candidate_paths() -> list[Path]:
    """Return default tool config locations in priority order."""
    repo_root = Path(__file__).resolve().parents[3]
    return [
        Path.cwd() / "tools" / TOOL_PATHS_NAME,
        repo_root / "tools" / TOOL_PATHS_NAME,
    ]


def _load_candidate(candidate: Path) -> dict[str, Path] | None:
    """Load a tool config from a single candidate path."""
    if not candidate.exists():
        return None
    try:
        data = json.loads(candidate.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(data, dict):
        return {}
    result: dict[str, Path] = {}
    for key, value in data.items():
        if isinstance(value, str) and value:
            result[key] = Path(value)
    return result


def load_tool_paths(path: Path | None = None) -> dict[str, Path]:
    """Load tool paths from JSON config, if available."""
    if path:
        return _load_candidate(path) or {}
    env_path = os.environ.get(ENV_TOOL_PATHS)
    if env_path:
        return _load_candidate(Path(env_path)) or {}
    for candidate in _default_candidate_paths():
        result = _load_candidate(candidate)
        if result is not None:
            return result
    return {}


def tool_command(tool_paths: dict[str, Path], *names: str) -> list[str] | None:
    """Return ``[path]`` for the first of ``names`` the config maps."""
    for name in names:
        path = tool_paths.get(name)
        if path:
            return [str(path)]
    return None
