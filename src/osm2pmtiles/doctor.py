"""Environment and dependency checks for osm2pmtiles."""

from __future__ import annotations

import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from osm2pmtiles.datasets import COASTLINE, LANDCOVER, missing_files
from osm2pmtiles.render_config import MODERN_API_MAJOR, detect_renderer_version
from osm2pmtiles.run_config import RunConfig
from osm2pmtiles.runners.base import CommandRunner
from osm2pmtiles.runners.native import NativeRunner

MIN_PYTHON = (3, 12)
GIB = 1024**3


@dataclass(frozen=True)
class CheckResult:
    """Result of a single doctor check."""

    name: str
    status: str
    detail: str


def _status(name: str, status: str, detail: str) -> CheckResult:
    """Helper to build a CheckResult."""
    return CheckResult(name=name, status=status, detail=detail)


def check_python_version() -> CheckResult:
    """Verify the running Python meets the minimum version."""
    if sys.version_info < MIN_PYTHON:
        return _status(
            "python",
            "error",
            f"Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ required",
        )
    return _status("python", "ok", f"{sys.version_info.major}.{sys.version_info.minor}")


def check_python_deps() -> Iterable[CheckResult]:
    """Verify that key Python dependencies can be imported."""
    results = []
    try:
        import httpx

        results.append(_status("httpx", "ok", httpx.__version__))
    except Exception as exc:  # pragma: no cover - import failure path
        results.append(_status("httpx", "error", str(exc)))
    try:
        from importlib.metadata import version

        import jsonschema  # noqa: F401

        results.append(_status("jsonschema", "ok", version("jsonschema")))
    except Exception as exc:  # pragma: no cover - import failure path
        results.append(_status("jsonschema", "error", str(exc)))
    return results


def check_tool(
    runner: CommandRunner, name: str, command: Sequence[str] | None, *, required: bool = True
) -> CheckResult:
    """Check that a tool command resolves through the runner."""
    if not command:
        return _status(name, "error" if required else "warn", "not configured")
    resolved = runner.which(command[0])
    if resolved is None:
        where = "" if runner.name == "native" else f" inside the {runner.name} bridge"
        return _status(
            name,
            "error" if required else "warn",
            f"command not found{where}: {command[0]}",
        )
    return _status(name, "ok", resolved)


def check_renderer_version(runner: CommandRunner, renderer: Sequence[str]) -> CheckResult:
    """Report the renderer version and the Lua API it expects."""
    version = detect_renderer_version(runner, tuple(renderer))
    if version is None:
        return _status("renderer_version", "warn", "version not detected")
    text = ".".join(str(part) for part in version)
    api = "argument-less" if version[0] >= MODERN_API_MAJOR else "object-argument"
    return _status("renderer_version", "ok", f"{text} ({api} Lua callbacks)")


def check_bridge(runner: CommandRunner) -> CheckResult:
    """Verify the execution bridge can run a trivial command."""
    if runner.name == "native":
        return _status("bridge", "ok", "native execution")
    result = runner.run(["uname", "-s"], timeout=60)
    if result.returncode != 0:
        return _status(
            "bridge",
            "error",
            result.detail() or f"non-zero exit: {result.returncode}",
        )
    return _status("bridge", "ok", f"{runner.name}: {result.stdout.strip()}")


def _existing_ancestor(path: Path) -> Path:
    candidate = path.resolve()
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return candidate


def check_free_space(path: Path, min_free_gb: float) -> CheckResult:
    """Check free space on the volume that will hold ``path``."""
    usage = shutil.disk_usage(_existing_ancestor(path))
    free_gb = usage.free / GIB
    detail = f"{free_gb:.1f} GiB free at {path}"
    if free_gb < min_free_gb:
        return _status("disk_space", "error", f"{detail}; {min_free_gb:g} GiB required")
    return _status("disk_space", "ok", detail)


def check_datasets(data_dir: Path, *, auto_download: bool) -> CheckResult:
    """Report whether the auxiliary shapefiles are already in place."""
    missing = missing_files(COASTLINE, data_dir) + missing_files(LANDCOVER, data_dir)
    if not missing:
        return _status("datasets", "ok", str(data_dir))
    detail = f"{len(missing)} file(s) missing under {data_dir}"
    if auto_download:
        return _status("datasets", "warn", f"{detail}; they will be downloaded")
    return _status("datasets", "error", f"{detail}; automatic downloads are disabled")


def run_doctor(config: RunConfig, runner: CommandRunner) -> list[CheckResult]:
    """Run all environment checks and return the aggregated results."""
    results = [check_python_version(), *check_python_deps()]
    results.append(check_bridge(runner))
    renderer = check_tool(runner, "renderer", config.renderer)
    results.append(renderer)
    if renderer.status == "ok":
        results.append(check_renderer_version(runner, config.renderer))
    results.append(check_tool(runner, "converter", config.converter))
    results.append(
        check_tool(NativeRunner(), "bulk_transport", config.bulk_transport, required=False)
    )
    results.append(check_free_space(config.output_dir, config.min_free_gb))
    results.append(check_datasets(config.data_dir, auto_download=config.auto_download_datasets))
    return results
