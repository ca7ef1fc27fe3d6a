"""Invoke the external renderer and converter for one region."""

from __future__ import annotations

import logging
from pathlib import Path

from osm2pmtiles.bridge import translate_relative
from osm2pmtiles.errors import StageError
from osm2pmtiles.regions import Region, RegionPaths
from osm2pmtiles.render_config import MaterializedConfig
from osm2pmtiles.run_config import RunConfig
from osm2pmtiles.runners.base import CommandRunner
from osm2pmtiles.subprocess_utils import CommandResult

LOGGER = logging.getLogger(__name__)

RENDER_STAGE = "render"
CONVERT_STAGE = "convert"
PARTIAL_TAG = ".partial"


def partial_path(path: Path) -> Path:
    """Sibling a tool writes into; it replaces ``path`` only after a clean exit."""
    return path.with_name(f"{path.stem}{PARTIAL_TAG}{path.suffix}")


def render_command(
    runner: CommandRunner,
    config: RunConfig,
    raw: Path,
    output: Path,
    materialized: MaterializedConfig,
) -> tuple[list[str], Path | None]:
    """Return the renderer argv and the host working directory to run it in.

    Natively every path is absolute. Through a bridge the paths are
    translated and the config/process script are given relative to the
    translated config directory, which becomes the working directory.
    """
    if runner.name == "native":
        argv = [
            *config.renderer,
            "--input", str(raw),
            "--output", str(output),
            "--config", str(materialized.config_path),
            "--process", str(materialized.process_path),
            "--store", str(config.store_dir),
            "--threads", "0",
        ]
        return argv, None
    cwd = runner.translate(materialized.directory)

    def relative(path: Path) -> str:
        return translate_relative(path, cwd, mount_root=config.mount_root)

    argv = [
        *config.renderer,
        "--input", runner.translate(raw),
        "--output", runner.translate(output),
        "--config", relative(materialized.config_path),
        "--process", relative(materialized.process_path),
        "--store", runner.translate(config.store_dir),
        "--threads", "0",
    ]
    return argv, materialized.directory


def convert_command(
    runner: CommandRunner, config: RunConfig, source: Path, destination: Path
) -> list[str]:
    return [
        *config.converter,
        "convert",
        runner.translate(source),
        runner.translate(destination),
    ]


def _check(result: CommandResult, region: Region, stage: str) -> None:
    if result.returncode == 0:
        return
    detail = result.detail()
    if detail:
        LOGGER.error("%s output tail:\n%s", stage, detail, extra={"region": region.slug})
    log_hint = f"see {result.log_path}" if result.log_path else ""
    raise StageError(region.slug, stage, result.returncode, log_hint)


def _drop(path: Path, region: Region) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.warning("Could not remove %s: %s", path.name, exc, extra={"region": region.slug})


def _accept(
    result: CommandResult, region: Region, stage: str, staging: Path, output: Path
) -> None:
    """Move staged output into place, or discard it when the tool failed."""
    try:
        _check(result, region, stage)
        if not staging.exists():
            raise StageError(region.slug, stage, result.returncode, "no output was produced")
    except StageError:
        _drop(staging, region)
        raise
    staging.replace(output)


def run_render(
    region: Region,
    paths: RegionPaths,
    config: RunConfig,
    materialized: MaterializedConfig,
    runner: CommandRunner,
) -> bool:
    """Render the raw extract; returns False when the output already exists."""
    if paths.rendered.exists():
        LOGGER.info("Rendered archive present; skipping render", extra={"region": region.slug})
        return False
    paths.rendered.parent.mkdir(parents=True, exist_ok=True)
    config.store_dir.mkdir(parents=True, exist_ok=True)
    staging = partial_path(paths.rendered)
    staging.unlink(missing_ok=True)
    argv, cwd = render_command(runner, config, paths.raw, staging, materialized)
    LOGGER.info("Rendering %s", paths.rendered.name, extra={"region": region.slug})
    result = runner.run(
        argv,
        cwd=cwd,
        timeout=config.tool_timeout,
        log_path=config.logs_dir / f"{region.slug}.{RENDER_STAGE}.log",
    )
    _accept(result, region, RENDER_STAGE, staging, paths.rendered)
    return True


def run_convert(
    region: Region,
    paths: RegionPaths,
    config: RunConfig,
    runner: CommandRunner,
) -> bool:
    """Convert the rendered archive; returns False when the output already exists."""
    if paths.converted.exists():
        LOGGER.info("Converted archive present; skipping convert", extra={"region": region.slug})
        return False
    if not paths.rendered.exists():
        raise StageError(region.slug, CONVERT_STAGE, -1, "rendered archive is missing")
    paths.converted.parent.mkdir(parents=True, exist_ok=True)
    staging = partial_path(paths.converted)
    staging.unlink(missing_ok=True)
    LOGGER.info("Converting to %s", paths.converted.name, extra={"region": region.slug})
    result = runner.run(
        convert_command(runner, config, paths.rendered, staging),
        timeout=config.tool_timeout,
        log_path=config.logs_dir / f"{region.slug}.{CONVERT_STAGE}.log",
    )
    _accept(result, region, CONVERT_STAGE, staging, paths.converted)
    return True
