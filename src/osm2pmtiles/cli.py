"""Command-line interface for osm2pmtiles."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Any

from osm2pmtiles import __version__
from osm2pmtiles.doctor import run_doctor
from osm2pmtiles.errors import PipelineCancelled, PipelineError
from osm2pmtiles.logging_utils import LogOptions, configure_logging
from osm2pmtiles.pipeline import build
from osm2pmtiles.regions import BUILTIN_REGIONS, Region, load_regions, resolve_region
from osm2pmtiles.run_config import (
    RunConfig,
    build_run_config,
    flatten_build_config,
    load_build_config,
)
from osm2pmtiles.runners.registry import get_runner, list_runners
from osm2pmtiles.tools.config import BULK_TRANSPORT_TOOLS, load_tool_paths, tool_command

LOGGER = logging.getLogger("osm2pmtiles.cli")

DEFAULT_OUTPUT_DIR = "build"
ENV_OUTPUT_DIR = "OSM2PMTILES_OUTPUT_DIR"
ENV_EXECUTION_MODE = "OSM2PMTILES_MODE"
ENV_BRIDGE_TARGET = "OSM2PMTILES_BRIDGE_TARGET"
ENV_PUBLISH_URL_PREFIX = "OSM2PMTILES_PUBLISH_URL_PREFIX"

_ENV_OPTIONS = {
    ENV_OUTPUT_DIR: "output_dir",
    ENV_EXECUTION_MODE: "execution_mode",
    ENV_BRIDGE_TARGET: "bridge_target",
    ENV_PUBLISH_URL_PREFIX: "publish_url_prefix",
}

# argparse dest -> RunConfig field, for options shared by build and doctor.
_ARG_OPTIONS = {
    "output": "output_dir",
    "work_dir": "work_dir",
    "data_dir": "data_dir",
    "mode": "execution_mode",
    "bridge_target": "bridge_target",
    "mount_root": "mount_root",
    "renderer": "renderer",
    "converter": "converter",
    "bulk_transport": "bulk_transport",
    "renderer_resources": "renderer_resources",
    "min_free_gb": "min_free_gb",
    "auto_download_datasets": "auto_download_datasets",
}

_BUILD_ARG_OPTIONS = {
    "min_zoom": "min_zoom",
    "max_zoom": "max_zoom",
    "fetch_attempts": "fetch_attempts",
    "extract_attempts": "extract_attempts",
    "fetch_timeout": "fetch_timeout",
    "tool_timeout": "tool_timeout",
    "verify_checksums": "verify_checksums",
    "keep_rendered": "keep_rendered",
    "continue_on_error": "continue_on_error",
    "publish_url_prefix": "publish_url_prefix",
    "run_log": "run_log",
}


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    """Register options shared by commands that resolve a run configuration."""
    parser.add_argument("--config", help="Path to a JSON build config file.")
    parser.add_argument(
        "--output",
        help=f"Output directory for archives and the manifest (default: {DEFAULT_OUTPUT_DIR}).",
    )
    parser.add_argument("--work-dir", help="Directory for intermediate files.")
    parser.add_argument("--data-dir", help="Directory holding the auxiliary shapefiles.")
    parser.add_argument(
        "--mode",
        choices=tuple(list_runners()),
        help="Where external tools run.",
    )
    parser.add_argument("--bridge-target", help="Bridge environment (WSL distribution) name.")
    parser.add_argument("--mount-root", help="Mount point of host drives inside the bridge.")
    parser.add_argument("--renderer", nargs="+", help="Command to invoke the tile renderer.")
    parser.add_argument("--converter", nargs="+", help="Command to invoke the archive converter.")
    parser.add_argument(
        "--bulk-transport",
        nargs="+",
        help="Download tool used after direct downloads fail (aria2c, curl, wget).",
    )
    parser.add_argument(
        "--renderer-resources",
        help="Directory (as the runner sees it) holding the renderer's own templates.",
    )
    parser.add_argument(
        "--min-free-gb",
        type=float,
        help="Minimum free disk space required on the output volume.",
    )
    parser.add_argument(
        "--no-auto-download",
        dest="auto_download_datasets",
        action="store_false",
        default=None,
        help="Fail instead of downloading missing auxiliary datasets.",
    )


def _add_build_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the build subcommand and its arguments."""
    build_parser = subparsers.add_parser("build", help="Build tile archives for regions.")
    build_parser.add_argument(
        "--region",
        action="append",
        help="Region slug from the catalogue (repeatable).",
    )
    build_parser.add_argument("--regions-file", help="JSON file with region definitions.")
    _add_run_options(build_parser)
    build_parser.add_argument("--min-zoom", type=int, help="Lowest zoom level to render.")
    build_parser.add_argument("--max-zoom", type=int, help="Highest zoom level to render.")
    build_parser.add_argument(
        "--fetch-attempts",
        type=int,
        help="Direct download attempts before the bulk-transport fallback.",
    )
    build_parser.add_argument(
        "--extract-attempts",
        type=int,
        help="Extraction attempts for dataset archives.",
    )
    build_parser.add_argument(
        "--fetch-timeout",
        type=float,
        help="Per-request network timeout in seconds.",
    )
    build_parser.add_argument(
        "--tool-timeout",
        type=float,
        help="Timeout in seconds for each renderer/converter invocation.",
    )
    build_parser.add_argument(
        "--no-verify",
        dest="verify_checksums",
        action="store_false",
        default=None,
        help="Skip checksum verification of downloaded extracts.",
    )
    build_parser.add_argument(
        "--keep-rendered",
        action="store_true",
        default=None,
        help="Keep intermediate rendered archives.",
    )
    build_parser.add_argument(
        "--continue-on-error",
        action="store_true",
        default=None,
        help="Continue with the next region when one fails.",
    )
    build_parser.add_argument(
        "--publish-url-prefix",
        help="URL prefix recorded for each archive in the manifest.",
    )
    build_parser.add_argument(
        "--no-run-log",
        dest="run_log",
        action="store_false",
        default=None,
        help="Do not write the stage timing log.",
    )


def _add_doctor_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the doctor subcommand."""
    doctor = subparsers.add_parser("doctor", help="Check external dependencies and environment.")
    _add_run_options(doctor)


def _add_regions_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the regions subcommand."""
    regions = subparsers.add_parser("regions", help="List the built-in region catalogue.")
    regions.add_argument("--format", choices=("text", "json"), default="text")


def _add_version_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the version subcommand."""
    subparsers.add_parser("version", help="Print the current version.")


def _apply_tool_defaults(values: dict[str, Any]) -> None:
    """Fill tool commands from the tool discovery config when not set."""
    tool_paths = load_tool_paths()
    if not tool_paths:
        return
    defaults = {
        "renderer": tool_command(tool_paths, "tilemaker", "renderer"),
        "converter": tool_command(tool_paths, "pmtiles", "converter"),
        "bulk_transport": tool_command(tool_paths, *BULK_TRANSPORT_TOOLS),
    }
    for key, command in defaults.items():
        if command and values.get(key) is None:
            values[key] = command


def resolve_run_config(args: argparse.Namespace) -> tuple[RunConfig, list[Any]]:
    """Merge config file, environment and CLI flags into a RunConfig.

    Later sources win: build config file, then environment variables, then
    command-line flags. Returns the config and the region items the config
    file lists.
    """
    values: dict[str, Any] = {}
    region_items: list[Any] = []
    if getattr(args, "config", None):
        config_path = Path(args.config)
        payload = load_build_config(config_path)
        values.update(flatten_build_config(payload, base_dir=config_path.parent))
        inputs = payload.get("inputs") or {}
        region_items.extend(inputs.get("regions") or [])
        regions_file = inputs.get("regions_file")
        if regions_file:
            regions_path = Path(regions_file)
            if not regions_path.is_absolute():
                regions_path = config_path.parent / regions_path
            region_items.extend(load_regions(regions_path))
    for env_name, key in _ENV_OPTIONS.items():
        env_value = os.environ.get(env_name)
        if env_value:
            values[key] = env_value
    arg_options = dict(_ARG_OPTIONS)
    if args.command == "build":
        arg_options.update(_BUILD_ARG_OPTIONS)
    for dest, key in arg_options.items():
        value = getattr(args, dest, None)
        if value is not None:
            values[key] = value
    values.setdefault("output_dir", DEFAULT_OUTPUT_DIR)
    _apply_tool_defaults(values)
    return build_run_config(values), region_items


def resolve_regions(args: argparse.Namespace, config_items: list[Any]) -> list[Region]:
    """Pick regions from the CLI, falling back to the build config's inputs."""
    items: list[Any] = list(args.region or [])
    if args.regions_file:
        items.extend(load_regions(Path(args.regions_file)))
    if not items:
        items = config_items
    return [item if isinstance(item, Region) else resolve_region(item) for item in items]


def _run_build(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    config, config_items = resolve_run_config(args)
    regions = resolve_regions(args, config_items)
    if not regions:
        parser.error("no regions given; pass --region, --regions-file or a config with inputs")
    manifest, failures = build(regions, config)
    if failures:
        LOGGER.error("Build completed with errors.")
        for slug, error in failures:
            LOGGER.error("Region %s: %s", slug, error)
        return 1
    LOGGER.info("Built %s region(s); manifest at %s", len(manifest.entries), config.manifest_path)
    return 0


def _run_doctor(args: argparse.Namespace) -> int:
    config, _ = resolve_run_config(args)
    runner = get_runner(config.execution_mode, config)
    results = run_doctor(config, runner)
    for result in results:
        LOGGER.info("%s: %s - %s", result.name, result.status, result.detail)
    if any(result.status == "error" for result in results):
        return 1
    return 0


def _list_regions(args: argparse.Namespace) -> int:
    regions = sorted(BUILTIN_REGIONS.values(), key=lambda region: region.slug)
    if args.format == "json":
        payload = [
            {"slug": region.slug, "name": region.name, "url": region.url} for region in regions
        ]
        print(json.dumps(payload, indent=2))
        return 0
    for region in regions:
        print(f"{region.slug}: {region.name} ({region.url})")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the CLI entrypoint and return an exit code."""
    parser = argparse.ArgumentParser(
        prog="osm2pmtiles",
        description="Build PMTiles archives from OpenStreetMap extracts.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Reduce log output to warnings and errors.",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit logs as JSON on stderr.",
    )
    parser.add_argument(
        "--log-file",
        help="Optional path for JSON log output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_build_parser(subparsers)
    _add_doctor_parser(subparsers)
    _add_regions_parser(subparsers)
    _add_version_parser(subparsers)

    args = parser.parse_args(argv)
    log_file_value = getattr(args, "log_file", None)
    log_options = LogOptions(
        verbose=getattr(args, "verbose", 0) or 0,
        quiet=bool(getattr(args, "quiet", False)),
        log_file=Path(log_file_value) if log_file_value else None,
        json_console=bool(getattr(args, "log_json", False)),
    )
    configure_logging(log_options)

    if args.command == "version":
        print(__version__)
        return 0
    if args.command == "regions":
        return _list_regions(args)
    try:
        if args.command == "build":
            return _run_build(args, parser)
        if args.command == "doctor":
            return _run_doctor(args)
    except PipelineCancelled as exc:
        LOGGER.error("%s", exc)
        return 130
    except KeyboardInterrupt:
        LOGGER.error("Interrupted.")
        return 130
    except PipelineError as exc:
        LOGGER.error("%s", exc)
        return 1

    parser.error("Unknown command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
