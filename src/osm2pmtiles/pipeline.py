"""Region pipeline: acquire, verify, render and convert each region in order.

Every per-region state lives on disk as the presence of an artifact:

    raw extract -> verified raw -> rendered archive -> converted archive

A region whose converted archive exists is recorded without touching the
network or any external tool, so re-running a finished build is free.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Iterable

from osm2pmtiles.datasets import ensure_all
from osm2pmtiles.doctor import CheckResult, check_free_space, check_tool
from osm2pmtiles.errors import (
    ConfigurationError,
    IntegrityError,
    PipelineCancelled,
    PipelineError,
)
from osm2pmtiles.fetch import Fetcher, SupportsFetch, check_cancelled
from osm2pmtiles.integrity import verify
from osm2pmtiles.manifest import BuildManifest, write_manifest
from osm2pmtiles.regions import Region, RegionPaths, ensure_unique
from osm2pmtiles.render_config import (
    MaterializedConfig,
    detect_renderer_version,
    materialize,
)
from osm2pmtiles.run_config import RunConfig, validate_zoom_window
from osm2pmtiles.runlog import RunLog
from osm2pmtiles.runners.base import CommandRunner
from osm2pmtiles.runners.registry import get_runner
from osm2pmtiles.stages import CONVERT_STAGE, RENDER_STAGE, run_convert, run_render

LOGGER = logging.getLogger(__name__)

RUN_LOG_NAME = "run_log.jsonl"
RENDERER_DIR_NAME = "renderer"


def preflight(
    regions: Iterable[Region], config: RunConfig, runner: CommandRunner
) -> list[Region]:
    """Check every run precondition that needs no network access.

    Returns the regions as a list. Raises ``ConfigurationError`` describing
    every failed check at once.
    """
    validate_zoom_window(config.min_zoom, config.max_zoom)
    ordered = ensure_unique(regions)
    if not ordered:
        raise ConfigurationError("No regions to build.")
    checks: list[CheckResult] = [
        check_free_space(config.output_dir, config.min_free_gb),
        check_tool(runner, "renderer", config.renderer),
        check_tool(runner, "converter", config.converter),
    ]
    failures = [check for check in checks if check.status == "error"]
    if failures:
        raise ConfigurationError(
            "Preflight failed: "
            + "; ".join(f"{check.name}: {check.detail}" for check in failures)
        )
    for check in checks:
        LOGGER.debug("Preflight %s: %s", check.name, check.detail)
    return ordered


def _discard(path: Path) -> bool:
    """Delete a file; False when another process keeps it locked."""
    try:
        path.unlink(missing_ok=True)
    except PermissionError:
        return False
    return True


def _region_log(region: Region) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(LOGGER, {"region": region.slug})


class RegionPipeline:
    """Drive each region through the build stages for one run."""

    def __init__(
        self,
        config: RunConfig,
        *,
        runner: CommandRunner,
        fetcher: SupportsFetch,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.runner = runner
        self.fetcher = fetcher
        self.cancel = cancel
        self.sleep = sleep
        self.run_log = RunLog(config.work_dir / RUN_LOG_NAME if config.run_log else None)
        self.failures: list[tuple[str, str]] = []
        self._materialized: MaterializedConfig | None = None

    def _verify(self, paths: RegionPaths) -> bool:
        return verify(
            paths.raw,
            paths.checksum,
            algorithm=self.config.checksum_algorithm,
            lock_attempts=self.config.lock_attempts,
            sleep=self.sleep,
        )

    def render_config(self) -> MaterializedConfig:
        """Materialize the renderer config on first use and keep it for the run."""
        if self._materialized is None:
            version = detect_renderer_version(self.runner, self.config.renderer)
            if version is None:
                LOGGER.warning("Could not detect the renderer version")
            self._materialized = materialize(
                self.config.work_dir / RENDERER_DIR_NAME,
                self.config.min_zoom,
                self.config.max_zoom,
                data_root=self.runner.translate(self.config.data_dir),
                runner=self.runner,
                renderer_version=version,
                renderer_resources=self.config.renderer_resources,
            )
        return self._materialized

    def _discard_stale(self, region: Region, paths: RegionPaths) -> RegionPaths:
        """Remove a raw extract that failed verification, plus its sidecar.

        When the extract is locked the alternate raw path is used instead.
        """
        if _discard(paths.raw):
            if not _discard(paths.checksum):
                raise PipelineError(f"Cannot delete locked sidecar {paths.checksum}.")
            return paths
        _region_log(region).warning(
            "%s is locked; downloading to an alternate name", paths.raw.name
        )
        _discard(paths.checksum)
        paths = paths.with_alternate_raw()
        if not (_discard(paths.raw) and _discard(paths.checksum)):
            raise PipelineError(f"Cannot clear {paths.raw}; it is locked by another process.")
        return paths

    def acquire(self, region: Region, paths: RegionPaths) -> RegionPaths:
        """Make sure a raw extract that passed verification is on disk.

        A pre-existing extract that fails verification is deleted together
        with its sidecar and downloaded again, once. A freshly downloaded
        extract that fails verification raises ``IntegrityError``.
        """
        log = _region_log(region)
        verifying = self.config.verify_checksums
        if paths.raw.is_file():
            if not verifying:
                log.info("Using existing extract %s (unverified)", paths.raw.name)
                return paths
            self.fetcher.fetch(region.sidecar_url, paths.checksum)
            if self._verify(paths):
                log.info("Existing extract %s verified", paths.raw.name)
                return paths
            log.warning("Existing extract %s failed verification; re-downloading", paths.raw.name)
            paths = self._discard_stale(region, paths)

        check_cancelled(self.cancel)
        log.info("Fetching %s", region.url)
        self.fetcher.fetch(region.url, paths.raw)
        if not verifying:
            return paths
        self.fetcher.fetch(region.sidecar_url, paths.checksum)
        if not self._verify(paths):
            raise IntegrityError(paths.raw, paths.checksum)
        log.info("Downloaded extract %s verified", paths.raw.name)
        return paths

    def _reclaim(self, region: Region, paths: RegionPaths) -> None:
        if self.config.keep_rendered:
            return
        if _discard(paths.rendered):
            _region_log(region).debug("Removed %s", paths.rendered.name)
        else:
            _region_log(region).warning("Could not remove locked %s", paths.rendered.name)

    def build_region(self, region: Region) -> Path:
        """Run one region through every outstanding stage; return the converted path."""
        config = self.config
        paths = region.paths(config.work_dir, config.output_dir)
        if paths.converted.is_file():
            _region_log(region).info("%s already built; skipping", paths.converted.name)
            self.run_log.event(region.slug, "region", "skipped")
            return paths.converted

        if not paths.rendered.is_file():
            with self.run_log.span(region.slug, "acquire"):
                paths = self.acquire(region, paths)
            check_cancelled(self.cancel)
            materialized = self.render_config()
            with self.run_log.span(region.slug, RENDER_STAGE):
                run_render(region, paths, config, materialized, self.runner)
            check_cancelled(self.cancel)
        with self.run_log.span(region.slug, CONVERT_STAGE):
            run_convert(region, paths, config, self.runner)
        self._reclaim(region, paths)
        return paths.converted

    def run(self, regions: Iterable[Region]) -> BuildManifest:
        """Preflight, provision datasets, then build regions in order."""
        config = self.config
        ordered = preflight(regions, config, self.runner)
        ensure_all(
            config.data_dir,
            fetcher=self.fetcher,
            auto_download=config.auto_download_datasets,
            extract_attempts=config.extract_attempts,
            runner=self.runner,
        )
        manifest = BuildManifest(
            format=config.format_tag,
            min_zoom=config.min_zoom,
            max_zoom=config.max_zoom,
        )
        LOGGER.info(
            "Building %s region(s) at zoom %s-%s", len(ordered), config.min_zoom, config.max_zoom
        )
        for index, region in enumerate(ordered, start=1):
            check_cancelled(self.cancel)
            log = _region_log(region)
            log.info("Region %s/%s: %s", index, len(ordered), region.name)
            try:
                converted = self.build_region(region)
            except PipelineCancelled:
                raise
            except PipelineError as exc:
                if not config.continue_on_error or isinstance(exc, ConfigurationError):
                    raise
                log.error("Region failed: %s", exc)
                self.failures.append((region.slug, str(exc)))
                continue
            entry = manifest.record(region.slug, converted, url_prefix=config.publish_url_prefix)
            log.info("Recorded %s (%s bytes)", entry.file, entry.size_bytes)
        write_manifest(manifest, config.manifest_path)
        LOGGER.info(
            "Wrote manifest with %s region(s) to %s", len(manifest.entries), config.manifest_path
        )
        return manifest


def run_pipeline(
    regions: Iterable[Region],
    config: RunConfig,
    *,
    runner: CommandRunner,
    fetcher: SupportsFetch,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BuildManifest:
    """Build every region and write the manifest; see :class:`RegionPipeline`."""
    pipeline = RegionPipeline(config, runner=runner, fetcher=fetcher, cancel=cancel, sleep=sleep)
    return pipeline.run(regions)


def build(
    regions: Iterable[Region],
    config: RunConfig,
    *,
    cancel: threading.Event | None = None,
) -> tuple[BuildManifest, list[tuple[str, str]]]:
    """Run the pipeline with the runner and fetcher the config selects.

    Returns the manifest and the ``(slug, error)`` pairs of regions that
    failed when ``continue_on_error`` is set.
    """
    runner = get_runner(config.execution_mode, config)
    with Fetcher(
        max_attempts=config.fetch_attempts,
        timeout=config.fetch_timeout,
        bulk_transport=config.bulk_transport,
        cancel=cancel,
    ) as fetcher:
        pipeline = RegionPipeline(config, runner=runner, fetcher=fetcher, cancel=cancel)
        manifest = pipeline.run(regions)
    return manifest, pipeline.failures
