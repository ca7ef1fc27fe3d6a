"""Provision the auxiliary shapefile datasets the renderer layers read."""

from __future__ import annotations

import logging
import shutil
import tarfile
import tempfile
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from osm2pmtiles.archives import extract_archive
from osm2pmtiles.errors import ConfigurationError, ExtractionError
from osm2pmtiles.fetch import SupportsFetch
from osm2pmtiles.runners.base import CommandRunner

LOGGER = logging.getLogger(__name__)

COASTLINE = "coastline"
LANDCOVER = "landcover"
NATURAL_EARTH_BASE = "https://naciscdn.org/naturalearth/10m"
SHAPEFILE_PARTS = (".shp", ".shx", ".dbf", ".prj")


@dataclass(frozen=True)
class DatasetArchive:
    """One downloadable archive and the subdirectory it unpacks into."""

    url: str
    subdir: str

    @property
    def filename(self) -> str:
        return self.url.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class DatasetSpec:
    """Archives and the files that must exist once a dataset is ready."""

    kind: str
    archives: tuple[DatasetArchive, ...]
    expected: tuple[str, ...]
    flatten_stem: str | None = None


def _shapefile(relative_stem: str) -> tuple[str, ...]:
    return tuple(f"{relative_stem}{suffix}" for suffix in SHAPEFILE_PARTS)


def _natural_earth(category: str, name: str) -> DatasetArchive:
    return DatasetArchive(url=f"{NATURAL_EARTH_BASE}/{category}/{name}.zip", subdir=name)


DATASETS: dict[str, DatasetSpec] = {
    COASTLINE: DatasetSpec(
        kind=COASTLINE,
        archives=(
            DatasetArchive(
                url="https://osmdata.openstreetmap.de/download/water-polygons-split-4326.zip",
                subdir="",
            ),
        ),
        expected=_shapefile("water_polygons"),
        flatten_stem="water_polygons",
    ),
    LANDCOVER: DatasetSpec(
        kind=LANDCOVER,
        archives=(
            _natural_earth("physical", "ne_10m_antarctic_ice_shelves_polys"),
            _natural_earth("cultural", "ne_10m_urban_areas"),
            _natural_earth("physical", "ne_10m_glaciated_areas"),
        ),
        expected=(
            *_shapefile("ne_10m_antarctic_ice_shelves_polys/ne_10m_antarctic_ice_shelves_polys"),
            *_shapefile("ne_10m_urban_areas/ne_10m_urban_areas"),
            *_shapefile("ne_10m_glaciated_areas/ne_10m_glaciated_areas"),
        ),
    ),
}


def missing_files(kind: str, data_dir: Path) -> list[Path]:
    """Return expected dataset files that are not on disk yet."""
    spec = DATASETS[kind]
    root = data_dir / kind
    return [root / name for name in spec.expected if not (root / name).is_file()]


def flatten_shapefile(search_root: Path, stem: str, target_dir: Path) -> list[Path]:
    """Copy every ``<stem>.*`` sibling of the first ``<stem>.shp`` into ``target_dir``."""
    found = sorted(search_root.rglob(f"{stem}.shp"))
    if not found:
        return []
    source_dir = found[0].parent
    target_dir.mkdir(parents=True, exist_ok=True)
    copied: list[Path] = []
    for sibling in sorted(source_dir.glob(f"{stem}.*")):
        if not sibling.is_file():
            continue
        destination = target_dir / sibling.name
        if sibling.resolve() != destination.resolve():
            shutil.copy2(sibling, destination)
        copied.append(destination)
    return copied


def _discard_corrupt(archive: Path) -> None:
    try:
        archive.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.warning("Could not remove corrupt %s: %s", archive.name, exc)


def _extract_via_copy(archive: Path, destination: Path) -> None:
    """Extract from a disposable copy, for archives another process holds open."""
    with tempfile.TemporaryDirectory(prefix="osm2pmtiles-") as scratch:
        copy_path = Path(scratch) / archive.name
        shutil.copyfile(archive, copy_path)
        extract_archive(copy_path, destination)


def _extract_via_bridge(runner: CommandRunner, archive: Path, destination: Path) -> bool:
    destination.mkdir(parents=True, exist_ok=True)
    result = runner.run(
        ["unzip", "-o", "-q", runner.translate(archive), "-d", runner.translate(destination)]
    )
    if result.returncode != 0:
        LOGGER.warning("Bridge unzip of %s failed: %s", archive.name, result.detail())
        return False
    return True


def extract_with_retries(
    archive: Path,
    destination: Path,
    *,
    attempts: int = 3,
    runner: CommandRunner | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Extract an archive, riding out files locked by other processes.

    Direct extraction is retried with backoff, then a temporary copy of the
    archive is tried, then (in bridge mode) the bridge's own ``unzip``. A
    corrupt archive is deleted so the next run downloads it again.
    """
    last_error: Exception | None = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            extract_archive(archive, destination)
            return
        except (zipfile.BadZipFile, tarfile.TarError, ValueError) as exc:
            _discard_corrupt(archive)
            raise ExtractionError(f"Cannot extract {archive.name}: {exc}") from exc
        except OSError as exc:
            last_error = exc
            LOGGER.warning("Extraction attempt %s of %s failed: %s", attempt, archive.name, exc)
            if attempt < attempts:
                sleep(2.0 * attempt)
    try:
        LOGGER.info("Extracting %s through a temporary copy", archive.name)
        _extract_via_copy(archive, destination)
        return
    except OSError as exc:
        last_error = exc
        LOGGER.warning("Temporary-copy extraction of %s failed: %s", archive.name, exc)
    if runner is not None and runner.name != "native":
        if _extract_via_bridge(runner, archive, destination):
            return
    raise ExtractionError(f"Cannot extract {archive.name}: {last_error}")


def ensure(
    kind: str,
    data_dir: Path,
    *,
    fetcher: SupportsFetch,
    auto_download: bool = True,
    extract_attempts: int = 3,
    runner: CommandRunner | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """Make sure a dataset's files exist under ``data_dir/<kind>``.

    Returns the dataset directory. Raises ``ConfigurationError`` when files
    are missing and downloads are disabled.
    """
    try:
        spec = DATASETS[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown dataset kind: {kind}") from exc
    root = data_dir / kind
    missing = missing_files(kind, data_dir)
    if not missing:
        LOGGER.debug("%s data present in %s", kind, root)
        return root
    if not auto_download:
        names = ", ".join(str(path.relative_to(data_dir)) for path in missing[:4])
        raise ConfigurationError(
            f"Missing {kind} data ({names}); place the files under {root} "
            "or enable automatic dataset downloads."
        )

    LOGGER.info("Provisioning %s data into %s", kind, root)
    downloads = data_dir / "downloads"
    for archive in spec.archives:
        archive_path = downloads / archive.filename
        fetcher.fetch(archive.url, archive_path)
        destination = root / archive.subdir if archive.subdir else root / "extracted"
        extract_with_retries(
            archive_path,
            destination,
            attempts=extract_attempts,
            runner=runner,
            sleep=sleep,
        )
    if spec.flatten_stem:
        flatten_shapefile(root, spec.flatten_stem, root)

    still_missing = missing_files(kind, data_dir)
    if still_missing:
        raise ExtractionError(
            f"{kind} archives did not contain "
            + ", ".join(path.name for path in still_missing)
        )
    return root


def ensure_all(
    data_dir: Path,
    *,
    fetcher: SupportsFetch,
    auto_download: bool = True,
    extract_attempts: int = 3,
    runner: CommandRunner | None = None,
) -> dict[str, Path]:
    """Ensure coastline and landcover data; returns dataset directories by kind."""
    return {
        kind: ensure(
            kind,
            data_dir,
            fetcher=fetcher,
            auto_download=auto_download,
            extract_attempts=extract_attempts,
            runner=runner,
        )
        for kind in (COASTLINE, LANDCOVER)
    }
