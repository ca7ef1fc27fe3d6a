"""Region definitions and the paths derived from them."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

from osm2pmtiles.errors import ConfigurationError

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:[-_][a-z0-9]+)*$")
GEOFABRIK_BASE = "https://download.geofabrik.de"

RAW_SUFFIX = ".osm.pbf"
RENDERED_SUFFIX = ".mbtiles"
CONVERTED_SUFFIX = ".pmtiles"
ALTERNATE_RAW_TAG = ".refetch"


def validate_slug(slug: str) -> str:
    """Return the slug if it is lowercase and hyphen/underscore separated."""
    if not SLUG_PATTERN.match(slug):
        raise ValueError(f"Invalid region slug: {slug!r}")
    return slug


@dataclass(frozen=True)
class Region:
    """One build unit: a named extract and the files produced from it."""

    slug: str
    name: str
    url: str
    checksum_url: str | None = None
    basename: str | None = None

    def __post_init__(self) -> None:
        validate_slug(self.slug)
        if self.basename is not None:
            validate_slug(self.basename)

    @property
    def file_stem(self) -> str:
        return self.basename or self.slug

    @property
    def sidecar_url(self) -> str:
        return self.checksum_url or f"{self.url}.md5"

    @property
    def output_filename(self) -> str:
        return f"{self.file_stem}{CONVERTED_SUFFIX}"

    def paths(self, work_dir: Path, output_dir: Path) -> "RegionPaths":
        """Return every artifact path for this region."""
        raw = work_dir / "raw" / f"{self.file_stem}{RAW_SUFFIX}"
        return RegionPaths(
            raw=raw,
            checksum=checksum_path_for(raw),
            rendered=work_dir / "rendered" / f"{self.file_stem}{RENDERED_SUFFIX}",
            converted=output_dir / self.output_filename,
        )


@dataclass(frozen=True)
class RegionPaths:
    """Well-known artifact locations for one region."""

    raw: Path
    checksum: Path
    rendered: Path
    converted: Path

    def with_alternate_raw(self) -> "RegionPaths":
        """Paths using the alternate raw suffix, for when the raw file is locked."""
        name = self.raw.name[: -len(RAW_SUFFIX)] + ALTERNATE_RAW_TAG + RAW_SUFFIX
        raw = self.raw.with_name(name)
        return RegionPaths(
            raw=raw,
            checksum=checksum_path_for(raw),
            rendered=self.rendered,
            converted=self.converted,
        )


def checksum_path_for(artifact: Path) -> Path:
    return artifact.with_name(f"{artifact.name}.md5")


class ArtifactState(str, Enum):
    """Lifecycle of a file on disk, inferred from the filesystem."""

    ABSENT = "absent"
    PRESENT_UNVERIFIED = "present-unverified"
    PRESENT_VERIFIED = "present-verified"


def artifact_state(path: Path, *, verified: bool = False) -> ArtifactState:
    if not path.is_file():
        return ArtifactState.ABSENT
    if verified:
        return ArtifactState.PRESENT_VERIFIED
    return ArtifactState.PRESENT_UNVERIFIED


def _geofabrik(slug: str, name: str, path: str) -> Region:
    return Region(slug=slug, name=name, url=f"{GEOFABRIK_BASE}/{path}-latest{RAW_SUFFIX}")


BUILTIN_REGIONS: dict[str, Region] = {
    region.slug: region
    for region in (
        _geofabrik("se_sweden", "Sweden", "europe/sweden"),
        _geofabrik("no_norway", "Norway", "europe/norway"),
        _geofabrik("dk_denmark", "Denmark", "europe/denmark"),
        _geofabrik("fi_finland", "Finland", "europe/finland"),
        _geofabrik("is_iceland", "Iceland", "europe/iceland"),
        _geofabrik("ee_estonia", "Estonia", "europe/estonia"),
        _geofabrik("lu_luxembourg", "Luxembourg", "europe/luxembourg"),
        _geofabrik("monaco", "Monaco", "europe/monaco"),
    )
}


def _format_url(template: str, *, slug: str, name: str) -> str:
    try:
        return template.format(slug=slug, name=name)
    except (KeyError, IndexError) as exc:
        raise ConfigurationError(f"Unsupported placeholder in URL template {template!r}") from exc


def region_from_mapping(payload: Mapping[str, Any]) -> Region:
    """Build a Region from a JSON object (``slug`` and ``url`` required)."""
    try:
        slug = str(payload["slug"])
        url_template = str(payload["url"])
    except KeyError as exc:
        raise ConfigurationError(f"Region entry is missing {exc.args[0]!r}") from exc
    name = str(payload.get("name") or slug)
    checksum_url = payload.get("checksum_url")
    try:
        return Region(
            slug=slug,
            name=name,
            url=_format_url(url_template, slug=slug, name=name),
            checksum_url=(
                _format_url(str(checksum_url), slug=slug, name=name) if checksum_url else None
            ),
            basename=payload.get("basename"),
        )
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


def load_regions(path: Path) -> list[Region]:
    """Load a JSON list of region objects (or ``{"regions": [...]}``)."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot load regions from {path}: {exc}") from exc
    if isinstance(payload, Mapping):
        payload = payload.get("regions")
    if not isinstance(payload, list):
        raise ConfigurationError(f"Regions file {path} must contain a list of regions.")
    return [resolve_region(item) for item in payload]


def resolve_region(item: str | Mapping[str, Any]) -> Region:
    """Resolve a catalogue slug or an inline region object."""
    if isinstance(item, Mapping):
        return region_from_mapping(item)
    region = BUILTIN_REGIONS.get(str(item))
    if region is None:
        raise ConfigurationError(
            f"Unknown region '{item}'; define it in a regions file or pick one of: "
            + ", ".join(sorted(BUILTIN_REGIONS))
        )
    return region


def ensure_unique(regions: Iterable[Region]) -> list[Region]:
    """Return regions as a list, rejecting duplicate slugs or output names."""
    ordered = list(regions)
    slugs: set[str] = set()
    stems: set[str] = set()
    for region in ordered:
        if region.slug in slugs:
            raise ConfigurationError(f"Region '{region.slug}' is listed more than once.")
        if region.file_stem in stems:
            raise ConfigurationError(
                f"Regions share the output name '{region.file_stem}'; set distinct basenames."
            )
        slugs.add(region.slug)
        stems.add(region.file_stem)
    return ordered
