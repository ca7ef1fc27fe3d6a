"""Build manifest accumulation and serialization."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from osm2pmtiles.contracts import validate_manifest


def _utc_now() -> str:
    """Return the current UTC timestamp as ISO8601."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def publish_url(prefix: str, filename: str) -> str:
    """Join a publish prefix and a filename, or return '' without a prefix."""
    if not prefix:
        return ""
    return f"{prefix.rstrip('/')}/{filename}"


@dataclass(frozen=True)
class ManifestEntry:
    """Published description of one converted archive."""

    name: str
    file: str
    size_bytes: int
    url: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "file": self.file,
            "sizeBytes": self.size_bytes,
            "url": self.url,
        }


@dataclass
class BuildManifest:
    """Outputs of one pipeline run, one entry per completed region."""

    format: str
    min_zoom: int
    max_zoom: int
    entries: list[ManifestEntry] = field(default_factory=list)

    def record(self, name: str, path: Path, *, url_prefix: str = "") -> ManifestEntry:
        """Append an entry for ``path``, reading its size now."""
        entry = ManifestEntry(
            name=name,
            file=path.name,
            size_bytes=path.stat().st_size,
            url=publish_url(url_prefix, path.name),
        )
        self.entries.append(entry)
        return entry

    def as_dict(self, *, generated_at: str | None = None) -> dict[str, Any]:
        return {
            "generatedAt": generated_at or _utc_now(),
            "format": self.format,
            "minZoom": self.min_zoom,
            "maxZoom": self.max_zoom,
            "regions": [entry.as_dict() for entry in self.entries],
        }


def write_manifest(manifest: BuildManifest, path: Path) -> dict[str, Any]:
    """Validate and write the manifest as UTF-8 JSON, replacing any prior file."""
    payload = manifest.as_dict()
    validate_manifest(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    return payload
