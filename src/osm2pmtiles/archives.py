"""Archive extraction with path-escape checks."""

from __future__ import annotations

import shutil
import tarfile
import zipfile
from pathlib import Path


def _safe_extract_path(root: Path, member: Path) -> Path:
    """Ensure an archive member resolves inside the destination root."""
    root_resolved = root.resolve()
    candidate = (root / member).resolve()
    try:
        candidate.relative_to(root_resolved)
    except ValueError as exc:
        raise ValueError(f"Archive member escapes target directory: {member}") from exc
    return candidate


def extract_archive(archive_path: Path, destination: Path) -> list[Path]:
    """Extract a zip or tar archive and return the extracted file paths."""
    destination.mkdir(parents=True, exist_ok=True)
    extracted: list[Path] = []
    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.namelist():
                if not member:
                    continue
                safe_path = _safe_extract_path(destination, Path(member))
                if member.endswith("/"):
                    safe_path.mkdir(parents=True, exist_ok=True)
                    continue
                safe_path.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(member) as source, safe_path.open("wb") as target:
                    shutil.copyfileobj(source, target)
                extracted.append(safe_path)
    elif tarfile.is_tarfile(archive_path):
        with tarfile.open(archive_path) as archive:
            members = [member for member in archive.getmembers() if member.name]
            for member in members:
                safe_path = _safe_extract_path(destination, Path(member.name))
                if member.isfile():
                    extracted.append(safe_path)
            archive.extractall(destination, members=members, filter="data")
    else:
        raise ValueError(f"Unsupported archive format: {archive_path}")
    return sorted(extracted)
