"""Checksum verification of downloaded artifacts against sidecar files."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
LOCK_BACKOFF_SECONDS = 0.5


class FileLockedError(OSError):
    """Raised internally when a file stays locked by another process."""


@dataclass(frozen=True)
class ChecksumRecord:
    """Expected hash (lowercase) and the filename the sidecar names, if any."""

    digest: str
    filename: str | None = None


def parse_checksum_line(line: str) -> ChecksumRecord | None:
    """Parse ``<hash> [*]<filename>``; return None when no hash token exists."""
    tokens = line.split()
    if not tokens:
        return None
    digest = tokens[0].lower()
    if not all(char in "0123456789abcdef" for char in digest):
        return None
    filename = tokens[1].lstrip("*") if len(tokens) > 1 else None
    return ChecksumRecord(digest=digest, filename=filename)


def parse_checksum_file(path: Path) -> ChecksumRecord | None:
    """Read the first line of a checksum sidecar."""
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            first_line = handle.readline()
    except OSError:
        return None
    if not first_line.strip():
        return None
    return parse_checksum_line(first_line)


def _open_when_unlocked(
    path: Path,
    *,
    attempts: int,
    sleep: Callable[[float], None],
) -> BinaryIO:
    """Open a file for reading, waiting while another process holds it."""
    last_error: OSError | None = None
    for attempt in range(max(1, attempts)):
        try:
            return path.open("rb")
        except PermissionError as exc:
            last_error = exc
            if attempt + 1 < attempts:
                sleep(LOCK_BACKOFF_SECONDS * (2**attempt))
    raise FileLockedError(f"{path} is locked by another process") from last_error


def file_digest(
    path: Path,
    algorithm: str = "md5",
    *,
    lock_attempts: int = 5,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Return the hex digest of a file, streaming it in chunks."""
    digest = hashlib.new(algorithm)
    with _open_when_unlocked(path, attempts=lock_attempts, sleep=sleep) as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify(
    artifact: Path,
    checksum_path: Path,
    *,
    algorithm: str = "md5",
    lock_attempts: int = 5,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Return True when ``artifact`` matches the hash in ``checksum_path``.

    Never raises for missing files, unparsable sidecars or a file that stays
    locked; all of those count as a failed verification.
    """
    if not artifact.is_file() or not checksum_path.is_file():
        LOGGER.debug("Cannot verify %s: artifact or sidecar missing", artifact)
        return False
    record = parse_checksum_file(checksum_path)
    if record is None:
        LOGGER.warning("Checksum sidecar %s has no usable hash", checksum_path)
        return False
    try:
        actual = file_digest(artifact, algorithm, lock_attempts=lock_attempts, sleep=sleep)
    except FileLockedError as exc:
        LOGGER.warning("Skipping verification: %s", exc)
        return False
    except OSError as exc:
        LOGGER.warning("Cannot read %s for verification: %s", artifact, exc)
        return False
    if actual != record.digest:
        LOGGER.warning(
            "Checksum mismatch for %s: expected %s, got %s",
            artifact.name,
            record.digest,
            actual,
        )
        return False
    return True
