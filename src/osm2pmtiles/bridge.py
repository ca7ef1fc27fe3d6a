"""Path translation between the host and a WSL-style execution bridge."""

from __future__ import annotations

import posixpath
import re
from pathlib import Path, PurePosixPath, PureWindowsPath

DEFAULT_MOUNT_ROOT = "/mnt"

_DRIVE_PATTERN = re.compile(r"^(?P<drive>[A-Za-z]):(?P<rest>[\\/].*|)$")
_UNC_PREFIXES = ("wsl$", "wsl.localhost")


def translate_path(
    path: str | Path | PureWindowsPath | PurePosixPath,
    *,
    mount_root: str = DEFAULT_MOUNT_ROOT,
) -> str:
    """Return the bridge-side equivalent of a host path.

    ``C:\\Users\\me\\out`` becomes ``/mnt/c/Users/me/out``. UNC paths that
    point into a distro (``\\\\wsl$\\Ubuntu\\home\\me``) resolve to the
    in-distro absolute path. POSIX paths pass through unchanged and relative
    paths only have their separators normalized.
    """
    text = str(path)
    if not text:
        raise ValueError("Cannot translate an empty path.")
    if text.startswith("\\\\") or text.startswith("//"):
        parts = [part for part in re.split(r"[\\/]+", text) if part]
        if len(parts) >= 2 and parts[0].lower() in _UNC_PREFIXES:
            return "/" + "/".join(parts[2:])
        raise ValueError(f"Unsupported UNC path for bridge translation: {text}")
    match = _DRIVE_PATTERN.match(text)
    if match:
        drive = match.group("drive").lower()
        rest = match.group("rest").replace("\\", "/").strip("/")
        root = mount_root.rstrip("/") or ""
        translated = f"{root}/{drive}"
        if rest:
            translated = f"{translated}/{rest}"
        return posixpath.normpath(translated)
    if text.startswith("/"):
        return text
    return text.replace("\\", "/")


def translate_relative(
    path: str | Path,
    cwd: str,
    *,
    mount_root: str = DEFAULT_MOUNT_ROOT,
) -> str:
    """Translate a path and express it relative to a translated working directory.

    Paths outside ``cwd`` are returned translated but absolute.
    """
    translated = translate_path(path, mount_root=mount_root)
    base = cwd.rstrip("/") or "/"
    if translated == base:
        return "."
    if base != "/" and translated.startswith(base + "/"):
        return translated[len(base) + 1 :]
    if base == "/" and translated.startswith("/"):
        return translated[1:]
    return translated
