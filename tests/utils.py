from __future__ import annotations

import hashlib
import json
import sys
import textwrap
import zipfile
from pathlib import Path

from osm2pmtiles.datasets import DATASETS
from osm2pmtiles.errors import FetchError

RENDERER_SCRIPT = """
import json
import pathlib
import sys

args = sys.argv[1:]
calls = pathlib.Path(__file__).with_suffix(".calls")
with calls.open("a", encoding="utf-8") as handle:
    handle.write(json.dumps(args) + "\\n")
if "--help" in args:
    print("tilemaker v{version} (fake)")
    sys.exit(0)
output = pathlib.Path(args[args.index("--output") + 1])
if {exit_code}:
    if {partial}:
        output.write_bytes(b"half-written")
    print("render exploded", file=sys.stderr)
    sys.exit({exit_code})
output.write_bytes(b"rendered:" + pathlib.Path(args[args.index("--input") + 1]).read_bytes())
"""

CONVERTER_SCRIPT = """
import json
import pathlib
import sys

args = sys.argv[1:]
calls = pathlib.Path(__file__).with_suffix(".calls")
with calls.open("a", encoding="utf-8") as handle:
    handle.write(json.dumps(args) + "\\n")
source, destination = args[1], args[2]
if {exit_code}:
    if {partial}:
        pathlib.Path(destination).write_bytes(b"part")
    sys.exit({exit_code})
pathlib.Path(destination).write_bytes(b"pmtiles:" + pathlib.Path(source).read_bytes())
"""


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def write_script(path: Path, body: str) -> list[str]:
    """Write a Python script and return the command that runs it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return [sys.executable, str(path)]


def fake_renderer(
    tmp_path: Path, *, version: str = "3.0.0", exit_code: int = 0, partial: bool = False
) -> list[str]:
    """Fake renderer; with ``partial`` a failing run leaves half its output behind."""
    return write_script(
        tmp_path / "tools" / "renderer.py",
        RENDERER_SCRIPT.format(version=version, exit_code=exit_code, partial=partial),
    )


def fake_converter(tmp_path: Path, *, exit_code: int = 0, partial: bool = False) -> list[str]:
    return write_script(
        tmp_path / "tools" / "converter.py",
        CONVERTER_SCRIPT.format(exit_code=exit_code, partial=partial),
    )


def tool_calls(command: list[str], *, include_help: bool = False) -> list[list[str]]:
    """Return the argv of each recorded invocation of a fake tool."""
    calls_path = Path(command[-1]).with_suffix(".calls")
    if not calls_path.exists():
        return []
    calls = [
        json.loads(line)
        for line in calls_path.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    if include_help:
        return calls
    return [call for call in calls if "--help" not in call]


def seed_datasets(data_dir: Path) -> None:
    """Create placeholder files for every auxiliary dataset."""
    for kind, spec in DATASETS.items():
        for name in spec.expected:
            path = data_dir / kind / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"shp")


def make_zip(path: Path, members: dict[str, bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return path


class FakeFetcher:
    """Serve canned payloads by URL and record every fetch that downloads."""

    def __init__(self, payloads: dict[str, bytes | list[bytes]] | None = None) -> None:
        self.payloads: dict[str, list[bytes]] = {}
        for url, payload in (payloads or {}).items():
            self.payloads[url] = list(payload) if isinstance(payload, list) else [payload]
        self.downloads: list[str] = []

    def fetch(self, url: str, destination: Path) -> bool:
        if destination.exists():
            return False
        queue = self.payloads.get(url)
        if not queue:
            raise FetchError(url, 1, "no payload")
        data = queue.pop(0) if len(queue) > 1 else queue[0]
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
        self.downloads.append(url)
        return True
