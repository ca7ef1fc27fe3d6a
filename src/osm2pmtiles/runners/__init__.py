"""Command runner package exports."""

from osm2pmtiles.runners.base import CommandRunner
from osm2pmtiles.runners.native import NativeRunner
from osm2pmtiles.runners.registry import get_runner, list_runners
from osm2pmtiles.runners.wsl import WslRunner

__all__ = [
    "CommandRunner",
    "NativeRunner",
    "WslRunner",
    "get_runner",
    "list_runners",
]
