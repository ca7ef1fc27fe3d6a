"""Shared protocol for executing external tools."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, Sequence

from osm2pmtiles.subprocess_utils import CommandResult


class CommandRunner(Protocol):
    """Run external tools either natively or inside an execution bridge.

    ``argv`` handed to :meth:`run` must already use paths valid in the
    runner's environment; :meth:`translate` produces them from host paths.
    """

    name: str

    def translate(self, path: Path | str) -> str:
        ...

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        log_path: Path | None = None,
    ) -> CommandResult:
        ...

    def which(self, tool: str) -> str | None:
        ...

    def read_text(self, path: str) -> str | None:
        ...
