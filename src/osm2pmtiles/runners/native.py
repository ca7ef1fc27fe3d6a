"""Runner that executes tools directly on the host."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Sequence

from osm2pmtiles.subprocess_utils import CommandResult, run_command


class NativeRunner:
    """Execute commands in the primary environment without translation."""

    name = "native"

    def translate(self, path: Path | str) -> str:
        return str(path)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        log_path: Path | None = None,
    ) -> CommandResult:
        return run_command(argv, cwd=cwd, timeout=timeout, log_path=log_path)

    def which(self, tool: str) -> str | None:
        candidate = Path(tool)
        if candidate.is_file():
            return str(candidate)
        return shutil.which(tool)

    def read_text(self, path: str) -> str | None:
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError:
            return None
