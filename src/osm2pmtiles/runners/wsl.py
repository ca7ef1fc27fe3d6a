"""Runner that executes tools inside a WSL distribution."""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Sequence

from osm2pmtiles.bridge import DEFAULT_MOUNT_ROOT, translate_path
from osm2pmtiles.subprocess_utils import CommandResult, run_command

LOGGER = logging.getLogger(__name__)


class WslRunner:
    """Execute commands through ``wsl.exe`` with host paths translated."""

    name = "wsl"

    def __init__(
        self,
        target: str | None = None,
        *,
        wsl_exe: str = "wsl",
        mount_root: str = DEFAULT_MOUNT_ROOT,
    ) -> None:
        self.target = target
        self.wsl_exe = wsl_exe
        self.mount_root = mount_root

    def translate(self, path: Path | str) -> str:
        return translate_path(path, mount_root=self.mount_root)

    def _prefix(self, cwd: Path | None = None) -> list[str]:
        command = [self.wsl_exe]
        if self.target:
            command.extend(["-d", self.target])
        if cwd is not None:
            command.extend(["--cd", self.translate(cwd)])
        command.append("--")
        return command

    def bridge_command(self, argv: Sequence[str], *, cwd: Path | None = None) -> list[str]:
        """Return the full host-side command line for ``argv``."""
        return [*self._prefix(cwd), *[str(item) for item in argv]]

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        log_path: Path | None = None,
    ) -> CommandResult:
        command = self.bridge_command(argv, cwd=cwd)
        LOGGER.debug("Bridge command: %s", shlex.join(command))
        # The working directory override is passed to wsl itself; the host
        # process keeps its own cwd.
        return run_command(command, timeout=timeout, log_path=log_path)

    def which(self, tool: str) -> str | None:
        result = run_command(
            self.bridge_command(["sh", "-c", f"command -v {shlex.quote(tool)}"])
        )
        if result.returncode != 0:
            return None
        found = result.stdout.strip().splitlines()
        return found[0] if found else None

    def read_text(self, path: str) -> str | None:
        result = run_command(self.bridge_command(["cat", path]))
        if result.returncode != 0:
            return None
        return result.stdout
