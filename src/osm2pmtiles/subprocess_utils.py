"""Subprocess helpers with optional log streaming."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127


@dataclass(frozen=True)
class CommandResult:
    """Captured output from a command invocation."""

    command: list[str]
    returncode: int
    stdout: str
    stderr: str
    log_path: Path | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def detail(self) -> str:
        """Return the most useful chunk of output for an error message."""
        return self.stderr.strip() or self.stdout.strip()


def tail_text(path: Path, *, max_bytes: int = 65536, max_lines: int = 40) -> str:
    """Return the tail of a text file for log summaries."""
    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            handle.seek(max(0, size - max_bytes))
            data = handle.read()
    except OSError:
        return ""
    lines = data.decode("utf-8", errors="replace").splitlines()
    if len(lines) > max_lines:
        lines = lines[-max_lines:]
    return "\n".join(lines)


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run_command(
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    log_path: Path | None = None,
) -> CommandResult:
    """Run a command and capture its output.

    With ``log_path`` set, stdout and stderr are streamed into that file
    (long-running tools can print a lot) and the result carries its tail.
    A missing executable is reported as return code 127 rather than raised.
    """
    cmd_list = [str(item) for item in command]
    run_env = {**os.environ, **env} if env else None

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        timed_out = False
        with log_path.open("w", encoding="utf-8") as handle:
            try:
                result = subprocess.run(
                    cmd_list,
                    cwd=cwd,
                    env=run_env,
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                    text=True,
                    check=False,
                    timeout=timeout,
                )
                returncode = result.returncode
            except subprocess.TimeoutExpired:
                timed_out = True
                returncode = TIMEOUT_RETURNCODE
            except FileNotFoundError as exc:
                handle.write(f"{exc}\n")
                returncode = NOT_FOUND_RETURNCODE
        output = tail_text(log_path)
        if timed_out:
            output = f"{output}\nCommand timed out after {timeout} seconds.".strip()
        return CommandResult(cmd_list, returncode, "", output, log_path, timed_out)

    try:
        result = subprocess.run(
            cmd_list,
            cwd=cwd,
            env=run_env,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        stderr = _decode(exc.stderr)
        timeout_message = f"Command timed out after {timeout} seconds."
        stderr = f"{stderr}\n{timeout_message}" if stderr else timeout_message
        return CommandResult(
            cmd_list, TIMEOUT_RETURNCODE, _decode(exc.stdout), stderr, None, True
        )
    except FileNotFoundError as exc:
        return CommandResult(cmd_list, NOT_FOUND_RETURNCODE, "", str(exc))
    return CommandResult(cmd_list, result.returncode, result.stdout, result.stderr)
