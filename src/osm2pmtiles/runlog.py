"""Append-only record of stage start/end times for a run.

The log is informational: resume decisions are made from the artifacts on
disk, never from this file.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Iterator


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RunLog:
    """Write one JSON line per stage event when enabled."""

    def __init__(self, path: Path | None) -> None:
        self.path = path
        self.events: list[dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def _write(self, payload: dict[str, Any]) -> None:
        self.events.append(payload)
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload) + "\n")

    def event(self, region: str | None, stage: str, status: str, **fields: Any) -> None:
        payload: dict[str, Any] = {
            "timestamp": _timestamp(),
            "region": region,
            "stage": stage,
            "status": status,
        }
        payload.update(fields)
        self._write(payload)

    @contextmanager
    def span(self, region: str | None, stage: str) -> Iterator[None]:
        """Record start and end (ok or failed) of a stage."""
        self.event(region, stage, "start")
        start = perf_counter()
        try:
            yield
        except BaseException as exc:
            self.event(
                region,
                stage,
                "failed",
                seconds=round(perf_counter() - start, 3),
                error=f"{type(exc).__name__}: {exc}",
            )
            raise
        self.event(region, stage, "ok", seconds=round(perf_counter() - start, 3))
