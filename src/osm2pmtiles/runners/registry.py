"""Registry of named command runners (execution modes)."""

from __future__ import annotations

import logging
from functools import lru_cache
from importlib import metadata
from typing import TYPE_CHECKING, Callable, cast

from osm2pmtiles.runners.base import CommandRunner
from osm2pmtiles.runners.native import NativeRunner
from osm2pmtiles.runners.wsl import WslRunner

if TYPE_CHECKING:
    from osm2pmtiles.run_config import RunConfig

RunnerFactory = Callable[["RunConfig"], CommandRunner]
RUNNER_ENTRYPOINT_GROUP = "osm2pmtiles.runners"

LOGGER = logging.getLogger(__name__)


def _native(_config: "RunConfig") -> CommandRunner:
    return NativeRunner()


def _wsl(config: "RunConfig") -> CommandRunner:
    return WslRunner(config.bridge_target, mount_root=config.mount_root)


_BUILTIN_RUNNERS: dict[str, RunnerFactory] = {
    "native": _native,
    "wsl": _wsl,
}


def _load_runner_entrypoints() -> dict[str, RunnerFactory]:
    """Load runner factories from package entrypoints."""
    factories: dict[str, RunnerFactory] = {}
    try:
        entry_points = metadata.entry_points(group=RUNNER_ENTRYPOINT_GROUP)
    except Exception as exc:  # pragma: no cover - entrypoint discovery failures are rare
        LOGGER.warning("Failed to read runner entrypoints: %s", exc)
        return factories
    for entry_point in entry_points:
        try:
            candidate = entry_point.load()
        except Exception as exc:
            LOGGER.warning("Failed to load runner entrypoint '%s': %s", entry_point.name, exc)
            continue
        if not callable(candidate):
            LOGGER.warning("Runner entrypoint '%s' is not callable.", entry_point.name)
            continue
        factories[entry_point.name] = cast(RunnerFactory, candidate)
    return factories


@lru_cache(maxsize=1)
def _runner_factories() -> dict[str, RunnerFactory]:
    """Return merged runner factories from built-ins and entrypoints."""
    factories = dict(_BUILTIN_RUNNERS)
    for name, factory in _load_runner_entrypoints().items():
        if name in factories:
            LOGGER.warning("Runner '%s' already registered; skipping entrypoint.", name)
            continue
        factories[name] = factory
    return factories


def refresh_runners() -> None:
    """Clear cached runner factories and reload on demand."""
    _runner_factories.cache_clear()


def list_runners() -> list[str]:
    """Return the names of all available execution modes."""
    return sorted(_runner_factories())


def get_runner(mode: str, config: "RunConfig") -> CommandRunner:
    """Return the runner for an execution mode, built once per run."""
    try:
        factory = _runner_factories()[mode]
    except KeyError as exc:
        raise KeyError(f"Unknown execution mode: {mode}") from exc
    return factory(config)
