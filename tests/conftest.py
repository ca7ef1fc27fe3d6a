from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

import pytest  # noqa: E402

from osm2pmtiles import cli  # noqa: E402
from osm2pmtiles.tools import config as tool_config  # noqa: E402


def pytest_collection_modifyitems(config, items) -> None:
    """Skip integration tests unless explicitly selected via -m integration."""
    markexpr = config.option.markexpr or ""
    if "integration" in markexpr:
        return
    skip_integration = pytest.mark.skip(reason="integration tests run only with -m integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path) -> None:
    """Prevent local tool configs and OSM2PMTILES_* settings from bleeding into tests."""
    monkeypatch.setenv(tool_config.ENV_TOOL_PATHS, str(tmp_path / "missing_tool_paths.json"))
    for name in (
        cli.ENV_OUTPUT_DIR,
        cli.ENV_EXECUTION_MODE,
        cli.ENV_BRIDGE_TARGET,
        cli.ENV_PUBLISH_URL_PREFIX,
    ):
        monkeypatch.delenv(name, raising=False)
