from __future__ import annotations

import json
import logging
from pathlib import Path

from osm2pmtiles.logging_utils import (
    HumanFormatter,
    JsonFormatter,
    LogOptions,
    configure_logging,
)


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("osm2pmtiles.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_human_formatter_prefixes_region() -> None:
    formatter = HumanFormatter()

    line = formatter.format(_record("Fetching", region="monaco"))
    plain = formatter.format(_record("Starting"))

    assert line.endswith("INFO: [monaco] Fetching")
    assert plain.endswith("INFO: Starting")


def test_configure_logging_writes_json_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "build.jsonl"
    root = configure_logging(LogOptions(quiet=True, log_file=log_file))
    try:
        logging.getLogger("osm2pmtiles.test").debug("detail %s", 3, extra={"region": "monaco"})
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)

    payload = json.loads(log_file.read_text(encoding="utf-8").splitlines()[0])
    assert payload["level"] == "debug"
    assert payload["message"] == "detail 3"
    assert payload["region"] == "monaco"
    assert "extra" not in payload
    assert payload["timestamp"].endswith("Z")


def test_console_level_follows_options() -> None:
    root = configure_logging(LogOptions(verbose=1))
    try:
        assert root.handlers[0].level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers.clear()


def test_json_formatter_keeps_other_extras_nested() -> None:
    record = _record("Rendered", region="monaco", stage="render")
    payload = json.loads(JsonFormatter().format(record))

    assert payload["region"] == "monaco"
    assert payload["extra"] == {"stage": "render"}


def test_quiet_overrides_verbose() -> None:
    assert LogOptions(verbose=2, quiet=True).console_level == logging.WARNING
    assert LogOptions().console_level == logging.INFO
