from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from osm2pmtiles import pipeline
from osm2pmtiles.errors import (
    ConfigurationError,
    IntegrityError,
    PipelineCancelled,
    StageError,
)
from osm2pmtiles.pipeline import RegionPipeline, run_pipeline
from osm2pmtiles.regions import BUILTIN_REGIONS, Region
from osm2pmtiles.run_config import RunConfig, build_run_config
from osm2pmtiles.runners.native import NativeRunner
from tests.utils import (
    FakeFetcher,
    fake_converter,
    fake_renderer,
    md5_hex,
    seed_datasets,
    tool_calls,
)

SWEDEN = BUILTIN_REGIONS["se_sweden"]
EXTRACT = b"osm extract for sweden"


def _sidecar(data: bytes, name: str = "sweden-latest.osm.pbf") -> bytes:
    return f"{md5_hex(data)}  {name}\n".encode()


def _config(tmp_path: Path, *, seed: bool = True, **overrides) -> RunConfig:
    values = {"output_dir": tmp_path / "out"}
    if "renderer" not in overrides:
        values["renderer"] = fake_renderer(tmp_path)
    if "converter" not in overrides:
        values["converter"] = fake_converter(tmp_path)
    values.update(overrides)
    config = build_run_config(values)
    if seed:
        seed_datasets(config.data_dir)
    return config


def _run(config: RunConfig, fetcher: FakeFetcher, regions=(SWEDEN,), **kwargs):
    return run_pipeline(
        list(regions),
        config,
        runner=NativeRunner(),
        fetcher=fetcher,
        sleep=lambda _seconds: None,
        **kwargs,
    )


def _sweden_fetcher(extract: bytes = EXTRACT, sidecar: bytes | None = None) -> FakeFetcher:
    return FakeFetcher(
        {
            SWEDEN.url: extract,
            SWEDEN.sidecar_url: sidecar if sidecar is not None else _sidecar(EXTRACT),
        }
    )


def test_fresh_build_fetches_verifies_renders_and_converts(tmp_path: Path) -> None:
    config = _config(tmp_path)
    fetcher = _sweden_fetcher()

    manifest = _run(config, fetcher)

    assert fetcher.downloads == [SWEDEN.url, SWEDEN.sidecar_url]
    assert len(tool_calls(list(config.renderer))) == 1
    assert len(tool_calls(list(config.converter))) == 1
    converted = config.output_dir / "se_sweden.pmtiles"
    payload = json.loads(config.manifest_path.read_text(encoding="utf-8"))
    assert payload["regions"] == [
        {
            "name": "se_sweden",
            "file": "se_sweden.pmtiles",
            "sizeBytes": converted.stat().st_size,
            "url": "",
        }
    ]
    assert payload["format"] == "pmtiles"
    assert (payload["minZoom"], payload["maxZoom"]) == (0, 14)
    assert [entry.name for entry in manifest.entries] == ["se_sweden"]
    assert not (config.work_dir / "rendered" / "se_sweden.mbtiles").exists()


def test_manifest_is_utf8_without_bom(tmp_path: Path) -> None:
    config = _config(tmp_path)
    _run(config, _sweden_fetcher())

    assert not config.manifest_path.read_bytes().startswith(b"\xef\xbb\xbf")


def test_second_run_is_free(tmp_path: Path) -> None:
    config = _config(tmp_path)
    _run(config, _sweden_fetcher())
    first = json.loads(config.manifest_path.read_text(encoding="utf-8"))
    renderer_calls = tool_calls(list(config.renderer), include_help=True)
    converter_calls = tool_calls(list(config.converter))

    second_fetcher = _sweden_fetcher()
    _run(config, second_fetcher)
    second = json.loads(config.manifest_path.read_text(encoding="utf-8"))

    assert second_fetcher.downloads == []
    assert tool_calls(list(config.renderer), include_help=True) == renderer_calls
    assert tool_calls(list(config.converter)) == converter_calls
    first.pop("generatedAt")
    second.pop("generatedAt")
    assert first == second


def test_stale_extract_is_replaced_once(tmp_path: Path) -> None:
    config = _config(tmp_path)
    paths = SWEDEN.paths(config.work_dir, config.output_dir)
    paths.raw.parent.mkdir(parents=True)
    paths.raw.write_bytes(b"truncated")
    paths.checksum.write_bytes(_sidecar(b"an older extract"))
    fetcher = _sweden_fetcher()

    _run(config, fetcher)

    assert fetcher.downloads == [SWEDEN.url, SWEDEN.sidecar_url]
    assert paths.raw.read_bytes() == EXTRACT
    assert paths.checksum.read_bytes() == _sidecar(EXTRACT)
    assert len(tool_calls(list(config.renderer))) == 1


def test_verified_existing_extract_is_not_downloaded(tmp_path: Path) -> None:
    config = _config(tmp_path)
    paths = SWEDEN.paths(config.work_dir, config.output_dir)
    paths.raw.parent.mkdir(parents=True)
    paths.raw.write_bytes(EXTRACT)
    paths.checksum.write_bytes(_sidecar(EXTRACT))
    fetcher = _sweden_fetcher()

    _run(config, fetcher)

    assert fetcher.downloads == []
    assert len(tool_calls(list(config.renderer))) == 1


def test_refetched_extract_that_still_mismatches_is_fatal(tmp_path: Path) -> None:
    config = _config(tmp_path)
    paths = SWEDEN.paths(config.work_dir, config.output_dir)
    paths.raw.parent.mkdir(parents=True)
    paths.raw.write_bytes(b"truncated")
    fetcher = _sweden_fetcher(sidecar=_sidecar(b"something else"))

    with pytest.raises(IntegrityError):
        _run(config, fetcher)

    assert fetcher.downloads == [SWEDEN.sidecar_url, SWEDEN.url, SWEDEN.sidecar_url]
    assert tool_calls(list(config.renderer), include_help=True) == []
    assert not config.manifest_path.exists()


def test_fresh_download_mismatch_never_renders(tmp_path: Path) -> None:
    config = _config(tmp_path)
    fetcher = _sweden_fetcher(extract=b"corrupted in transit")

    with pytest.raises(IntegrityError) as excinfo:
        _run(config, fetcher)

    assert excinfo.value.path == SWEDEN.paths(config.work_dir, config.output_dir).raw
    assert fetcher.downloads == [SWEDEN.url, SWEDEN.sidecar_url]
    assert tool_calls(list(config.renderer)) == []
    assert tool_calls(list(config.converter)) == []


def test_verification_disabled_skips_sidecar(tmp_path: Path) -> None:
    config = _config(tmp_path, verify_checksums=False)
    fetcher = _sweden_fetcher(extract=b"anything goes")

    _run(config, fetcher)

    assert fetcher.downloads == [SWEDEN.url]
    assert (config.output_dir / "se_sweden.pmtiles").exists()


def test_render_failure_stops_before_convert(tmp_path: Path) -> None:
    config = _config(tmp_path, renderer=fake_renderer(tmp_path, exit_code=3))

    with pytest.raises(StageError) as excinfo:
        _run(config, _sweden_fetcher())

    assert excinfo.value.stage == "render"
    assert excinfo.value.region == "se_sweden"
    assert excinfo.value.returncode == 3
    assert tool_calls(list(config.converter)) == []
    assert "render exploded" in (config.logs_dir / "se_sweden.render.log").read_text(
        encoding="utf-8"
    )


def test_convert_failure_reports_stage(tmp_path: Path) -> None:
    config = _config(tmp_path, converter=fake_converter(tmp_path, exit_code=2))

    with pytest.raises(StageError, match="convert failed for region se_sweden"):
        _run(config, _sweden_fetcher())

    assert (config.work_dir / "rendered" / "se_sweden.mbtiles").exists()


def test_existing_rendered_archive_only_converts(tmp_path: Path) -> None:
    config = _config(tmp_path)
    rendered = config.work_dir / "rendered" / "se_sweden.mbtiles"
    rendered.parent.mkdir(parents=True)
    rendered.write_bytes(b"rendered earlier")
    fetcher = _sweden_fetcher()

    _run(config, fetcher)

    assert fetcher.downloads == []
    assert tool_calls(list(config.renderer), include_help=True) == []
    assert len(tool_calls(list(config.converter))) == 1


def test_manifest_follows_region_order(tmp_path: Path) -> None:
    config = _config(tmp_path, publish_url_prefix="https://tiles.example.org/maps/")
    beta = Region(slug="beta", name="Beta", url="https://example.test/beta.osm.pbf")
    alpha = Region(slug="alpha", name="Alpha", url="https://example.test/alpha.osm.pbf")
    fetcher = FakeFetcher(
        {
            beta.url: b"beta-data-longer",
            beta.sidecar_url: _sidecar(b"beta-data-longer"),
            alpha.url: b"alpha",
            alpha.sidecar_url: _sidecar(b"alpha"),
        }
    )

    manifest = _run(config, fetcher, regions=(beta, alpha))

    payload = json.loads(config.manifest_path.read_text(encoding="utf-8"))
    assert [entry["name"] for entry in payload["regions"]] == ["beta", "alpha"]
    for entry in payload["regions"]:
        assert entry["sizeBytes"] == (config.output_dir / entry["file"]).stat().st_size
    assert payload["regions"][1]["url"] == "https://tiles.example.org/maps/alpha.pmtiles"
    assert len(manifest.entries) == 2


def test_keep_rendered_leaves_intermediate(tmp_path: Path) -> None:
    config = _config(tmp_path, keep_rendered=True)

    _run(config, _sweden_fetcher())

    assert (config.work_dir / "rendered" / "se_sweden.mbtiles").exists()


def test_continue_on_error_records_completed_regions(tmp_path: Path) -> None:
    config = _config(tmp_path, continue_on_error=True)
    good = Region(slug="good", name="Good", url="https://example.test/good.osm.pbf")
    fetcher = FakeFetcher(
        {
            SWEDEN.url: b"corrupt",
            SWEDEN.sidecar_url: _sidecar(EXTRACT),
            good.url: b"good",
            good.sidecar_url: _sidecar(b"good"),
        }
    )
    runner = RegionPipeline(
        config, runner=NativeRunner(), fetcher=fetcher, sleep=lambda _seconds: None
    )

    manifest = runner.run([SWEDEN, good])

    assert [entry.name for entry in manifest.entries] == ["good"]
    assert [slug for slug, _error in runner.failures] == ["se_sweden"]
    payload = json.loads(config.manifest_path.read_text(encoding="utf-8"))
    assert [entry["name"] for entry in payload["regions"]] == ["good"]


def test_missing_renderer_fails_before_network(tmp_path: Path) -> None:
    config = _config(tmp_path, renderer=["definitely-missing-renderer-7f3a"])
    fetcher = _sweden_fetcher()

    with pytest.raises(ConfigurationError, match="definitely-missing-renderer-7f3a"):
        _run(config, fetcher)

    assert fetcher.downloads == []


def test_insufficient_disk_space_fails_before_network(tmp_path: Path) -> None:
    config = _config(tmp_path, min_free_gb=1e12)
    fetcher = _sweden_fetcher()

    with pytest.raises(ConfigurationError, match="disk_space"):
        _run(config, fetcher)

    assert fetcher.downloads == []


def test_missing_datasets_without_downloads(tmp_path: Path) -> None:
    config = _config(tmp_path, seed=False, auto_download_datasets=False)
    fetcher = _sweden_fetcher()

    with pytest.raises(ConfigurationError, match="Missing coastline data"):
        _run(config, fetcher)

    assert fetcher.downloads == []


def test_duplicate_regions_rejected(tmp_path: Path) -> None:
    config = _config(tmp_path)

    with pytest.raises(ConfigurationError, match="more than once"):
        _run(config, _sweden_fetcher(), regions=(SWEDEN, SWEDEN))


def test_cancelled_run_stops_before_fetching(tmp_path: Path) -> None:
    config = _config(tmp_path)
    fetcher = _sweden_fetcher()
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(PipelineCancelled):
        _run(config, fetcher, cancel=cancel)

    assert fetcher.downloads == []


def test_locked_stale_extract_uses_alternate_name(tmp_path: Path, monkeypatch) -> None:
    config = _config(tmp_path)
    paths = SWEDEN.paths(config.work_dir, config.output_dir)
    paths.raw.parent.mkdir(parents=True)
    paths.raw.write_bytes(b"stale")
    paths.checksum.write_bytes(_sidecar(EXTRACT))
    original_unlink = Path.unlink

    def locked_unlink(self: Path, missing_ok: bool = False) -> None:
        if self == paths.raw:
            raise PermissionError("in use")
        original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", locked_unlink)
    fetcher = _sweden_fetcher()

    _run(config, fetcher)

    alternate = paths.with_alternate_raw()
    assert alternate.raw.name == "se_sweden.refetch.osm.pbf"
    assert alternate.raw.read_bytes() == EXTRACT
    (render_call,) = tool_calls(list(config.renderer))
    assert render_call[render_call.index("--input") + 1] == str(alternate.raw)


def test_run_log_records_stages(tmp_path: Path) -> None:
    config = _config(tmp_path)

    _run(config, _sweden_fetcher())

    lines = (config.work_dir / pipeline.RUN_LOG_NAME).read_text(encoding="utf-8").splitlines()
    events = [json.loads(line) for line in lines]
    finished = [
        (event["stage"], event["status"]) for event in events if event["status"] != "start"
    ]
    assert finished == [("acquire", "ok"), ("render", "ok"), ("convert", "ok")]
    assert {event["region"] for event in events} == {"se_sweden"}


def test_renderer_receives_materialized_config(tmp_path: Path) -> None:
    config = _config(tmp_path, min_zoom=2, max_zoom=10)

    _run(config, _sweden_fetcher())

    (render_call,) = tool_calls(list(config.renderer))
    config_path = Path(render_call[render_call.index("--config") + 1])
    rendered_config = json.loads(config_path.read_text(encoding="utf-8"))
    assert rendered_config["settings"]["maxzoom"] <= 10
    assert render_call[-2:] == ["--threads", "0"]
    assert render_call[render_call.index("--store") + 1] == str(config.store_dir)


def test_failed_render_is_rerun_on_next_run(tmp_path: Path) -> None:
    config = _config(tmp_path, renderer=fake_renderer(tmp_path, exit_code=1, partial=True))
    fetcher = _sweden_fetcher()
    with pytest.raises(StageError):
        _run(config, fetcher)

    config = config.with_overrides(renderer=tuple(fake_renderer(tmp_path)))
    _run(config, fetcher)

    assert len(tool_calls(list(config.renderer))) == 2
    converted = config.output_dir / "se_sweden.pmtiles"
    assert converted.read_bytes() == b"pmtiles:rendered:" + EXTRACT


def test_failed_convert_is_rerun_and_not_recorded(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        keep_rendered=True,
        converter=fake_converter(tmp_path, exit_code=1, partial=True),
    )
    fetcher = _sweden_fetcher()
    with pytest.raises(StageError):
        _run(config, fetcher)
    assert not config.manifest_path.exists()

    config = config.with_overrides(converter=tuple(fake_converter(tmp_path)))
    manifest = _run(config, fetcher)

    assert len(tool_calls(list(config.converter))) == 2
    assert len(tool_calls(list(config.renderer))) == 1
    converted = config.output_dir / "se_sweden.pmtiles"
    assert converted.read_bytes() == b"pmtiles:rendered:" + EXTRACT
    assert manifest.entries[0].size_bytes == converted.stat().st_size
