from __future__ import annotations

import json
from pathlib import Path

import geopandas as gpd
import pytest
from PIL import Image
from shapely.geometry import LineString, Point, box

from trainingmaps import sessions
from trainingmaps.config import load_config
from trainingmaps.io_vector import read_vector
from trainingmaps.sessions import PROJECTION_GALLERY, earthquake_popup, run_session1, run_session2, run_session3


def _remote_layers() -> dict[str, gpd.GeoDataFrame]:
    return {
        "thames": gpd.GeoDataFrame(
            {"NAME": ["Thames Estuary"]},
            geometry=[box(0.3, 51.4, 1.0, 51.6)],
            crs=4326,
        ),
        "hotspots": gpd.GeoDataFrame(
            {"Type": ["hotspot area", "outer limit"]},
            geometry=[box(-75.0, -20.0, -45.0, 5.0), box(-80.0, -25.0, -40.0, 10.0)],
            crs=4326,
        ),
        "faults": gpd.GeoDataFrame(
            {"name": ["North Anatolian"]},
            geometry=[LineString([(30.0, 40.7), (40.0, 40.0)])],
            crs=4326,
        ),
    }


def _earthquakes() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {
            "mag": [2.7, 5.1],
            "place": ["5 km SW of Volcano, Hawaii", "Off the coast of Honshu"],
            "time": [1760000000000, 1760003600000],
        },
        geometry=[Point(-155.3, 19.4), Point(142.4, 38.3)],
        crs=4326,
    )


class FakeFeatureServiceClient:
    def __init__(self, http_cfg, *, session=None) -> None:
        self.layers = _remote_layers()

    def query(self, layer_url: str, *, where: str = "1=1", out_fields: str = "*", page_size=None):
        for key, frame in self.layers.items():
            if f"/{key}/" in layer_url:
                return frame
        raise AssertionError(f"unexpected layer url {layer_url}")


@pytest.fixture
def offline_web(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sessions, "FeatureServiceClient", FakeFeatureServiceClient)
    monkeypatch.setattr(sessions, "fetch_geojson_feed", lambda url, http_cfg: _earthquakes())


class EmptyFeatureServiceClient(FakeFeatureServiceClient):
    def query(self, layer_url: str, *, where: str = "1=1", out_fields: str = "*", page_size=None):
        return gpd.GeoDataFrame(geometry=[], crs=4326)


@pytest.fixture
def empty_web(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sessions, "FeatureServiceClient", EmptyFeatureServiceClient)
    monkeypatch.setattr(sessions, "fetch_geojson_feed", lambda url, http_cfg: gpd.GeoDataFrame(geometry=[], crs=4326))


def _names(paths: list[str]) -> list[str]:
    return [Path(path).name for path in paths]


def test_session1_outputs(config_path: Path) -> None:
    cfg = load_config(config_path)

    report = run_session1(cfg)

    names = _names(report.artifacts)
    assert names[:4] == [
        "session1_points.png",
        "session1_line.png",
        "session1_polygon.png",
        "session1_combined.png",
    ]
    for view in PROJECTION_GALLERY:
        assert f"projection_{view.slug}.png" in names
    assert names[-2:] == ["point_shp.geojson", "points_csv.geojson"]
    assert any("Aligned all layers to EPSG:4326" in info for info in report.infos)
    assert any("Layers use different CRS" in warning for warning in report.warnings)
    assert report.layers["polygon"]["crs"] != "EPSG:4326"

    exported = read_vector(cfg.paths.geojson_dir / "points_csv.geojson")
    assert len(exported) == 3
    assert exported.crs.to_epsg() == 4326
    manifest = json.loads((cfg.paths.output_dir / "session1_manifest.json").read_text(encoding="utf-8"))
    assert manifest["artifacts"] == report.artifacts

    with Image.open(cfg.paths.figures_dir / "session1_combined.png") as image:
        assert image.size == (160, 120)


def test_session2_offline(config_path: Path) -> None:
    cfg = load_config(config_path)

    report = run_session2(cfg, include_web=False)

    assert _names(report.artifacts) == ["session2_local_map.png", "session2_local_map_typed.png"]
    assert any("--skip-web" in info for info in report.infos)


def test_session2_with_web_layers(config_path: Path, offline_web: None) -> None:
    cfg = load_config(config_path)

    report = run_session2(cfg)

    assert _names(report.artifacts) == [
        "session2_local_map.png",
        "session2_local_map_typed.png",
        "session2_thames_map.png",
        "session2_thames_map_zoom.png",
        "session2_hotspots_clean.png",
        "session2_hotspots_wsj.png",
        "biodiversity_hotspots_map.png",
    ]
    assert report.layers["biodiversity_hotspots"]["rows"] == 2
    with Image.open(cfg.paths.figures_dir / "biodiversity_hotspots_map.png") as image:
        assert image.size == (160, 120)


def test_session3_local_and_raster(config_path: Path) -> None:
    cfg = load_config(config_path)

    report = run_session3(cfg, include_web=False)

    assert _names(report.artifacts) == [
        "session3_basic.html",
        "session3_marker.html",
        "session3_base_layers.html",
        "session3_local_layers.html",
        "session3_sst.html",
    ]
    assert report.layers["sst"]["bounds"] == [-180.0, -90.0, 180.0, 90.0]
    sst_html = (cfg.paths.maps_dir / "session3_sst.html").read_text(encoding="utf-8")
    assert "data:image/png;base64," in sst_html
    local_html = (cfg.paths.maps_dir / "session3_local_layers.html").read_text(encoding="utf-8")
    assert "Name Site A" in local_html


def test_session3_with_web_layers(config_path: Path, offline_web: None) -> None:
    cfg = load_config(config_path)

    report = run_session3(cfg, include_raster=False)

    names = _names(report.artifacts)
    assert names[-3:] == ["session3_thames.html", "session3_earthquakes.html", "session3_faults.html"]
    assert any("--skip-raster" in info for info in report.infos)
    quakes_html = (cfg.paths.maps_dir / "session3_earthquakes.html").read_text(encoding="utf-8")
    assert "Off the coast of Honshu" in quakes_html


def test_session2_with_empty_web_layers(config_path: Path, empty_web: None) -> None:
    cfg = load_config(config_path)

    report = run_session2(cfg)

    assert _names(report.artifacts)[-1] == "biodiversity_hotspots_map.png"
    assert report.layers["biodiversity_hotspots"]["rows"] == 0
    assert report.layers["thames_estuary"]["rows"] == 0


def test_session3_with_empty_feed_and_layers(config_path: Path, empty_web: None) -> None:
    cfg = load_config(config_path)

    report = run_session3(cfg, include_raster=False)

    assert _names(report.artifacts)[-3:] == [
        "session3_thames.html",
        "session3_earthquakes.html",
        "session3_faults.html",
    ]
    assert report.layers["earthquakes"]["rows"] == 0
    quakes_html = (cfg.paths.maps_dir / "session3_earthquakes.html").read_text(encoding="utf-8")
    assert "Circle size proportional to magnitude" in quakes_html


def test_session_failure_propagates(config_path: Path, course_data: dict[str, Path]) -> None:
    course_data["points_csv"].unlink()

    with pytest.raises(FileNotFoundError):
        run_session1(load_config(config_path))


def test_earthquake_popup() -> None:
    text = earthquake_popup({"place": "Off the coast of Honshu", "mag": 5.1, "time": 0})

    assert text == "Location: Off the coast of Honshu <br> Magnitude: 5.1 <br> Date: 1970-01-01 00:00:00 UTC"
    assert earthquake_popup({"place": "x", "mag": 1.0, "time": None}).endswith("Date: unknown")
