from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import geopandas as gpd
import matplotlib
import numpy as np
import pytest
import rasterio
import yaml
from shapely.geometry import LineString, Point, box

matplotlib.use("Agg")

SITES = (
    ("Site A", 0.512, 51.481),
    ("Site B", 0.6035, 51.4952),
    ("Site C", 0.721, 51.5068),
)


def write_points_csv(path: Path, rows: Any = SITES) -> Path:
    lines = ["Name,lon,lat"] + [f"{name},{lon},{lat}" for name, lon, lat in rows]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def sites_frame(crs: Any = 4326) -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {"Name": [name for name, _, _ in SITES]},
        geometry=[Point(lon, lat) for _, lon, lat in SITES],
        crs=4326,
    ).to_crs(crs)


def transect_frame() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {"Name": ["Transect 1"]},
        geometry=[LineString([(0.498, 51.472), (0.634, 51.497), (0.742, 51.511)])],
        crs=4326,
    )


def study_area_frame() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {"Name": ["Study area"]},
        geometry=[box(0.47, 51.455, 0.77, 51.53)],
        crs=4326,
    )


def world_frame() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {
            "name": ["France", "Brazil", "Antarctica"],
            "continent": ["Europe", "South America", "Antarctica"],
        },
        geometry=[
            box(-5.0, 42.0, 8.0, 51.0),
            box(-70.0, -30.0, -40.0, 0.0),
            box(-180.0, -90.0, 180.0, -65.0),
        ],
        crs=4326,
    )


def sst_values() -> np.ndarray:
    """18x36 grid (10 degree cells) with a land mask of 255."""
    rows = np.arange(18, dtype="uint8")[:, None]
    cols = np.arange(36, dtype="uint8")[None, :]
    values = (rows * 7 + cols) % 250 + 1
    values[0, :] = 255
    values[5:8, 10:14] = 255
    return values.astype("uint8")


def write_plain_tiff(path: Path, values: np.ndarray) -> Path:
    """GeoTIFF with no CRS and no transform, like the NASA NEO RGB exports."""
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        width=values.shape[1],
        height=values.shape[0],
        count=1,
        dtype=values.dtype,
    ) as dst:
        dst.write(values, 1)
    return path


@pytest.fixture
def course_data(tmp_path: Path) -> dict[str, Path]:
    data_dir = tmp_path / "data"
    layers_dir = data_dir / "layers"
    layers_dir.mkdir(parents=True)

    paths = {
        "points_csv": write_points_csv(data_dir / "points.csv"),
        "line_geojson": data_dir / "line.geojson",
        "polygon_shp": layers_dir / "POLYGON.shp",
        "point_shp": layers_dir / "POINT.shp",
        "point_geojson": data_dir / "point.geojson",
        "polygon_geojson": data_dir / "polygon.geojson",
        "sst_raster": data_dir / "sst.tif",
        "natural_earth_countries": data_dir / "world.geojson",
    }
    transect_frame().to_file(paths["line_geojson"], driver="GeoJSON")
    # British National Grid so that the CRS check has something to align.
    study_area_frame().to_crs(27700).to_file(paths["polygon_shp"])
    sites_frame().to_file(paths["point_shp"])
    sites_frame().to_file(paths["point_geojson"], driver="GeoJSON")
    study_area_frame().to_file(paths["polygon_geojson"], driver="GeoJSON")
    write_plain_tiff(paths["sst_raster"], sst_values())
    world_frame().to_file(paths["natural_earth_countries"], driver="GeoJSON")
    return paths


def base_config() -> dict[str, Any]:
    return {
        "project": {"name": "training-test"},
        "paths": {
            "points_csv": "data/points.csv",
            "line_geojson": "data/line.geojson",
            "polygon_shp": "data/layers/POLYGON.shp",
            "point_shp": "data/layers/POINT.shp",
            "point_geojson": "data/point.geojson",
            "polygon_geojson": "data/polygon.geojson",
            "sst_raster": "data/sst.tif",
            "natural_earth_countries": "data/world.geojson",
            "output_dir": "build",
            "figures_dir": "build/figures",
            "maps_dir": "build/maps",
            "geojson_dir": "build/geojson",
            "logs_dir": "build/logs",
        },
        "crs": {"target": 4326},
        "csv": {"lon_column": "lon", "lat_column": "lat", "crs": 4326},
        "sources": {
            "thames_estuary": "https://example.test/thames/FeatureServer/0",
            "biodiversity_hotspots": "https://example.test/hotspots/FeatureServer/0",
            "active_faults": "https://example.test/faults/FeatureServer/0",
            "earthquakes_feed": "https://example.test/quakes.geojson",
        },
        "http": {"request_timeout_s": 5, "user_agent": "training-test/1.0", "page_size": 2},
        "static": {
            "width_in": 4,
            "height_in": 3,
            "dpi": 40,
            "format": "png",
            "theme": "publication",
            "basemap": "none",
        },
        "interactive": {
            "street_tiles": "OpenStreetMap.Mapnik",
            "light_tiles": "CartoDB.Positron",
            "dark_tiles": "CartoDB.DarkMatter",
            "satellite_tiles": "Esri.WorldImagery",
        },
        "raster": {
            "nodata": 255,
            "x_offset": -180,
            "y_offset": 90,
            "x_delta": 10,
            "y_delta": -10,
            "crs": 4326,
            "palette": "RdYlBu",
            "reverse": True,
            "domain": [1, 254],
            "legend_domain": [0, 35],
            "legend_title": "SST (C)",
            "opacity": 0.8,
        },
    }


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    """Write a config file into `tmp_path`; keyword arguments patch sections."""

    def _write(**sections: dict[str, Any]) -> Path:
        raw = base_config()
        for section, changes in sections.items():
            raw[section] = {**raw.get(section, {}), **changes}
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(raw, sort_keys=False), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def config_path(course_data: dict[str, Path], write_config: Callable[..., Path]) -> Path:
    return write_config()
