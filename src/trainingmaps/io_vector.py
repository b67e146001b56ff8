"""Vector dataset loading and GeoJSON export."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Sequence

import geopandas as gpd
import pandas as pd

from .normalize import to_crs

_LOGGER = logging.getLogger("trainingmaps.io_vector")

GEOJSON_CRS = "EPSG:4326"


def _first_existing_column(columns: Iterable[str], candidates: Sequence[str]) -> str | None:
    existing = {str(col).lower(): str(col) for col in columns}
    for candidate in candidates:
        match = existing.get(candidate.lower())
        if match:
            return match
    return None


def _is_url(source: str | Path) -> bool:
    return isinstance(source, str) and source.startswith(("http://", "https://"))


def _require_local_file(path: str | Path) -> Path:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Input file not found: {p}")
    return p


def read_points_csv(
    path: str | Path,
    *,
    lon_col: str = "lon",
    lat_col: str = "lat",
    crs: Any = 4326,
) -> gpd.GeoDataFrame:
    """Read a table with longitude/latitude columns into a point layer.

    The coordinate columns become the geometry and are dropped from the
    attribute table.
    """
    csv_path = _require_local_file(path)
    table = pd.read_csv(csv_path)

    lon_name = _first_existing_column(table.columns, [lon_col])
    lat_name = _first_existing_column(table.columns, [lat_col])
    if lon_name is None or lat_name is None:
        cols = ", ".join(str(c) for c in table.columns)
        raise ValueError(
            f"CSV {csv_path} is missing coordinate columns '{lon_col}'/'{lat_col}'. "
            f"Available columns: {cols}"
        )

    lon = pd.to_numeric(table[lon_name], errors="coerce")
    lat = pd.to_numeric(table[lat_name], errors="coerce")
    bad_rows = [int(idx) for idx in table.index[lon.isna() | lat.isna()]]
    if bad_rows:
        raise ValueError(
            f"CSV {csv_path} has missing or non-numeric coordinates in rows: "
            + ", ".join(str(idx) for idx in bad_rows[:12])
        )

    attributes = table.drop(columns=[lon_name, lat_name])
    return gpd.GeoDataFrame(
        attributes,
        geometry=gpd.points_from_xy(lon, lat),
        crs=crs,
    )


def read_vector(source: str | Path, *, layer: str | None = None) -> gpd.GeoDataFrame:
    """Read GeoJSON, Shapefile or any OGR-readable source (file path or URL)."""
    if not _is_url(source):
        source = _require_local_file(source)
    kwargs: dict[str, Any] = {}
    if layer is not None:
        kwargs["layer"] = layer
    frame = gpd.read_file(source, **kwargs)
    _LOGGER.debug("Read %d features from %s", len(frame), source)
    return frame


def load_natural_earth(source: str | Path) -> gpd.GeoDataFrame:
    """Load Natural Earth admin-0 country polygons (local file or download URL)."""
    world = read_vector(source)
    if world.crs is None:
        # Natural Earth ships in WGS84; some extracts drop the .prj sidecar.
        world = world.set_crs(GEOJSON_CRS)
    return world


def filter_by_attribute(
    frame: gpd.GeoDataFrame,
    candidates: Sequence[str],
    value: str,
) -> gpd.GeoDataFrame:
    """Keep rows whose attribute (first matching candidate column) equals `value`.

    Column lookup is case-insensitive so that `continent` matches both the
    lowercase R-package schema and the uppercase shapefile schema.
    """
    column = _first_existing_column(frame.columns, candidates)
    if column is None:
        cols = ", ".join(str(c) for c in frame.columns)
        raise ValueError(
            f"None of the columns {', '.join(candidates)} exist. Available columns: {cols}"
        )
    mask = frame[column].astype(str).str.strip().str.casefold() == value.strip().casefold()
    return frame[mask]


def describe_layer(frame: gpd.GeoDataFrame) -> dict[str, Any]:
    geometry_types = sorted(
        {str(item) for item in frame.geometry.geom_type.dropna().unique().tolist()}
    )
    return {
        "rows": int(len(frame)),
        "columns": [str(col) for col in frame.columns if col != frame.geometry.name],
        "geometry_types": geometry_types,
        "crs": frame.crs.to_string() if frame.crs is not None else None,
    }


def export_geojson(frame: gpd.GeoDataFrame, path: str | Path) -> Path:
    """Write `frame` as GeoJSON in EPSG:4326, replacing any existing file."""
    if frame.crs is None:
        raise ValueError("Cannot export a layer without CRS to GeoJSON")
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if out_path.exists():
        out_path.unlink()
    out = to_crs(frame, GEOJSON_CRS)
    out.to_file(out_path, driver="GeoJSON")
    _LOGGER.info("Wrote %d features to %s", len(out), out_path)
    return out_path
