"""Coordinate reference system normalization for vector layers and rasters."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import geopandas as gpd
import numpy as np
from pyproj import CRS, Transformer
from rasterio.warp import Resampling, calculate_default_transform, reproject
from rasterio.windows import Window
from rasterio.windows import transform as window_transform
from shapely.geometry import box

from .models import BBox, RasterGrid

_LOGGER = logging.getLogger("trainingmaps.normalize")

# Web Mercator is undefined at the poles.
WEB_MERCATOR_MAX_LAT = 85.0511


class CRSMismatchError(ValueError):
    """Raised when layers that must be combined do not share one CRS."""


def as_crs(value: Any) -> CRS:
    if isinstance(value, CRS):
        return value
    return CRS.from_user_input(value)


def same_crs(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    return as_crs(left).equals(as_crs(right))


def crs_label(value: Any) -> str:
    if value is None:
        return "<none>"
    crs = as_crs(value)
    epsg = crs.to_epsg()
    if epsg is not None:
        return f"EPSG:{epsg}"
    return crs.to_string()


def to_crs(
    frame: gpd.GeoDataFrame,
    target: Any,
    *,
    clip_to_area_of_use: bool = False,
) -> gpd.GeoDataFrame:
    """Reproject `frame` to `target`.

    A frame already in `target` is returned unchanged (the same object), so
    calling this repeatedly is a no-op. With `clip_to_area_of_use`, features
    are first clipped to the target CRS's published area of use, which keeps
    world layers finite in Web Mercator and polar projections.
    """
    if frame.crs is None:
        raise ValueError("Layer has no CRS; set one before reprojecting")
    target_crs = as_crs(target)
    if clip_to_area_of_use:
        frame = _clip_to_area_of_use(frame, target_crs)
    if same_crs(frame.crs, target_crs):
        return frame
    _LOGGER.debug("Reprojecting %d features %s -> %s", len(frame), crs_label(frame.crs), crs_label(target_crs))
    return frame.to_crs(target_crs)


def _clip_to_area_of_use(frame: gpd.GeoDataFrame, target_crs: CRS) -> gpd.GeoDataFrame:
    area = target_crs.area_of_use
    if area is None or not as_crs(frame.crs).is_geographic:
        return frame
    west, south, east, north = area.bounds
    if target_crs.equals(as_crs(3857)):
        south = max(south, -WEB_MERCATOR_MAX_LAT)
        north = min(north, WEB_MERCATOR_MAX_LAT)
    if west <= -180.0 and east >= 180.0 and south <= -90.0 and north >= 90.0:
        return frame
    if west > east:
        # Area crosses the antimeridian; clipping a lon/lat box would drop it.
        return frame
    clipped = frame.clip(box(west, south, east, north))
    return clipped[~clipped.geometry.is_empty]


def align_layers(layers: Mapping[str, gpd.GeoDataFrame], target: Any) -> dict[str, gpd.GeoDataFrame]:
    """Reproject every named layer to one target CRS, preserving order."""
    return {name: to_crs(frame, target) for name, frame in layers.items()}


def crs_report(layers: Mapping[str, Any]) -> dict[str, str]:
    """Map layer name to a readable CRS label (frames or rasters)."""
    return {name: crs_label(getattr(layer, "crs", None)) for name, layer in layers.items()}


def require_same_crs(layers: Mapping[str, Any]) -> CRS:
    """Return the shared CRS of all layers or raise `CRSMismatchError`."""
    if not layers:
        raise ValueError("No layers given")
    items = list(layers.items())
    first_name, first = items[0]
    if first.crs is None:
        raise CRSMismatchError(f"Layer '{first_name}' has no CRS")
    shared = as_crs(first.crs)
    mismatched = [
        f"{name}={crs_label(layer.crs)}"
        for name, layer in items[1:]
        if layer.crs is None or not same_crs(layer.crs, shared)
    ]
    if mismatched:
        raise CRSMismatchError(
            f"Layers do not share {first_name}'s CRS {crs_label(shared)}: " + ", ".join(mismatched)
        )
    return shared


def layer_bbox(frame: gpd.GeoDataFrame, buffer: float = 0.0) -> BBox:
    """Bounding box of all features, padded by `buffer` CRS units on every side."""
    if frame.empty:
        raise ValueError("Cannot compute the bounding box of an empty layer")
    return BBox.from_bounds(frame.total_bounds).buffered(buffer)


def transform_bbox(bbox: BBox, src: Any, dst: Any, *, densify_pts: int = 21) -> BBox:
    if same_crs(src, dst):
        return bbox
    transformer = Transformer.from_crs(as_crs(src), as_crs(dst), always_xy=True)
    return BBox.from_bounds(transformer.transform_bounds(*bbox.as_tuple(), densify_pts=densify_pts))


_RESAMPLING = {
    "nearest": Resampling.nearest,
    "bilinear": Resampling.bilinear,
    "cubic": Resampling.cubic,
}


def reproject_raster(grid: RasterGrid, target: Any, *, resampling: str = "nearest") -> RasterGrid:
    """Warp `grid` into `target`; a grid already in `target` is returned unchanged.

    Output is float with NaN for cells that are nodata in the source or fall
    outside it, so masked cells stay masked.
    """
    if grid.crs is None:
        raise ValueError("Raster has no CRS; georeference it before reprojecting")
    target_crs = as_crs(target)
    if same_crs(grid.crs, target_crs):
        return grid
    try:
        method = _RESAMPLING[resampling]
    except KeyError:
        raise ValueError(
            f"Unsupported resampling '{resampling}'. Use one of: " + ", ".join(sorted(_RESAMPLING))
        ) from None

    src_crs = as_crs(grid.crs)
    bounds = grid.bounds
    dst_transform, dst_width, dst_height = calculate_default_transform(
        src_crs.to_wkt(),
        target_crs.to_wkt(),
        grid.width,
        grid.height,
        left=bounds.xmin,
        bottom=bounds.ymin,
        right=bounds.xmax,
        top=bounds.ymax,
    )
    source = grid.values.astype("float64")
    if grid.nodata is not None:
        source = np.where(source == grid.nodata, np.nan, source)
    destination = np.full((dst_height, dst_width), np.nan, dtype="float64")
    reproject(
        source=source,
        destination=destination,
        src_transform=grid.transform,
        src_crs=src_crs.to_wkt(),
        src_nodata=np.nan,
        dst_transform=dst_transform,
        dst_crs=target_crs.to_wkt(),
        dst_nodata=np.nan,
        resampling=method,
    )
    _LOGGER.debug(
        "Reprojected raster %dx%d %s -> %dx%d %s",
        grid.width,
        grid.height,
        crs_label(src_crs),
        dst_width,
        dst_height,
        crs_label(target_crs),
    )
    return RasterGrid(values=destination, transform=dst_transform, crs=target_crs, nodata=None)


def clip_raster_latitude(
    grid: RasterGrid,
    *,
    min_lat: float = -WEB_MERCATOR_MAX_LAT,
    max_lat: float = WEB_MERCATOR_MAX_LAT,
) -> RasterGrid:
    """Crop the rows of a north-up geographic grid to a latitude band."""
    if grid.crs is None or not as_crs(grid.crs).is_geographic:
        raise ValueError("Latitude clipping needs a geographic (lon/lat) raster")
    if min_lat >= max_lat:
        raise ValueError("min_lat must be < max_lat")
    inverse = ~grid.transform
    _, row_top = inverse * (grid.bounds.xmin, max_lat)
    _, row_bottom = inverse * (grid.bounds.xmin, min_lat)
    first = max(int(np.ceil(min(row_top, row_bottom))), 0)
    last = min(int(np.floor(max(row_top, row_bottom))), grid.height)
    if first == 0 and last == grid.height:
        return grid
    if last <= first:
        raise ValueError(f"Raster has no rows between latitudes {min_lat} and {max_lat}")
    window = Window(col_off=0, row_off=first, width=grid.width, height=last - first)
    return grid.replace(
        values=grid.values[first:last, :],
        transform=window_transform(window, grid.transform),
    )
