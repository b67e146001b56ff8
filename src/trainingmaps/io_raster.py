"""Raster loading, georeferencing and nodata masking."""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any

import numpy as np
import rasterio
from rasterio.errors import NotGeoreferencedWarning
from rasterio.transform import Affine

from .models import RasterGrid
from .normalize import as_crs, crs_label

_LOGGER = logging.getLogger("trainingmaps.io_raster")


def read_raster(path: str | Path, *, band: int = 1) -> RasterGrid:
    """Read one band of a raster file.

    Files without georeferencing (plain TIFF/PNG exports) load with an
    identity transform and no CRS; pass them through `georeference`.
    """
    raster_path = Path(path)
    if not raster_path.exists():
        raise FileNotFoundError(f"Raster file not found: {raster_path}")
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", NotGeoreferencedWarning)
        with rasterio.open(raster_path) as src:
            if band < 1 or band > src.count:
                raise ValueError(f"Band {band} out of range; {raster_path} has {src.count} band(s)")
            values = src.read(band)
            transform = src.transform
            crs = src.crs.to_wkt() if src.crs is not None else None
            nodata = src.nodata
    if any(issubclass(item.category, NotGeoreferencedWarning) for item in caught):
        _LOGGER.info("%s carries no georeferencing; set it explicitly before use.", raster_path)
    grid = RasterGrid(
        values=values,
        transform=transform,
        crs=as_crs(crs) if crs is not None else None,
        nodata=float(nodata) if nodata is not None else None,
    )
    _LOGGER.debug(
        "Read raster %s: %dx%d, crs=%s, nodata=%s",
        raster_path,
        grid.width,
        grid.height,
        crs_label(grid.crs),
        grid.nodata,
    )
    return grid


def georeference(
    grid: RasterGrid,
    *,
    x_offset: float,
    y_offset: float,
    x_delta: float,
    y_delta: float,
    crs: Any,
) -> RasterGrid:
    """Attach an origin, pixel size and CRS to a grid.

    `x_offset`/`y_offset` locate the outer corner of the first pixel; a
    north-up grid has a negative `y_delta`.
    """
    if x_delta == 0 or y_delta == 0:
        raise ValueError("Pixel size must be non-zero")
    transform = Affine(float(x_delta), 0.0, float(x_offset), 0.0, float(y_delta), float(y_offset))
    return grid.replace(transform=transform, crs=as_crs(crs))


def mask_nodata(grid: RasterGrid, nodata: float | None = None) -> RasterGrid:
    """Replace the nodata sentinel by NaN.

    `nodata` overrides the sentinel declared by the file. The result is a
    float grid with `nodata=None`; no cell keeps the sentinel value.
    """
    sentinel = grid.nodata if nodata is None else nodata
    values = grid.values.astype("float64", copy=True)
    if sentinel is not None:
        if np.isnan(sentinel):
            masked = np.isnan(values)
        else:
            masked = values == sentinel
        values[masked] = np.nan
        _LOGGER.debug("Masked %d nodata cells (sentinel=%s)", int(masked.sum()), sentinel)
    return grid.replace(values=values, nodata=None)


def valid_range(grid: RasterGrid) -> tuple[float, float] | None:
    """Min/max of valid samples, or None when every cell is masked."""
    values = grid.values.astype("float64")
    if grid.nodata is not None:
        values = np.where(values == grid.nodata, np.nan, values)
    if np.all(np.isnan(values)):
        return None
    return (float(np.nanmin(values)), float(np.nanmax(values)))
