"""Domain models shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import numpy as np


@dataclass(frozen=True, slots=True)
class BBox:
    """Axis-aligned bounding box in the units of its CRS."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def __post_init__(self) -> None:
        if self.xmin > self.xmax or self.ymin > self.ymax:
            raise ValueError(
                f"Invalid bounding box: ({self.xmin}, {self.ymin}, {self.xmax}, {self.ymax})"
            )

    @classmethod
    def from_bounds(cls, bounds: Any) -> BBox:
        xmin, ymin, xmax, ymax = (float(item) for item in bounds)
        return cls(xmin=xmin, ymin=ymin, xmax=xmax, ymax=ymax)

    def buffered(self, distance: float) -> BBox:
        return BBox(
            xmin=self.xmin - distance,
            ymin=self.ymin - distance,
            xmax=self.xmax + distance,
            ymax=self.ymax + distance,
        )

    @property
    def xlim(self) -> tuple[float, float]:
        return (self.xmin, self.xmax)

    @property
    def ylim(self) -> tuple[float, float]:
        return (self.ymin, self.ymax)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.xmin, self.ymin, self.xmax, self.ymax)


@dataclass(frozen=True, slots=True)
class RasterGrid:
    """A single-band raster: values, affine transform, CRS and nodata sentinel.

    `values` is a 2-D array indexed (row, col). `transform` maps pixel corner
    coordinates (col, row) to CRS coordinates. After masking, `nodata` is
    None and missing cells hold NaN.
    """

    values: np.ndarray
    transform: Any
    crs: Any = None
    nodata: float | None = None

    def __post_init__(self) -> None:
        if self.values.ndim != 2:
            raise ValueError(f"RasterGrid expects a 2-D array, got shape {self.values.shape}")

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def bounds(self) -> BBox:
        x0, y0 = self.transform * (0, 0)
        x1, y1 = self.transform * (self.width, self.height)
        return BBox(xmin=min(x0, x1), ymin=min(y0, y1), xmax=max(x0, x1), ymax=max(y0, y1))

    @property
    def is_masked(self) -> bool:
        return self.nodata is None and np.issubdtype(self.values.dtype, np.floating)

    def replace(self, **changes: Any) -> RasterGrid:
        data = {
            "values": self.values,
            "transform": self.transform,
            "crs": self.crs,
            "nodata": self.nodata,
        }
        data.update(changes)
        return RasterGrid(**data)


@dataclass(frozen=True, slots=True)
class LegendEntry:
    label: str
    color: str
    kind: str = "patch"


@dataclass(slots=True)
class SessionReport:
    """What a session run produced, in the order it produced it."""

    name: str
    started_at_utc: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    artifacts: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)
    layers: dict[str, Mapping[str, Any]] = field(default_factory=dict)

    def add_artifact(self, path: Any) -> None:
        self.artifacts.append(str(path))

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "started_at_utc": self.started_at_utc,
            "artifacts": list(self.artifacts),
            "warnings": list(self.warnings),
            "infos": list(self.infos),
            "layers": {key: dict(value) for key, value in self.layers.items()},
        }
