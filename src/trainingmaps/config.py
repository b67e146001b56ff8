"""Typed configuration loader for `config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, cast

import yaml


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected mapping for '{field_name}'")
    return cast(Mapping[str, Any], value)


def _str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Expected integer for '{field_name}'")
    return value


def _float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Expected float for '{field_name}'")
    if isinstance(value, (int, float)):
        return float(value)
    raise ValueError(f"Expected float for '{field_name}'")


def _bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"Expected bool for '{field_name}'")
    return value


def _float_pair(value: Any, field_name: str) -> tuple[float, float]:
    if not isinstance(value, list) or len(value) != 2:
        raise ValueError(f"Expected two-item list for '{field_name}'")
    low = _float(value[0], f"{field_name}[0]")
    high = _float(value[1], f"{field_name}[1]")
    if low >= high:
        raise ValueError(f"'{field_name}' must be increasing")
    return (low, high)


def _crs(value: Any, field_name: str) -> str:
    # YAML users write both `4326` and `"EPSG:4326"`.
    if isinstance(value, int) and not isinstance(value, bool):
        return f"EPSG:{value}"
    return _str(value, field_name)


def _is_url(raw: str) -> bool:
    return raw.startswith(("http://", "https://"))


def _path_from_cfg(value: Any, field_name: str, root_dir: Path) -> Path:
    raw = _str(value, field_name)
    p = Path(raw)
    return p if p.is_absolute() else root_dir / p


def _source_from_cfg(value: Any, field_name: str, root_dir: Path) -> str | Path:
    raw = _str(value, field_name)
    if _is_url(raw):
        return raw
    return _path_from_cfg(raw, field_name, root_dir)


def _url(value: Any, field_name: str) -> str:
    raw = _str(value, field_name)
    if not _is_url(raw):
        raise ValueError(f"Expected http(s) URL for '{field_name}'")
    return raw.rstrip("/")


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    name: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ProjectConfig:
        return cls(name=_str(raw.get("name"), "project.name"))


@dataclass(frozen=True, slots=True)
class PathsConfig:
    points_csv: Path
    line_geojson: Path
    polygon_shp: Path
    point_shp: Path
    point_geojson: Path
    polygon_geojson: Path
    sst_raster: Path
    natural_earth_countries: str | Path
    output_dir: Path
    figures_dir: Path
    maps_dir: Path
    geojson_dir: Path
    logs_dir: Path

    @property
    def session_inputs(self) -> dict[str, tuple[Path, ...]]:
        return {
            "session1": (self.points_csv, self.line_geojson, self.polygon_shp, self.point_shp),
            "session2": (self.points_csv, self.line_geojson, self.polygon_shp),
            "session3": (self.point_geojson, self.line_geojson, self.polygon_geojson),
        }

    @property
    def build_directories(self) -> tuple[Path, ...]:
        return (
            self.output_dir,
            self.figures_dir,
            self.maps_dir,
            self.geojson_dir,
            self.logs_dir,
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> PathsConfig:
        return cls(
            points_csv=_path_from_cfg(raw.get("points_csv"), "paths.points_csv", root_dir),
            line_geojson=_path_from_cfg(raw.get("line_geojson"), "paths.line_geojson", root_dir),
            polygon_shp=_path_from_cfg(raw.get("polygon_shp"), "paths.polygon_shp", root_dir),
            point_shp=_path_from_cfg(raw.get("point_shp"), "paths.point_shp", root_dir),
            point_geojson=_path_from_cfg(raw.get("point_geojson"), "paths.point_geojson", root_dir),
            polygon_geojson=_path_from_cfg(
                raw.get("polygon_geojson"), "paths.polygon_geojson", root_dir
            ),
            sst_raster=_path_from_cfg(raw.get("sst_raster"), "paths.sst_raster", root_dir),
            natural_earth_countries=_source_from_cfg(
                raw.get("natural_earth_countries"), "paths.natural_earth_countries", root_dir
            ),
            output_dir=_path_from_cfg(raw.get("output_dir"), "paths.output_dir", root_dir),
            figures_dir=_path_from_cfg(raw.get("figures_dir"), "paths.figures_dir", root_dir),
            maps_dir=_path_from_cfg(raw.get("maps_dir"), "paths.maps_dir", root_dir),
            geojson_dir=_path_from_cfg(raw.get("geojson_dir"), "paths.geojson_dir", root_dir),
            logs_dir=_path_from_cfg(raw.get("logs_dir"), "paths.logs_dir", root_dir),
        )


@dataclass(frozen=True, slots=True)
class CrsConfig:
    target: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> CrsConfig:
        return cls(target=_crs(raw.get("target"), "crs.target"))


@dataclass(frozen=True, slots=True)
class CsvConfig:
    lon_column: str
    lat_column: str
    crs: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> CsvConfig:
        lon_column = _str(raw.get("lon_column"), "csv.lon_column")
        lat_column = _str(raw.get("lat_column"), "csv.lat_column")
        if lon_column == lat_column:
            raise ValueError("csv.lon_column and csv.lat_column must differ")
        return cls(
            lon_column=lon_column,
            lat_column=lat_column,
            crs=_crs(raw.get("crs"), "csv.crs"),
        )


@dataclass(frozen=True, slots=True)
class SourcesConfig:
    thames_estuary: str
    biodiversity_hotspots: str
    active_faults: str
    earthquakes_feed: str
    where: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> SourcesConfig:
        return cls(
            thames_estuary=_url(raw.get("thames_estuary"), "sources.thames_estuary"),
            biodiversity_hotspots=_url(
                raw.get("biodiversity_hotspots"), "sources.biodiversity_hotspots"
            ),
            active_faults=_url(raw.get("active_faults"), "sources.active_faults"),
            earthquakes_feed=_url(raw.get("earthquakes_feed"), "sources.earthquakes_feed"),
            where=_str(raw.get("where", "1=1"), "sources.where"),
        )


@dataclass(frozen=True, slots=True)
class HttpConfig:
    request_timeout_s: int
    user_agent: str
    page_size: int

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> HttpConfig:
        request_timeout_s = _int(raw.get("request_timeout_s"), "http.request_timeout_s")
        page_size = _int(raw.get("page_size", 1000), "http.page_size")
        if request_timeout_s <= 0:
            raise ValueError("http.request_timeout_s must be > 0")
        if page_size <= 0:
            raise ValueError("http.page_size must be > 0")
        return cls(
            request_timeout_s=request_timeout_s,
            user_agent=_str(raw.get("user_agent"), "http.user_agent"),
            page_size=page_size,
        )


@dataclass(frozen=True, slots=True)
class StaticConfig:
    width_in: float
    height_in: float
    dpi: int
    format: str
    theme: str
    basemap: str
    zoom_buffer_deg: float

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> StaticConfig:
        width_in = _float(raw.get("width_in"), "static.width_in")
        height_in = _float(raw.get("height_in"), "static.height_in")
        dpi = _int(raw.get("dpi"), "static.dpi")
        if width_in <= 0 or height_in <= 0:
            raise ValueError("static.width_in and static.height_in must be > 0")
        if dpi <= 0:
            raise ValueError("static.dpi must be > 0")
        basemap = _str(raw.get("basemap", "none"), "static.basemap").casefold()
        allowed = {"none", "flat", "satellite"}
        if basemap not in allowed:
            raise ValueError("static.basemap must be one of: " + ", ".join(sorted(allowed)))
        zoom_buffer_deg = _float(raw.get("zoom_buffer_deg", 0.05), "static.zoom_buffer_deg")
        if zoom_buffer_deg < 0:
            raise ValueError("static.zoom_buffer_deg must be >= 0")
        return cls(
            width_in=width_in,
            height_in=height_in,
            dpi=dpi,
            format=_str(raw.get("format", "png"), "static.format").casefold(),
            theme=_str(raw.get("theme", "publication"), "static.theme").casefold(),
            basemap=basemap,
            zoom_buffer_deg=zoom_buffer_deg,
        )


@dataclass(frozen=True, slots=True)
class InteractiveConfig:
    street_tiles: str
    light_tiles: str
    dark_tiles: str
    satellite_tiles: str
    collapsed_layers_control: bool

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> InteractiveConfig:
        return cls(
            street_tiles=_str(raw.get("street_tiles"), "interactive.street_tiles"),
            light_tiles=_str(raw.get("light_tiles"), "interactive.light_tiles"),
            dark_tiles=_str(raw.get("dark_tiles"), "interactive.dark_tiles"),
            satellite_tiles=_str(raw.get("satellite_tiles"), "interactive.satellite_tiles"),
            collapsed_layers_control=_bool(
                raw.get("collapsed_layers_control", False),
                "interactive.collapsed_layers_control",
            ),
        )


@dataclass(frozen=True, slots=True)
class RasterConfig:
    nodata: float
    x_offset: float
    y_offset: float
    x_delta: float
    y_delta: float
    crs: str
    palette: str
    reverse: bool
    domain: tuple[float, float]
    legend_domain: tuple[float, float]
    legend_title: str
    opacity: float

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> RasterConfig:
        x_delta = _float(raw.get("x_delta"), "raster.x_delta")
        y_delta = _float(raw.get("y_delta"), "raster.y_delta")
        if x_delta == 0 or y_delta == 0:
            raise ValueError("raster.x_delta and raster.y_delta must be non-zero")
        opacity = _float(raw.get("opacity", 0.8), "raster.opacity")
        if not 0.0 <= opacity <= 1.0:
            raise ValueError("raster.opacity must be between 0 and 1")
        return cls(
            nodata=_float(raw.get("nodata"), "raster.nodata"),
            x_offset=_float(raw.get("x_offset"), "raster.x_offset"),
            y_offset=_float(raw.get("y_offset"), "raster.y_offset"),
            x_delta=x_delta,
            y_delta=y_delta,
            crs=_crs(raw.get("crs"), "raster.crs"),
            palette=_str(raw.get("palette"), "raster.palette"),
            reverse=_bool(raw.get("reverse", False), "raster.reverse"),
            domain=_float_pair(raw.get("domain"), "raster.domain"),
            legend_domain=_float_pair(raw.get("legend_domain"), "raster.legend_domain"),
            legend_title=_str(raw.get("legend_title"), "raster.legend_title"),
            opacity=opacity,
        )


@dataclass(frozen=True, slots=True)
class AppConfig:
    source_path: Path
    project: ProjectConfig
    paths: PathsConfig
    crs: CrsConfig
    csv: CsvConfig
    sources: SourcesConfig
    http: HttpConfig
    static: StaticConfig
    interactive: InteractiveConfig
    raster: RasterConfig

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], source_path: Path) -> AppConfig:
        root_dir = source_path.parent.resolve()
        return cls(
            source_path=source_path.resolve(),
            project=ProjectConfig.from_mapping(_mapping(raw.get("project"), "project")),
            paths=PathsConfig.from_mapping(_mapping(raw.get("paths"), "paths"), root_dir),
            crs=CrsConfig.from_mapping(_mapping(raw.get("crs"), "crs")),
            csv=CsvConfig.from_mapping(_mapping(raw.get("csv"), "csv")),
            sources=SourcesConfig.from_mapping(_mapping(raw.get("sources"), "sources")),
            http=HttpConfig.from_mapping(_mapping(raw.get("http"), "http")),
            static=StaticConfig.from_mapping(_mapping(raw.get("static"), "static")),
            interactive=InteractiveConfig.from_mapping(
                _mapping(raw.get("interactive"), "interactive")
            ),
            raster=RasterConfig.from_mapping(_mapping(raw.get("raster"), "raster")),
        )


def load_config(path: str | Path) -> AppConfig:
    """Load and validate the YAML config file into typed settings."""
    cfg_path = Path(path).resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if not isinstance(raw, Mapping):
        raise ValueError("Top-level config must be a YAML mapping")
    return AppConfig.from_mapping(cast(Mapping[str, Any], raw), cfg_path)
