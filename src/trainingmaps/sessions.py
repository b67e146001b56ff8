"""Training session pipelines: load, normalize, style, render/export."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

import geopandas as gpd
import pandas as pd

from .config import AppConfig
from .interactive_map import InteractiveMap
from .io_raster import georeference, mask_nodata, read_raster, valid_range
from .io_vector import (
    describe_layer,
    export_geojson,
    filter_by_attribute,
    load_natural_earth,
    read_points_csv,
    read_vector,
)
from .models import SessionReport
from .normalize import align_layers, crs_label, crs_report, layer_bbox, require_same_crs, to_crs
from .remote import FeatureServiceClient, fetch_geojson_feed
from .static_map import StaticMap
from .style import CHANNEL_FILL, CategoryPalette, assign_category
from .util import ensure_directories, write_json

_LOGGER = logging.getLogger("trainingmaps.sessions")

LONDON_LON_LAT = (-0.1276, 51.5074)
STUDY_AREA_TITLE = "Study area with monitoring site and transect"
HOTSPOTS_TITLE = "Global Biodiversity Hotspots (2016)"
HOTSPOTS_SUBTITLE = "Hotspots over a Natural Earth basemap"
QUICK_LOOK_DPI = 100

LINE_POINT_COLORS = {"Transect": "green4", "Monitoring site": "red3"}
POLYGON_FILL_COLORS = {"Study area": "purple4"}
HOTSPOT_TYPE_COLORS = {"hotspot area": "tomato", "outer limit": "goldenrod"}


@dataclass(frozen=True, slots=True)
class ProjectionView:
    slug: str
    crs: str
    title: str
    subset: tuple[tuple[str, ...], str] | None = None
    xlim: tuple[float, float] | None = None
    ylim: tuple[float, float] | None = None
    extent_crs: str | None = None


PROJECTION_GALLERY: tuple[ProjectionView, ...] = (
    ProjectionView("web_mercator", "EPSG:3857", "Web Mercator (EPSG:3857)"),
    ProjectionView("robinson", "+proj=robin", "Robinson projection"),
    ProjectionView("mollweide", "+proj=moll", "Mollweide projection"),
    ProjectionView("wgs84", "EPSG:4326", "WGS84 (EPSG:4326), lon/lat"),
    ProjectionView("equal_earth", "EPSG:8857", "World Map (Equal Earth - EPSG:8857)"),
    ProjectionView(
        "europe_laea",
        "EPSG:3035",
        "Europe (ETRS89 / LAEA Europe - EPSG:3035)",
        subset=(("continent",), "Europe"),
        xlim=(-15.0, 45.0),
        ylim=(33.0, 70.0),
        extent_crs="EPSG:4326",
    ),
    ProjectionView(
        "antarctica",
        "EPSG:3031",
        "Antarctica (Lambert Azimuthal Equal-Area - EPSG:3031)",
        subset=(("name", "admin", "name_long"), "Antarctica"),
    ),
)


def format_session_lines(report: SessionReport) -> Sequence[str]:
    lines: list[str] = []
    lines.extend(f"[INFO] {msg}" for msg in report.infos)
    lines.extend(f"[WARN] {msg}" for msg in report.warnings)
    lines.extend(f"[FILE] {path}" for path in report.artifacts)
    lines.append(f"[OK] {report.name} completed: {len(report.artifacts)} files written.")
    return lines


def _record_layer(report: SessionReport, name: str, frame: gpd.GeoDataFrame) -> None:
    summary = describe_layer(frame)
    report.layers[name] = summary
    _LOGGER.info(
        "%s: %d rows, geometry=%s, crs=%s, columns=%s",
        name,
        summary["rows"],
        ",".join(summary["geometry_types"]) or "-",
        summary["crs"],
        ",".join(summary["columns"]) or "-",
    )


def _check_crs(report: SessionReport, layers: Mapping[str, Any]) -> bool:
    labels = crs_report(layers)
    report.add_info("CRS check: " + ", ".join(f"{name}={label}" for name, label in labels.items()))
    if len(set(labels.values())) > 1:
        report.add_warning("Layers use different CRS: " + ", ".join(sorted(set(labels.values()))))
        return False
    return True


def _figure_path(cfg: AppConfig, name: str) -> Path:
    return cfg.paths.figures_dir / f"{name}.{cfg.static.format}"


def _save_static(
    cfg: AppConfig,
    report: SessionReport,
    builder: StaticMap,
    name: str,
    *,
    dpi: int | None = None,
) -> Path:
    out_path = builder.save(
        _figure_path(cfg, name),
        width_in=cfg.static.width_in,
        height_in=cfg.static.height_in,
        dpi=dpi or cfg.static.dpi,
        format=cfg.static.format,
    )
    if builder.basemap_warning is not None:
        report.add_warning(builder.basemap_warning)
    report.add_artifact(out_path)
    return out_path


def _save_interactive(cfg: AppConfig, report: SessionReport, builder: InteractiveMap, name: str) -> Path:
    out_path = builder.save(cfg.paths.maps_dir / f"{name}.html")
    report.add_artifact(out_path)
    return out_path


def _load_local_layers(cfg: AppConfig, report: SessionReport) -> dict[str, gpd.GeoDataFrame]:
    layers = {
        "points": read_points_csv(
            cfg.paths.points_csv,
            lon_col=cfg.csv.lon_column,
            lat_col=cfg.csv.lat_column,
            crs=cfg.csv.crs,
        ),
        "line": read_vector(cfg.paths.line_geojson),
        "polygon": read_vector(cfg.paths.polygon_shp),
    }
    for name, frame in layers.items():
        _record_layer(report, name, frame)
    return layers


def _write_manifest(cfg: AppConfig, report: SessionReport) -> None:
    manifest_path = cfg.paths.output_dir / f"{report.name}_manifest.json"
    write_json(manifest_path, report.to_dict())
    _LOGGER.info("Wrote %s", manifest_path)


def run_session1(cfg: AppConfig) -> SessionReport:
    """Load CSV/GeoJSON/Shapefile layers, check CRS, combine, project, export."""
    report = SessionReport(name="session1")
    ensure_directories(cfg.paths.build_directories)

    layers = _load_local_layers(cfg, report)
    for name, frame in layers.items():
        quick_look = StaticMap(theme="minimal").add_layer(frame).set_labels(title=name.capitalize())
        _save_static(cfg, report, quick_look, f"session1_{name}", dpi=QUICK_LOOK_DPI)

    if not _check_crs(report, layers):
        layers = align_layers(layers, cfg.crs.target)
        report.add_info(f"Aligned all layers to {crs_label(cfg.crs.target)}")
    require_same_crs(layers)

    combined = (
        StaticMap(theme="minimal")
        .add_layer(layers["polygon"], fill="lightgrey")
        .add_layer(layers["line"], color="blue")
        .add_layer(layers["points"], color="red")
        .set_labels(title="Combined spatial layers")
    )
    _save_static(cfg, report, combined, "session1_combined")

    world = load_natural_earth(cfg.paths.natural_earth_countries)
    _record_layer(report, "world", world)
    for view in PROJECTION_GALLERY:
        frame = world if view.subset is None else filter_by_attribute(world, *view.subset)
        if frame.empty:
            report.add_warning(f"Projection view '{view.slug}' has no features; skipped")
            continue
        builder = (
            StaticMap(crs=view.crs, theme="minimal")
            .add_layer(frame, color="grey40", linewidth=0.2)
            .set_labels(title=view.title)
        )
        if view.xlim is not None and view.ylim is not None:
            builder.set_extent(view.xlim, view.ylim, crs=view.extent_crs)
        _save_static(cfg, report, builder, f"projection_{view.slug}", dpi=QUICK_LOOK_DPI)

    point_shp = read_vector(cfg.paths.point_shp)
    _record_layer(report, "point_shp", point_shp)
    for name, frame in (("point_shp", point_shp), ("points_csv", layers["points"])):
        out_path = export_geojson(frame, cfg.paths.geojson_dir / f"{name}.geojson")
        report.add_artifact(out_path)
        report.add_info(f"Exported {len(frame)} features to {out_path.name}")

    _write_manifest(cfg, report)
    return report


def _typed_layers(layers: Mapping[str, gpd.GeoDataFrame]) -> dict[str, gpd.GeoDataFrame]:
    return {
        "points": assign_category(layers["points"], "Monitoring site"),
        "line": assign_category(layers["line"], "Transect"),
        "polygon": assign_category(layers["polygon"], "Study area"),
    }


def _typed_map(
    typed: Mapping[str, gpd.GeoDataFrame],
    *,
    subtitle: str,
    theme: str,
    underlay: gpd.GeoDataFrame | None = None,
) -> StaticMap:
    line_point_palette = CategoryPalette(field="type", colors=LINE_POINT_COLORS)
    polygon_palette = CategoryPalette(field="type", colors=POLYGON_FILL_COLORS, channel=CHANNEL_FILL)
    builder = StaticMap(theme=theme)
    if underlay is not None:
        builder.add_layer(underlay, fill="lightblue", color="none")
    return (
        builder.add_layer(typed["polygon"], palette=polygon_palette, color="none")
        .add_layer(typed["line"], palette=line_point_palette, linewidth=0.8)
        .add_layer(typed["points"], palette=line_point_palette, markersize=24)
        .set_labels(title=STUDY_AREA_TITLE, subtitle=subtitle, legend_title="type")
    )


def _hotspots_map(
    world: gpd.GeoDataFrame,
    hotspots: gpd.GeoDataFrame,
    *,
    theme: str,
    world_fill: str,
) -> StaticMap:
    palette = CategoryPalette(field="Type", colors=HOTSPOT_TYPE_COLORS, channel=CHANNEL_FILL)
    return (
        StaticMap(theme=theme)
        .add_layer(world, fill=world_fill, color="white", linewidth=0.2)
        .add_layer(hotspots, palette=palette, color="none", alpha=0.7)
        .set_labels(title=HOTSPOTS_TITLE, subtitle=HOTSPOTS_SUBTITLE)
    )


def run_session2(cfg: AppConfig, *, include_web: bool = True) -> SessionReport:
    """Publication-ready static maps of local layers, web layers and hotspots."""
    report = SessionReport(name="session2")
    ensure_directories(cfg.paths.build_directories)
    target = cfg.crs.target

    layers = align_layers(_load_local_layers(cfg, report), target)
    require_same_crs(layers)
    report.add_info(f"Local layers in {crs_label(target)}")

    local_map = (
        StaticMap(theme="minimal")
        .add_layer(layers["polygon"], color="red3")
        .add_layer(layers["line"], linewidth=0.8)
        .add_layer(layers["points"], markersize=24)
        .set_labels(title=STUDY_AREA_TITLE, subtitle="An example of a publication-ready static map")
    )
    _save_static(cfg, report, local_map, "session2_local_map")

    typed = _typed_layers(layers)
    typed_map = _typed_map(
        typed,
        subtitle="An example of a publication-ready static map",
        theme="minimal",
    )
    _save_static(cfg, report, typed_map, "session2_local_map_typed")

    if not include_web:
        report.add_info("Web layers skipped (--skip-web).")
        _write_manifest(cfg, report)
        return report

    client = FeatureServiceClient(cfg.http)
    thames = to_crs(client.query(cfg.sources.thames_estuary, where=cfg.sources.where), target)
    _record_layer(report, "thames_estuary", thames)
    thames_map = _typed_map(
        typed,
        subtitle="Local layers over Thames Estuary web layer",
        theme="bw",
        underlay=thames,
    )
    if cfg.static.basemap != "none":
        thames_map.set_basemap(cfg.static.basemap)
    _save_static(cfg, report, thames_map, "session2_thames_map")

    zoom = layer_bbox(layers["points"], buffer=cfg.static.zoom_buffer_deg)
    thames_map.set_extent(zoom.xlim, zoom.ylim, expand=False)
    _save_static(cfg, report, thames_map, "session2_thames_map_zoom")

    hotspots = to_crs(client.query(cfg.sources.biodiversity_hotspots, where=cfg.sources.where), target)
    _record_layer(report, "biodiversity_hotspots", hotspots)
    world = to_crs(load_natural_earth(cfg.paths.natural_earth_countries), target)
    _record_layer(report, "world", world)

    # World first: drawn on top it would hide the hotspots under an opaque fill.
    overview = (
        StaticMap(theme="clean")
        .add_layer(world, fill="grey95", color="white", linewidth=0.2)
        .add_layer(hotspots, fill="tomato", color="none", alpha=0.6)
        .set_labels(title=HOTSPOTS_TITLE, subtitle=HOTSPOTS_SUBTITLE)
    )
    _save_static(cfg, report, overview, "session2_hotspots_clean", dpi=QUICK_LOOK_DPI)

    wsj = _hotspots_map(world, hotspots, theme="wsj", world_fill="grey")
    _save_static(cfg, report, wsj, "session2_hotspots_wsj", dpi=QUICK_LOOK_DPI)

    publication = _hotspots_map(world, hotspots, theme=cfg.static.theme, world_fill="grey75")
    out_path = _save_static(cfg, report, publication, "biodiversity_hotspots_map")
    report.add_info(
        f"Print map {out_path.name}: {cfg.static.width_in:g}x{cfg.static.height_in:g} in @ {cfg.static.dpi} dpi"
    )

    _write_manifest(cfg, report)
    return report


def earthquake_popup(row: Mapping[str, Any]) -> str:
    """Popup HTML for one USGS feed feature (time is epoch milliseconds)."""
    when = row.get("time")
    if when is None or pd.isna(when):
        date_text = "unknown"
    else:
        date_text = datetime.fromtimestamp(float(when) / 1000.0, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S UTC"
        )
    return (
        f"Location: {row.get('place', '')} <br> "
        f"Magnitude: {row.get('mag', '')} <br> "
        f"Date: {date_text}"
    )


def _local_overlays(
    builder: InteractiveMap,
    point: gpd.GeoDataFrame,
    line: gpd.GeoDataFrame,
    polygon: gpd.GeoDataFrame,
) -> InteractiveMap:
    return (
        builder.add_circle_markers(point, color="blue", radius=5, popup="Name {Name}", group="Point")
        .add_polylines(line, color="green", weight=3, popup="Name {Name}", group="Line")
        .add_polygons(
            polygon,
            color="red",
            weight=2,
            fill_opacity=0.5,
            popup="Name {Name}",
            group="Polygon",
        )
    )


def run_session3(
    cfg: AppConfig,
    *,
    include_web: bool = True,
    include_raster: bool = True,
) -> SessionReport:
    """Interactive Leaflet maps from local files, web services and a raster."""
    report = SessionReport(name="session3")
    ensure_directories(cfg.paths.build_directories)
    tiles = cfg.interactive
    collapsed = tiles.collapsed_layers_control
    lon, lat = LONDON_LON_LAT

    _save_interactive(cfg, report, InteractiveMap().add_tiles(tiles.street_tiles), "session3_basic")
    _save_interactive(
        cfg,
        report,
        InteractiveMap().add_tiles(tiles.street_tiles).add_marker(lon, lat),
        "session3_marker",
    )
    _save_interactive(
        cfg,
        report,
        InteractiveMap()
        .add_tiles(tiles.street_tiles, group="OSM")
        .add_tiles(tiles.satellite_tiles, group="Satellite")
        .add_marker(lon, lat, popup="London")
        .add_layers_control(base_groups=["OSM", "Satellite"], collapsed=collapsed),
        "session3_base_layers",
    )

    local = {
        "point": read_vector(cfg.paths.point_geojson),
        "line": read_vector(cfg.paths.line_geojson),
        "polygon": read_vector(cfg.paths.polygon_geojson),
    }
    for name, frame in local.items():
        _record_layer(report, name, frame)
    local = align_layers(local, "EPSG:4326")

    local_map = _local_overlays(
        InteractiveMap()
        .add_tiles(tiles.light_tiles, group="Carto")
        .add_tiles(tiles.satellite_tiles, group="Satellite"),
        local["point"],
        local["line"],
        local["polygon"],
    )
    local_map.add_layers_control(
        base_groups=["Carto", "Satellite"],
        overlay_groups=["Point", "Line", "Polygon"],
        collapsed=collapsed,
    ).hide_group("Line").hide_group("Polygon")
    _save_interactive(cfg, report, local_map, "session3_local_layers")

    if include_web:
        _run_session3_web(cfg, report, local)
    else:
        report.add_info("Web layers skipped (--skip-web).")

    if include_raster:
        _run_session3_raster(cfg, report)
    else:
        report.add_info("Raster map skipped (--skip-raster).")

    _write_manifest(cfg, report)
    return report


def _run_session3_web(
    cfg: AppConfig,
    report: SessionReport,
    local: Mapping[str, gpd.GeoDataFrame],
) -> None:
    tiles = cfg.interactive
    collapsed = tiles.collapsed_layers_control
    client = FeatureServiceClient(cfg.http)

    thames = to_crs(client.query(cfg.sources.thames_estuary, where=cfg.sources.where), "EPSG:4326")
    _record_layer(report, "thames_estuary", thames)
    thames_map = (
        InteractiveMap()
        .add_tiles(tiles.light_tiles, group="Carto")
        .add_tiles(tiles.satellite_tiles, group="Satellite")
        .add_polygons(thames, color="darkblue", fill_color="darkblue", stroke=False, group="Thames Estuary")
    )
    _local_overlays(thames_map, local["point"], local["line"], local["polygon"])
    thames_map.add_layers_control(
        base_groups=["Carto", "Satellite"],
        overlay_groups=["Point", "Line", "Polygon", "Thames Estuary"],
        collapsed=collapsed,
    ).add_reset_button().add_fullscreen_control().hide_group("Line").hide_group("Polygon")
    _save_interactive(cfg, report, thames_map, "session3_thames")

    quakes = fetch_geojson_feed(cfg.sources.earthquakes_feed, cfg.http)
    _record_layer(report, "earthquakes", quakes)
    quakes_map = (
        InteractiveMap()
        .add_tiles(tiles.light_tiles, group="Carto")
        .add_tiles(tiles.satellite_tiles, group="Satellite")
        .add_circle_markers(quakes, color="red", radius="mag", popup=earthquake_popup, group="Earthquakes")
        .add_layers_control(
            base_groups=["Carto", "Satellite"],
            overlay_groups=["Earthquakes"],
            collapsed=collapsed,
        )
        .add_legend(["red"], ["Circle size proportional to magnitude"], position="bottomright")
        .add_reset_button()
        .add_fullscreen_control()
    )
    _save_interactive(cfg, report, quakes_map, "session3_earthquakes")

    faults = to_crs(client.query(cfg.sources.active_faults, where=cfg.sources.where), "EPSG:4326")
    _record_layer(report, "active_faults", faults)
    faults_map = (
        InteractiveMap()
        .set_view(63.0, 28.0, 2)
        .add_tiles(tiles.dark_tiles, group="Carto Dark")
        .add_tiles(tiles.satellite_tiles, group="Satellite")
        .add_polylines(faults, color="orange", weight=2, group="Faults")
        .add_circle_markers(
            quakes,
            color="red",
            radius="mag",
            fill_opacity=1.0,
            popup=earthquake_popup,
            group="Earthquakes",
        )
        .add_layers_control(
            base_groups=["Carto Dark", "Satellite"],
            overlay_groups=["Earthquakes", "Faults"],
            collapsed=collapsed,
        )
        .add_legend(
            ["red", "orange"],
            ["Circle size proportional to magnitude", "Fault lines"],
            position="bottomright",
        )
        .add_reset_button()
        .add_fullscreen_control()
    )
    _save_interactive(cfg, report, faults_map, "session3_faults")


def _run_session3_raster(cfg: AppConfig, report: SessionReport) -> None:
    raster_cfg = cfg.raster
    grid = read_raster(cfg.paths.sst_raster)
    grid = georeference(
        grid,
        x_offset=raster_cfg.x_offset,
        y_offset=raster_cfg.y_offset,
        x_delta=raster_cfg.x_delta,
        y_delta=raster_cfg.y_delta,
        crs=raster_cfg.crs,
    )
    grid = mask_nodata(grid, raster_cfg.nodata)
    value_range = valid_range(grid)
    if value_range is None:
        report.add_warning("SST raster has no valid cells after nodata masking")
    report.layers["sst"] = {
        "width": grid.width,
        "height": grid.height,
        "crs": crs_label(grid.crs),
        "bounds": list(grid.bounds.as_tuple()),
        "valid_range": list(value_range) if value_range is not None else None,
    }
    report.add_info(f"SST raster {grid.width}x{grid.height} georeferenced to {crs_label(grid.crs)}")

    world = to_crs(load_natural_earth(cfg.paths.natural_earth_countries), "EPSG:4326")
    sst_map = (
        InteractiveMap()
        .add_tiles(cfg.interactive.street_tiles)
        .set_view(13.0, 28.0, 2)
        .add_raster(
            grid,
            palette=raster_cfg.palette,
            domain=raster_cfg.domain,
            reverse=raster_cfg.reverse,
            opacity=raster_cfg.opacity,
            project=True,
            name="SST",
        )
        .add_polygons(world, color="black", weight=1, fill_opacity=0.0, group="Borders")
        .add_color_ramp_legend(
            raster_cfg.palette,
            raster_cfg.legend_domain,
            reverse=raster_cfg.reverse,
            title=raster_cfg.legend_title,
            position="bottomright",
        )
    )
    _save_interactive(cfg, report, sst_map, "session3_sst")
