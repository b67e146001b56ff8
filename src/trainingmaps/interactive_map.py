"""Interactive Leaflet maps built with folium."""

from __future__ import annotations

import base64
import html
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import folium
import geopandas as gpd
import numpy as np
from branca.element import MacroElement
from folium import plugins
from jinja2 import Template
from PIL import Image
from xyzservices import providers as tile_providers

from .io_raster import mask_nodata
from .models import BBox, RasterGrid
from .normalize import clip_raster_latitude, layer_bbox, reproject_raster, to_crs, transform_bbox
from .style import colorize, ramp_colors, resolve_color

_LOGGER = logging.getLogger("trainingmaps.interactive_map")

LEAFLET_CRS = "EPSG:4326"
WEB_MERCATOR = "EPSG:3857"
_POSITIONS = ("topleft", "topright", "bottomleft", "bottomright")
_DEFAULT_VIEW = (0.0, 20.0, 2)
_POPUP_FIELD = "popup_html"
_POPUP_MAX_WIDTH = 300

Popup = str | Callable[[Mapping[str, Any]], str] | None


@dataclass(frozen=True, slots=True)
class MapLayer:
    """One call that put something on the map, in call order."""

    kind: str
    name: str
    group: str | None
    feature_count: int


@dataclass(frozen=True, slots=True)
class _MapOp:
    layer: MapLayer
    attach: Callable[[Any], None]


class _LegendControl(MacroElement):
    _template = Template(
        """
        {% macro script(this, kwargs) %}
        var {{ this.get_name() }} = L.control({position: {{ this.position|tojson }}});
        {{ this.get_name() }}.onAdd = function (map) {
            var div = L.DomUtil.create('div', 'info legend');
            div.style.background = 'rgba(255, 255, 255, ' + {{ this.opacity|tojson }} + ')';
            div.style.padding = '6px 10px';
            div.style.borderRadius = '5px';
            div.style.boxShadow = '0 0 15px rgba(0, 0, 0, 0.2)';
            div.style.font = '12px/1.4 Arial, Helvetica, sans-serif';
            div.innerHTML = {{ this.html|tojson }};
            return div;
        };
        {{ this.get_name() }}.addTo({{ this._parent.get_name() }});
        {% endmacro %}
        """
    )

    def __init__(self, legend_html: str, *, position: str, opacity: float) -> None:
        super().__init__()
        self._name = "Legend"
        self.html = legend_html
        self.position = position
        self.opacity = opacity


class _ResetViewControl(MacroElement):
    _template = Template(
        """
        {% macro script(this, kwargs) %}
        (function () {
            var map = {{ this._parent.get_name() }};
            var home = {center: map.getCenter(), zoom: map.getZoom()};
            var control = L.control({position: {{ this.position|tojson }}});
            control.onAdd = function () {
                var div = L.DomUtil.create('div', 'leaflet-bar leaflet-control');
                var link = L.DomUtil.create('a', '', div);
                link.href = '#';
                link.title = {{ this.title|tojson }};
                link.setAttribute('role', 'button');
                link.innerHTML = '&#8634;';
                L.DomEvent.on(link, 'click', function (e) {
                    L.DomEvent.preventDefault(e);
                    map.setView(home.center, home.zoom);
                });
                return div;
            };
            control.addTo(map);
        })();
        {% endmacro %}
        """
    )

    def __init__(self, *, position: str, title: str) -> None:
        super().__init__()
        self._name = "ResetView"
        self.position = position
        self.title = title


def _check_position(position: str) -> str:
    if position not in _POSITIONS:
        raise ValueError(f"Unknown control position '{position}'. Use one of: " + ", ".join(_POSITIONS))
    return position


def _resolve_provider(name: str) -> Any:
    try:
        return tile_providers.query_name(name)
    except ValueError:
        raise ValueError(f"Unknown tile provider '{name}'") from None


def _popup_texts(frame: gpd.GeoDataFrame, popup: Popup) -> list[str] | None:
    if popup is None:
        return None
    attributes = frame.drop(columns=frame.geometry.name)
    texts: list[str] = []
    for row in attributes.to_dict(orient="records"):
        if callable(popup):
            texts.append(str(popup(row)))
            continue
        try:
            texts.append(popup.format_map(row))
        except KeyError as exc:
            raise ValueError(f"Popup template refers to missing attribute {exc}") from None
    return texts


def _point_coordinates(frame: gpd.GeoDataFrame) -> list[tuple[float, float]]:
    geom_types = set(frame.geom_type.dropna().unique())
    if not geom_types <= {"Point"}:
        raise ValueError(
            "Circle markers need Point geometries; got " + ", ".join(sorted(str(t) for t in geom_types))
        )
    return [(float(geom.y), float(geom.x)) for geom in frame.geometry]


def _radii(frame: gpd.GeoDataFrame, radius: float | str) -> list[float]:
    if frame.empty:
        return []
    if isinstance(radius, str):
        if radius not in frame.columns:
            raise ValueError(f"Radius column '{radius}' not found")
        values = frame[radius].astype("float64").to_numpy()
        return [float(value) if np.isfinite(value) and value > 0 else 0.0 for value in values]
    if radius <= 0:
        raise ValueError("radius must be > 0")
    return [float(radius)] * len(frame)


def _encode_png(rgba: np.ndarray) -> str:
    buffer = io.BytesIO()
    Image.fromarray(rgba).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def _format_tick(value: float) -> str:
    return f"{value:g}"


class InteractiveMap:
    """Fluent builder for a Leaflet map.

    Calls are recorded in order and replayed by `build()`, so groups can be
    hidden or the view changed after layers are added.
    """

    def __init__(self, *, width: str | int = "100%", height: str | int = "100%") -> None:
        self.width = width
        self.height = height
        self._tiles: list[tuple[Any, str]] = []
        self._ops: list[_MapOp] = []
        self._overlay_groups: list[str] = []
        self._hidden: set[str] = set()
        self._view: tuple[float, float, int] | None = None
        self._bounds: BBox | None = None
        self._legends: list[Callable[[], MacroElement]] = []
        self._layers_control: dict[str, Any] | None = None
        self._fullscreen_position: str | None = None
        self._reset_position: str | None = None

    @property
    def layers(self) -> tuple[MapLayer, ...]:
        return tuple(op.layer for op in self._ops)

    @property
    def base_groups(self) -> tuple[str, ...]:
        return tuple(group for _, group in self._tiles)

    @property
    def overlay_groups(self) -> tuple[str, ...]:
        return tuple(self._overlay_groups)

    @property
    def hidden_groups(self) -> frozenset[str]:
        return frozenset(self._hidden)

    def _record(self, layer: MapLayer, attach: Callable[[Any], None]) -> None:
        if layer.group is not None and layer.group not in self._overlay_groups:
            self._overlay_groups.append(layer.group)
        self._ops.append(_MapOp(layer=layer, attach=attach))

    def _extend_bounds(self, bbox: BBox) -> None:
        if self._bounds is None:
            self._bounds = bbox
            return
        self._bounds = BBox(
            xmin=min(self._bounds.xmin, bbox.xmin),
            ymin=min(self._bounds.ymin, bbox.ymin),
            xmax=max(self._bounds.xmax, bbox.xmax),
            ymax=max(self._bounds.ymax, bbox.ymax),
        )

    def add_tiles(self, provider: str = "OpenStreetMap.Mapnik", group: str | None = None) -> InteractiveMap:
        """Add a base tile layer from an xyzservices provider name."""
        tile_provider = _resolve_provider(provider)
        name = group or provider
        if name in self.base_groups:
            raise ValueError(f"Base group '{name}' already exists")
        self._tiles.append((tile_provider, name))
        return self

    def add_marker(
        self,
        lon: float,
        lat: float,
        *,
        popup: str | None = None,
        group: str | None = None,
    ) -> InteractiveMap:
        location = [float(lat), float(lon)]

        def attach(target: Any) -> None:
            folium.Marker(
                location=location,
                popup=folium.Popup(popup, max_width=_POPUP_MAX_WIDTH) if popup else None,
            ).add_to(target)

        self._record(MapLayer(kind="marker", name=popup or "marker", group=group, feature_count=1), attach)
        self._extend_bounds(BBox(xmin=lon, ymin=lat, xmax=lon, ymax=lat))
        return self

    def add_circle_markers(
        self,
        frame: gpd.GeoDataFrame,
        *,
        color: str = "blue",
        radius: float | str = 5,
        popup: Popup = None,
        group: str | None = None,
        fill_opacity: float = 0.5,
        weight: float = 1.0,
        name: str | None = None,
    ) -> InteractiveMap:
        """Add one circle marker per point; `radius` is pixels or a column name."""
        frame = to_crs(frame, LEAFLET_CRS)
        locations = _point_coordinates(frame)
        radii = _radii(frame, radius)
        texts = _popup_texts(frame, popup)
        hex_color = resolve_color(color)

        def attach(target: Any) -> None:
            for idx, (location, size) in enumerate(zip(locations, radii)):
                folium.CircleMarker(
                    location=list(location),
                    radius=size,
                    color=hex_color,
                    weight=weight,
                    fill=True,
                    fill_color=hex_color,
                    fill_opacity=fill_opacity,
                    popup=folium.Popup(texts[idx], max_width=_POPUP_MAX_WIDTH) if texts else None,
                ).add_to(target)

        self._record(
            MapLayer(kind="circle_markers", name=name or group or "points", group=group, feature_count=len(frame)),
            attach,
        )
        if not frame.empty:
            self._extend_bounds(layer_bbox(frame))
        return self

    def _add_geojson(
        self,
        frame: gpd.GeoDataFrame,
        *,
        kind: str,
        style: Mapping[str, Any],
        popup: Popup,
        group: str | None,
        name: str | None,
    ) -> InteractiveMap:
        frame = to_crs(frame, LEAFLET_CRS)
        texts = _popup_texts(frame, popup)
        data = gpd.GeoDataFrame(geometry=frame.geometry.reset_index(drop=True), crs=frame.crs)
        if texts is not None:
            data[_POPUP_FIELD] = texts
        style_dict = dict(style)
        label = name or group or kind

        def attach(target: Any) -> None:
            if data.empty:
                return
            folium.GeoJson(
                data,
                name=label,
                style_function=lambda _feature: style_dict,
                popup=(
                    folium.GeoJsonPopup(fields=[_POPUP_FIELD], labels=False)
                    if texts is not None
                    else None
                ),
            ).add_to(target)

        self._record(MapLayer(kind=kind, name=label, group=group, feature_count=len(frame)), attach)
        if not frame.empty:
            self._extend_bounds(layer_bbox(frame))
        return self

    def add_polylines(
        self,
        frame: gpd.GeoDataFrame,
        *,
        color: str = "blue",
        weight: float = 3.0,
        opacity: float = 1.0,
        popup: Popup = None,
        group: str | None = None,
        name: str | None = None,
    ) -> InteractiveMap:
        style = {"color": resolve_color(color), "weight": weight, "opacity": opacity}
        return self._add_geojson(frame, kind="polylines", style=style, popup=popup, group=group, name=name)

    def add_polygons(
        self,
        frame: gpd.GeoDataFrame,
        *,
        color: str = "blue",
        weight: float = 2.0,
        fill_color: str | None = None,
        fill_opacity: float = 0.5,
        stroke: bool = True,
        popup: Popup = None,
        group: str | None = None,
        name: str | None = None,
    ) -> InteractiveMap:
        stroke_color = resolve_color(color)
        style = {
            "color": stroke_color,
            "weight": weight if stroke else 0,
            "stroke": stroke,
            "fillColor": resolve_color(fill_color) if fill_color else stroke_color,
            "fillOpacity": fill_opacity,
        }
        return self._add_geojson(frame, kind="polygons", style=style, popup=popup, group=group, name=name)

    def add_raster(
        self,
        grid: RasterGrid,
        *,
        palette: str,
        domain: tuple[float, float] | None = None,
        reverse: bool = False,
        opacity: float = 0.8,
        project: bool = True,
        group: str | None = None,
        name: str = "raster",
    ) -> InteractiveMap:
        """Drape a colourized raster; masked cells are transparent.

        With `project`, the grid is warped to Web Mercator first so that it
        lines up with the tiles; otherwise it must already be in EPSG:4326.
        """
        if grid.crs is None:
            raise ValueError("Raster has no CRS; georeference it before mapping")
        if not 0.0 <= opacity <= 1.0:
            raise ValueError("opacity must be between 0 and 1")
        if grid.nodata is not None:
            grid = mask_nodata(grid)
        if project:
            geographic = reproject_raster(grid, LEAFLET_CRS)
            display = reproject_raster(clip_raster_latitude(geographic), WEB_MERCATOR)
            bounds = transform_bbox(display.bounds, WEB_MERCATOR, LEAFLET_CRS)
        else:
            display = reproject_raster(grid, LEAFLET_CRS)
            bounds = display.bounds
        image_url = _encode_png(colorize(display.values, palette, domain=domain, reverse=reverse))
        leaflet_bounds = [[bounds.ymin, bounds.xmin], [bounds.ymax, bounds.xmax]]

        def attach(target: Any) -> None:
            folium.raster_layers.ImageOverlay(
                image=image_url,
                bounds=leaflet_bounds,
                opacity=opacity,
                name=name,
                interactive=False,
                zindex=1,
            ).add_to(target)

        self._record(MapLayer(kind="raster", name=name, group=group, feature_count=1), attach)
        self._extend_bounds(bounds)
        _LOGGER.debug("Raster overlay %s: %dx%d px, bounds=%s", name, display.width, display.height, bounds)
        return self

    def add_legend(
        self,
        colors: Sequence[str],
        labels: Sequence[str],
        *,
        position: str = "bottomright",
        opacity: float = 1.0,
        title: str | None = None,
    ) -> InteractiveMap:
        if len(colors) != len(labels):
            raise ValueError("Legend needs one colour per label")
        if not colors:
            raise ValueError("Legend needs at least one entry")
        _check_position(position)
        rows = [
            (
                f'<div><i style="display:inline-block;width:12px;height:12px;border-radius:50%;'
                f'margin-right:6px;background:{resolve_color(color)};opacity:{opacity}"></i>'
                f"{html.escape(str(label))}</div>"
            )
            for color, label in zip(colors, labels)
        ]
        legend_html = (f"<strong>{html.escape(title)}</strong>" if title else "") + "".join(rows)
        self._legends.append(lambda: _LegendControl(legend_html, position=position, opacity=opacity))
        return self

    def add_color_ramp_legend(
        self,
        palette: str,
        domain: tuple[float, float],
        *,
        reverse: bool = False,
        title: str | None = None,
        position: str = "bottomright",
        opacity: float = 1.0,
        stops: int = 7,
    ) -> InteractiveMap:
        low, high = domain
        if low >= high:
            raise ValueError(f"Invalid legend domain {domain}")
        _check_position(position)
        colors = ramp_colors(palette, stops, reverse=reverse)
        # Legend reads top (high) to bottom (low).
        gradient = ", ".join(reversed(colors))
        ticks = [high, (low + high) / 2.0, low]
        legend_html = (
            (f"<strong>{html.escape(title)}</strong><br>" if title else "")
            + '<div style="display:flex;align-items:stretch;">'
            + f'<div style="width:14px;height:120px;background:linear-gradient(to bottom, {gradient});"></div>'
            + '<div style="display:flex;flex-direction:column;justify-content:space-between;margin-left:6px;">'
            + "".join(f"<span>{_format_tick(tick)}</span>" for tick in ticks)
            + "</div></div>"
        )
        self._legends.append(lambda: _LegendControl(legend_html, position=position, opacity=opacity))
        return self

    def add_layers_control(
        self,
        base_groups: Sequence[str] | None = None,
        overlay_groups: Sequence[str] | None = None,
        *,
        collapsed: bool = False,
        position: str = "topright",
    ) -> InteractiveMap:
        """Show a layer switcher; only the named groups get an entry."""
        chosen_base = list(self.base_groups if base_groups is None else base_groups)
        chosen_overlays = list(self._overlay_groups if overlay_groups is None else overlay_groups)
        unknown = [name for name in chosen_base if name not in self.base_groups]
        unknown += [name for name in chosen_overlays if name not in self._overlay_groups]
        if unknown:
            raise ValueError("Unknown layer group(s): " + ", ".join(unknown))
        self._layers_control = {
            "base": chosen_base,
            "overlays": chosen_overlays,
            "collapsed": collapsed,
            "position": _check_position(position),
        }
        return self

    def hide_group(self, name: str) -> InteractiveMap:
        if name not in self._overlay_groups:
            raise ValueError(f"Unknown overlay group '{name}'")
        self._hidden.add(name)
        return self

    def set_view(self, lon: float, lat: float, zoom: int) -> InteractiveMap:
        if not -90.0 <= lat <= 90.0:
            raise ValueError(f"Latitude out of range: {lat}")
        if zoom < 0:
            raise ValueError("zoom must be >= 0")
        self._view = (float(lon), float(lat), int(zoom))
        return self

    def add_fullscreen_control(self, position: str = "topleft") -> InteractiveMap:
        self._fullscreen_position = _check_position(position)
        return self

    def add_reset_button(self, position: str = "topleft") -> InteractiveMap:
        self._reset_position = _check_position(position)
        return self

    def build(self) -> folium.Map:
        """Assemble a fresh `folium.Map` from the recorded calls."""
        lon, lat, zoom = self._view or _DEFAULT_VIEW
        fmap = folium.Map(
            location=[lat, lon],
            zoom_start=zoom,
            tiles=None,
            width=self.width,
            height=self.height,
            control_scale=True,
        )
        control = self._layers_control
        for idx, (tile_provider, group) in enumerate(self._tiles):
            folium.TileLayer(
                tiles=tile_provider.build_url(),
                attr=tile_provider.html_attribution,
                name=group,
                max_zoom=tile_provider.get("max_zoom", 18),
                overlay=False,
                control=control is None or group in control["base"],
                show=idx == 0,
            ).add_to(fmap)

        parents: dict[str, folium.FeatureGroup] = {}
        for op in self._ops:
            group = op.layer.group
            if group is None:
                op.attach(fmap)
                continue
            if group not in parents:
                parents[group] = folium.FeatureGroup(
                    name=group,
                    show=group not in self._hidden,
                    control=control is None or group in control["overlays"],
                ).add_to(fmap)
            # One sub-group per call keeps call order across interleaved groups;
            # the parent group toggles all of them.
            op.attach(plugins.FeatureGroupSubGroup(parents[group], name=group, control=False).add_to(fmap))

        if self._view is None and self._bounds is not None:
            fmap.fit_bounds([[self._bounds.ymin, self._bounds.xmin], [self._bounds.ymax, self._bounds.xmax]])
        for make_legend in self._legends:
            fmap.add_child(make_legend())
        if self._fullscreen_position is not None:
            plugins.Fullscreen(position=self._fullscreen_position).add_to(fmap)
        if control is not None:
            folium.LayerControl(position=control["position"], collapsed=control["collapsed"]).add_to(fmap)
        if self._reset_position is not None:
            fmap.add_child(_ResetViewControl(position=self._reset_position, title="Reset view"))
        return fmap

    def save(self, path: str | Path) -> Path:
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        self.build().save(str(out_path))
        _LOGGER.info(
            "Saved interactive map %s (%d base layers, %d overlays)",
            out_path,
            len(self._tiles),
            len(self._ops),
        )
        return out_path
