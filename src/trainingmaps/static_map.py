"""Static map composition and PNG export with matplotlib/geopandas."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Sequence

import geopandas as gpd

from .models import BBox, LegendEntry
from .normalize import as_crs, crs_label, same_crs, to_crs, transform_bbox
from .style import CHANNEL_FILL, CategoryPalette, ThemeSpec, get_theme, resolve_color

_LOGGER = logging.getLogger("trainingmaps.static_map")

_BASEMAP_NONE = "none"
_BASEMAP_FLAT = "flat"
_BASEMAP_SATELLITE = "satellite"
_BASEMAP_MODES = (_BASEMAP_NONE, _BASEMAP_FLAT, _BASEMAP_SATELLITE)

_MM_PER_INCH = 25.4


@dataclass(frozen=True, slots=True)
class _LayerDefaults:
    color: str
    fill: str
    linewidth: float
    markersize: float


_LAYER_DEFAULTS = _LayerDefaults(
    color="#333333",
    fill="#D9D9D9",
    linewidth=0.5,
    markersize=20.0,
)


@dataclass(frozen=True, slots=True)
class StaticLayer:
    frame: gpd.GeoDataFrame
    color: str | None
    fill: str | None
    linewidth: float
    markersize: float
    alpha: float
    palette: CategoryPalette | None
    label: str | None
    zorder: int

    @property
    def kind(self) -> str:
        geom_types = {str(item) for item in self.frame.geom_type.dropna().unique()}
        if geom_types and geom_types <= {"Point", "MultiPoint"}:
            return "point"
        if geom_types and geom_types <= {"LineString", "MultiLineString", "LinearRing"}:
            return "line"
        return "patch"


def _color_or_none(value: str | None, field_name: str) -> str | None:
    if value is None:
        return None
    if value.strip().casefold() in {"none", "na", "transparent"}:
        return "none"
    try:
        return resolve_color(value)
    except ValueError as exc:
        raise ValueError(f"{field_name}: {exc}") from exc


class StaticMap:
    """Fluent builder for a layered static map.

    Layers draw in the order they were added; each later layer sits on top
    of the previous ones. Nothing is drawn until `render()` or `save()`.
    """

    def __init__(self, crs: Any = None, *, theme: str = "minimal", base_size: float = 11.0) -> None:
        if base_size <= 0:
            raise ValueError("base_size must be > 0")
        self._crs = as_crs(crs) if crs is not None else None
        self._theme: ThemeSpec = get_theme(theme)
        self.base_size = float(base_size)
        self._layers: list[StaticLayer] = []
        self._title: str | None = None
        self._subtitle: str | None = None
        self._legend_title: str | None = None
        self._caption: str | None = None
        self._extent: BBox | None = None
        self._extent_crs: Any = None
        self._expand = True
        self._basemap_mode = _BASEMAP_NONE
        self._basemap_failure: str | None = None

    @property
    def layers(self) -> tuple[StaticLayer, ...]:
        return tuple(self._layers)

    @property
    def theme(self) -> ThemeSpec:
        return self._theme

    @property
    def crs(self) -> Any:
        if self._crs is not None:
            return self._crs
        if self._layers:
            return as_crs(self._layers[0].frame.crs)
        return None

    @property
    def basemap_warning(self) -> str | None:
        return self._basemap_failure

    def add_layer(
        self,
        frame: gpd.GeoDataFrame,
        *,
        color: str | None = None,
        fill: str | None = None,
        linewidth: float | None = None,
        markersize: float | None = None,
        alpha: float = 1.0,
        palette: CategoryPalette | None = None,
        label: str | None = None,
    ) -> StaticMap:
        if frame.crs is None:
            raise ValueError("Cannot add a layer without CRS to a map")
        if not 0.0 <= alpha <= 1.0:
            raise ValueError("alpha must be between 0 and 1")
        if palette is not None:
            # Fail now rather than at render time on missing categories.
            palette.colors_for(frame)
        self._layers.append(
            StaticLayer(
                frame=frame,
                color=_color_or_none(color, "color"),
                fill=_color_or_none(fill, "fill"),
                linewidth=_LAYER_DEFAULTS.linewidth if linewidth is None else float(linewidth),
                markersize=_LAYER_DEFAULTS.markersize if markersize is None else float(markersize),
                alpha=float(alpha),
                palette=palette,
                label=label,
                zorder=len(self._layers) + 1,
            )
        )
        return self

    def set_labels(
        self,
        title: str | None = None,
        subtitle: str | None = None,
        legend_title: str | None = None,
        caption: str | None = None,
    ) -> StaticMap:
        self._title = title
        self._subtitle = subtitle
        self._legend_title = legend_title
        self._caption = caption
        return self

    def set_projection(self, crs: Any) -> StaticMap:
        self._crs = as_crs(crs)
        return self

    def set_extent(
        self,
        xlim: Sequence[float],
        ylim: Sequence[float],
        *,
        crs: Any = None,
        expand: bool = True,
    ) -> StaticMap:
        """Limit the view; `crs` names the CRS of the limits when it differs from the map's."""
        x0, x1 = (float(item) for item in xlim)
        y0, y1 = (float(item) for item in ylim)
        if x0 >= x1 or y0 >= y1:
            raise ValueError(f"Invalid extent xlim=({x0}, {x1}) ylim=({y0}, {y1})")
        self._extent = BBox(xmin=x0, ymin=y0, xmax=x1, ymax=y1)
        self._extent_crs = as_crs(crs) if crs is not None else None
        self._expand = expand
        return self

    def set_theme(self, name: str) -> StaticMap:
        self._theme = get_theme(name)
        return self

    def set_basemap(self, mode: str) -> StaticMap:
        chosen = mode.strip().casefold()
        if chosen not in _BASEMAP_MODES:
            raise ValueError(f"Unknown basemap mode '{mode}'. Use one of: " + ", ".join(_BASEMAP_MODES))
        self._basemap_mode = chosen
        return self

    def render(self, *, width_in: float = 8.0, height_in: float = 6.0, dpi: int = 100) -> Any:
        """Draw the map into a new matplotlib Figure; the caller closes it."""
        if not self._layers:
            raise ValueError("Map has no layers")
        if width_in <= 0 or height_in <= 0 or dpi <= 0:
            raise ValueError("Figure size and dpi must be > 0")
        plt, layout_engine = _require_matplotlib()
        theme = self._theme
        map_crs = self.crs

        with plt.rc_context({"font.family": theme.font_family, "font.size": self.base_size}):
            fig, ax = plt.subplots(figsize=(width_in, height_in), dpi=dpi)
            fig.set_layout_engine(
                layout_engine.ConstrainedLayoutEngine(**_layout_kwargs(theme, width_in, height_in))
            )
            try:
                self._draw(fig=fig, ax=ax, map_crs=map_crs)
            except Exception:
                plt.close(fig)
                raise
        return fig

    def save(
        self,
        path: str | Path,
        *,
        width_in: float = 8.0,
        height_in: float = 6.0,
        dpi: int = 300,
        format: str | None = None,
    ) -> Path:
        """Render and write the map at a fixed physical size and resolution."""
        plt, _ = _require_matplotlib()
        out_path = Path(path)
        fmt = (format or out_path.suffix.lstrip(".") or "png").casefold()
        fig = self.render(width_in=width_in, height_in=height_in, dpi=dpi)
        try:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(out_path, dpi=dpi, format=fmt, facecolor=fig.get_facecolor())
        finally:
            plt.close(fig)
        _LOGGER.info(
            "Saved map %s (%gx%g in @ %d dpi, %d layers, crs=%s)",
            out_path,
            width_in,
            height_in,
            dpi,
            len(self._layers),
            crs_label(self.crs),
        )
        return out_path

    def _draw(self, *, fig: Any, ax: Any, map_crs: Any) -> None:
        theme = self._theme
        fig.patch.set_facecolor(theme.background)
        ax.set_facecolor(theme.panel_background)

        for layer in self._layers:
            frame = layer.frame
            if not same_crs(frame.crs, map_crs):
                frame = to_crs(frame, map_crs, clip_to_area_of_use=True)
            if frame.empty:
                _LOGGER.debug("Layer %d is empty in %s; skipped", layer.zorder, crs_label(map_crs))
                continue
            _draw_layer(ax, layer, frame)

        self._apply_extent(ax, map_crs)
        _apply_aspect(ax, map_crs)
        if self._basemap_mode != _BASEMAP_NONE:
            self._draw_basemap(ax, map_crs)
        _apply_theme(ax, theme, self.base_size)
        self._draw_labels(fig, ax)
        self._draw_legend(ax)

    def _apply_extent(self, ax: Any, map_crs: Any) -> None:
        if self._extent is None:
            return
        extent = self._extent
        if self._extent_crs is not None and not same_crs(self._extent_crs, map_crs):
            extent = transform_bbox(extent, self._extent_crs, map_crs)
        if self._expand:
            pad_x = (extent.xmax - extent.xmin) * 0.05
            pad_y = (extent.ymax - extent.ymin) * 0.05
            extent = BBox(
                xmin=extent.xmin - pad_x,
                ymin=extent.ymin - pad_y,
                xmax=extent.xmax + pad_x,
                ymax=extent.ymax + pad_y,
            )
        ax.set_xlim(*extent.xlim)
        ax.set_ylim(*extent.ylim)

    def _draw_basemap(self, ax: Any, map_crs: Any) -> None:
        if self._basemap_failure is not None:
            return
        contextily = _require_contextily()
        x0, x1 = ax.get_xlim()
        y0, y1 = ax.get_ylim()
        try:
            contextily.add_basemap(
                ax,
                crs=as_crs(map_crs).to_string(),
                source=_resolve_basemap_source(self._basemap_mode),
                zorder=0,
            )
        except Exception as exc:
            self._basemap_failure = f"Basemap loading failed and was skipped: {exc}"
            _LOGGER.warning(self._basemap_failure)
        ax.set_xlim(x0, x1)
        ax.set_ylim(y0, y1)

    def _draw_labels(self, fig: Any, ax: Any) -> None:
        theme = self._theme
        size = self.base_size
        if self._title:
            ax.set_title(
                self._title,
                loc=theme.title_loc,
                fontsize=size * theme.title_scale,
                fontweight=theme.title_weight,
                color=theme.text_color,
                pad=size * 1.8 if self._subtitle else size * 0.6,
            )
        if self._subtitle:
            x = 0.5 if theme.subtitle_loc == "center" else 0.0
            ax.text(
                x,
                1.0,
                self._subtitle,
                transform=ax.transAxes,
                ha="center" if theme.subtitle_loc == "center" else "left",
                va="bottom",
                fontsize=size,
                color=theme.text_color,
            )
        if self._caption:
            fig.text(0.99, 0.01, self._caption, ha="right", va="bottom", fontsize=size * 0.7)

    def _draw_legend(self, ax: Any) -> None:
        entries = self.legend_entries()
        if not entries:
            return
        handles = [_legend_handle(entry) for entry in entries]
        theme = self._theme
        title = self._legend_title or next(
            (layer.palette.title for layer in self._layers if layer.palette and layer.palette.title),
            None,
        )
        kwargs: dict[str, Any] = {
            "handles": handles,
            "title": title,
            "frameon": theme.legend_frame,
            "fontsize": self.base_size * 0.85,
            "title_fontsize": self.base_size * 0.9,
        }
        if theme.legend_position == "bottom":
            kwargs["loc"] = "upper center"
            kwargs["bbox_to_anchor"] = (0.5, -0.08 if theme.axes_visible else -0.01)
            if theme.legend_horizontal:
                kwargs["ncol"] = len(handles)
        else:
            kwargs["loc"] = "center left"
            kwargs["bbox_to_anchor"] = (1.02, 0.5)
        legend = ax.legend(**kwargs)
        if theme.legend_title_style == "italic":
            legend.get_title().set_fontstyle("italic")

    def legend_entries(self) -> tuple[LegendEntry, ...]:
        """Legend entries in layer order; each label appears once."""
        seen: set[str] = set()
        out: list[LegendEntry] = []
        for layer in self._layers:
            if layer.palette is not None:
                present = [
                    str(item)
                    for item in dict.fromkeys(layer.frame[layer.palette.field].tolist())
                ]
                candidates = layer.palette.legend_entries(
                    present,
                    kind=layer.kind if layer.palette.channel != CHANNEL_FILL else "patch",
                )
            elif layer.label:
                color = layer.fill if layer.kind == "patch" and layer.fill not in (None, "none") else layer.color
                candidates = (
                    LegendEntry(
                        label=layer.label,
                        color=color or _LAYER_DEFAULTS.color,
                        kind=layer.kind,
                    ),
                )
            else:
                continue
            for entry in candidates:
                if entry.label not in seen:
                    seen.add(entry.label)
                    out.append(entry)
        return tuple(out)


def _layout_kwargs(theme: ThemeSpec, width_in: float, height_in: float) -> dict[str, Any]:
    if theme.margins_mm is None:
        return {}
    top, right, bottom, left = (value / _MM_PER_INCH for value in theme.margins_mm)
    return {
        "h_pad": 0.0,
        "w_pad": 0.0,
        "rect": (
            left / width_in,
            bottom / height_in,
            1.0 - (left + right) / width_in,
            1.0 - (top + bottom) / height_in,
        ),
    }


def _geometry_kind(geom_type: str | None) -> str | None:
    if geom_type in ("Point", "MultiPoint"):
        return "point"
    if geom_type in ("LineString", "MultiLineString", "LinearRing"):
        return "line"
    if geom_type in ("Polygon", "MultiPolygon", "GeometryCollection"):
        return "patch"
    return None


def _draw_layer(ax: Any, layer: StaticLayer, frame: gpd.GeoDataFrame) -> None:
    per_row = layer.palette.colors_for(frame) if layer.palette is not None else None
    by_fill = per_row is not None and layer.palette.channel == CHANNEL_FILL

    # Group rows by resolved style so every draw call gets scalar colours.
    groups: dict[tuple[str, str, str], list[int]] = {}
    for pos, geom_type in enumerate(frame.geom_type.tolist()):
        kind = _geometry_kind(geom_type)
        if kind is None:
            continue
        color = layer.color or _LAYER_DEFAULTS.color
        fill = layer.fill or _LAYER_DEFAULTS.fill
        if per_row is not None:
            if by_fill and kind == "patch":
                fill = per_row[pos]
            else:
                color = per_row[pos]
        groups.setdefault((kind, color, fill), []).append(pos)

    for (kind, color, fill), positions in groups.items():
        subset = frame.geometry.iloc[positions]
        common = {"ax": ax, "alpha": layer.alpha, "zorder": layer.zorder, "aspect": None}
        if kind == "patch":
            subset.plot(facecolor=fill, edgecolor=color, linewidth=layer.linewidth, **common)
        elif kind == "line":
            subset.plot(color=color, linewidth=layer.linewidth, **common)
        else:
            subset.plot(color=color, markersize=layer.markersize, **common)


def _apply_aspect(ax: Any, map_crs: Any) -> None:
    if as_crs(map_crs).is_geographic:
        y0, y1 = ax.get_ylim()
        mid_lat = max(min((y0 + y1) / 2.0, 89.0), -89.0)
        ax.set_aspect(1.0 / math.cos(math.radians(mid_lat)))
    else:
        ax.set_aspect("equal")


def _apply_theme(ax: Any, theme: ThemeSpec, base_size: float) -> None:
    if not theme.axes_visible:
        ax.set_xticks([])
        ax.set_yticks([])
        for spine in ax.spines.values():
            spine.set_visible(False)
        return
    ax.tick_params(labelsize=base_size * 0.8, colors=theme.text_color, length=0 if not theme.border else 3)
    if theme.grid:
        ax.grid(True, color=theme.grid_color, linestyle=theme.grid_linestyle, linewidth=0.5)
        ax.set_axisbelow(True)
    for spine in ax.spines.values():
        spine.set_visible(theme.border)
        spine.set_color(theme.border_color)


def _legend_handle(entry: LegendEntry) -> Any:
    patches, lines = _require_matplotlib_artists()
    if entry.kind == "point":
        return lines.Line2D(
            [],
            [],
            marker="o",
            linestyle="None",
            markerfacecolor=entry.color,
            markeredgecolor=entry.color,
            markersize=6,
            label=entry.label,
        )
    if entry.kind == "line":
        return lines.Line2D([], [], color=entry.color, linewidth=2.0, label=entry.label)
    return patches.Patch(facecolor=entry.color, edgecolor="none", label=entry.label)


def _resolve_basemap_source(mode: str) -> Any:
    providers = _require_xyzservices_providers()
    if mode == _BASEMAP_SATELLITE:
        return providers.Esri.WorldImagery
    # flat map with labels removed
    return providers.CartoDB.PositronNoLabels


def _require_matplotlib() -> tuple[Any, Any]:
    try:
        import matplotlib

        matplotlib.use("Agg", force=False)
        import matplotlib.layout_engine as layout_engine
        import matplotlib.pyplot as plt
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for map rendering") from exc
    return (plt, layout_engine)


@lru_cache(maxsize=1)
def _require_matplotlib_artists() -> tuple[Any, Any]:
    try:
        import matplotlib.lines as lines
        import matplotlib.patches as patches
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for map legends") from exc
    return (patches, lines)


@lru_cache(maxsize=1)
def _require_contextily() -> Any:
    try:
        import contextily as ctx
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("contextily is required for real basemap rendering") from exc
    return ctx


@lru_cache(maxsize=1)
def _require_xyzservices_providers() -> Any:
    try:
        from xyzservices import providers
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("xyzservices is required for basemap source definitions") from exc
    return providers
