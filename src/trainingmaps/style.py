"""Category attributes, colour handling and map themes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Sequence

import geopandas as gpd
import numpy as np

from .models import LegendEntry

_LOGGER = logging.getLogger("trainingmaps.style")

CHANNEL_COLOUR = "colour"
CHANNEL_FILL = "fill"
_CHANNELS = (CHANNEL_COLOUR, CHANNEL_FILL)

# Colour names from the R/X11 table that matplotlib either lacks or defines
# differently ("grey" is #808080 in CSS but #BEBEBE in R).
_R_COLORS: Mapping[str, str] = {
    "grey": "#BEBEBE",
    "gray": "#BEBEBE",
    "red3": "#CD0000",
    "red4": "#8B0000",
    "green3": "#00CD00",
    "green4": "#008B00",
    "blue3": "#0000CD",
    "blue4": "#00008B",
    "purple3": "#7D26CD",
    "purple4": "#551A8B",
    "orange3": "#CD8500",
    "darkorange3": "#CD6600",
    "tomato3": "#CD4F39",
    "gold3": "#CDAD00",
    "firebrick3": "#CD2626",
    "steelblue4": "#36648B",
    "dodgerblue4": "#104E8B",
    "seagreen4": "#2E8B57",
}


def _grey_level(name: str) -> str | None:
    for prefix in ("grey", "gray"):
        if name.startswith(prefix) and name[len(prefix):].isdigit():
            level = int(name[len(prefix):])
            if 0 <= level <= 100:
                value = int(level * 255 / 100 + 0.5)
                return f"#{value:02X}{value:02X}{value:02X}"
    return None


@lru_cache(maxsize=1)
def _require_matplotlib_colors() -> tuple[Any, Any]:
    try:
        import matplotlib
        from matplotlib import colors
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for colour handling") from exc
    return (colors, matplotlib.colormaps)


def resolve_color(name: str) -> str:
    """Normalize a colour name or hex string to `#RRGGBB` (or `#RRGGBBAA`)."""
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"Invalid colour: {name!r}")
    key = name.strip().casefold()
    if key in _R_COLORS:
        return _R_COLORS[key]
    grey = _grey_level(key)
    if grey is not None:
        return grey
    colors, _ = _require_matplotlib_colors()
    if not colors.is_color_like(key):
        raise ValueError(f"Unknown colour name: {name!r}")
    rgba = colors.to_rgba(key)
    return colors.to_hex(rgba, keep_alpha=rgba[3] < 1.0).upper()


def get_colormap(palette: str, *, reverse: bool = False) -> Any:
    _, colormaps = _require_matplotlib_colors()
    try:
        cmap = colormaps[palette]
    except KeyError:
        raise ValueError(f"Unknown colour palette '{palette}'") from None
    return cmap.reversed() if reverse else cmap


def ramp_colors(palette: str, n: int = 7, *, reverse: bool = False) -> list[str]:
    """Sample `n` evenly spaced hex stops from a named colour ramp."""
    if n < 2:
        raise ValueError("A colour ramp needs at least 2 stops")
    colors, _ = _require_matplotlib_colors()
    cmap = get_colormap(palette, reverse=reverse)
    return [colors.to_hex(cmap(pos)).upper() for pos in np.linspace(0.0, 1.0, n)]


def colorize(
    values: np.ndarray,
    palette: str,
    *,
    domain: tuple[float, float] | None = None,
    reverse: bool = False,
) -> np.ndarray:
    """Map a 2-D float array to an RGBA `uint8` image.

    NaN cells and cells outside `domain` get alpha 0. Without a domain the
    range of the valid cells is used.
    """
    data = np.asarray(values, dtype="float64")
    if data.ndim != 2:
        raise ValueError(f"colorize expects a 2-D array, got shape {data.shape}")
    valid = ~np.isnan(data)
    if domain is None:
        if not valid.any():
            return np.zeros(data.shape + (4,), dtype="uint8")
        domain = (float(np.nanmin(data)), float(np.nanmax(data)))
    low, high = domain
    if low > high:
        raise ValueError(f"Invalid colour domain {domain}")
    span = (high - low) or 1.0

    inside = valid & (data >= low) & (data <= high)
    scaled = np.zeros(data.shape, dtype="float64")
    scaled[inside] = (data[inside] - low) / span
    rgba = get_colormap(palette, reverse=reverse)(scaled, bytes=True)
    rgba[~inside] = 0
    dropped = int(valid.sum() - inside.sum())
    if dropped:
        _LOGGER.debug("colorize: %d valid cells outside domain %s left transparent", dropped, domain)
    return rgba


def assign_category(
    frame: gpd.GeoDataFrame,
    value: str,
    field: str = "type",
) -> gpd.GeoDataFrame:
    """Return a copy of `frame` with a constant category column."""
    if not field:
        raise ValueError("Category field name must be non-empty")
    return frame.assign(**{field: value})


@dataclass(frozen=True, slots=True)
class CategoryPalette:
    """Explicit category -> colour mapping bound to a colour or fill channel."""

    field: str
    colors: Mapping[str, str]
    channel: str = CHANNEL_COLOUR
    title: str | None = None

    def __post_init__(self) -> None:
        if self.channel not in _CHANNELS:
            raise ValueError(
                f"Unknown palette channel '{self.channel}'. Use one of: " + ", ".join(_CHANNELS)
            )
        if not self.colors:
            raise ValueError(f"Palette for '{self.field}' has no categories")
        for label, color in self.colors.items():
            try:
                resolve_color(color)
            except ValueError as exc:
                raise ValueError(f"Palette '{self.field}', category '{label}': {exc}") from exc

    def color_for(self, category: Any) -> str:
        key = str(category)
        if key not in self.colors:
            raise ValueError(
                f"Category '{key}' has no colour in palette '{self.field}'. "
                f"Known: {', '.join(self.colors)}"
            )
        return resolve_color(self.colors[key])

    def colors_for(self, frame: gpd.GeoDataFrame) -> list[str]:
        if frame.empty:
            return []
        if self.field not in frame.columns:
            raise ValueError(f"Layer has no '{self.field}' column for palette lookup")
        return [self.color_for(value) for value in frame[self.field].tolist()]

    def legend_entries(
        self,
        categories: Sequence[str] | None = None,
        *,
        kind: str | None = None,
    ) -> tuple[LegendEntry, ...]:
        chosen = list(self.colors) if categories is None else list(categories)
        entry_kind = kind or ("patch" if self.channel == CHANNEL_FILL else "line")
        return tuple(
            LegendEntry(label=str(label), color=self.color_for(label), kind=entry_kind)
            for label in chosen
        )


@dataclass(frozen=True, slots=True)
class ThemeSpec:
    """Figure-level look of a static map."""

    name: str
    background: str = "white"
    panel_background: str = "white"
    axes_visible: bool = True
    grid: bool = True
    grid_color: str = "#EBEBEB"
    grid_linestyle: str = "-"
    border: bool = False
    border_color: str = "#333333"
    font_family: str = "DejaVu Sans"
    title_weight: str = "normal"
    title_loc: str = "left"
    title_scale: float = 1.2
    subtitle_loc: str = "left"
    legend_position: str = "right"
    legend_horizontal: bool = False
    legend_title_style: str = "normal"
    legend_frame: bool = False
    margins_mm: tuple[float, float, float, float] | None = None
    text_color: str = "#222222"


THEMES: Mapping[str, ThemeSpec] = {
    "minimal": ThemeSpec(name="minimal"),
    "bw": ThemeSpec(
        name="bw",
        grid_color="#EBEBEB",
        border=True,
    ),
    "clean": ThemeSpec(
        name="clean",
        grid_color="#BFBFBF",
        grid_linestyle=":",
        title_weight="bold",
        legend_frame=True,
    ),
    "wsj": ThemeSpec(
        name="wsj",
        background="#F8F2E4",
        panel_background="#F8F2E4",
        grid_color="#000000",
        grid_linestyle=":",
        font_family="DejaVu Serif",
        title_weight="bold",
        legend_position="bottom",
        legend_horizontal=True,
    ),
    "publication": ThemeSpec(
        name="publication",
        axes_visible=False,
        grid=False,
        title_weight="bold",
        title_loc="center",
        subtitle_loc="center",
        legend_position="bottom",
        legend_horizontal=True,
        legend_title_style="italic",
        margins_mm=(10.0, 8.0, 6.0, 8.0),
    ),
}


def get_theme(name: str) -> ThemeSpec:
    key = name.strip().casefold()
    if key not in THEMES:
        raise ValueError(f"Unknown theme '{name}'. Use one of: " + ", ".join(sorted(THEMES)))
    return THEMES[key]
