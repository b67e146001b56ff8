from __future__ import annotations

import geopandas as gpd
import numpy as np
import pytest

from conftest import sites_frame
from trainingmaps.models import LegendEntry
from trainingmaps.style import (
    CHANNEL_FILL,
    THEMES,
    CategoryPalette,
    assign_category,
    colorize,
    get_colormap,
    get_theme,
    ramp_colors,
    resolve_color,
)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("green4", "#008B00"),
        ("red3", "#CD0000"),
        ("purple4", "#551A8B"),
        ("grey95", "#F2F2F2"),
        ("grey75", "#BFBFBF"),
        ("gray0", "#000000"),
        ("grey", "#BEBEBE"),
        ("red", "#FF0000"),
        ("lightblue", "#ADD8E6"),
        ("#1f77b4", "#1F77B4"),
        (" Tomato ", "#FF6347"),
    ],
)
def test_resolve_color(name: str, expected: str) -> None:
    assert resolve_color(name) == expected


@pytest.mark.parametrize("name", ["", "grey101", "not-a-colour", "green9"])
def test_resolve_color_rejects_unknown(name: str) -> None:
    with pytest.raises(ValueError):
        resolve_color(name)


def test_assign_category_returns_copy() -> None:
    frame = sites_frame()

    typed = assign_category(frame, "Monitoring site")

    assert "type" not in frame.columns
    assert typed["type"].tolist() == ["Monitoring site"] * 3
    assert len(typed) == len(frame)


def test_category_palette_lookup_and_legend() -> None:
    palette = CategoryPalette(field="type", colors={"Transect": "green4", "Monitoring site": "red3"})
    frame = assign_category(sites_frame(), "Monitoring site")

    assert palette.colors_for(frame) == ["#CD0000"] * 3
    assert palette.legend_entries() == (
        LegendEntry(label="Transect", color="#008B00", kind="line"),
        LegendEntry(label="Monitoring site", color="#CD0000", kind="line"),
    )
    assert palette.legend_entries(["Monitoring site"], kind="point") == (
        LegendEntry(label="Monitoring site", color="#CD0000", kind="point"),
    )


def test_category_palette_errors() -> None:
    palette = CategoryPalette(field="type", colors={"Study area": "purple4"}, channel=CHANNEL_FILL)

    with pytest.raises(ValueError, match="no colour"):
        palette.color_for("Transect")
    with pytest.raises(ValueError, match="no 'type' column"):
        palette.colors_for(sites_frame())
    with pytest.raises(ValueError, match="channel"):
        CategoryPalette(field="type", colors={"a": "red"}, channel="size")
    with pytest.raises(ValueError, match="category 'a'"):
        CategoryPalette(field="type", colors={"a": "nocolour"})


def test_category_palette_on_empty_layer() -> None:
    palette = CategoryPalette(field="Type", colors={"hotspot area": "tomato"}, channel=CHANNEL_FILL)

    assert palette.colors_for(gpd.GeoDataFrame(geometry=[], crs=4326)) == []


def test_colorize_masks_nan_and_out_of_domain() -> None:
    values = np.array([[np.nan, 0.0, 1.0], [50.0, 254.0, 300.0]])

    rgba = colorize(values, "RdYlBu", domain=(1.0, 254.0), reverse=True)

    assert rgba.shape == (2, 3, 4)
    assert rgba.dtype == np.uint8
    assert rgba[0, 0, 3] == 0
    assert rgba[0, 1, 3] == 0
    assert rgba[1, 2, 3] == 0
    assert (rgba[0, 2, 3], rgba[1, 0, 3], rgba[1, 1, 3]) == (255, 255, 255)
    cmap = get_colormap("RdYlBu", reverse=True)
    assert tuple(rgba[0, 2]) == tuple(cmap(0.0, bytes=True))


def test_colorize_without_domain_uses_valid_range() -> None:
    rgba = colorize(np.array([[2.0, 4.0]]), "viridis")

    assert (rgba[..., 3] == 255).all()
    assert not np.array_equal(rgba[0, 0], rgba[0, 1])
    assert (colorize(np.full((2, 2), np.nan), "viridis") == 0).all()


def test_ramp_colors_reverse() -> None:
    forward = ramp_colors("RdYlBu", 5)
    backward = ramp_colors("RdYlBu", 5, reverse=True)

    assert len(forward) == 5
    assert backward[0] == forward[-1]
    assert backward[-1] == forward[0]
    with pytest.raises(ValueError, match="Unknown colour palette"):
        ramp_colors("NotAPalette")


def test_publication_theme() -> None:
    theme = get_theme("Publication")

    assert theme is THEMES["publication"]
    assert theme.title_weight == "bold"
    assert theme.title_loc == "center"
    assert theme.title_scale == pytest.approx(1.2)
    assert not theme.axes_visible
    assert theme.legend_position == "bottom"
    assert theme.legend_horizontal
    assert theme.legend_title_style == "italic"
    assert theme.margins_mm == (10.0, 8.0, 6.0, 8.0)


def test_unknown_theme() -> None:
    assert set(THEMES) == {"minimal", "bw", "clean", "wsj", "publication"}
    with pytest.raises(ValueError, match="Unknown theme"):
        get_theme("economist")
