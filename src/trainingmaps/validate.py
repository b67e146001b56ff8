"""Validation layer for config and input datasets."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from pyproj.exceptions import CRSError
from xyzservices import providers as tile_providers

from .config import AppConfig
from .io_raster import read_raster
from .io_vector import read_points_csv, read_vector
from .normalize import as_crs, crs_label, crs_report
from .style import get_colormap, get_theme


@dataclass(slots=True)
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)


class Validator:
    """Checks config values and input datasets before any session runs."""

    def __init__(self, cfg: AppConfig) -> None:
        self.cfg = cfg

    def run(
        self,
        *,
        strict_data_files: bool = False,
        require_raster: bool = False,
        require_world: bool = False,
    ) -> ValidationReport:
        """Collect problems; `require_*` turns a missing optional dataset into an error."""
        report = ValidationReport()
        self._validate_session_inputs(report)
        self._validate_optional_datasets(
            report,
            raster_required=strict_data_files or require_raster,
            world_required=strict_data_files or require_world,
        )
        self._validate_crs_settings(report)
        self._validate_styles(report)
        self._validate_local_layers(report)
        self._validate_raster(report)
        return report

    def _validate_session_inputs(self, report: ValidationReport) -> None:
        seen: set[Path] = set()
        for session, paths in self.cfg.paths.session_inputs.items():
            for path in paths:
                if path in seen:
                    continue
                seen.add(path)
                if not path.exists():
                    report.add_error(f"Missing {session} input file: {path}")

    def _validate_optional_datasets(
        self,
        report: ValidationReport,
        *,
        raster_required: bool,
        world_required: bool,
    ) -> None:
        self._check_exists(report, self.cfg.paths.sst_raster, as_error=raster_required)
        world = self.cfg.paths.natural_earth_countries
        if isinstance(world, Path):
            self._check_exists(report, world, as_error=world_required)
        else:
            report.add_info(f"Natural Earth countries are downloaded from {world}")

    def _validate_crs_settings(self, report: ValidationReport) -> None:
        for field_name, value in (
            ("crs.target", self.cfg.crs.target),
            ("csv.crs", self.cfg.csv.crs),
            ("raster.crs", self.cfg.raster.crs),
        ):
            try:
                as_crs(value)
            except CRSError as exc:
                report.add_error(f"Invalid CRS for '{field_name}' ({value}): {exc}")

    def _validate_styles(self, report: ValidationReport) -> None:
        try:
            get_theme(self.cfg.static.theme)
        except ValueError as exc:
            report.add_error(f"static.theme: {exc}")
        try:
            get_colormap(self.cfg.raster.palette)
        except ValueError as exc:
            report.add_error(f"raster.palette: {exc}")

        interactive = self.cfg.interactive
        for field_name, name in (
            ("interactive.street_tiles", interactive.street_tiles),
            ("interactive.light_tiles", interactive.light_tiles),
            ("interactive.dark_tiles", interactive.dark_tiles),
            ("interactive.satellite_tiles", interactive.satellite_tiles),
        ):
            try:
                tile_providers.query_name(name)
            except ValueError:
                report.add_error(f"Unknown tile provider for '{field_name}': {name}")

    def _validate_local_layers(self, report: ValidationReport) -> None:
        paths = self.cfg.paths
        layers: dict[str, Any] = {}
        if paths.points_csv.exists():
            try:
                layers["points_csv"] = read_points_csv(
                    paths.points_csv,
                    lon_col=self.cfg.csv.lon_column,
                    lat_col=self.cfg.csv.lat_column,
                    crs=self.cfg.csv.crs,
                )
            except Exception as exc:
                report.add_error(f"Failed reading points CSV '{paths.points_csv}': {exc}")
        for name, path in (
            ("line", paths.line_geojson),
            ("polygon", paths.polygon_shp),
            ("point_shp", paths.point_shp),
            ("point_geojson", paths.point_geojson),
            ("polygon_geojson", paths.polygon_geojson),
        ):
            if not path.exists():
                continue
            try:
                frame = read_vector(path)
            except Exception as exc:
                report.add_error(f"Failed reading {name} layer '{path}': {exc}")
                continue
            if frame.empty:
                report.add_warning(f"Layer '{name}' has no features: {path}")
            if frame.crs is None:
                report.add_error(f"Layer '{name}' has no CRS: {path}")
                continue
            layers[name] = frame

        for name, frame in layers.items():
            report.add_info(f"Loaded {name}: {len(frame)} features")
        if layers:
            labels = crs_report(layers)
            report.add_info(
                "Layer CRS: " + ", ".join(f"{name}={label}" for name, label in labels.items())
            )
            if len(set(labels.values())) > 1:
                report.add_warning(
                    f"Input layers use more than one CRS; sessions reproject to {crs_label(self.cfg.crs.target)}"
                )

    def _validate_raster(self, report: ValidationReport) -> None:
        path = self.cfg.paths.sst_raster
        if not path.exists():
            return
        try:
            grid = read_raster(path)
        except Exception as exc:
            report.add_error(f"Failed reading raster '{path}': {exc}")
            return
        report.add_info(f"Raster {path.name}: {grid.width}x{grid.height}, crs={crs_label(grid.crs)}")
        expected_width = round(360.0 / abs(self.cfg.raster.x_delta))
        expected_height = round(180.0 / abs(self.cfg.raster.y_delta))
        if (grid.width, grid.height) != (expected_width, expected_height):
            report.add_warning(
                f"Raster is {grid.width}x{grid.height} but the configured pixel size implies "
                f"{expected_width}x{expected_height} for a global grid"
            )

    @staticmethod
    def _check_exists(report: ValidationReport, path: Path, *, as_error: bool) -> None:
        if path.exists():
            return
        msg = f"Missing dataset file: {path}"
        if as_error:
            report.add_error(msg)
        else:
            report.add_warning(msg)


def format_report_lines(report: ValidationReport) -> Iterable[str]:
    if report.infos:
        for info in report.infos:
            yield f"[INFO] {info}"
    if report.warnings:
        for warning in report.warnings:
            yield f"[WARN] {warning}"
    if report.errors:
        for error in report.errors:
            yield f"[ERROR] {error}"
    if report.ok:
        yield "[OK] Validation completed with no errors."
