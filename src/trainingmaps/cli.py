"""CLI entrypoint for the GIS training map pipelines."""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from .config import AppConfig, load_config
from .io_vector import export_geojson, read_points_csv, read_vector
from .models import SessionReport
from .sessions import format_session_lines, run_session1, run_session2, run_session3
from .util import ensure_directories, setup_logging, sha256_file, write_json
from .validate import Validator, format_report_lines

LOGGER = logging.getLogger("trainingmaps.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trainingmaps",
        description="GIS training sessions: load, reproject, style and publish maps.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default="config.yaml", help="Path to YAML config.")
        p.add_argument("--verbose", action="store_true", help="Enable debug logs.")

    def add_skip_web(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--skip-web",
            action="store_true",
            help="Skip ArcGIS FeatureServer and GeoJSON feed layers (offline run).",
        )

    def add_skip_raster(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--skip-raster",
            action="store_true",
            help="Skip the sea-surface-temperature raster map.",
        )

    validate_p = subparsers.add_parser("validate", help="Validate config and input files.")
    add_common(validate_p)
    validate_p.add_argument(
        "--strict-data-files",
        action="store_true",
        help="Treat missing raster and Natural Earth files as validation errors.",
    )

    s1_p = subparsers.add_parser("session1", help="Load layers, check CRS, projection gallery, GeoJSON export.")
    add_common(s1_p)

    s2_p = subparsers.add_parser("session2", help="Publication-ready static maps.")
    add_common(s2_p)
    add_skip_web(s2_p)

    s3_p = subparsers.add_parser("session3", help="Interactive Leaflet maps.")
    add_common(s3_p)
    add_skip_web(s3_p)
    add_skip_raster(s3_p)

    all_p = subparsers.add_parser("run-all", help="Validate, then run sessions 1-3.")
    add_common(all_p)
    add_skip_web(all_p)
    add_skip_raster(all_p)

    export_p = subparsers.add_parser("export-geojson", help="Convert vector/CSV files to GeoJSON (EPSG:4326).")
    add_common(export_p)
    export_p.add_argument("inputs", nargs="+", help="CSV, GeoJSON, Shapefile or other OGR inputs.")
    export_p.add_argument(
        "--output-dir",
        default=None,
        help="Destination directory (defaults to paths.geojson_dir).",
    )
    export_p.add_argument("--lon-col", default=None, help="CSV longitude column (defaults to csv.lon_column).")
    export_p.add_argument("--lat-col", default=None, help="CSV latitude column (defaults to csv.lat_column).")
    export_p.add_argument("--csv-crs", default=None, help="CRS of CSV coordinates (defaults to csv.crs).")
    return parser


def _load_and_setup(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    log_path = cfg.paths.logs_dir / "build.log"
    setup_logging(log_path, verbose=args.verbose)
    ensure_directories(cfg.paths.build_directories)
    return cfg


def _run_validate(cfg: AppConfig, *, strict_data_files: bool) -> int:
    report = Validator(cfg).run(strict_data_files=strict_data_files)
    for line in format_report_lines(report):
        LOGGER.info(line)
    return 0 if report.ok else 1


def _run_session(name: str, runner: Callable[[], SessionReport]) -> SessionReport | None:
    LOGGER.info("Starting %s.", name)
    try:
        report = runner()
    except Exception as exc:
        LOGGER.error("%s failed: %s", name, exc)
        LOGGER.debug("%s traceback", name, exc_info=True)
        return None
    for line in format_session_lines(report):
        LOGGER.info(line)
    for warning in report.warnings:
        LOGGER.warning(warning)
    return report


def _run_all(cfg: AppConfig, *, include_web: bool, include_raster: bool) -> int:
    LOGGER.info("Starting full training pipeline.")

    # Sessions that will run need their datasets up front.
    report = Validator(cfg).run(require_raster=include_raster, require_world=include_web)
    for line in format_report_lines(report):
        LOGGER.info(line)
    if not report.ok:
        LOGGER.error("Run aborted due to validation errors.")
        return 1

    steps: dict[str, str] = {}
    artifacts: dict[str, list[str]] = {}
    runners: tuple[tuple[str, Callable[[], SessionReport]], ...] = (
        ("session1", lambda: run_session1(cfg)),
        ("session2", lambda: run_session2(cfg, include_web=include_web)),
        (
            "session3",
            lambda: run_session3(cfg, include_web=include_web, include_raster=include_raster),
        ),
    )
    for name, runner in runners:
        session_report = _run_session(name, runner)
        if session_report is None:
            LOGGER.error("Run aborted due to %s errors.", name)
            return 1
        steps[name] = "ok"
        artifacts[name] = list(session_report.artifacts)

    manifest_path = cfg.paths.output_dir / "run_manifest.json"
    write_json(
        manifest_path,
        {
            "project": cfg.project.name,
            "finished_at_utc": datetime.now(timezone.utc).isoformat(),
            "config_hash_sha256": sha256_file(cfg.source_path),
            "options": {"include_web": include_web, "include_raster": include_raster},
            "steps": steps,
            "artifacts": artifacts,
        },
    )
    LOGGER.info("Run manifest written to %s", manifest_path)
    LOGGER.info("Run finished.")
    return 0


def _run_export_geojson(
    cfg: AppConfig,
    *,
    inputs: Sequence[str],
    output_dir: Path,
    lon_col: str,
    lat_col: str,
    csv_crs: str,
) -> int:
    failures = 0
    for raw in inputs:
        source = Path(raw)
        try:
            if source.suffix.casefold() == ".csv":
                frame = read_points_csv(source, lon_col=lon_col, lat_col=lat_col, crs=csv_crs)
            else:
                frame = read_vector(source)
            out_path = export_geojson(frame, output_dir / f"{source.stem}.geojson")
        except Exception as exc:
            LOGGER.error("GeoJSON export failed for %s: %s", source, exc)
            failures += 1
            continue
        LOGGER.info("Exported %s -> %s (%d features)", source, out_path, len(frame))
    return 1 if failures else 0


def _dispatch(args: argparse.Namespace) -> int:
    cfg = _load_and_setup(args)
    command = str(args.command)
    if command == "validate":
        return _run_validate(cfg, strict_data_files=bool(args.strict_data_files))
    if command == "session1":
        return 0 if _run_session("session1", lambda: run_session1(cfg)) else 1
    if command == "session2":
        include_web = not bool(args.skip_web)
        return 0 if _run_session("session2", lambda: run_session2(cfg, include_web=include_web)) else 1
    if command == "session3":
        include_web = not bool(args.skip_web)
        include_raster = not bool(args.skip_raster)
        report = _run_session(
            "session3",
            lambda: run_session3(cfg, include_web=include_web, include_raster=include_raster),
        )
        return 0 if report else 1
    if command == "run-all":
        return _run_all(
            cfg,
            include_web=not bool(args.skip_web),
            include_raster=not bool(args.skip_raster),
        )
    if command == "export-geojson":
        return _run_export_geojson(
            cfg,
            inputs=[str(item) for item in args.inputs],
            output_dir=Path(args.output_dir) if args.output_dir else cfg.paths.geojson_dir,
            lon_col=args.lon_col or cfg.csv.lon_column,
            lat_col=args.lat_col or cfg.csv.lat_column,
            csv_crs=args.csv_crs or cfg.csv.crs,
        )
    raise ValueError(f"Unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
