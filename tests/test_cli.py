from __future__ import annotations

import json
from pathlib import Path

import pytest

from trainingmaps import cli
from trainingmaps.io_vector import read_vector


def test_validate_command(config_path: Path) -> None:
    assert cli.main(["validate", "--config", str(config_path)]) == 0
    assert (config_path.parent / "build" / "logs" / "build.log").exists()


def test_validate_command_fails_on_missing_input(config_path: Path, course_data: dict[str, Path]) -> None:
    course_data["polygon_geojson"].unlink()

    assert cli.main(["validate", "--config", str(config_path)]) == 1


def test_session_command_reports_failure(config_path: Path, course_data: dict[str, Path]) -> None:
    course_data["points_csv"].unlink()

    assert cli.main(["session1", "--config", str(config_path)]) == 1


def test_session2_skip_web(config_path: Path) -> None:
    assert cli.main(["session2", "--config", str(config_path), "--skip-web"]) == 0
    assert (config_path.parent / "build" / "figures" / "session2_local_map_typed.png").exists()


def test_run_all_offline_writes_manifest(config_path: Path) -> None:
    code = cli.main(["run-all", "--config", str(config_path), "--skip-web", "--skip-raster"])

    assert code == 0
    manifest = json.loads((config_path.parent / "build" / "run_manifest.json").read_text(encoding="utf-8"))
    assert manifest["steps"] == {"session1": "ok", "session2": "ok", "session3": "ok"}
    assert manifest["options"] == {"include_web": False, "include_raster": False}
    assert len(manifest["config_hash_sha256"]) == 64
    assert any(path.endswith("session3_local_layers.html") for path in manifest["artifacts"]["session3"])


def test_run_all_stops_on_validation_errors(config_path: Path, course_data: dict[str, Path]) -> None:
    course_data["line_geojson"].unlink()

    assert cli.main(["run-all", "--config", str(config_path), "--skip-web"]) == 1
    assert not (config_path.parent / "build" / "run_manifest.json").exists()


def test_run_all_requires_raster_unless_skipped(config_path: Path, course_data: dict[str, Path]) -> None:
    course_data["sst_raster"].unlink()
    manifest_path = config_path.parent / "build" / "run_manifest.json"

    assert cli.main(["run-all", "--config", str(config_path), "--skip-web"]) == 1
    assert not manifest_path.exists()
    assert not (config_path.parent / "build" / "session1_manifest.json").exists()

    assert cli.main(["run-all", "--config", str(config_path), "--skip-web", "--skip-raster"]) == 0
    assert manifest_path.exists()


def test_export_geojson_command(config_path: Path, course_data: dict[str, Path], tmp_path: Path) -> None:
    out_dir = tmp_path / "exported"

    code = cli.main(
        [
            "export-geojson",
            "--config",
            str(config_path),
            "--output-dir",
            str(out_dir),
            str(course_data["points_csv"]),
            str(course_data["polygon_shp"]),
        ]
    )

    assert code == 0
    assert len(read_vector(out_dir / "points.geojson")) == 3
    polygon = read_vector(out_dir / "POLYGON.geojson")
    assert polygon.crs.to_epsg() == 4326


def test_export_geojson_reports_bad_inputs(config_path: Path, tmp_path: Path) -> None:
    code = cli.main(
        ["export-geojson", "--config", str(config_path), str(tmp_path / "missing.csv")]
    )

    assert code == 1


def test_missing_config_propagates(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        cli.main(["validate", "--config", str(tmp_path / "nope.yaml")])


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.main([])
