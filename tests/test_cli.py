import json
import logging

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rasterio

from conftest import BUILT_UP, UTM_CRS, VEGETATION
from urbanchange.cli import build_parser, main, to_analysis_config
from urbanchange.config.settings import ConfigManager

BANDS = ("B2", "B3", "B4", "B8", "B11", "B12")


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Run from an empty directory and restore the root logger afterwards."""
    monkeypatch.chdir(tmp_path)
    for name in ("URBAN_REGION", "URBAN_YEAR_START", "URBAN_YEAR_END", "SCENES_DIRECTORY", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    root = logging.getLogger()
    saved = list(root.handlers)
    saved_level = root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in saved:
        root.addHandler(handler)
    root.setLevel(saved_level)


def _write_band(path, grid, value):
    profile = {
        "driver": "GTiff", "height": grid.height, "width": grid.width, "count": 1,
        "dtype": "float32", "crs": grid.crs, "transform": grid.transform, "nodata": float("nan"),
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(np.full(grid.shape, value, dtype="float32"), 1)


@pytest.fixture
def workspace(tmp_path, grid, region):
    """Boundaries file, two staged scenes (2019 vegetation, 2020 built-up) and a config file."""
    boundaries = tmp_path / "boundaries.gpkg"
    gpd.GeoDataFrame({"ADM2_NAME": [region.name]}, geometry=[region.geometry], crs=UTM_CRS).to_file(
        boundaries, driver="GPKG"
    )

    scenes = tmp_path / "scenes"
    scenes.mkdir()
    rows = []
    for scene_id, when, cover in (("veg", "2019-07-01T15:30:00Z", VEGETATION), ("city", "2020-07-01T15:30:00Z", BUILT_UP)):
        values = {"B2": 1000.0, "B3": 1000.0, "B12": 1000.0, **cover}
        row = {"id": scene_id, "datetime": when, "cloud_cover": 1.0}
        for band in BANDS:
            _write_band(scenes / f"{scene_id}_{band}.tif", grid, values[band])
            row[band] = f"{scene_id}_{band}.tif"
        rows.append(row)
    pd.DataFrame(rows).to_csv(scenes / "scenes.csv", index=False)

    config = tmp_path / "config.json"
    config.write_text(json.dumps({
        "analysis": {"target_crs": UTM_CRS},
        "processing": {"max_workers": 2, "tile_size": 16},
    }))
    return {"boundaries": str(boundaries), "scenes": str(scenes), "config": str(config), "out": str(tmp_path / "out")}


def test_parser_reads_shared_options():
    args = build_parser().parse_args([
        "change", "--region", "Laval", "--years", "2019", "2021", "--months", "6", "9",
        "--cloud-ceiling", "12", "--threshold", "dense=NDBI>0.2,NDVI<0.1", "-v",
    ])
    assert args.cmd == "change"
    assert args.years == [2019, 2021]
    assert args.months == [6, 9]
    assert args.cloud_ceiling == 12.0
    assert args.threshold == ["dense=NDBI>0.2,NDVI<0.1"]
    assert args.verbose


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_overrides_applied_to_config(tmp_path):
    config = ConfigManager(env_file=str(tmp_path / "none.env")).config
    args = build_parser().parse_args([
        "run", "--region", "Laval", "--years", "2020", "2022", "--max-pixels", "1e6",
        "--threshold", "dense=NDBI>0.2,NDVI<0.1", "--scenes-dir", "staged", "--workers", "3", "-v",
    ])
    to_analysis_config(args, config)
    assert config.analysis.region == "Laval"
    assert config.analysis.years == [2020, 2021, 2022]
    assert config.analysis.max_pixels == 1_000_000
    assert config.analysis.threshold_configs == [{
        "name": "dense",
        "rules": [
            {"index": "NDBI", "comparator": ">", "value": 0.2},
            {"index": "NDVI", "comparator": "<", "value": 0.1},
        ],
    }]
    assert config.catalog.scenes_directory == "staged"
    assert config.processing.max_workers == 3
    assert config.logging.level == "DEBUG"


def test_show_config_prints_json(capsys):
    assert main(["show-config", "--region", "Gatineau"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["analysis"]["region"] == "Gatineau"


def test_bad_threshold_fails(capsys):
    assert main(["show-config", "--threshold", "bad=NDBI~0"]) == 1
    assert "Error" in capsys.readouterr().err


def test_unknown_region_fails(workspace, capsys):
    code = main([
        "area", "--config", workspace["config"], "--boundaries", workspace["boundaries"],
        "--region", "Nowhere", "--scenes-dir", workspace["scenes"], "--output-dir", workspace["out"],
    ])
    assert code == 1
    assert "Nowhere" in capsys.readouterr().err


def test_invalid_years_fail_validation(workspace):
    assert main(["area", "--config", workspace["config"], "--years", "2024", "2019"]) == 2


def test_area_analysis_end_to_end(workspace, tmp_path, capsys):
    code = main([
        "area", "--config", workspace["config"], "--boundaries", workspace["boundaries"],
        "--region", "Testville", "--scenes-dir", workspace["scenes"], "--years", "2019", "2020",
        "--output-dir", workspace["out"],
    ])
    assert code == 0
    assert "Urban area by year" in capsys.readouterr().out

    table = pd.read_csv(tmp_path / "out" / "area_urban_areas.csv")
    assert list(table["configuration"]) == ["original", "ebbi", "original", "ebbi"]
    assert list(table["status"]) == ["ok"] * 4
    assert table["urban_area_km2"].tolist() == pytest.approx([0.0, 0.0, 0.09, 0.09])
    assert (tmp_path / "out" / "urban_area_ndbi_vs_ebbi.html").exists()
