from datetime import date, datetime

import numpy as np
import pytest
from rasterio.transform import from_origin

from urbanchange.exceptions import GridMismatch, ResourceExceeded
from urbanchange.processing.compositing import Compositor, season_window
from urbanchange.processing.raster import GeoTiffRaster, Raster, RasterGrid

START = date(2019, 5, 1)
END = date(2019, 10, 31)


def test_season_window_inclusive():
    assert season_window(2019, 5, 10) == (START, END)
    assert season_window(2020, 2, 2) == (date(2020, 2, 1), date(2020, 2, 29))


@pytest.mark.parametrize("months", [(0, 5), (5, 13), (10, 5)])
def test_season_window_invalid(months):
    with pytest.raises(ValueError):
        season_window(2019, *months)


def test_select_scenes_filters_dates_and_cloud(make_scene):
    scenes = [
        make_scene(datetime(2019, 5, 1), cloud=1.0, name="first-day"),
        make_scene(datetime(2019, 10, 31, 23, 0), cloud=1.0, name="last-day"),
        make_scene(datetime(2019, 4, 30), cloud=1.0, name="too-early"),
        make_scene(datetime(2019, 11, 1), cloud=1.0, name="too-late"),
        make_scene(datetime(2019, 7, 1), cloud=8.0, name="at-ceiling"),
        make_scene(datetime(2019, 7, 2), cloud=7.9, name="below-ceiling"),
    ]
    selected = Compositor.select_scenes(scenes, START, END, 8.0)
    assert [s.name for s in selected] == ["first-day", "below-ceiling", "last-day"]


def test_median_per_pixel(grid, make_scene):
    scenes = [
        make_scene(datetime(2019, 6, 1), B8=100, B11=1, B4=1),
        make_scene(datetime(2019, 7, 1), B8=300, B11=1, B4=1),
        make_scene(datetime(2019, 8, 1), B8=200, B11=1, B4=1),
    ]
    composite = Compositor(tile_size=16).composite(scenes, grid, START, END, 8.0, ["B8"])
    assert composite.image_count == 3
    assert np.allclose(composite.raster.read(["B8"])["B8"], 200)
    assert composite.raster.acquired is None


def test_nan_in_one_scene_is_ignored(grid, make_scene):
    partial = np.full(grid.shape, 500.0)
    partial[0, 0] = np.nan
    scenes = [
        make_scene(datetime(2019, 6, 1), B8=partial, B11=1, B4=1),
        make_scene(datetime(2019, 7, 1), B8=np.full(grid.shape, np.nan), B11=1, B4=1),
    ]
    b8 = Compositor().composite(scenes, grid, START, END, 8.0, ["B8"]).raster.read(["B8"])["B8"]
    assert np.isnan(b8[0, 0])
    assert b8[1, 1] == 500.0


def test_empty_selection_is_all_nan(grid, make_scene):
    scenes = [make_scene(datetime(2019, 7, 1), cloud=50.0)]
    composite = Compositor().composite(scenes, grid, START, END, 8.0, ["B8", "B11"])
    assert composite.is_empty
    assert composite.image_count == 0
    assert np.isnan(composite.raster.read(["B8"])["B8"]).all()
    assert composite.grid.same_as(grid)


def test_misaligned_scene_raises(grid, make_scene):
    other = RasterGrid(from_origin(0, 0, 10, 10), grid.width, grid.height, grid.crs)
    stray = Raster(
        other,
        {"B8": np.ones(grid.shape)},
        acquired=datetime(2019, 7, 1),
        properties={"cloud_cover": 1.0},
    )
    with pytest.raises(GridMismatch):
        Compositor().composite([stray], grid, START, END, 8.0, ["B8"])


def test_expired_deadline(grid, make_scene):
    scenes = [make_scene(datetime(2019, 7, 1))]
    with pytest.raises(ResourceExceeded):
        Compositor().composite(scenes, grid, START, END, 8.0, ["B8"], deadline=0.0)


def test_scratch_directory_composite_matches_memory(grid, make_scene, tmp_path):
    rng = np.random.default_rng(5)
    scenes = [
        make_scene(datetime(2019, 6, d), B8=rng.uniform(0, 4000, grid.shape), B11=1, B4=1)
        for d in (1, 2, 3)
    ]
    in_memory = Compositor(tile_size=16).composite(scenes, grid, START, END, 8.0, ["B8"])
    on_disk = Compositor(tile_size=16, scratch_directory=str(tmp_path)).composite(
        scenes, grid, START, END, 8.0, ["B8"]
    )
    assert isinstance(on_disk.raster, GeoTiffRaster)
    assert on_disk.raster.band_names == ("B8",)
    assert np.allclose(
        on_disk.raster.read(["B8"])["B8"], in_memory.raster.read(["B8"])["B8"], rtol=1e-6
    )
