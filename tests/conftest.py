"""Pytest configuration and shared fixtures."""

from datetime import datetime

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

from urbanchange.processing.raster import Raster, RasterGrid
from urbanchange.processing.region import Region
from urbanchange.utils.catalog import InMemoryCatalog

ORIGIN_X = 600000.0
ORIGIN_Y = 5040000.0
RESOLUTION = 10.0
SIZE = 40
UTM_CRS = "EPSG:32618"

# Reflectance triples (B8, B11, B4)
VEGETATION = {"B8": 3000.0, "B11": 2000.0, "B4": 1000.0}
BUILT_UP = {"B8": 1000.0, "B11": 3000.0, "B4": 900.0}


@pytest.fixture
def grid():
    """40 x 40 grid of 10 m pixels in UTM zone 18N."""
    return RasterGrid(from_origin(ORIGIN_X, ORIGIN_Y, RESOLUTION, RESOLUTION), SIZE, SIZE, UTM_CRS)


@pytest.fixture
def region():
    """Square of 30 x 30 pixels (0.09 km²) aligned to pixel edges inside the grid."""
    geometry = box(ORIGIN_X + 50, ORIGIN_Y - 350, ORIGIN_X + 350, ORIGIN_Y - 50)
    return Region("Testville", geometry, UTM_CRS)


def _band_values(grid, value):
    if np.isscalar(value):
        return np.full(grid.shape, float(value))
    return np.asarray(value, dtype=float)


def build_scene(grid, acquired, cloud=2.0, name=None, **bands):
    """Scene on `grid`; band values may be scalars or arrays. Unspecified bands default to vegetation."""
    values = {"B2": 1000.0, "B3": 1000.0, "B12": 1000.0, **VEGETATION}
    values.update(bands)
    return Raster(
        grid,
        {band: _band_values(grid, v) for band, v in values.items()},
        acquired=acquired,
        properties={"cloud_cover": cloud},
        name=name or f"S2_{acquired:%Y%m%d}",
    )


def half_built(grid, column=20):
    """Band arrays with built-up pixels left of `column` and vegetation elsewhere."""
    bands = {}
    for band in ("B8", "B11", "B4"):
        values = np.full(grid.shape, VEGETATION[band])
        values[:, :column] = BUILT_UP[band]
        bands[band] = values
    return bands


@pytest.fixture
def make_scene(grid):
    def factory(acquired=datetime(2019, 7, 1), cloud=2.0, name=None, **bands):
        return build_scene(grid, acquired, cloud, name, **bands)
    return factory


@pytest.fixture
def two_year_catalog(grid):
    """2019 all vegetation (two scenes), 2020 built-up left of column 20 (one scene)."""
    return InMemoryCatalog([
        build_scene(grid, datetime(2019, 6, 15), 1.0, **VEGETATION),
        build_scene(grid, datetime(2019, 8, 20), 5.0, **VEGETATION),
        build_scene(grid, datetime(2020, 7, 10), 3.0, **half_built(grid)),
    ])
