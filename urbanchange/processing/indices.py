"""
Spectral indices from Sentinel-2 reflectance bands.

    NDBI = (SWIR1 - NIR) / (SWIR1 + NIR)            B11, B8
    NDVI = (NIR - Red) / (NIR + Red)                B8, B4
    EBBI = (SWIR1 - NIR) / (10 * sqrt(SWIR1 + SWIR2))   B11, B8, B12

Any non-finite result (division by zero, 0/0, negative radicand) is NaN.
No clamping is applied.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Mapping

import numpy as np
from rasterio.windows import Window

from ..exceptions import MissingBandError
from .raster import IndexRaster, Raster

BAND_RED = "B4"
BAND_NIR = "B8"
BAND_SWIR1 = "B11"
BAND_SWIR2 = "B12"

INDEX_BANDS: Dict[str, tuple] = {
    "NDBI": (BAND_SWIR1, BAND_NIR),
    "NDVI": (BAND_NIR, BAND_RED),
    "EBBI": (BAND_SWIR1, BAND_NIR, BAND_SWIR2),
}


def _undefined_to_nan(values: np.ndarray) -> np.ndarray:
    values = np.asarray(values, dtype=np.float64)
    values[~np.isfinite(values)] = np.nan
    return values


def normalized_difference(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """(a - b) / (a + b), NaN where undefined."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        result = (a - b) / (a + b)
    return _undefined_to_nan(result)


def ndbi(bands: Mapping[str, np.ndarray]) -> np.ndarray:
    return normalized_difference(bands[BAND_SWIR1], bands[BAND_NIR])


def ndvi(bands: Mapping[str, np.ndarray]) -> np.ndarray:
    return normalized_difference(bands[BAND_NIR], bands[BAND_RED])


def ebbi(bands: Mapping[str, np.ndarray]) -> np.ndarray:
    swir1 = np.asarray(bands[BAND_SWIR1], dtype=np.float64)
    nir = np.asarray(bands[BAND_NIR], dtype=np.float64)
    swir2 = np.asarray(bands[BAND_SWIR2], dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        result = (swir1 - nir) / (10 * np.sqrt(swir1 + swir2))
    return _undefined_to_nan(result)


INDEX_FUNCTIONS: Dict[str, Callable[[Mapping[str, np.ndarray]], np.ndarray]] = {
    "NDBI": ndbi,
    "NDVI": ndvi,
    "EBBI": ebbi,
}


def canonical_index(name: str) -> str:
    key = str(name).strip().upper()
    if key not in INDEX_FUNCTIONS:
        raise KeyError(f"Unknown index '{name}'; expected one of {sorted(INDEX_FUNCTIONS)}")
    return key


def required_bands(names: Iterable[str]) -> List[str]:
    """Bands needed to compute the given indices, in first-use order."""
    bands: List[str] = []
    for name in names:
        for band in INDEX_BANDS[canonical_index(name)]:
            if band not in bands:
                bands.append(band)
    return bands


def compute_index(name: str, bands: Mapping[str, np.ndarray]) -> np.ndarray:
    key = canonical_index(name)
    missing = [b for b in INDEX_BANDS[key] if b not in bands]
    if missing:
        raise MissingBandError(f"{key} needs band(s) {missing}")
    return INDEX_FUNCTIONS[key](bands)


def compute_indices(names: Iterable[str], bands: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
    return {canonical_index(name): compute_index(name, bands) for name in names}


def calculate_index(raster: Raster, name: str, window: Window = None) -> IndexRaster:
    """Index raster for the whole raster or for one window of it."""
    key = canonical_index(name)
    values = compute_index(key, raster.read(INDEX_BANDS[key], window))
    grid = raster.grid if window is None else raster.grid.subgrid(window)
    return IndexRaster(key, grid, values)
