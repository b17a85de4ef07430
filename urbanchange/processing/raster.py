"""
Raster data model: pixel grids, multi-band rasters, index rasters and masks.

All rasters are immutable once built. Band arrays are exposed read-only and
every derived product is a new object. Pixel values are float64 with NaN as
the no-data marker; masks are plain booleans.
"""

from __future__ import annotations

import math
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.transform import Affine, array_bounds, from_origin
from rasterio.vrt import WarpedVRT
from rasterio.windows import Window
from rasterio.windows import transform as window_transform

from ..exceptions import GridMismatch, MissingBandError

logger = logging.getLogger(__name__)

# Authalic radius of the WGS84 ellipsoid (metres)
EARTH_RADIUS_M = 6371007.181


def _crs_equal(a, b) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return CRS.from_user_input(a) == CRS.from_user_input(b)


@dataclass(frozen=True)
class RasterGrid:
    """Pixel grid definition: affine transform, size and CRS."""

    transform: Affine
    width: int
    height: int
    crs: Optional[str] = None

    @classmethod
    def from_bounds(cls, bounds: Sequence[float], resolution: float, crs=None) -> "RasterGrid":
        """Grid covering (minx, miny, maxx, maxy) with square pixels of `resolution`."""
        minx, miny, maxx, maxy = bounds
        if resolution <= 0:
            raise ValueError("Resolution must be positive")
        width = max(1, int(math.ceil((maxx - minx) / resolution)))
        height = max(1, int(math.ceil((maxy - miny) / resolution)))
        crs_str = CRS.from_user_input(crs).to_string() if crs is not None else None
        return cls(from_origin(minx, maxy, resolution, resolution), width, height, crs_str)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def n_pixels(self) -> int:
        return self.width * self.height

    @property
    def resolution(self) -> float:
        return abs(self.transform.a)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return (west, south, east, north)

    @property
    def is_geographic(self) -> bool:
        return self.crs is not None and CRS.from_user_input(self.crs).is_geographic

    def full_window(self) -> Window:
        return Window(0, 0, self.width, self.height)

    def window_transform(self, window: Window) -> Affine:
        return window_transform(window, self.transform)

    def subgrid(self, window: Window) -> "RasterGrid":
        """Grid of the pixels inside `window`."""
        return RasterGrid(
            self.window_transform(window), int(window.width), int(window.height), self.crs
        )

    def window_for_bounds(self, bounds: Sequence[float]) -> Optional[Window]:
        """Smallest whole-pixel window covering `bounds`, clipped to the grid.

        Returns None when the bounds do not overlap the grid.
        """
        minx, miny, maxx, maxy = bounds
        inverse = ~self.transform
        c0, r0 = inverse * (minx, maxy)
        c1, r1 = inverse * (maxx, miny)
        col_start = max(0, int(math.floor(min(c0, c1))))
        col_stop = min(self.width, int(math.ceil(max(c0, c1))))
        row_start = max(0, int(math.floor(min(r0, r1))))
        row_stop = min(self.height, int(math.ceil(max(r0, r1))))
        if col_stop <= col_start or row_stop <= row_start:
            return None
        return Window(col_start, row_start, col_stop - col_start, row_stop - row_start)

    def iter_windows(self, tile_size: int, within: Window = None) -> Iterator[Window]:
        """Yield tiles of at most tile_size x tile_size pixels, row-major."""
        if tile_size < 1:
            raise ValueError("tile_size must be positive")
        base = within if within is not None else self.full_window()
        col_off, row_off = int(base.col_off), int(base.row_off)
        width, height = int(base.width), int(base.height)
        for row in range(row_off, row_off + height, tile_size):
            tile_h = min(tile_size, row_off + height - row)
            for col in range(col_off, col_off + width, tile_size):
                tile_w = min(tile_size, col_off + width - col)
                yield Window(col, row, tile_w, tile_h)

    def same_as(self, other: "RasterGrid") -> bool:
        return (
            self.width == other.width
            and self.height == other.height
            and self.transform.almost_equals(other.transform)
            and _crs_equal(self.crs, other.crs)
        )

    def check_aligned(self, other: "RasterGrid", what: str = "rasters") -> None:
        """Raise GridMismatch unless both grids are identical."""
        if not self.same_as(other):
            raise GridMismatch(
                f"Cannot combine {what} on different grids: "
                f"{self.width}x{self.height} @ {self.resolution} {self.crs} vs "
                f"{other.width}x{other.height} @ {other.resolution} {other.crs}"
            )

    def pixel_area_km2(self, window: Window = None) -> np.ndarray:
        """Area of each pixel in km², shaped (rows, 1) so it broadcasts over a tile.

        Projected grids use the constant cell size. Geographic grids use the
        spherical cell area per row, which varies with latitude.
        """
        window = window or self.full_window()
        rows = int(window.height)
        if not self.is_geographic:
            cell = abs(self.transform.a * self.transform.e) / 1e6
            return np.full((rows, 1), cell, dtype=np.float64)

        row_idx = np.arange(int(window.row_off), int(window.row_off) + rows + 1, dtype=np.float64)
        lat_edges = np.radians(self.transform.f + self.transform.e * row_idx)
        dlon = math.radians(abs(self.transform.a))
        areas = EARTH_RADIUS_M ** 2 * dlon * np.abs(np.sin(lat_edges[:-1]) - np.sin(lat_edges[1:]))
        return (areas / 1e6).reshape(rows, 1)


def _window_slices(window: Optional[Window]) -> Tuple[slice, slice]:
    if window is None:
        return slice(None), slice(None)
    row_off, col_off = int(window.row_off), int(window.col_off)
    return (
        slice(row_off, row_off + int(window.height)),
        slice(col_off, col_off + int(window.width)),
    )


def _frozen(values, dtype, copy: bool = True) -> np.ndarray:
    if copy:
        arr = np.array(values, dtype=dtype, copy=True)
    else:
        arr = np.asarray(values, dtype=dtype).view()
    arr.flags.writeable = False
    return arr


class Raster:
    """Multi-band raster held in memory.

    Attributes:
        grid: pixel grid shared by all bands
        acquired: acquisition timestamp (None for composites)
        properties: scene metadata, e.g. {"cloud_cover": 3.2}

    Band arrays are copied unless `copy` is False, in which case float64
    inputs are kept as read-only views and must not be modified afterwards.
    """

    def __init__(
        self,
        grid: RasterGrid,
        bands: Mapping[str, np.ndarray],
        acquired: Optional[datetime] = None,
        properties: Optional[Mapping] = None,
        name: Optional[str] = None,
        copy: bool = True,
    ):
        self.grid = grid
        self.acquired = acquired
        self.properties = dict(properties or {})
        self.name = name
        self._bands: Dict[str, np.ndarray] = {}
        for band_name, values in bands.items():
            arr = _frozen(values, np.float64, copy)
            if arr.shape != grid.shape:
                raise GridMismatch(
                    f"Band {band_name} has shape {arr.shape}, grid expects {grid.shape}"
                )
            self._bands[band_name] = arr

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(self._bands)

    @property
    def resolution(self) -> float:
        return self.grid.resolution

    @property
    def crs(self):
        return self.grid.crs

    @property
    def cloud_cover(self) -> Optional[float]:
        value = self.properties.get("cloud_cover")
        return None if value is None else float(value)

    def has_bands(self, names: Iterable[str]) -> bool:
        return all(name in self.band_names for name in names)

    def _read_band(self, name: str, window: Optional[Window]) -> np.ndarray:
        rows, cols = _window_slices(window)
        return self._bands[name][rows, cols]

    def read(self, bands: Sequence[str] = None, window: Window = None) -> Dict[str, np.ndarray]:
        """Read named bands (all by default), optionally restricted to a window."""
        names = list(bands) if bands is not None else list(self.band_names)
        missing = [b for b in names if b not in self.band_names]
        if missing:
            raise MissingBandError(
                f"Raster {self.name or ''} lacks band(s) {missing}; has {list(self.band_names)}"
            )
        return {name: self._read_band(name, window) for name in names}

    def __repr__(self) -> str:
        when = self.acquired.isoformat() if self.acquired else "composite"
        return f"<{type(self).__name__} {self.name or ''} {when} bands={list(self.band_names)} {self.grid.width}x{self.grid.height}>"


class NoDataRaster(Raster):
    """Raster whose every pixel is undefined (NaN); used for empty composites."""

    def __init__(self, grid: RasterGrid, band_names: Sequence[str], name: Optional[str] = None):
        super().__init__(grid, {}, name=name)
        self._names = tuple(band_names)

    @property
    def band_names(self) -> Tuple[str, ...]:
        return self._names

    def _read_band(self, name: str, window: Optional[Window]) -> np.ndarray:
        window = window or self.grid.full_window()
        return np.full((int(window.height), int(window.width)), np.nan, dtype=np.float64)


class GeoTiffRaster(Raster):
    """Raster backed by a GeoTIFF and read window-by-window with rasterio.

    Band names come from the band descriptions unless given explicitly.
    The file is opened per read so instances can be shared between threads.
    """

    def __init__(
        self,
        path: str,
        band_names: Sequence[str] = None,
        acquired: Optional[datetime] = None,
        properties: Optional[Mapping] = None,
        name: Optional[str] = None,
    ):
        with rasterio.open(path) as src:
            grid = RasterGrid(
                src.transform,
                src.width,
                src.height,
                src.crs.to_string() if src.crs else None,
            )
            if band_names is None:
                band_names = [
                    desc or f"band_{i}" for i, desc in enumerate(src.descriptions, start=1)
                ]
            if len(band_names) != src.count:
                raise ValueError(
                    f"{path} has {src.count} band(s) but {len(band_names)} name(s) were given"
                )
        super().__init__(grid, {}, acquired=acquired, properties=properties, name=name)
        self.path = str(path)
        self._names = tuple(band_names)

    @property
    def band_names(self) -> Tuple[str, ...]:
        return self._names

    def _read_band(self, name: str, window: Optional[Window]) -> np.ndarray:
        index = self._names.index(name) + 1
        with rasterio.open(self.path) as src:
            data = src.read(index, window=window, masked=True)
        return np.ma.filled(data.astype(np.float64), np.nan)


class WarpedRaster(Raster):
    """Raster read from one or more source files onto a target grid.

    Each band maps to (path or URL, band index). Windows are read through a
    rasterio ``WarpedVRT`` so sources in any CRS or resolution land on `grid`
    without reading whole scenes.
    """

    def __init__(
        self,
        grid: RasterGrid,
        sources: Mapping[str, Tuple[str, int]],
        acquired: Optional[datetime] = None,
        properties: Optional[Mapping] = None,
        name: Optional[str] = None,
        resampling: Resampling = Resampling.bilinear,
    ):
        super().__init__(grid, {}, acquired=acquired, properties=properties, name=name)
        self.sources = {band: (str(href), int(index)) for band, (href, index) in sources.items()}
        self.resampling = resampling

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(self.sources)

    def _read_band(self, name: str, window: Optional[Window]) -> np.ndarray:
        href, index = self.sources[name]
        with rasterio.open(href) as src:
            with WarpedVRT(
                src,
                crs=self.grid.crs,
                transform=self.grid.transform,
                width=self.grid.width,
                height=self.grid.height,
                resampling=self.resampling,
            ) as vrt:
                data = vrt.read(index, window=window, masked=True)
        return np.ma.filled(data.astype(np.float64), np.nan)


def write_geotiff(
    raster: Raster,
    path: str,
    bands: Sequence[str] = None,
    tile_size: int = 512,
    dtype: str = "float32",
) -> str:
    """Write a raster tile-by-tile to a tiled GeoTIFF with NaN nodata."""
    names = list(bands) if bands is not None else list(raster.band_names)
    grid = raster.grid
    profile = {
        "driver": "GTiff",
        "height": grid.height,
        "width": grid.width,
        "count": len(names),
        "dtype": dtype,
        "crs": grid.crs,
        "transform": grid.transform,
        "nodata": float("nan"),
        "compress": "deflate",
    }
    if grid.width >= 16 and grid.height >= 16:
        block = max(16, min(512, (tile_size // 16) * 16))
        profile.update(tiled=True, blockxsize=block, blockysize=block)

    with rasterio.open(path, "w", **profile) as dst:
        for i, band_name in enumerate(names, start=1):
            dst.set_band_description(i, band_name)
        for window in grid.iter_windows(tile_size):
            data = raster.read(names, window)
            for i, band_name in enumerate(names, start=1):
                dst.write(data[band_name].astype(dtype), i, window=window)

    logger.debug(f"Wrote {len(names)} band(s) to {path}")
    return str(path)


@dataclass(frozen=True)
class IndexRaster:
    """Single-band spectral index over a grid (NaN where undefined)."""

    name: str
    grid: RasterGrid
    values: np.ndarray = field(repr=False)

    def __post_init__(self):
        arr = _frozen(self.values, np.float64)
        if arr.shape != self.grid.shape:
            raise GridMismatch(f"Index {self.name} has shape {arr.shape}, grid expects {self.grid.shape}")
        object.__setattr__(self, "values", arr)

    def read(self, window: Window = None) -> np.ndarray:
        rows, cols = _window_slices(window)
        return self.values[rows, cols]


@dataclass(frozen=True)
class Mask:
    """Single-band boolean raster: exactly True or False per pixel."""

    name: str
    grid: RasterGrid
    values: np.ndarray = field(repr=False)

    def __post_init__(self):
        arr = _frozen(self.values, bool)
        if arr.shape != self.grid.shape:
            raise GridMismatch(f"Mask {self.name} has shape {arr.shape}, grid expects {self.grid.shape}")
        object.__setattr__(self, "values", arr)

    def read(self, window: Window = None) -> np.ndarray:
        rows, cols = _window_slices(window)
        return self.values[rows, cols]

    def count(self) -> int:
        return int(np.count_nonzero(self.values))
