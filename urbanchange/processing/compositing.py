"""
Temporal median compositing of a scene time series.

Scenes are selected by acquisition date (inclusive window) and scene cloud
cover (strictly below the ceiling), then reduced per pixel and band with a
NaN-aware median, one tile at a time. An empty selection gives an all-NaN
composite on the target grid rather than zeros.
"""

from __future__ import annotations

import os
import calendar
import logging
import tempfile
import time
import warnings
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np
import rasterio

from ..exceptions import ResourceExceeded
from .raster import GeoTiffRaster, NoDataRaster, Raster, RasterGrid

logger = logging.getLogger(__name__)


def season_window(year: int, month_start: int, month_end: int) -> Tuple[date, date]:
    """Inclusive date window from the first day of month_start to the last day of month_end."""
    if not (1 <= month_start <= 12 and 1 <= month_end <= 12):
        raise ValueError(f"Months must be 1-12, got {month_start}..{month_end}")
    if month_start > month_end:
        raise ValueError("Month window must not wrap past December")
    last_day = calendar.monthrange(year, month_end)[1]
    return date(year, month_start, 1), date(year, month_end, last_day)


def _check_deadline(deadline: Optional[float], name: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise ResourceExceeded(f"Time budget exceeded while building {name}")


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass(frozen=True)
class Composite:
    """Median composite plus the scenes that went into it."""

    raster: Raster
    image_count: int
    start: date
    end: date
    cloud_ceiling: float
    scene_names: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.image_count == 0

    @property
    def grid(self) -> RasterGrid:
        return self.raster.grid


class Compositor:
    """
    Builds per-pixel median composites tile-by-tile.

    Args:
        tile_size: tile edge in pixels; bounds the working stack to
            n_scenes x tile_size² values per band
        scratch_directory: if set, composites are written there as GeoTIFFs
            and read back lazily instead of being held in memory
    """

    def __init__(self, tile_size: int = 512, scratch_directory: Optional[str] = None):
        self.tile_size = tile_size
        self.scratch_directory = scratch_directory or None
        if self.scratch_directory:
            os.makedirs(self.scratch_directory, exist_ok=True)

    @staticmethod
    def select_scenes(
        scenes: Sequence[Raster], start: date, end: date, cloud_ceiling: float
    ) -> List[Raster]:
        """Scenes acquired within [start, end] whose cloud cover is below the ceiling."""
        start, end = _as_date(start), _as_date(end)
        selected = []
        for scene in scenes:
            if scene.acquired is None:
                logger.warning(f"Skipping scene {scene.name} without acquisition date")
                continue
            acquired = _as_date(scene.acquired)
            if not (start <= acquired <= end):
                continue
            cloud = scene.cloud_cover
            if cloud is None or not cloud < cloud_ceiling:
                continue
            selected.append(scene)
        return sorted(selected, key=lambda s: s.acquired)

    def composite(
        self,
        scenes: Sequence[Raster],
        grid: RasterGrid,
        start: date,
        end: date,
        cloud_ceiling: float,
        bands: Sequence[str],
        name: str = None,
        deadline: Optional[float] = None,
    ) -> Composite:
        """
        Median composite of the qualifying scenes on `grid`.

        Raises:
            GridMismatch: a selected scene is not on `grid`
            MissingBandError: a selected scene lacks one of `bands`
            ResourceExceeded: `deadline` (a time.monotonic() value) passed
        """
        name = name or f"composite_{_as_date(start).isoformat()}_{_as_date(end).isoformat()}"
        selected = self.select_scenes(scenes, start, end, cloud_ceiling)
        bands = list(bands)

        if not selected:
            logger.warning(f"{name}: no scenes between {start} and {end} below {cloud_ceiling}% cloud")
            return Composite(NoDataRaster(grid, bands, name=name), 0, start, end, cloud_ceiling)

        for scene in selected:
            grid.check_aligned(scene.grid, what=f"scene {scene.name} and composite grid")

        logger.info(f"{name}: median of {len(selected)} scene(s), {len(bands)} band(s)")

        if self.scratch_directory:
            raster = self._composite_to_file(selected, grid, bands, name, deadline)
        else:
            raster = self._composite_in_memory(selected, grid, bands, name, deadline)

        return Composite(
            raster,
            len(selected),
            start,
            end,
            cloud_ceiling,
            tuple(s.name or s.acquired.isoformat() for s in selected),
        )

    def median_tile(self, scenes: Sequence[Raster], bands: Sequence[str], window) -> dict:
        """Per-band NaN-aware median of one window across scenes."""
        reads = [scene.read(bands, window) for scene in scenes]
        result = {}
        for band in bands:
            stack = np.stack([r[band] for r in reads], axis=0)
            with warnings.catch_warnings():
                # All-NaN pixels stay NaN
                warnings.simplefilter("ignore", category=RuntimeWarning)
                result[band] = np.nanmedian(stack, axis=0)
        return result

    def _composite_in_memory(self, scenes, grid: RasterGrid, bands, name, deadline=None) -> Raster:
        out = {band: np.full(grid.shape, np.nan, dtype=np.float64) for band in bands}
        for window in grid.iter_windows(self.tile_size):
            _check_deadline(deadline, name)
            tile = self.median_tile(scenes, bands, window)
            rows = slice(int(window.row_off), int(window.row_off) + int(window.height))
            cols = slice(int(window.col_off), int(window.col_off) + int(window.width))
            for band in bands:
                out[band][rows, cols] = tile[band]
        return Raster(grid, out, name=name, copy=False)

    def _composite_to_file(self, scenes, grid: RasterGrid, bands, name, deadline=None) -> Raster:
        fd, path = tempfile.mkstemp(prefix=f"{name}_", suffix=".tif", dir=self.scratch_directory)
        os.close(fd)
        profile = {
            "driver": "GTiff",
            "height": grid.height,
            "width": grid.width,
            "count": len(bands),
            "dtype": "float32",
            "crs": grid.crs,
            "transform": grid.transform,
            "nodata": float("nan"),
            "compress": "deflate",
        }
        if self.tile_size % 16 == 0 and self.tile_size <= min(grid.width, grid.height):
            # One GeoTIFF block per processing tile
            profile.update(tiled=True, blockxsize=self.tile_size, blockysize=self.tile_size)
        try:
            with rasterio.open(path, "w", **profile) as dst:
                for i, band in enumerate(bands, start=1):
                    dst.set_band_description(i, band)
                for window in grid.iter_windows(self.tile_size):
                    _check_deadline(deadline, name)
                    tile = self.median_tile(scenes, bands, window)
                    for i, band in enumerate(bands, start=1):
                        dst.write(tile[band].astype("float32"), i, window=window)
        except Exception:
            os.remove(path)
            raise

        logger.debug(f"{name}: composite written to {path}")
        return GeoTiffRaster(path, band_names=bands, name=name)
