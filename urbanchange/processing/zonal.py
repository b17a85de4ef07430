"""
Zonal aggregation of masked pixel area over a region.

The sum is accumulated tile-by-tile so only one tile of masks is ever held in
memory. A pixel counts as inside the region when its centre falls inside the
polygon (rasterio ``geometry_mask`` with ``all_touched=False``). Boundary
pixels are not fractionally weighted, so areas can differ slightly from
reducers that weight partial pixels.
"""

from __future__ import annotations

import time
import logging
from typing import Callable, Dict, Mapping, Optional, Sequence

import numpy as np
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.windows import Window
from shapely.geometry import mapping

from ..exceptions import ResourceExceeded
from .raster import Mask, RasterGrid
from .region import Region

logger = logging.getLogger(__name__)

DEFAULT_MAX_PIXELS = int(1e13)

TileReader = Callable[[Window], Mapping[str, np.ndarray]]


class ZonalAggregator:
    """
    Sums area-per-pixel over the pixels of a region where a mask is true.

    Args:
        max_pixels: ceiling on the number of grid pixels covering the region;
            larger requests raise ResourceExceeded before any tile is read
        tile_size: tile edge in pixels
        all_touched: count every pixel touched by the region outline
    """

    def __init__(self, max_pixels: int = DEFAULT_MAX_PIXELS, tile_size: int = 512, all_touched: bool = False):
        self.max_pixels = int(max_pixels)
        self.tile_size = tile_size
        self.all_touched = all_touched

    def region_window(self, grid: RasterGrid, region: Region) -> Optional[Window]:
        if grid.crs is not None and region.crs is not None:
            if CRS.from_user_input(grid.crs) != CRS.from_user_input(region.crs):
                raise ValueError(
                    f"Region '{region.name}' is in {region.crs}, grid is in {grid.crs}; reproject first"
                )
        return grid.window_for_bounds(region.bounds)

    def pixel_budget(self, grid: RasterGrid, region: Region) -> int:
        """Number of pixels to visit; raises ResourceExceeded above max_pixels."""
        window = self.region_window(grid, region)
        count = 0 if window is None else int(window.width) * int(window.height)
        if count > self.max_pixels:
            raise ResourceExceeded(
                f"Region '{region.name}' covers {count:,} pixels at {grid.resolution} "
                f"resolution, above the limit of {self.max_pixels:,}"
            )
        return count

    def region_mask(self, grid: RasterGrid, region: Region, window: Window) -> np.ndarray:
        """True for pixels of `window` inside the region."""
        return geometry_mask(
            [mapping(region.geometry)],
            out_shape=(int(window.height), int(window.width)),
            transform=grid.window_transform(window),
            all_touched=self.all_touched,
            invert=True,
        )

    def aggregate_tiles(
        self,
        grid: RasterGrid,
        region: Region,
        reader: TileReader,
        names: Sequence[str],
        deadline: Optional[float] = None,
    ) -> Dict[str, float]:
        """
        Area (km²) of each named mask inside the region, in one tiled pass.

        Args:
            reader: returns {name: bool array} for a window of `grid`
            names: mask names expected from the reader
            deadline: time.monotonic() value after which the pass is aborted

        Raises:
            ResourceExceeded: pixel ceiling or deadline exceeded
        """
        self.pixel_budget(grid, region)
        totals = {name: 0.0 for name in names}
        window = self.region_window(grid, region)
        if window is None:
            logger.warning(f"Region '{region.name}' does not overlap the grid")
            return totals

        for tile in grid.iter_windows(self.tile_size, within=window):
            if deadline is not None and time.monotonic() > deadline:
                raise ResourceExceeded(f"Time budget exceeded while aggregating over '{region.name}'")
            inside = self.region_mask(grid, region, tile)
            if not inside.any():
                continue
            masks = reader(tile)
            area = grid.pixel_area_km2(tile)
            for name in names:
                selected = np.asarray(masks[name], dtype=bool) & inside
                totals[name] += float(np.sum(area * selected))
        return totals

    def aggregate(self, mask: Mask, region: Region, deadline: Optional[float] = None) -> float:
        """Area (km²) of `mask` inside `region`."""
        return self.aggregate_tiles(
            mask.grid, region, lambda w: {mask.name: mask.read(w)}, [mask.name], deadline
        )[mask.name]

    def aggregate_many(self, masks: Mapping[str, Mask], region: Region, deadline: Optional[float] = None) -> Dict[str, float]:
        """Areas of several masks on one grid in a single pass."""
        if not masks:
            return {}
        items = list(masks.items())
        grid = items[0][1].grid
        for _, other in items[1:]:
            grid.check_aligned(other.grid, what="masks")
        return self.aggregate_tiles(
            grid,
            region,
            lambda w: {name: m.read(w) for name, m in items},
            [name for name, _ in items],
            deadline,
        )
