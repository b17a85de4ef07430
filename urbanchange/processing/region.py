"""
Region of interest: a named polygon or multipolygon with its CRS.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import geopandas as gpd
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry


@dataclass(frozen=True)
class Region:
    name: str
    geometry: BaseGeometry
    crs: Optional[str] = "EPSG:4326"

    def __post_init__(self):
        if self.geometry is None or self.geometry.is_empty:
            raise ValueError(f"Region '{self.name}' has an empty geometry")
        if self.geometry.geom_type not in ("Polygon", "MultiPolygon"):
            raise ValueError(
                f"Region '{self.name}' must be a Polygon or MultiPolygon, got {self.geometry.geom_type}"
            )

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return tuple(self.geometry.bounds)

    @property
    def __geo_interface__(self):
        return mapping(self.geometry)

    def _series(self) -> gpd.GeoSeries:
        return gpd.GeoSeries([self.geometry], crs=self.crs)

    def to_crs(self, crs) -> "Region":
        """Copy of the region reprojected to `crs`."""
        if crs is None or self.crs is None:
            return self
        projected = self._series().to_crs(crs)
        return Region(self.name, projected.iloc[0], projected.crs.to_string())

    def estimate_utm_crs(self) -> str:
        """UTM zone CRS covering the region's centroid."""
        return self._series().estimate_utm_crs().to_string()
