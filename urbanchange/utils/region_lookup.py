"""
Administrative boundary lookup.
Resolves region names against a level-2 boundaries layer (GAUL style).
"""

import os
import logging
from typing import List, Optional

import geopandas as gpd
from shapely.ops import unary_union

from ..exceptions import InvalidRegionGeometry, RegionNotFound
from ..processing.region import Region

logger = logging.getLogger(__name__)

POLYGONAL = ("Polygon", "MultiPolygon")


def _polygonal(name: str, geometry):
    """The polygon parts of a feature geometry; raises InvalidRegionGeometry if there are none."""
    if geometry is not None and geometry.geom_type == "GeometryCollection":
        parts = [g for g in geometry.geoms if g.geom_type in POLYGONAL and not g.is_empty]
        if parts:
            geometry = unary_union(parts)
    if geometry is None or geometry.is_empty:
        raise InvalidRegionGeometry(f"Region '{name}' has an empty geometry")
    if geometry.geom_type not in POLYGONAL:
        raise InvalidRegionGeometry(
            f"Region '{name}' has a {geometry.geom_type} geometry; a Polygon or MultiPolygon is required"
        )
    return geometry


class RegionLookup:
    """Loads a boundaries layer and resolves region names to geometries."""

    def __init__(self, boundaries_path: str = None, name_field: str = "ADM2_NAME", layer: str = None):
        self.boundaries_path = boundaries_path
        self.name_field = name_field
        self.layer = layer
        self.boundaries_gdf: Optional[gpd.GeoDataFrame] = None

    @classmethod
    def from_geodataframe(cls, gdf: gpd.GeoDataFrame, name_field: str = "ADM2_NAME") -> "RegionLookup":
        lookup = cls(None, name_field)
        lookup.boundaries_gdf = cls._with_crs(gdf)
        return lookup

    @staticmethod
    def _with_crs(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        # Boundaries without a declared CRS are taken as WGS84
        if gdf.crs is None:
            gdf = gdf.set_crs("EPSG:4326")
        return gdf

    def load(self) -> gpd.GeoDataFrame:
        """
        Load the boundaries layer (once).

        Returns:
            GeoDataFrame with one feature per administrative unit
        """
        if self.boundaries_gdf is not None:
            return self.boundaries_gdf

        if not self.boundaries_path or not os.path.exists(self.boundaries_path):
            raise FileNotFoundError(f"Boundaries file not found: {self.boundaries_path}")

        logger.info(f"Loading boundaries from: {self.boundaries_path}")
        gdf = gpd.read_file(self.boundaries_path, layer=self.layer) if self.layer else gpd.read_file(self.boundaries_path)
        if self.name_field not in gdf.columns:
            raise KeyError(f"Boundaries layer has no '{self.name_field}' field")
        self.boundaries_gdf = self._with_crs(gdf)
        logger.info(f"Loaded {len(self.boundaries_gdf)} boundary features")
        return self.boundaries_gdf

    def names(self) -> List[str]:
        gdf = self.load()
        return sorted(gdf[self.name_field].dropna().astype(str).unique())

    def lookup(self, name: str) -> Region:
        """
        Exact-match a region name.

        Raises:
            RegionNotFound: no feature, or more than one feature, has that name
            InvalidRegionGeometry: the matching feature has no polygon
        """
        gdf = self.load()
        matches = gdf[gdf[self.name_field] == name]
        if len(matches) != 1:
            raise RegionNotFound(name, len(matches))
        geometry = _polygonal(name, matches.geometry.iloc[0])
        logger.info(f"Resolved region '{name}'")
        return Region(name, geometry, gdf.crs.to_string())
