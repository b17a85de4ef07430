"""
Image catalogs: sources of Sentinel-2 scenes for a region and date window.

Every catalog returns scenes as rasters on the requested analysis grid, so
the compositor can stack them pixel-for-pixel.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime, time as dt_time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import geopandas as gpd
import pandas as pd
import requests
from shapely.geometry import box

from ..exceptions import CatalogError
from ..processing.raster import Raster, RasterGrid, WarpedRaster
from ..processing.region import Region
from .stac_client import STACClient

logger = logging.getLogger(__name__)

DEFAULT_ASSET_MAP = {
    "B2": "blue",
    "B3": "green",
    "B4": "red",
    "B8": "nir",
    "B11": "swir16",
    "B12": "swir22",
}


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


class ImageCatalog:
    """Base class for scene sources."""

    def query(
        self,
        region: Region,
        grid: RasterGrid,
        start: date,
        end: date,
        cloud_ceiling: float,
        bands: Sequence[str],
    ) -> List[Raster]:
        """
        Scenes intersecting `region`, acquired within [start, end], with cloud
        cover strictly below `cloud_ceiling` and carrying every band in `bands`.

        Returned scenes are ordered by acquisition time.
        """
        raise NotImplementedError


class InMemoryCatalog(ImageCatalog):
    """Catalog over a fixed list of rasters already on the analysis grid."""

    def __init__(self, scenes: Iterable[Raster]):
        self.scenes = list(scenes)

    def __len__(self) -> int:
        return len(self.scenes)

    def query(self, region, grid, start, end, cloud_ceiling, bands) -> List[Raster]:
        start, end = _as_date(start), _as_date(end)
        footprint = region.geometry
        selected = []
        for scene in self.scenes:
            if scene.acquired is None or not (start <= _as_date(scene.acquired) <= end):
                continue
            cloud = scene.cloud_cover
            if cloud is None or not cloud < cloud_ceiling:
                continue
            if not scene.has_bands(bands):
                logger.debug(f"Scene {scene.name} lacks one of {list(bands)}")
                continue
            if not box(*scene.grid.bounds).intersects(footprint):
                continue
            selected.append(scene)
        logger.info(f"In-memory catalog: {len(selected)} of {len(self.scenes)} scene(s) match {start}..{end}")
        return sorted(selected, key=lambda s: s.acquired)


class DirectoryCatalog(ImageCatalog):
    """
    Catalog over pre-staged GeoTIFFs listed in a scenes index.

    The index (``scenes.csv`` or ``scenes.json`` in the directory) has one row
    per scene with columns ``id``, ``datetime``, ``cloud_cover`` and one column
    per band holding the file name of that band, relative to the directory.
    Optional ``minx, miny, maxx, maxy`` columns (EPSG:4326) allow footprint
    filtering; without them every scene is considered to intersect.
    """

    INDEX_NAMES = ("scenes.csv", "scenes.json")

    def __init__(self, directory: str, index_file: str = None):
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise CatalogError(f"Scenes directory not found: {directory}")
        self.index_path = Path(index_file) if index_file else self._find_index()
        self._index: Optional[pd.DataFrame] = None

    def _find_index(self) -> Path:
        for name in self.INDEX_NAMES:
            candidate = self.directory / name
            if candidate.exists():
                return candidate
        raise CatalogError(f"No scenes index ({', '.join(self.INDEX_NAMES)}) in {self.directory}")

    @property
    def index(self) -> pd.DataFrame:
        if self._index is None:
            if self.index_path.suffix.lower() == ".json":
                with open(self.index_path, "r") as f:
                    df = pd.DataFrame(json.load(f))
            else:
                df = pd.read_csv(self.index_path)
            missing = [c for c in ("id", "datetime", "cloud_cover") if c not in df.columns]
            if missing:
                raise CatalogError(f"Scenes index {self.index_path} lacks column(s) {missing}")
            df["datetime"] = pd.to_datetime(df["datetime"], utc=True)
            self._index = df
            logger.info(f"Loaded {len(df)} scene(s) from {self.index_path}")
        return self._index

    def query(self, region, grid, start, end, cloud_ceiling, bands) -> List[Raster]:
        start, end = _as_date(start), _as_date(end)
        df = self.index
        dates = df["datetime"].dt.date
        df = df[(dates >= start) & (dates <= end) & (df["cloud_cover"] < cloud_ceiling)]

        missing_bands = [b for b in bands if b not in df.columns]
        if missing_bands:
            logger.warning(f"Scenes index has no column for band(s) {missing_bands}")
            return []

        if not df.empty and {"minx", "miny", "maxx", "maxy"}.issubset(df.columns):
            footprint = gpd.GeoSeries([region.geometry], crs=region.crs).to_crs("EPSG:4326").iloc[0]
            keep = [
                box(r.minx, r.miny, r.maxx, r.maxy).intersects(footprint) for r in df.itertuples()
            ]
            df = df[keep]

        scenes = []
        for row in df.sort_values("datetime").itertuples(index=False):
            row = row._asdict()
            if any(pd.isna(row[b]) for b in bands):
                continue
            sources = {b: (str(self.directory / row[b]), 1) for b in bands}
            scenes.append(
                WarpedRaster(
                    grid,
                    sources,
                    acquired=row["datetime"].to_pydatetime(),
                    properties={"cloud_cover": float(row["cloud_cover"]), "id": row["id"]},
                    name=str(row["id"]),
                )
            )
        logger.info(f"Directory catalog: {len(scenes)} scene(s) match {start}..{end}")
        return scenes


class StacCatalog(ImageCatalog):
    """
    Catalog backed by a STAC API search (Sentinel-2 L2A by default).

    Band names are mapped to STAC asset keys through `asset_map`; scenes are
    read lazily through ``WarpedRaster`` onto the analysis grid.
    """

    def __init__(
        self,
        stac_url: str = "https://earth-search.aws.element84.com/v1",
        collection: str = "sentinel-2-l2a",
        asset_map: Mapping[str, str] = None,
        cloud_cover_property: str = "eo:cloud_cover",
        max_items: int = 500,
        timeout: int = 60,
        client: STACClient = None,
    ):
        self.client = client or STACClient(stac_url, timeout=timeout)
        self.collection = collection
        self.asset_map = dict(asset_map or DEFAULT_ASSET_MAP)
        self.cloud_cover_property = cloud_cover_property
        self.max_items = max_items

    @classmethod
    def from_config(cls, catalog_config) -> "StacCatalog":
        return cls(
            stac_url=catalog_config.stac_url,
            collection=catalog_config.collection,
            asset_map=catalog_config.asset_map,
            cloud_cover_property=catalog_config.cloud_cover_property,
            max_items=catalog_config.max_items,
            timeout=catalog_config.request_timeout,
        )

    def _asset_href(self, item: Dict, band: str) -> Optional[str]:
        assets = item.get("assets", {})
        for key in (self.asset_map.get(band), band):
            if key and key in assets and assets[key].get("href"):
                return assets[key]["href"]
        return None

    def item_to_raster(self, item: Dict, grid: RasterGrid, bands: Sequence[str]) -> Optional[Raster]:
        props = item.get("properties", {})
        sources = {}
        for band in bands:
            href = self._asset_href(item, band)
            if href is None:
                logger.debug(f"Item {item.get('id')} has no asset for band {band}")
                return None
            sources[band] = (href, 1)
        acquired = pd.Timestamp(props.get("datetime")).to_pydatetime()
        cloud = props.get(self.cloud_cover_property)
        return WarpedRaster(
            grid,
            sources,
            acquired=acquired,
            properties={"cloud_cover": cloud, "id": item.get("id")},
            name=item.get("id"),
        )

    def query(self, region, grid, start, end, cloud_ceiling, bands) -> List[Raster]:
        start, end = _as_date(start), _as_date(end)
        bbox = list(gpd.GeoSeries([region.geometry], crs=region.crs).to_crs("EPSG:4326").total_bounds)
        datetime_range = (
            f"{datetime.combine(start, dt_time.min).isoformat()}Z/"
            f"{datetime.combine(end, dt_time.max).isoformat()}Z"
        )
        query = {self.cloud_cover_property: {"lt": cloud_ceiling}}
        try:
            items = list(
                self.client.search_items(
                    collections=[self.collection],
                    bbox=bbox,
                    datetime_range=datetime_range,
                    query=query,
                    max_items=self.max_items,
                )
            )
        except requests.RequestException as e:
            raise CatalogError(f"STAC search failed: {e}") from e

        scenes = []
        for item in items:
            cloud = item.get("properties", {}).get(self.cloud_cover_property)
            if cloud is None or not float(cloud) < cloud_ceiling:
                continue
            raster = self.item_to_raster(item, grid, bands)
            if raster is not None:
                scenes.append(raster)
        logger.info(f"STAC catalog: {len(scenes)} of {len(items)} item(s) usable for {start}..{end}")
        return sorted(scenes, key=lambda s: s.acquired)


def create_catalog(catalog_config, scenes_directory: str = None) -> ImageCatalog:
    """Directory catalog when a scenes directory is configured, STAC otherwise."""
    directory = scenes_directory or getattr(catalog_config, "scenes_directory", "")
    if directory:
        logger.info(f"Using pre-staged scenes in {directory}")
        return DirectoryCatalog(os.path.expanduser(directory))
    logger.info(f"Using STAC catalog {catalog_config.stac_url} ({catalog_config.collection})")
    return StacCatalog.from_config(catalog_config)
