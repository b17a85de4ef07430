"""
Utilities package initialization.
"""

from .catalog import (
    ImageCatalog,
    InMemoryCatalog,
    DirectoryCatalog,
    StacCatalog,
    create_catalog,
)
from .region_lookup import RegionLookup
from .stac_client import STACClient

__all__ = [
    "ImageCatalog",
    "InMemoryCatalog",
    "DirectoryCatalog",
    "StacCatalog",
    "create_catalog",
    "RegionLookup",
    "STACClient",
]
