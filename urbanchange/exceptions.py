"""
Error kinds raised by the urban change pipeline.
"""


class UrbanChangeError(Exception):
    """Base class for all pipeline errors."""


class RegionNotFound(UrbanChangeError, LookupError):
    """Region lookup matched zero or several features."""

    def __init__(self, name: str, matches: int = 0):
        self.name = name
        self.matches = matches
        if matches:
            message = f"Region name '{name}' is ambiguous: {matches} features match"
        else:
            message = f"Region '{name}' not found"
        super().__init__(message)


class NoImageryAvailable(UrbanChangeError):
    """No scene qualified for a composite."""

    def __init__(self, year: int, message: str = None):
        self.year = year
        super().__init__(message or f"No qualifying imagery for {year}")


class GridMismatch(UrbanChangeError, ValueError):
    """Two rasters that must share a pixel grid do not."""


class ResourceExceeded(UrbanChangeError):
    """Pixel budget or wall-clock budget exceeded."""


class InvalidThresholdConfig(UrbanChangeError, ValueError):
    """Malformed threshold configuration."""


class MissingBandError(UrbanChangeError, ValueError):
    """A raster lacks a band required by an index formula."""


class CatalogError(UrbanChangeError):
    """Imagery catalog could not be queried or read."""


class InvalidRegionGeometry(UrbanChangeError, ValueError):
    """Region feature has no polygonal geometry."""
