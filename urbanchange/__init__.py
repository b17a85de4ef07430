"""
Main package initialization for the urban change analysis system.
"""

__version__ = "1.0.0"
__title__ = "Urban Change - built-up area monitoring"
__description__ = (
    "Built-up land-cover area and change estimation from Sentinel-2 composites"
)

# Import main modules for easy access
from . import config
from . import processing
from . import utils
from . import reporting

__all__ = ["config", "processing", "utils", "reporting"]
