"""
Processing package initialization.
"""

from .raster import RasterGrid, Raster, NoDataRaster, GeoTiffRaster, WarpedRaster, IndexRaster, Mask, write_geotiff
from .region import Region
from .indices import calculate_index, compute_index, compute_indices, required_bands
from .masks import ThresholdRule, ThresholdConfig, NAMED_CONFIGS, build_mask, build_mask_raster, parse_threshold_configs
from .compositing import Composite, Compositor, season_window
from .change import ChangeClassification, classify_change, detect_change
from .zonal import ZonalAggregator
from .results import RecordStatus, ResultRecord, ResultTable
from .pipeline import (
    AnalysisRequest,
    UrbanChangeProcessor,
    UrbanChangePipelineManager,
    default_change_pairs,
    threshold_ordering_violations,
)

__all__ = [
    'RasterGrid',
    'Raster',
    'NoDataRaster',
    'GeoTiffRaster',
    'WarpedRaster',
    'IndexRaster',
    'Mask',
    'write_geotiff',
    'Region',
    'calculate_index',
    'compute_index',
    'compute_indices',
    'required_bands',
    'ThresholdRule',
    'ThresholdConfig',
    'NAMED_CONFIGS',
    'build_mask',
    'build_mask_raster',
    'parse_threshold_configs',
    'Composite',
    'Compositor',
    'season_window',
    'ChangeClassification',
    'classify_change',
    'detect_change',
    'ZonalAggregator',
    'RecordStatus',
    'ResultRecord',
    'ResultTable',
    'AnalysisRequest',
    'UrbanChangeProcessor',
    'UrbanChangePipelineManager',
    'default_change_pairs',
    'threshold_ordering_violations',
]
