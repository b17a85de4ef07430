"""
Reporting package initialization.
"""

from .maps import LayerStyle, STYLES, render_layer, render_change, export_geotiff, export_analysis_layers
from .charts import LINE, COLUMN, build_chart, render_chart, render_presets

__all__ = [
    "LayerStyle",
    "STYLES",
    "render_layer",
    "render_change",
    "export_geotiff",
    "export_analysis_layers",
    "LINE",
    "COLUMN",
    "build_chart",
    "render_chart",
    "render_presets",
]
