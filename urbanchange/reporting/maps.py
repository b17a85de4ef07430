"""
Map layer rendering (plotly HTML) and GeoTIFF export.
"""

import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import plotly.graph_objects as go
import rasterio

from ..processing.change import ChangeClassification, detect_change
from ..processing.indices import calculate_index
from ..processing.masks import build_mask_raster
from ..processing.raster import IndexRaster, Mask, Raster, write_geotiff

logger = logging.getLogger(__name__)

# Longest rendered edge in pixels; larger layers are subsampled for display
MAX_DISPLAY_PIXELS = 2000


@dataclass(frozen=True)
class LayerStyle:
    """How a layer is drawn: a band stretch or a single colour for masks."""
    bands: Tuple[str, ...] = ()
    min: float = 0.0
    max: float = 3000.0
    color: Optional[str] = None
    opacity: float = 1.0


STYLES: Dict[str, LayerStyle] = {
    "true_color": LayerStyle(bands=("B4", "B3", "B2"), min=0.0, max=3000.0),
    "stable": LayerStyle(color="#808080"),
    "loss": LayerStyle(color="#ff0000"),
    "gain": LayerStyle(color="#00ff00"),
    "ndbi": LayerStyle(color="#ff0000"),
    "ebbi": LayerStyle(color="#0000ff"),
}

Layer = Union[Raster, Mask, IndexRaster]


def _hex_to_rgb(color: str) -> Tuple[int, int, int]:
    color = color.lstrip("#")
    return tuple(int(color[i:i + 2], 16) for i in (0, 2, 4))


def _display_step(shape) -> int:
    return max(1, int(np.ceil(max(shape) / MAX_DISPLAY_PIXELS)))


def _resolve_style(style: Union[str, LayerStyle]) -> LayerStyle:
    if isinstance(style, LayerStyle):
        return style
    if style not in STYLES:
        raise KeyError(f"Unknown layer style '{style}'; expected one of {sorted(STYLES)}")
    return STYLES[style]


def stretch_rgb(raster: Raster, style: LayerStyle) -> np.ndarray:
    """uint8 RGB image of three bands linearly stretched to [min, max]; NaN is black."""
    step = _display_step(raster.grid.shape)
    data = raster.read(style.bands)
    channels = []
    for band in style.bands:
        values = data[band][::step, ::step]
        scaled = (values - style.min) / (style.max - style.min)
        scaled = np.clip(np.nan_to_num(scaled, nan=0.0), 0.0, 1.0)
        channels.append((scaled * 255).astype(np.uint8))
    return np.dstack(channels)


def mask_rgba(values: np.ndarray, style: LayerStyle) -> np.ndarray:
    """uint8 RGBA image: the style colour where true, transparent elsewhere."""
    step = _display_step(values.shape)
    selected = np.asarray(values, dtype=bool)[::step, ::step]
    rgba = np.zeros(selected.shape + (4,), dtype=np.uint8)
    rgba[selected, :3] = _hex_to_rgb(style.color)
    rgba[selected, 3] = int(round(255 * style.opacity))
    return rgba


def _figure(images: Sequence[Tuple[np.ndarray, str]], title: str) -> go.Figure:
    fig = go.Figure()
    for image, name in images:
        colormodel = "rgba" if image.shape[-1] == 4 else "rgb"
        fig.add_trace(go.Image(z=image, colormodel=colormodel, name=name))
    fig.update_layout(title=title, xaxis={"visible": False}, yaxis={"visible": False})
    return fig


def _layer_image(layer: Layer, style: LayerStyle) -> np.ndarray:
    if isinstance(layer, Mask):
        if style.color is None:
            raise ValueError(f"Style for mask '{layer.name}' needs a colour")
        return mask_rgba(layer.values, style)
    if isinstance(layer, IndexRaster):
        if style.color is None:
            raise ValueError(f"Style for index '{layer.name}' needs a colour")
        with np.errstate(invalid="ignore"):
            return mask_rgba(layer.values > style.min, style)
    return stretch_rgb(layer, style)


def render_layer(layer: Layer, style: Union[str, LayerStyle], name: str, path: str) -> str:
    """
    Write one map layer as a standalone plotly HTML figure.

    Args:
        layer: composite raster (band stretch) or boolean mask (single colour)
        style: style name from STYLES or a LayerStyle
        name: layer title
        path: output HTML path

    Returns:
        The written path
    """
    style = _resolve_style(style)
    fig = _figure([(_layer_image(layer, style), name)], name)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    fig.write_html(path)
    logger.info(f"Map layer '{name}' written to {path}")
    return str(path)


def render_change(classification: ChangeClassification, path: str, title: str = "Built-up change",
                  background: Raster = None) -> str:
    """Stable, loss and gain masks overlaid in one figure, optionally over true colour."""
    images = []
    if background is not None:
        images.append((stretch_rgb(background, STYLES["true_color"]), "true colour"))
    for name, mask in classification.as_dict().items():
        images.append((mask_rgba(mask.values, STYLES[name]), name))
    fig = _figure(images, title)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    fig.write_html(path)
    logger.info(f"Change map written to {path}")
    return str(path)


def export_geotiff(layer: Layer, path: str, tile_size: int = 512) -> str:
    """Write a raster, index or mask layer to GeoTIFF (masks as uint8 0/1)."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    if isinstance(layer, Raster):
        return write_geotiff(layer, path, tile_size=tile_size)

    grid = layer.grid
    is_mask = isinstance(layer, Mask)
    profile = {
        "driver": "GTiff",
        "height": grid.height,
        "width": grid.width,
        "count": 1,
        "dtype": "uint8" if is_mask else "float32",
        "crs": grid.crs,
        "transform": grid.transform,
        "nodata": None if is_mask else float("nan"),
        "compress": "deflate",
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.set_band_description(1, layer.name)
        dst.write(layer.values.astype(profile["dtype"]), 1)
    logger.info(f"Layer '{layer.name}' exported to {path}")
    return str(path)


def export_analysis_layers(processor, output_directory: str, configuration: str = "original") -> List[str]:
    """
    Write the map layers of a finished run: true colour, built-up mask per
    year and change masks per pair, as HTML figures and GeoTIFFs.

    Layers are computed over the whole analysis grid, so this is meant for
    regions that fit in memory.
    """
    config = next((c for c in processor.request.configurations if c.name == configuration), None)
    if config is None:
        raise KeyError(f"No threshold configuration named '{configuration}'")

    written = []
    masks = {}
    for year in processor.request.years:
        composite = processor.composite_for(year)
        if composite is None or composite.is_empty:
            logger.warning(f"No composite for {year}; skipping its layers")
            continue
        base = os.path.join(output_directory, str(year))
        if composite.raster.has_bands(STYLES["true_color"].bands):
            written.append(render_layer(composite.raster, "true_color", f"True colour {year}", f"{base}_true_color.html"))
        indices = [calculate_index(composite.raster, name) for name in config.indices]
        mask = build_mask_raster(indices, config)
        masks[year] = mask
        style = "ebbi" if config.indices == ["EBBI"] else "ndbi"
        written.append(render_layer(mask, style, f"Built-up {year} ({config.name})", f"{base}_{config.name}.html"))
        written.append(export_geotiff(mask, f"{base}_{config.name}.tif"))

    for earlier, later in processor.request.change_pairs:
        if earlier not in masks or later not in masks:
            continue
        classification = detect_change(masks[earlier], masks[later], label=f"{earlier}_{later}")
        base = os.path.join(output_directory, f"change_{earlier}_{later}_{config.name}")
        background = processor.composite_for(later).raster
        if not background.has_bands(STYLES["true_color"].bands):
            background = None
        written.append(render_change(classification, f"{base}.html", f"Built-up change {earlier}-{later}", background))
        for name, mask in classification.as_dict().items():
            written.append(export_geotiff(mask, f"{base}_{name}.tif"))
    return written
