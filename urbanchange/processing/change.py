"""
Built-up change between two periods by set algebra on masks.

    loss   = earlier AND NOT later
    gain   = NOT earlier AND later
    stable = earlier AND later

The three sets are computed independently and are mutually exclusive.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from ..exceptions import GridMismatch
from .raster import Mask, RasterGrid

CHANGE_CLASSES = ("loss", "gain", "stable")


def classify_change(earlier: np.ndarray, later: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """(loss, gain, stable) boolean arrays from two same-shaped masks."""
    earlier = np.asarray(earlier, dtype=bool)
    later = np.asarray(later, dtype=bool)
    if earlier.shape != later.shape:
        raise GridMismatch(f"Mask shapes differ: {earlier.shape} vs {later.shape}")
    loss = earlier & ~later
    gain = ~earlier & later
    stable = earlier & later
    return loss, gain, stable


def classify_change_dict(earlier: np.ndarray, later: np.ndarray) -> Dict[str, np.ndarray]:
    return dict(zip(CHANGE_CLASSES, classify_change(earlier, later)))


@dataclass(frozen=True)
class ChangeClassification:
    loss: Mask
    gain: Mask
    stable: Mask

    @property
    def grid(self) -> RasterGrid:
        return self.stable.grid

    def as_dict(self) -> Dict[str, Mask]:
        return {"loss": self.loss, "gain": self.gain, "stable": self.stable}


def detect_change(mask_earlier: Mask, mask_later: Mask, label: str = None) -> ChangeClassification:
    """Loss/gain/stable masks; fails on non-identical grids instead of resampling."""
    mask_earlier.grid.check_aligned(mask_later.grid, what="change masks")
    loss, gain, stable = classify_change(mask_earlier.values, mask_later.values)
    prefix = f"{label}_" if label else ""
    grid = mask_earlier.grid
    return ChangeClassification(
        loss=Mask(f"{prefix}loss", grid, loss),
        gain=Mask(f"{prefix}gain", grid, gain),
        stable=Mask(f"{prefix}stable", grid, stable),
    )
