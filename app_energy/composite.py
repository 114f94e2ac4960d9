"""Deprivation score from rescaled built-up and night-light bands."""

from __future__ import annotations

from dataclasses import dataclass
import logging

import numpy as np
from scipy.ndimage import uniform_filter

logger = logging.getLogger(__name__)


@dataclass
class CompositeResult:
    built_index: np.ndarray
    score: np.ndarray


def built_index(
    surface_scaled: np.ndarray,
    volume_scaled: np.ndarray,
    surface_weight: float = 0.6,
    volume_weight: float = 0.4,
) -> np.ndarray:
    """`sqrt(w_s * surface + w_v * volume)`; either signal alone scores."""
    return np.sqrt(surface_weight * surface_scaled + volume_weight * volume_scaled)


def focal_mean(values: np.ndarray, mask: np.ndarray, radius: int = 1) -> np.ndarray:
    """Square-neighbourhood mean restricted to pixels inside `mask`.

    Neighbours outside the mask or NaN do not contribute. Pixels outside the
    mask come back as NaN.
    """
    if radius <= 0:
        return np.where(mask, values, np.nan)
    size = 2 * radius + 1
    valid = mask & np.isfinite(values)
    # both filters return window means, so their ratio is the masked mean
    total = uniform_filter(
        np.where(valid, values, 0.0), size=size, mode="constant", cval=0.0
    )
    n = uniform_filter(valid.astype("float64"), size=size, mode="constant", cval=0.0)
    out = np.full(values.shape, np.nan, dtype="float64")
    ok = mask & (n * size**2 > 0.5)
    out[ok] = total[ok] / n[ok]
    return out


def compose_index(
    surface_scaled: np.ndarray,
    volume_scaled: np.ndarray,
    light_scaled: np.ndarray,
    mask: np.ndarray,
    surface_weight: float = 0.6,
    volume_weight: float = 0.4,
    smoothing_radius: int = 1,
) -> CompositeResult:
    """Combine the three rescaled bands into the deprivation score.

    `score = builtIndex * (1 - lightScaled)`, smoothed with a masked
    neighbourhood mean. Outside `mask` the score is NaN, never zero.
    """
    index = built_index(surface_scaled, volume_scaled, surface_weight, volume_weight)
    raw = np.where(mask, index * (1.0 - light_scaled), np.nan)
    score = focal_mean(raw, mask, smoothing_radius)
    if np.any(np.isfinite(score)):
        logger.info(
            "deprivation score: mean=%.3f min=%.3f max=%.3f",
            float(np.nanmean(score)),
            float(np.nanmin(score)),
            float(np.nanmax(score)),
        )
    return CompositeResult(built_index=index, score=score)
