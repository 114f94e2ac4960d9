"""Percentile-based rescaling of a band to [0, 1]."""

from __future__ import annotations

from typing import NamedTuple
import logging

import numpy as np

from .provider import RasterProvider, Reducer, percentile_key

logger = logging.getLogger(__name__)

MIN_RANGE = 1e-6


class RescaleRange(NamedTuple):
    low: float
    span: float
    used_min_max: bool
    empty: bool = False


def rescale_range(
    values: np.ndarray,
    mask: np.ndarray,
    provider: RasterProvider,
    p_low: float = 10,
    p_high: float = 90,
    epsilon: float = 1e-6,
) -> RescaleRange:
    """Low end and width of the stretch for `values` over `mask`.

    The percentile pair is used unless it collapses (`high - low <= epsilon`),
    in which case the true min/max over the mask is used. The width is never
    below `max(epsilon, 1e-6)`.
    """
    stats = provider.reduce_region(
        values, mask, Reducer.percentile([p_low, p_high])
    )
    low = stats[percentile_key(p_low)]
    high = stats[percentile_key(p_high)]
    if low is None or high is None:
        return RescaleRange(0.0, max(epsilon, MIN_RANGE), False, empty=True)

    used_min_max = False
    span = high - low
    if span <= epsilon:
        min_max = provider.reduce_region(values, mask, Reducer.min_max())
        low = min_max["min"]
        span = min_max["max"] - min_max["min"]
        used_min_max = True
    span = max(span, epsilon, MIN_RANGE)
    return RescaleRange(float(low), float(span), used_min_max)


def robust_rescale(
    values: np.ndarray,
    mask: np.ndarray,
    provider: RasterProvider,
    p_low: float = 10,
    p_high: float = 90,
    epsilon: float = 1e-6,
    name: str = "band",
) -> np.ndarray:
    """Stretch a band to [0, 1] with percentile clipping.

    Args:
        values (np.ndarray): Band values; NaN marks nodata.
        mask (np.ndarray): Pixels the statistics are computed over.
        provider (RasterProvider): Supplies the region reductions.
        p_low (float): Lower percentile.
        p_high (float): Upper percentile.
        epsilon (float): Spread under which the distribution is degenerate.
        name (str): Band label for logging.

    Returns:
        np.ndarray: `clip((x - low) / span, 0, 1)`; NaN where `values` is NaN.
        An empty mask maps every finite pixel to 0.
    """
    rng = rescale_range(values, mask, provider, p_low, p_high, epsilon)
    if rng.empty:
        logger.warning("%s: no pixels under the mask, rescaled to 0", name)
        return np.where(np.isfinite(values), 0.0, np.nan)
    if rng.used_min_max:
        logger.info(
            "%s: percentiles p%g/p%g collapsed, using min/max", name, p_low, p_high
        )
    logger.debug("%s: rescale low=%.6g span=%.6g", name, rng.low, rng.span)
    with np.errstate(invalid="ignore"):
        return np.clip((values - rng.low) / rng.span, 0.0, 1.0)


def log_light(radiance: np.ndarray) -> np.ndarray:
    """`log(1 + radiance)` with negative radiance clamped to zero."""
    with np.errstate(invalid="ignore"):
        return np.log1p(np.maximum(radiance, 0.0))
