"""Quantile classification of the deprivation score into five classes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence
import logging

import numpy as np

from .provider import RasterProvider, Reducer, percentile_key

logger = logging.getLogger(__name__)

OUTSIDE = -1

# coarse buckets over the five severity classes
BUCKETS = {
    "normal": (0, 1, 2),
    "near_critical": (3,),
    "critical": (4,),
}


@dataclass
class Breakpoints:
    q20: float
    q40: float
    q60: float
    q80: float
    degenerate: bool = False

    def as_list(self) -> List[float]:
        return [self.q20, self.q40, self.q60, self.q80]


def compute_breakpoints(
    score: np.ndarray,
    mask: np.ndarray,
    provider: RasterProvider,
    percentiles: Sequence[float] = (10, 30, 50, 70),
    epsilon: float = 1e-6,
) -> Breakpoints:
    """Data-driven class breakpoints of `score` over `mask`.

    When `q80 - q20 <= epsilon` the quantiles are replaced by four evenly
    spaced cuts between the observed min and max.

    Returns:
        Breakpoints: Non-decreasing cuts, flagged when the fallback was used.
    """
    stats = provider.reduce_region(score, mask, Reducer.percentile(percentiles))
    values = [stats[percentile_key(p)] for p in percentiles]
    if any(v is None for v in values):
        logger.warning("no pixels to classify; using zero breakpoints")
        return Breakpoints(0.0, 0.0, 0.0, 0.0, degenerate=True)

    cuts = np.maximum.accumulate(np.asarray(values, dtype="float64"))
    if cuts[-1] - cuts[0] > epsilon:
        bp = Breakpoints(*(float(c) for c in cuts))
        logger.info("breakpoints: %s", ", ".join(f"{c:.4f}" for c in cuts))
        return bp

    min_max = provider.reduce_region(score, mask, Reducer.min_max())
    e_min, e_max = min_max["min"], min_max["max"]
    width = (e_max - e_min) / 5.0
    bp = Breakpoints(
        *(e_min + k * width for k in range(1, 5)), degenerate=True
    )
    logger.warning(
        "degenerate score distribution (q80 - q20 <= %g); "
        "using equal bands over [%.4f, %.4f]",
        epsilon,
        e_min,
        e_max,
    )
    return bp


def classify_severity(
    score: np.ndarray, mask: np.ndarray, breakpoints: Breakpoints
) -> np.ndarray:
    """Assign classes 0 (excellent) .. 4 (critical); -1 outside the mask.

    Ties at a breakpoint go to the lower class.
    """
    q20, q40, q60, q80 = breakpoints.as_list()
    with np.errstate(invalid="ignore"):
        classes = np.select(
            [score <= q20, score <= q40, score <= q60, score <= q80],
            [0, 1, 2, 3],
            default=4,
        )
    inside = mask & np.isfinite(score)
    return np.where(inside, classes, OUTSIDE).astype("int8")


def bucket_masks(severity: np.ndarray) -> Dict[str, np.ndarray]:
    """Boolean masks of the normal / near-critical / critical buckets."""
    return {
        name: np.isin(severity, classes) for name, classes in BUCKETS.items()
    }
