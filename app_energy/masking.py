"""Staged analysis-mask selection.

Stages are tried in order of increasing permissiveness and the first one whose
analyzable area clears the coverage floor wins. When none does, the most
permissive stage is kept and pixels are weighted by a continuous confidence
instead of a hard inclusion mask.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional
import logging

import numpy as np
from scipy.ndimage import binary_dilation

from .config import LAND_COVER_BUILT, EnergySettings, MaskStage
from .errors import CoverageError
from .provider import AnalysisGrid, RasterProvider
from .retry import Deadline

logger = logging.getLogger(__name__)


@dataclass
class MaskSelection:
    """Outcome of stage selection.

    Attributes:
        stage (MaskStage): Chosen stage (the last one under soft weighting).
        mask (np.ndarray): Boolean analysis domain.
        weights (np.ndarray): Per-pixel confidence in [0, 1], zero outside
            `mask`. Equal to the mask for hard stages.
        analyzable_km2 (float): Weighted area of the domain.
        total_km2 (float): AOI area.
        coverage (float): `analyzable_km2 / total_km2` clipped to [0, 1].
        used_soft_weighting (bool): True if no stage cleared the floor.
        stage_coverages (dict): Coverage measured for each stage tried.
    """

    stage: MaskStage
    mask: np.ndarray
    weights: np.ndarray
    analyzable_km2: float
    total_km2: float
    coverage: float
    used_soft_weighting: bool = False
    stage_coverages: Dict[str, float] = field(default_factory=dict)

    def restrict(self, keep: np.ndarray) -> None:
        """Drop pixels from the domain (e.g. where the score is undefined)."""
        self.mask = self.mask & keep
        self.weights = np.where(self.mask, self.weights, 0.0)


def dilate(mask: np.ndarray, radius: int) -> np.ndarray:
    """Grow a boolean mask by a square neighbourhood of `radius` pixels."""
    if radius <= 0:
        return mask.copy()
    size = 2 * radius + 1
    return binary_dilation(mask, structure=np.ones((size, size), dtype=bool))


def land_mask(water_occurrence: np.ndarray, max_water: float) -> np.ndarray:
    """Pixels whose water occurrence is below `max_water` percent.

    Pixels never observed as water carry no occurrence value and count as
    land.
    """
    water = np.where(np.isfinite(water_occurrence), water_occurrence, 0.0)
    return water < max_water


def build_stage_mask(
    stage: MaskStage,
    built_fraction: np.ndarray,
    water_occurrence: np.ndarray,
    valid: np.ndarray,
    land_cover: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Analysis mask of one stage: land AND built AND valid inputs.

    Args:
        stage (MaskStage): Thresholds to apply.
        built_fraction (np.ndarray): Built-surface fraction in [0, 1].
        water_occurrence (np.ndarray): Water occurrence in percent.
        valid (np.ndarray): Pixels where every index band is finite.
        land_cover (np.ndarray | None): Optional land cover codes; its built
            class, dilated by `stage.dilate`, also counts as built.

    Returns:
        np.ndarray: Boolean mask on the analysis grid.
    """
    with np.errstate(invalid="ignore"):
        built = built_fraction > stage.min_built_fraction
    if land_cover is not None:
        built |= dilate(land_cover == LAND_COVER_BUILT, stage.dilate)
    return land_mask(water_occurrence, stage.max_water_occurrence) & built & valid


def soft_weights(
    built_fraction: np.ndarray,
    water_occurrence: np.ndarray,
    valid: np.ndarray,
    settings: EnergySettings,
) -> np.ndarray:
    """Continuous confidence used when no hard stage reaches the floor.

    `w = clip(min_w + (1 - min_w) * builtFraction / strictThreshold, 0, 1)` on
    land below `soft_max_water_occurrence`, zero elsewhere. A pixel as built as
    the strict stage requires gets full weight; unbuilt land keeps `min_w`.
    """
    min_w = settings.soft_min_weight
    built = np.where(np.isfinite(built_fraction), built_fraction, 0.0)
    ratio = built / settings.strict_stage.min_built_fraction
    weights = np.clip(min_w + (1.0 - min_w) * ratio, 0.0, 1.0)
    domain = land_mask(water_occurrence, settings.soft_max_water_occurrence)
    return np.where(domain & valid, weights, 0.0)


def _coverage(analyzable_km2: float, total_km2: float) -> float:
    if total_km2 <= 0:
        return 0.0
    return float(min(max(analyzable_km2 / total_km2, 0.0), 1.0))


def select_mask_stage(
    provider: RasterProvider,
    grid: AnalysisGrid,
    built_fraction: np.ndarray,
    water_occurrence: np.ndarray,
    valid: np.ndarray,
    total_km2: float,
    settings: EnergySettings,
    deadline: Deadline,
    land_cover: Optional[np.ndarray] = None,
) -> MaskSelection:
    """Pick the first stage whose coverage clears `settings.coverage_floor`.

    Returns:
        MaskSelection: The chosen domain, weights and diagnostics.

    Raises:
        CoverageError: If even the soft-weighted permissive domain covers
            less than `settings.soft_coverage_floor` of the AOI.
    """
    stage_coverages = {}
    for stage in settings.stages:
        deadline.check(f"mask stage {stage.name}")
        mask = build_stage_mask(
            stage, built_fraction, water_occurrence, valid, land_cover
        )
        analyzable_km2 = provider.area_km2({"analyzable": mask}, grid)[
            "analyzable"
        ]
        coverage = _coverage(analyzable_km2, total_km2)
        stage_coverages[stage.name] = round(coverage, 4)
        logger.info(
            "stage %s: coverage = %.1f%% (%.2f of %.2f km2)",
            stage.name,
            coverage * 100,
            analyzable_km2,
            total_km2,
        )
        if coverage >= settings.coverage_floor:
            return MaskSelection(
                stage=stage,
                mask=mask,
                weights=mask.astype("float64"),
                analyzable_km2=analyzable_km2,
                total_km2=total_km2,
                coverage=coverage,
                stage_coverages=stage_coverages,
            )

    deadline.check("soft weighting")
    weights = soft_weights(built_fraction, water_occurrence, valid, settings)
    analyzable_km2 = provider.area_km2({"weighted": weights}, grid)["weighted"]
    coverage = _coverage(analyzable_km2, total_km2)
    stage_coverages["soft"] = round(coverage, 4)
    logger.warning(
        "no stage reached %.0f%% coverage; soft weighting gives %.1f%%",
        settings.coverage_floor * 100,
        coverage * 100,
    )
    if coverage < settings.soft_coverage_floor or not np.any(weights > 0):
        raise CoverageError(coverage, [s.name for s in settings.stages])
    return MaskSelection(
        stage=settings.permissive_stage,
        mask=weights > 0,
        weights=weights,
        analyzable_km2=analyzable_km2,
        total_km2=total_km2,
        coverage=coverage,
        used_soft_weighting=True,
        stage_coverages=stage_coverages,
    )
