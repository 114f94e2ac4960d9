"""Area statistics over the severity raster."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import logging

import numpy as np

from .classify import BUCKETS
from .config import EnergySettings
from .masking import MaskSelection
from .models import (
    SEVERITY_LABELS,
    AreaBreakdown,
    ClassArea,
    Diagnostics,
    QualityFlag,
    StatisticsReport,
)
from .provider import AnalysisGrid, RasterProvider

logger = logging.getLogger(__name__)

KM2_DIGITS = 3
PCT_DIGITS = 2


@dataclass
class AggregateResult:
    statistics: StatisticsReport
    diagnostics: Diagnostics


@dataclass
class _WeightBands:
    bands: Dict[str, np.ndarray] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)

    def add(self, name: str, build: Callable[[], np.ndarray]) -> None:
        try:
            self.bands[name] = build()
        except (ValueError, FloatingPointError, IndexError):
            logger.exception("could not build weight band %s", name)
            self.failed.append(name)


def energy_deprived_mask(
    score: np.ndarray,
    light_scaled: np.ndarray,
    built_index: np.ndarray,
    settings: EnergySettings,
) -> np.ndarray:
    """Fixed-threshold deprivation, comparable across regions."""
    with np.errstate(invalid="ignore"):
        return (
            (score > settings.deprived_min_score)
            & (light_scaled < settings.deprived_max_light)
            & (built_index > settings.deprived_min_built_index)
        )


def _round(value: Optional[float], digits: int) -> Optional[float]:
    if value is None or not np.isfinite(value):
        return None
    return round(float(value), digits)


def _pct(part: Optional[float], whole: float) -> Optional[float]:
    if part is None or whole <= 0:
        return None
    return _round(100.0 * part / whole, PCT_DIGITS)


def aggregate_statistics(
    provider: RasterProvider,
    grid: AnalysisGrid,
    selection: MaskSelection,
    severity: np.ndarray,
    score: np.ndarray,
    light_scaled: np.ndarray,
    built_index: np.ndarray,
    data_year_used: int,
    settings: EnergySettings,
) -> AggregateResult:
    """Integrate class areas and percentages in one batched provider call.

    Areas are weighted by the selection's per-pixel weights, so under soft
    weighting every figure is a confidence-weighted area. Percentages are
    relative to the analyzable area. A band that cannot be built is reported
    as None and listed in `quality.degraded_fields`; it never becomes 0.

    Returns:
        AggregateResult: Statistics and diagnostics.
    """
    weights = selection.weights
    wb = _WeightBands()
    wb.add("analyzable", lambda: weights)
    for k in range(len(SEVERITY_LABELS)):
        wb.add(f"sev{k}", lambda k=k: np.where(severity == k, weights, 0.0))
    for bucket, classes in BUCKETS.items():
        wb.add(
            bucket,
            lambda classes=classes: np.where(
                np.isin(severity, classes), weights, 0.0
            ),
        )
    wb.add(
        "energy_deprived",
        lambda: np.where(
            energy_deprived_mask(score, light_scaled, built_index, settings)
            & selection.mask,
            weights,
            0.0,
        ),
    )

    areas: Dict[str, Optional[float]] = dict(provider.area_km2(wb.bands, grid))
    degraded = list(wb.failed)
    for name in wb.failed:
        areas[name] = None
    for name, value in list(areas.items()):
        if value is not None and not np.isfinite(value):
            areas[name] = None
            degraded.append(name)

    total_km2 = selection.total_km2
    analyzable_km2 = areas.get("analyzable")
    if analyzable_km2 is None:
        # analyzable area is known from stage selection
        analyzable_km2 = selection.analyzable_km2
    analyzable_km2 = min(analyzable_km2, total_km2)
    coverage = 0.0
    if total_km2 > 0:
        coverage = min(max(analyzable_km2 / total_km2, 0.0), 1.0)

    class_km2 = [areas.get(f"sev{k}") for k in range(len(SEVERITY_LABELS))]
    class_pct = [_pct(a, analyzable_km2) for a in class_km2]

    critical_pct = _pct(areas.get("critical"), analyzable_km2)
    near_pct = _pct(areas.get("near_critical"), analyzable_km2)
    if critical_pct is not None and near_pct is not None:
        normal_pct = round(100.0 - critical_pct - near_pct, PCT_DIGITS)
    else:
        normal_pct = _pct(areas.get("normal"), analyzable_km2)

    deprived_km2 = areas.get("energy_deprived")

    quality = QualityFlag()
    if degraded:
        quality = QualityFlag(
            status="DEGRADED", degraded_fields=sorted(set(degraded))
        )
        logger.warning(
            "statistics degraded: %s", ", ".join(quality.degraded_fields)
        )

    breakdown = AreaBreakdown(
        **{
            label: ClassArea(
                km2=_round(class_km2[k], KM2_DIGITS), percentage=class_pct[k]
            )
            for k, label in enumerate(SEVERITY_LABELS)
        }
    )
    statistics = StatisticsReport(
        total_area_km2=round(total_km2, KM2_DIGITS),
        analyzable_area_km2=round(analyzable_km2, KM2_DIGITS),
        coverage=round(coverage, 4),
        per_class_area_km2=[_round(a, KM2_DIGITS) for a in class_km2],
        per_class_pct=class_pct,
        critical_area_km2=_round(areas.get("critical"), KM2_DIGITS),
        critical_area_pct=critical_pct,
        near_critical_area_km2=_round(areas.get("near_critical"), KM2_DIGITS),
        near_critical_area_pct=near_pct,
        normal_area_km2=_round(areas.get("normal"), KM2_DIGITS),
        normal_area_pct=normal_pct,
        energy_deprived_km2=_round(deprived_km2, KM2_DIGITS),
        energy_deprived_pct=_pct(deprived_km2, analyzable_km2),
        chosen_stage=selection.stage.name,
        used_soft_weighting=selection.used_soft_weighting,
        data_year_used=data_year_used,
        area_breakdown=breakdown,
        quality=quality,
    )

    low_coverage = (
        selection.used_soft_weighting or coverage < settings.coverage_floor
    )
    diagnostics = Diagnostics(
        chosen_stage=selection.stage.name,
        coverage=round(coverage, 4),
        analyzable_km2=round(analyzable_km2, KM2_DIGITS),
        total_km2=round(total_km2, KM2_DIGITS),
        used_soft_weighting=selection.used_soft_weighting,
        status="LOW_COVERAGE" if low_coverage else "OK",
        stage_coverages=selection.stage_coverages,
    )
    logger.info(
        "buckets: critical=%s%% near=%s%% normal=%s%% of %.2f km2 (stage %s)",
        critical_pct,
        near_pct,
        normal_pct,
        analyzable_km2,
        selection.stage.name,
    )
    return AggregateResult(statistics=statistics, diagnostics=diagnostics)
