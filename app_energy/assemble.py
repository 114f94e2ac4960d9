"""Build the final report from the step results."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
import base64

from .aggregate import AggregateResult
from .config import EnergySettings
from .models import (
    EnergyAccessReport,
    LatLng,
    OverlayBounds,
    PreviewParams,
    QualityMetrics,
    Region,
    ReportMetadata,
)

DATA_SOURCE = "VIIRS DNB + GHSL + JRC Global Surface Water"
ATTRIBUTION = "VIIRS V22 (NOAA), GHSL 2023A (JRC), JRC GSW 1.4"
ALGORITHM = (
    "EAP = sqrt(0.6*BuiltSurfaceScaled + 0.4*BuiltVolumeScaled) "
    "* (1 - NTL_log_scaled)"
)
METHOD = (
    "staged land/built masking, p10-p90 rescaling, "
    "quantile classes over the analyzable area"
)


def preview_dimensions(region: Region, settings: EnergySettings) -> int:
    """Preview size of the first tier whose area bound holds the region."""
    area = region.area_deg2
    for tier in settings.preview_tiers:
        if tier.max_area_deg2 is None or area <= tier.max_area_deg2:
            return tier.dimensions
    return settings.preview_tiers[-1].dimensions


def preview_params(region: Region, settings: EnergySettings) -> PreviewParams:
    return PreviewParams(
        min=0.0,
        max=1.0,
        palette=list(settings.palette),
        dimensions=preview_dimensions(region, settings),
    )


def overlay_bounds(region: Region) -> OverlayBounds:
    return OverlayBounds(
        southwest=LatLng(lat=region.south, lng=region.west),
        northeast=LatLng(lat=region.north, lng=region.east),
    )


def png_data_uri(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def _notes(aggregate: AggregateResult, requested_year: int) -> str:
    stats = aggregate.statistics
    notes = [
        "Higher values indicate stronger energy deprivation: built-up area "
        "with little night-time light."
    ]
    if stats.data_year_used != requested_year:
        notes.append(
            f"Night lights for {requested_year} were unavailable; "
            f"{stats.data_year_used} was used instead."
        )
    if stats.used_soft_weighting:
        notes.append(
            "Coverage was low; areas are weighted by built-up confidence."
        )
    if stats.quality.status != "OK":
        notes.append(
            "Some statistics could not be computed: "
            + ", ".join(stats.quality.degraded_fields)
            + "."
        )
    return " ".join(notes)


def assemble_report(
    region: Region,
    requested_year: int,
    aggregate: AggregateResult,
    settings: EnergySettings,
    light_years_attempted: List[int],
    degenerate_percentiles: bool,
    png: Optional[bytes] = None,
    processing_time_ms: Optional[int] = None,
) -> EnergyAccessReport:
    """Combine statistics, diagnostics and preview into the report.

    Args:
        region (Region): Requested bounds, echoed back.
        requested_year (int): Year asked for.
        aggregate (AggregateResult): Statistics and diagnostics.
        settings (EnergySettings): Supplies palette and preview tiers.
        light_years_attempted (list[int]): Night-light years tried in order.
        degenerate_percentiles (bool): True if the class breakpoints fell
            back to evenly spaced bands.
        png (bytes | None): Rendered preview, embedded as a data URI.
        processing_time_ms (int | None): Wall time of the request.

    Returns:
        EnergyAccessReport: The complete response.
    """
    stats = aggregate.statistics
    metadata = ReportMetadata(
        data_source=DATA_SOURCE,
        attribution=ATTRIBUTION,
        resolution=f"{settings.analysis_scale_m:g}m",
        requested_year=requested_year,
        data_year_used=stats.data_year_used,
        algorithm=ALGORITHM,
        method=METHOD,
        notes=_notes(aggregate, requested_year),
        quality_metrics=QualityMetrics(
            coverage_percent=round(stats.coverage * 100, 1),
            light_years_attempted=list(light_years_attempted),
            degenerate_percentiles=degenerate_percentiles,
        ),
    )
    return EnergyAccessReport(
        image_url=png_data_uri(png) if png is not None else None,
        bounds=region,
        overlay_bounds=overlay_bounds(region),
        preview=preview_params(region, settings),
        statistics=stats,
        diagnostics=aggregate.diagnostics,
        metadata=metadata,
        timestamp=datetime.now(timezone.utc).isoformat(),
        processing_time_ms=processing_time_ms,
    )
