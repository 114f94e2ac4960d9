"""End-to-end energy access computation for one region and year.

Every step produces an explicit, named result that the next step consumes,
and a single `Deadline` bounds the whole request.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging
import time

import numpy as np
import psutil

from .aggregate import aggregate_statistics
from .assemble import assemble_report, preview_params
from .classify import classify_severity, compute_breakpoints
from .composite import compose_index
from .config import EnergySettings
from .errors import (
    AreaTooLargeError,
    DataUnavailableError,
    DeadlineExceededError,
    EnergyAccessError,
)
from .masking import select_mask_stage
from .models import (
    EnergyAccessReport,
    Region,
    city_region,
    validate_region,
    validate_year,
)
from .provider import AnalysisGrid, RasterProvider
from .rescale import log_light, robust_rescale
from .retry import Deadline, call_with_retry

logger = logging.getLogger(__name__)

MAX_WORKERS = 4


@dataclass
class LayerBundle:
    built_surface: np.ndarray
    built_volume: np.ndarray
    night_lights: np.ndarray
    water_occurrence: np.ndarray
    land_cover: Optional[np.ndarray]
    light_year: int

    @property
    def valid(self) -> np.ndarray:
        """Pixels where every index band has data."""
        return (
            np.isfinite(self.built_surface)
            & np.isfinite(self.built_volume)
            & np.isfinite(self.night_lights)
        )


def _n_workers(settings: EnergySettings) -> int:
    if settings.n_workers:
        return settings.n_workers
    return min(MAX_WORKERS, psutil.cpu_count(logical=False) or 1)


def resolve_light_year(
    provider: RasterProvider, year: int, fallbacks: int = 2
) -> Tuple[int, List[int]]:
    """Find the most recent night-light year at or before `year`.

    Tries `year`, `year - 1`, ... `year - fallbacks`.

    Returns:
        tuple: The year to use and the list of years tried.

    Raises:
        DataUnavailableError: If none of the years is registered.
    """
    attempted = []
    for candidate in range(year, year - fallbacks - 1, -1):
        attempted.append(candidate)
        if provider.has_layer("night_lights", candidate):
            if candidate != year:
                logger.warning(
                    "night lights for %d unavailable, using %d", year, candidate
                )
            return candidate, attempted
    raise DataUnavailableError("night_lights", attempted)


def load_layers(
    provider: RasterProvider,
    grid: AnalysisGrid,
    light_year: int,
    settings: EnergySettings,
    deadline: Deadline,
) -> LayerBundle:
    """Materialize every input band on the grid, reading them concurrently."""
    requests: Dict[str, Optional[int]] = {
        "built_surface": None,
        "built_volume": None,
        "water_occurrence": None,
        "night_lights": light_year,
    }
    if provider.has_layer("land_cover"):
        requests["land_cover"] = None

    # running reads cannot be interrupted, so the pool is never joined
    pool = ThreadPoolExecutor(max_workers=_n_workers(settings))
    try:
        futures = {
            band: pool.submit(
                call_with_retry,
                provider.select,
                band,
                grid,
                year,
                deadline=deadline,
                step=f"select {band}",
                max_attempts=settings.max_attempts,
                base_delay_s=settings.base_delay_s,
            )
            for band, year in requests.items()
        }
        values = {}
        for band, future in futures.items():
            remaining = deadline.remaining()
            timeout = None if remaining is None else max(remaining, 0.0)
            values[band] = future.result(timeout=timeout).values
    except FutureTimeoutError:
        raise DeadlineExceededError(
            f"Processing timed out while loading layers "
            f"(limit {deadline.timeout_s:g}s). Please try a smaller area."
        ) from None
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    return LayerBundle(
        built_surface=values["built_surface"],
        built_volume=values["built_volume"],
        night_lights=values["night_lights"],
        water_occurrence=values["water_occurrence"],
        land_cover=values.get("land_cover"),
        light_year=light_year,
    )


def _compute(
    provider: RasterProvider,
    region: Region,
    year: int,
    settings: EnergySettings,
    deadline: Deadline,
    render_preview: bool,
    started: float,
) -> EnergyAccessReport:
    provider.ensure_initialized()

    deadline.check("resolve light year")
    light_year, years_attempted = resolve_light_year(
        provider, year, settings.year_fallbacks
    )

    grid = provider.build_grid(region)
    total_km2 = provider.aoi_area_km2(grid)
    logger.info(
        "region %s: grid %dx%d, %.2f km2",
        region.as_tuple(),
        grid.width,
        grid.height,
        total_km2,
    )

    layers = load_layers(provider, grid, light_year, settings, deadline)

    deadline.check("mask selection")
    selection = select_mask_stage(
        provider,
        grid,
        layers.built_surface,
        layers.water_occurrence,
        layers.valid,
        total_km2,
        settings,
        deadline,
        land_cover=layers.land_cover,
    )
    logger.info(
        "chosen stage %s (coverage %.1f%%, soft=%s)",
        selection.stage.name,
        selection.coverage * 100,
        selection.used_soft_weighting,
    )

    deadline.check("rescale")
    p_low, p_high = settings.rescale_percentiles
    surface_scaled = robust_rescale(
        layers.built_surface,
        selection.mask,
        provider,
        p_low,
        p_high,
        settings.epsilon,
        name="built_surface",
    )
    volume_scaled = robust_rescale(
        layers.built_volume,
        selection.mask,
        provider,
        p_low,
        p_high,
        settings.epsilon,
        name="built_volume",
    )
    l_low, l_high = settings.light_percentiles
    light_scaled = robust_rescale(
        log_light(layers.night_lights),
        selection.mask,
        provider,
        l_low,
        l_high,
        settings.epsilon,
        name="night_lights",
    )

    deadline.check("composite")
    composite = compose_index(
        surface_scaled,
        volume_scaled,
        light_scaled,
        selection.mask,
        settings.surface_weight,
        settings.volume_weight,
        settings.smoothing_radius,
    )
    selection.restrict(np.isfinite(composite.score))

    deadline.check("classify")
    breakpoints = compute_breakpoints(
        composite.score,
        selection.mask,
        provider,
        settings.breakpoint_percentiles,
        settings.epsilon,
    )
    severity = classify_severity(composite.score, selection.mask, breakpoints)

    deadline.check("aggregate")
    aggregate = aggregate_statistics(
        provider,
        grid,
        selection,
        severity,
        composite.score,
        light_scaled,
        composite.built_index,
        light_year,
        settings,
    )

    png = None
    if render_preview:
        params = preview_params(region, settings)
        png = call_with_retry(
            provider.render_preview,
            composite.score,
            params.min,
            params.max,
            params.palette,
            params.dimensions,
            deadline=deadline,
            step="render preview",
            max_attempts=settings.max_attempts,
            base_delay_s=settings.base_delay_s,
        )

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    return assemble_report(
        region,
        year,
        aggregate,
        settings,
        years_attempted,
        breakpoints.degenerate,
        png=png,
        processing_time_ms=elapsed_ms,
    )


def run_energy_access(
    provider: RasterProvider,
    region: Region,
    year: int,
    settings: Optional[EnergySettings] = None,
    timeout_s: Optional[float] = None,
    render_preview: bool = True,
) -> EnergyAccessReport:
    """Compute the energy access report for a region and year.

    Args:
        provider (RasterProvider): Raster session; initialized on first use.
        region (Region): Area of interest.
        year (int): Requested night-light year.
        settings (EnergySettings | None): Tunables; defaults when None.
        timeout_s (float | None): Request budget in seconds, unbounded if None.
        render_preview (bool): Render the preview PNG into `image_url`.

    Returns:
        EnergyAccessReport: Statistics, diagnostics, preview and metadata.

    Raises:
        EnergyAccessError: Any classified failure; its `status_code` says
            how a web layer should answer. Unexpected exceptions are logged
            and wrapped with status 500.
    """
    started = time.perf_counter()
    settings = settings or EnergySettings()
    validate_region(region, settings.max_area_deg2)
    validate_year(year, settings.min_year, settings.max_year)
    deadline = Deadline(timeout_s)
    logger.info("energy access request: %s, year %d", region.as_tuple(), year)
    try:
        report = _compute(
            provider, region, year, settings, deadline, render_preview, started
        )
    except EnergyAccessError:
        raise
    except MemoryError as e:
        logger.exception("energy access ran out of memory")
        raise AreaTooLargeError(
            "Area too large for processing. Please try a smaller region."
        ) from e
    except Exception as e:
        logger.exception("energy access failed")
        raise EnergyAccessError(
            f"Failed to process energy access data: {type(e).__name__}: {e}"
        ) from e
    logger.info(
        "energy access done in %d ms: critical %s%%, stage %s",
        report.processing_time_ms,
        report.statistics.critical_area_pct,
        report.statistics.chosen_stage,
    )
    return report


def run_city_energy_access(
    provider: RasterProvider,
    city: str,
    year: int,
    settings: Optional[EnergySettings] = None,
    timeout_s: Optional[float] = None,
    render_preview: bool = True,
) -> EnergyAccessReport:
    """`run_energy_access` over the predefined bounds of a city.

    Raises:
        CityNotFoundError: If the city is not supported.
    """
    region = city_region(city)
    logger.info("city %s resolved to %s", city, region.as_tuple())
    report = run_energy_access(
        provider,
        region,
        year,
        settings=settings,
        timeout_s=timeout_s,
        render_preview=render_preview,
    )
    report.city_name = city
    return report
