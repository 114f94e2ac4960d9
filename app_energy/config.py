"""Settings for the energy access pipeline.

Defaults live in code. A YAML file (passed explicitly or named by the
environment variable `ENERGY_SETTINGS_YAML_PATH`) may override any field;
environment variable references inside the YAML are expanded before parsing.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional
import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field
import yaml

logger = logging.getLogger(__name__)

# WorldCover class code for built-up land
LAND_COVER_BUILT = 50

# predefined city bounds as (west, south, east, north)
CITY_BOUNDS = {
    "New York": (-74.25, 40.47, -73.70, 40.92),
    "Los Angeles": (-118.67, 33.70, -118.16, 34.34),
    "Chicago": (-87.94, 41.64, -87.52, 42.02),
    "Houston": (-95.82, 29.52, -95.07, 30.11),
    "Phoenix": (-112.32, 33.27, -111.93, 33.69),
    "Philadelphia": (-75.28, 39.86, -74.96, 40.14),
    "Singapore": (103.75, 1.28, 103.92, 1.42),
}

DEPRIVATION_PALETTE = [
    "#1a9850",
    "#66bd63",
    "#a6d96a",
    "#ffffbf",
    "#fdae61",
    "#f46d43",
    "#d73027",
]


class MaskStage(BaseModel):
    """One entry of the ordered staged-mask strategy list.

    Attributes:
        name (str): Stage label reported in diagnostics.
        min_built_fraction (float): Pixels must be strictly above this
            built-surface fraction to count as built.
        max_water_occurrence (float): Pixels must be strictly below this water
            occurrence (percent) to count as land.
        dilate (int): Pixel radius used to grow the land-cover built class
            when a land cover layer is registered.
    """

    name: str
    min_built_fraction: float
    max_water_occurrence: float
    dilate: int = 0


DEFAULT_STAGES = [
    MaskStage(
        name="strict",
        min_built_fraction=0.03,
        max_water_occurrence=50.0,
        dilate=0,
    ),
    MaskStage(
        name="balanced",
        min_built_fraction=0.015,
        max_water_occurrence=65.0,
        dilate=1,
    ),
    MaskStage(
        name="permissive",
        min_built_fraction=0.005,
        max_water_occurrence=80.0,
        dilate=2,
    ),
]


class PreviewTier(BaseModel):
    """Preview canvas size used up to a given AOI size in square degrees."""

    max_area_deg2: Optional[float]
    dimensions: int


class EnergySettings(BaseModel):
    """All tunables of the pipeline, grouped by the step that uses them."""

    # grid and provider
    analysis_scale_m: float = 250.0
    max_pixels: int = 25_000_000
    n_workers: Optional[int] = None

    # staged masking
    stages: List[MaskStage] = Field(
        default_factory=lambda: [s.model_copy() for s in DEFAULT_STAGES]
    )
    coverage_floor: float = 0.30
    soft_coverage_floor: float = 0.03
    soft_max_water_occurrence: float = 95.0
    soft_min_weight: float = 0.2

    # rescaling and classification
    epsilon: float = 1e-6
    rescale_percentiles: List[float] = Field(default_factory=lambda: [10, 90])
    light_percentiles: List[float] = Field(default_factory=lambda: [10, 99])
    breakpoint_percentiles: List[float] = Field(
        default_factory=lambda: [10, 30, 50, 70]
    )
    surface_weight: float = 0.6
    volume_weight: float = 0.4
    smoothing_radius: int = 1

    # fixed thresholds for the cross-region energy-deprived metric
    deprived_min_score: float = 0.6
    deprived_max_light: float = 0.3
    deprived_min_built_index: float = 0.4

    # request limits
    min_year: int = 2012
    max_year: int = 2100
    max_area_deg2: float = 25.0
    year_fallbacks: int = 2

    # retries
    max_attempts: int = 3
    base_delay_s: float = 1.0

    # preview
    palette: List[str] = Field(
        default_factory=lambda: list(DEPRIVATION_PALETTE)
    )
    preview_tiers: List[PreviewTier] = Field(
        default_factory=lambda: [
            PreviewTier(max_area_deg2=0.1, dimensions=512),
            PreviewTier(max_area_deg2=1.0, dimensions=768),
            PreviewTier(max_area_deg2=None, dimensions=1024),
        ]
    )

    @property
    def strict_stage(self) -> MaskStage:
        return self.stages[0]

    @property
    def permissive_stage(self) -> MaskStage:
        return self.stages[-1]


def load_settings(settings_path: Optional[str | Path] = None) -> EnergySettings:
    """Load pipeline settings, layering a YAML file over the defaults.

    Args:
        settings_path (str | Path | None): YAML file to read. When None the
            environment variable `ENERGY_SETTINGS_YAML_PATH` is consulted, and
            when that is unset too the defaults are returned.

    Returns:
        EnergySettings: Validated settings.

    Raises:
        FileNotFoundError: If an explicit or configured path does not exist.
    """
    load_dotenv()
    if settings_path is None:
        settings_path = os.getenv("ENERGY_SETTINGS_YAML_PATH")
    if not settings_path:
        return EnergySettings()

    settings_path = Path(settings_path)
    if not settings_path.exists():
        raise FileNotFoundError(settings_path)
    raw_yaml = settings_path.read_text(encoding="utf-8")
    expanded_yaml = os.path.expandvars(raw_yaml)
    overrides = yaml.safe_load(expanded_yaml) or {}
    logger.info(
        "loaded %d setting override(s) from %s", len(overrides), settings_path
    )
    return EnergySettings.model_validate(overrides)
