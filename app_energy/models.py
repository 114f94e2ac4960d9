"""Input and output models of the energy access pipeline."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import CITY_BOUNDS
from .errors import CityNotFoundError, ValidationError

SEVERITY_LABELS = ["excellent", "good", "moderate", "concerning", "critical"]


class Region(BaseModel):
    """A WGS84 bounding box in degrees.

    Attributes:
        west (float): Minimum longitude.
        south (float): Minimum latitude.
        east (float): Maximum longitude.
        north (float): Maximum latitude.
    """

    west: float
    south: float
    east: float
    north: float

    @classmethod
    def parse_bounds(cls, text: str) -> "Region":
        """Build a region from a `west,south,east,north` string.

        Raises:
            ValidationError: If the string does not hold four numbers.
        """
        parts = [p.strip() for p in text.split(",")]
        try:
            values = [float(p) for p in parts]
        except ValueError:
            values = []
        if len(values) != 4:
            raise ValidationError(
                "Bounds must be four numbers: west,south,east,north"
            )
        west, south, east, north = values
        return cls(west=west, south=south, east=east, north=north)

    @property
    def area_deg2(self) -> float:
        return (self.east - self.west) * (self.north - self.south)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.west, self.south, self.east, self.north)


def supported_cities() -> List[str]:
    return list(CITY_BOUNDS)


def city_region(name: str) -> Region:
    """Predefined bounds of a supported city, matched case-insensitively.

    Raises:
        CityNotFoundError: If the city has no predefined bounds.
    """
    wanted = " ".join(name.split()).lower()
    for city, (west, south, east, north) in CITY_BOUNDS.items():
        if city.lower() == wanted:
            return Region(west=west, south=south, east=east, north=north)
    raise CityNotFoundError(name, supported_cities())


def validate_region(region: Region, max_area_deg2: float) -> None:
    """Reject degenerate, out-of-range or oversized regions.

    Raises:
        ValidationError: On any violation.
    """
    if not (-180.0 <= region.west <= 180.0 and -180.0 <= region.east <= 180.0):
        raise ValidationError("Longitudes must lie within [-180, 180]")
    if not (-90.0 <= region.south <= 90.0 and -90.0 <= region.north <= 90.0):
        raise ValidationError("Latitudes must lie within [-90, 90]")
    if region.west >= region.east or region.south >= region.north:
        raise ValidationError(
            "West must be < East and South must be < North"
        )
    if region.area_deg2 > max_area_deg2:
        raise ValidationError(
            f"Area too large: please request a smaller area "
            f"(max ~{max_area_deg2:g} degrees squared)"
        )


def validate_year(year: int, min_year: int, max_year: int) -> None:
    """Raise ValidationError unless `min_year <= year <= max_year`."""
    if not isinstance(year, int) or not (min_year <= year <= max_year):
        raise ValidationError(
            f"Year must be between {min_year} and {max_year}"
        )


class _ReportModel(BaseModel):
    # serialized with camelCase keys for dashboard consumers
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClassArea(_ReportModel):
    km2: Optional[float] = None
    percentage: Optional[float] = None


class AreaBreakdown(_ReportModel):
    """Five severity classes, area based."""

    excellent: ClassArea
    good: ClassArea
    moderate: ClassArea
    concerning: ClassArea
    critical: ClassArea


class QualityFlag(_ReportModel):
    """Explicit marker of partial results.

    `status` is "OK" when every statistic was computed, "DEGRADED" when one or
    more sub-computations failed; the failed fields are listed and hold None.
    """

    status: str = "OK"
    degraded_fields: List[str] = Field(default_factory=list)


class StatisticsReport(_ReportModel):
    total_area_km2: float
    analyzable_area_km2: float
    coverage: float
    per_class_area_km2: List[Optional[float]]
    per_class_pct: List[Optional[float]]
    critical_area_km2: Optional[float] = None
    critical_area_pct: Optional[float] = None
    near_critical_area_km2: Optional[float] = None
    near_critical_area_pct: Optional[float] = None
    normal_area_km2: Optional[float] = None
    normal_area_pct: Optional[float] = None
    energy_deprived_km2: Optional[float] = None
    energy_deprived_pct: Optional[float] = None
    chosen_stage: str
    used_soft_weighting: bool
    data_year_used: int
    area_breakdown: AreaBreakdown
    quality: QualityFlag = Field(default_factory=QualityFlag)


class Diagnostics(_ReportModel):
    chosen_stage: str
    coverage: float
    analyzable_km2: float
    total_km2: float
    used_soft_weighting: bool
    status: str
    stage_coverages: Dict[str, float] = Field(default_factory=dict)


class PreviewParams(_ReportModel):
    min: float = 0.0
    max: float = 1.0
    palette: List[str]
    dimensions: int


class LatLng(_ReportModel):
    lat: float
    lng: float


class OverlayBounds(_ReportModel):
    southwest: LatLng
    northeast: LatLng


class QualityMetrics(_ReportModel):
    coverage_percent: float
    light_years_attempted: List[int]
    degenerate_percentiles: bool


class ReportMetadata(_ReportModel):
    data_source: str
    attribution: str
    resolution: str
    requested_year: int
    data_year_used: int
    algorithm: str
    method: str
    notes: str
    quality_metrics: QualityMetrics


class EnergyAccessReport(_ReportModel):
    success: bool = True
    layer_type: str = "energy"
    image_url: Optional[str] = None
    city_name: Optional[str] = None
    bounds: Region
    overlay_bounds: OverlayBounds
    preview: PreviewParams
    statistics: StatisticsReport
    diagnostics: Diagnostics
    metadata: ReportMetadata
    timestamp: str
    processing_time_ms: Optional[int] = None
