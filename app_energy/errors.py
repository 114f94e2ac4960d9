"""Error taxonomy for the energy access pipeline.

Every error carries the HTTP status code a thin web layer should answer
with, so callers never have to pattern-match on message text.
"""

from __future__ import annotations

from typing import Optional, Sequence


class EnergyAccessError(Exception):
    """Base class for all classified pipeline failures."""

    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        """Serialize the error for a JSON response body."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "status_code": self.status_code,
        }


class ValidationError(EnergyAccessError):
    """Malformed or out-of-range bounds or year."""

    status_code = 400


class LayerNotFoundError(EnergyAccessError):
    """A band/year pair is not present in the raster registry."""

    status_code = 404

    def __init__(self, band: str, year: Optional[int] = None):
        where = f" for year {year}" if year is not None else ""
        super().__init__(f"no registered layer for band '{band}'{where}")
        self.band = band
        self.year = year


class DataUnavailableError(EnergyAccessError):
    """No night-light data for the requested year or its fallbacks."""

    status_code = 404

    def __init__(self, band: str, years_attempted: Sequence[int]):
        years = ", ".join(str(y) for y in years_attempted)
        super().__init__(
            f"No {band} data available for {years}. "
            "Try a different year or region."
        )
        self.band = band
        self.years_attempted = list(years_attempted)

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["years_attempted"] = self.years_attempted
        return out


class CoverageError(EnergyAccessError):
    """Analyzable area stays below the floor even with soft weighting."""

    status_code = 422

    def __init__(self, coverage: float, stages_attempted: Sequence[str]):
        super().__init__(
            f"Too little analyzable land/built area ({coverage * 100:.1f}%) "
            f"after trying stages {', '.join(stages_attempted)}. "
            "Refine the area of interest."
        )
        self.coverage = coverage
        self.stages_attempted = list(stages_attempted)

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["coverage_pct"] = round(self.coverage * 100, 1)
        out["stages_attempted"] = self.stages_attempted
        return out


class AreaTooLargeError(EnergyAccessError):
    """Request exceeds the pixel budget of the provider."""

    status_code = 413


class ProviderTransientError(EnergyAccessError):
    """Provider busy, timed out or temporarily failing; safe to retry."""

    status_code = 503
    retryable = True


class DeadlineExceededError(ProviderTransientError):
    """The caller-supplied deadline ran out before the pipeline finished."""

    status_code = 408
    retryable = False


class CityNotFoundError(EnergyAccessError):
    """City name without predefined bounds."""

    status_code = 404

    def __init__(self, city: str, supported_cities: Sequence[str]):
        super().__init__(f'City "{city}" not found or not supported')
        self.city = city
        self.supported_cities = list(supported_cities)

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["supported_cities"] = self.supported_cities
        return out
