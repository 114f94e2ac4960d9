"""Energy access deprivation proxy from built-up and night-light rasters."""

from .pipeline import run_city_energy_access, run_energy_access

__all__ = ["run_city_energy_access", "run_energy_access"]
