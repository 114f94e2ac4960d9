import threading
import time

import numpy as np
import pytest

from app_energy import config
from app_energy.config import EnergySettings
from app_energy.errors import (
    CityNotFoundError,
    CoverageError,
    DataUnavailableError,
    DeadlineExceededError,
    LayerNotFoundError,
    ValidationError,
)
from app_energy.models import Region
from app_energy.pipeline import (
    resolve_light_year,
    run_city_energy_access,
    run_energy_access,
)

from conftest import SOURCE_SIZE, urban_layers


def test_dense_urban_area(raster_env, region, settings):
    provider = urban_layers(raster_env).provider()
    report = run_energy_access(provider, region, 2023, settings)

    stats = report.statistics
    assert report.success
    assert stats.chosen_stage == "strict"
    assert not stats.used_soft_weighting
    assert stats.data_year_used == 2023
    assert stats.critical_area_pct < 90
    buckets = (
        stats.critical_area_pct + stats.near_critical_area_pct + stats.normal_area_pct
    )
    assert 99.0 <= buckets <= 101.0
    assert stats.analyzable_area_km2 <= stats.total_area_km2
    assert stats.coverage == pytest.approx(1.0, abs=0.01)
    assert sum(stats.per_class_area_km2) == pytest.approx(
        stats.analyzable_area_km2, rel=0.01
    )
    assert stats.quality.status == "OK"

    assert report.diagnostics.status == "OK"
    assert report.preview.dimensions == 512
    assert report.preview.palette[0] == "#1a9850"
    assert report.image_url.startswith("data:image/png;base64,")
    assert report.overlay_bounds.southwest.lat == region.south
    assert report.metadata.resolution == "250m"
    assert report.metadata.quality_metrics.light_years_attempted == [2023]
    assert report.processing_time_ms >= 0


def test_report_serializes_with_camel_case(raster_env, region, settings):
    provider = urban_layers(raster_env).provider()
    report = run_energy_access(
        provider, region, 2023, settings, render_preview=False
    )
    doc = report.model_dump(by_alias=True, mode="json")
    assert doc["imageUrl"] is None
    assert doc["layerType"] == "energy"
    assert "criticalAreaPct" in doc["statistics"]
    assert doc["diagnostics"]["chosenStage"] == "strict"
    assert doc["metadata"]["dataYearUsed"] == 2023


def test_open_water_is_a_coverage_error(raster_env, region, settings):
    provider = urban_layers(raster_env, water=100.0).provider()
    with pytest.raises(CoverageError) as info:
        run_energy_access(provider, region, 2023, settings)
    assert info.value.status_code == 422


def test_falls_back_to_previous_year(raster_env, region, settings):
    provider = urban_layers(raster_env, light_years=(2022,)).provider()
    report = run_energy_access(provider, region, 2023, settings)
    assert report.statistics.data_year_used == 2022
    assert report.metadata.requested_year == 2023
    assert report.metadata.quality_metrics.light_years_attempted == [2023, 2022]
    assert "2022 was used instead" in report.metadata.notes


def test_no_light_data_for_three_years(raster_env, region, settings):
    provider = urban_layers(raster_env, light_years=(2019,)).provider()
    with pytest.raises(DataUnavailableError) as info:
        run_energy_access(provider, region, 2023, settings)
    assert info.value.years_attempted == [2023, 2022, 2021]
    assert info.value.status_code == 404
    assert "2023, 2022, 2021" in info.value.message


def test_resolve_light_year_prefers_requested(raster_env):
    provider = urban_layers(raster_env, light_years=(2021, 2023)).provider()
    assert resolve_light_year(provider, 2023) == (2023, [2023])
    assert resolve_light_year(provider, 2022) == (2021, [2022, 2021])


def test_sparse_area_uses_soft_weighting(raster_env, region, settings):
    raster_env.add(
        "built_surface",
        "built_surface",
        np.full((SOURCE_SIZE, SOURCE_SIZE), 0.002, dtype="float32"),
    )
    raster_env.add(
        "built_volume",
        "built_volume",
        np.full((SOURCE_SIZE, SOURCE_SIZE), 10.0, dtype="float32"),
    )
    raster_env.add(
        "water_occurrence",
        "water_occurrence",
        np.zeros((SOURCE_SIZE, SOURCE_SIZE), dtype="float32"),
    )
    raster_env.add(
        "viirs_2023",
        "night_lights",
        np.ones((SOURCE_SIZE, SOURCE_SIZE), dtype="float32"),
        year=2023,
    )
    report = run_energy_access(raster_env.provider(), region, 2023, settings)
    assert report.statistics.used_soft_weighting
    assert report.diagnostics.status == "LOW_COVERAGE"
    assert report.metadata.quality_metrics.degenerate_percentiles
    assert set(report.diagnostics.stage_coverages) == {
        "strict",
        "balanced",
        "permissive",
        "soft",
    }


def test_missing_required_layer(raster_env, region, settings):
    raster_env.add(
        "viirs_2023",
        "night_lights",
        np.ones((SOURCE_SIZE, SOURCE_SIZE), dtype="float32"),
        year=2023,
    )
    with pytest.raises(LayerNotFoundError):
        run_energy_access(raster_env.provider(), region, 2023, settings)


def test_invalid_requests(raster_env, settings):
    provider = urban_layers(raster_env).provider()
    bad_region = Region(west=30.05, south=-1.0, east=30.0, north=-0.95)
    with pytest.raises(ValidationError):
        run_energy_access(provider, bad_region, 2023, settings)
    good_region = Region(west=30.0, south=-1.0, east=30.05, north=-0.95)
    with pytest.raises(ValidationError):
        run_energy_access(provider, good_region, 1990, settings)
    assert not provider.is_initialized


def test_zero_timeout(raster_env, region, settings):
    provider = urban_layers(raster_env).provider()
    with pytest.raises(DeadlineExceededError) as info:
        run_energy_access(provider, region, 2023, settings, timeout_s=0)
    assert info.value.status_code == 408


def test_energy_deprived_ignores_breakpoints(raster_env, region):
    provider = urban_layers(raster_env).provider()
    quartiles = EnergySettings(base_delay_s=0.0)
    shifted = EnergySettings(base_delay_s=0.0, breakpoint_percentiles=[20, 40, 60, 80])
    first = run_energy_access(provider, region, 2023, quartiles, render_preview=False)
    second = run_energy_access(provider, region, 2023, shifted, render_preview=False)

    assert first.statistics.energy_deprived_pct is not None
    assert first.statistics.energy_deprived_pct == second.statistics.energy_deprived_pct
    assert first.statistics.energy_deprived_km2 == second.statistics.energy_deprived_km2
    # the relative buckets move with the breakpoints
    assert first.statistics.critical_area_pct > second.statistics.critical_area_pct


def test_slow_layer_read_returns_at_deadline(raster_env, region, settings, monkeypatch):
    provider = urban_layers(raster_env).provider()
    select = provider.select
    release = threading.Event()

    def slow_select(*args, **kwargs):
        release.wait(timeout=3)
        return select(*args, **kwargs)

    monkeypatch.setattr(provider, "select", slow_select)
    started = time.perf_counter()
    try:
        with pytest.raises(DeadlineExceededError):
            run_energy_access(
                provider, region, 2023, settings, timeout_s=0.5, render_preview=False
            )
        elapsed = time.perf_counter() - started
    finally:
        release.set()
    assert elapsed < 1.5


def test_city_request_uses_predefined_bounds(raster_env, settings, monkeypatch):
    monkeypatch.setitem(config.CITY_BOUNDS, "Kigali East", (30.0, -1.0, 30.05, -0.95))
    provider = urban_layers(raster_env).provider()
    report = run_city_energy_access(
        provider, "kigali east", 2023, settings, render_preview=False
    )
    assert report.city_name == "kigali east"
    assert report.bounds.as_tuple() == (30.0, -1.0, 30.05, -0.95)
    assert report.model_dump(by_alias=True)["cityName"] == "kigali east"


def test_unknown_city(raster_env, settings):
    provider = urban_layers(raster_env).provider()
    with pytest.raises(CityNotFoundError) as info:
        run_city_energy_access(provider, "Atlantis", 2023, settings)
    assert info.value.status_code == 404
    assert "Singapore" in info.value.supported_cities
