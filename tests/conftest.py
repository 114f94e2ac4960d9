from pathlib import Path

from rasterio.transform import from_bounds
import numpy as np
import pytest
import rasterio
import yaml

from app_energy.config import EnergySettings
from app_energy.models import Region
from app_energy.provider import RasterProvider

# source rasters cover a slightly larger box than the test region
SOURCE_BOUNDS = (29.9, -1.1, 30.15, -0.85)
SOURCE_SIZE = 100


def write_raster(path, array, bounds=SOURCE_BOUNDS, nodata=None):
    """Write a single-band EPSG:4326 GeoTIFF."""
    array = np.asarray(array)
    height, width = array.shape
    profile = dict(
        driver="GTiff",
        height=height,
        width=width,
        count=1,
        dtype=array.dtype.name,
        crs="EPSG:4326",
        transform=from_bounds(*bounds, width, height),
    )
    if nodata is not None:
        profile["nodata"] = nodata
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(array, 1)
    return Path(path)


class RasterEnv:
    """Builds a registry of synthetic rasters in a temporary directory."""

    def __init__(self, root: Path):
        self.root = root
        self.layers = {}

    def add(self, layer_id, band, array, year=None, nodata=None, **entry):
        file_name = f"{layer_id}.tif"
        write_raster(self.root / file_name, array, nodata=nodata)
        layer = {"band": band, "file_path": file_name}
        if year is not None:
            layer["year"] = year
        layer.update(entry)
        self.layers[layer_id] = layer
        return self

    def registry_path(self) -> Path:
        path = self.root / "rasters.yml"
        path.write_text(yaml.safe_dump({"layers": self.layers}), encoding="utf-8")
        return path

    def provider(self, **kwargs) -> RasterProvider:
        return RasterProvider(self.registry_path(), **kwargs)


def gradient(low, high, axis=1, size=SOURCE_SIZE):
    ramp = np.linspace(low, high, size, dtype="float32")
    if axis == 1:
        return np.tile(ramp, (size, 1))
    return np.tile(ramp[:, np.newaxis], (1, size))


def urban_layers(env: RasterEnv, light_years=(2023,), water=0.0):
    """Densely built area with a night-light gradient across it."""
    rng = np.random.default_rng(0)
    surface = gradient(0.2, 0.8) + rng.uniform(
        0, 0.05, (SOURCE_SIZE, SOURCE_SIZE)
    ).astype("float32")
    volume = gradient(1000.0, 50000.0, axis=0)
    env.add("built_surface", "built_surface", surface)
    env.add("built_volume", "built_volume", volume)
    env.add(
        "water_occurrence",
        "water_occurrence",
        np.full((SOURCE_SIZE, SOURCE_SIZE), water, dtype="float32"),
    )
    for year in light_years:
        env.add(
            f"viirs_{year}",
            "night_lights",
            gradient(0.0, 60.0, axis=0),
            year=year,
        )
    return env


@pytest.fixture
def raster_env(tmp_path):
    return RasterEnv(tmp_path)


@pytest.fixture
def region():
    return Region(west=30.0, south=-1.0, east=30.05, north=-0.95)


@pytest.fixture
def settings():
    return EnergySettings(base_delay_s=0.0)


@pytest.fixture
def grid(region):
    return RasterProvider().build_grid(region)
