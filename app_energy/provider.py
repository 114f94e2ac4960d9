"""Raster provider backed by a YAML registry of GeoTIFF layers.

The provider is an explicit session object: construct it once per process,
call `ensure_initialized()` (idempotent) and pass it to the pipeline. It
materializes registered bands on an analysis grid snapped to the requested
region and offers the region reductions the pipeline needs:

    - band selection for a year (`select`)
    - reductions: mean, sum, min/max and percentiles (`reduce_region`)
    - area-preserving pixel-area integrals (`area_km2`, `aoi_area_km2`)
    - preview PNG rendering (`render_preview`)

Registry format (`rasters.yml`):

    layers:
      night_lights_2023:
        band: night_lights
        year: 2023
        file_path: ${DATA_DIR}/viirs_2023.tif
      built_surface:
        band: built_surface
        file_path: ${DATA_DIR}/ghsl_built_s.tif
        scale_factor: 0.0001
        resampling: average
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple
import logging
import math
import os

from dotenv import load_dotenv
from pyproj import Geod
from rasterio.enums import Resampling
from rasterio.errors import RasterioIOError
from rasterio.io import MemoryFile
from rasterio.transform import from_bounds
from rasterio.warp import reproject
from shapely.geometry import Polygon
import numpy as np
import rasterio
import yaml

from .errors import (
    AreaTooLargeError,
    EnergyAccessError,
    LayerNotFoundError,
    ProviderTransientError,
)
from .models import Region

logger = logging.getLogger(__name__)

KNOWN_BANDS = (
    "built_surface",
    "built_volume",
    "night_lights",
    "water_occurrence",
    "land_cover",
)

METERS_PER_DEGREE = 111_320.0

_GEOD = Geod(ellps="WGS84")


@dataclass
class AnalysisGrid:
    """EPSG:4326 pixel grid covering a region exactly.

    Attributes:
        region (Region): Region the grid was snapped to.
        width (int): Number of columns.
        height (int): Number of rows.
        transform (affine.Affine): Pixel to lon/lat transform.
        scale_m (float): Nominal analysis scale in meters per pixel.
        pixel_area_m2 (np.ndarray): Ellipsoidal area of every pixel.
        crs (str): Grid CRS, always geographic WGS84.
    """

    region: Region
    width: int
    height: int
    transform: object
    scale_m: float
    pixel_area_m2: np.ndarray
    crs: str = "EPSG:4326"

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)


@dataclass
class RasterLayer:
    """A registered band materialized on an analysis grid (NaN = nodata)."""

    name: str
    band: str
    year: Optional[int]
    values: np.ndarray
    grid: AnalysisGrid = field(repr=False)


@dataclass(frozen=True)
class Reducer:
    """Region reduction to apply with `RasterProvider.reduce_region`."""

    kind: str
    percentiles: Tuple[float, ...] = ()

    @classmethod
    def mean(cls) -> "Reducer":
        return cls("mean")

    @classmethod
    def sum(cls) -> "Reducer":
        return cls("sum")

    @classmethod
    def min_max(cls) -> "Reducer":
        return cls("min_max")

    @classmethod
    def percentile(cls, percentiles: Sequence[float]) -> "Reducer":
        return cls("percentile", tuple(float(p) for p in percentiles))


def percentile_key(p: float) -> str:
    """Result key of a percentile reduction, e.g. 10 -> 'p10'."""
    return f"p{p:g}"


def _pick_resampling(dtype: str, explicit: Optional[str] = None) -> Resampling:
    """Select a resampling method for a band's data type.

    Args:
        dtype (str): NumPy dtype string of the source band.
        explicit (str | None): Resampling name from the registry entry; wins
            over the dtype rule when given.

    Returns:
        Resampling: `nearest` for integer types (class codes, counts) and
        `average` for floats so fractions stay area weighted.
    """
    if explicit is not None:
        return Resampling[explicit]
    kind = np.dtype(dtype).kind
    return Resampling.nearest if kind in ("i", "u") else Resampling.average


def _row_pixel_areas_m2(
    lats: np.ndarray, west: float, east: float, width: int
) -> np.ndarray:
    """Ellipsoidal area of one pixel for each grid row.

    All pixels of a row share the same shape, so a single geodesic
    quadrilateral per row is enough.
    """
    dlon = (east - west) / width
    areas = np.empty(len(lats) - 1, dtype="float64")
    for i in range(len(lats) - 1):
        top, bottom = lats[i], lats[i + 1]
        area, _ = _GEOD.polygon_area_perimeter(
            [west, west + dlon, west + dlon, west],
            [bottom, bottom, top, top],
        )
        areas[i] = abs(area)
    return areas


class RasterProvider:
    """Registry-backed raster session.

    Constructing the session is cheap; the registry is only read by the first
    `ensure_initialized()` call.
    """

    def __init__(
        self,
        registry_path: Optional[str | Path] = None,
        analysis_scale_m: float = 250.0,
        max_pixels: int = 25_000_000,
    ):
        """Create an uninitialized provider session.

        Args:
            registry_path (str | Path | None): Registry YAML. When None the
                environment variable `RASTERS_YAML_PATH` is used at
                initialization time.
            analysis_scale_m (float): Target pixel size in meters.
            max_pixels (int): Largest grid the provider accepts.
        """
        self._registry_path = registry_path
        self.analysis_scale_m = analysis_scale_m
        self.max_pixels = max_pixels
        self.registry: Dict[str, dict] = {}
        self.is_initialized = False

    def __repr__(self):
        return (
            f"RasterProvider(registry={self._registry_path!r}, "
            f"scale={self.analysis_scale_m!r}, "
            f"initialized={self.is_initialized!r})"
        )

    def ensure_initialized(self) -> None:
        """Load the registry once; later calls return immediately.

        Raises:
            EnergyAccessError: If no registry path is configured, the file is
                missing, or an entry is malformed.
        """
        if self.is_initialized:
            return
        load_dotenv()
        registry_path = self._registry_path or os.getenv("RASTERS_YAML_PATH")
        if not registry_path:
            raise EnergyAccessError(
                "no raster registry configured; set RASTERS_YAML_PATH"
            )
        registry_path = Path(registry_path)
        if not registry_path.exists():
            raise EnergyAccessError(f"raster registry not found: {registry_path}")
        raw_yaml = registry_path.read_text(encoding="utf-8")
        expanded_yaml = os.path.expandvars(raw_yaml)
        y = yaml.safe_load(expanded_yaml) or {}
        layers = {k.lower(): v for k, v in (y.get("layers") or {}).items()}
        for layer_id, entry in layers.items():
            if entry.get("band") not in KNOWN_BANDS:
                raise EnergyAccessError(
                    f"layer {layer_id}: unknown band {entry.get('band')!r}"
                )
            if "file_path" not in entry:
                raise EnergyAccessError(f"layer {layer_id}: missing file_path")
            file_path = Path(entry["file_path"])
            if not file_path.is_absolute():
                # relative paths are resolved against the registry location
                entry["file_path"] = str(registry_path.parent / file_path)
        self.registry = layers
        self.is_initialized = True
        logger.info(
            "raster registry loaded from %s: %d layer(s)",
            registry_path,
            len(layers),
        )

    def _find_entry(
        self, band: str, year: Optional[int]
    ) -> Optional[Tuple[str, dict]]:
        """Locate the registry entry for a band and year.

        With a year, only an entry for exactly that year matches. Without one,
        a static (yearless) entry wins, then the most recent dated entry.
        """
        candidates = [
            (layer_id, entry)
            for layer_id, entry in self.registry.items()
            if entry["band"] == band
        ]
        if year is not None:
            for layer_id, entry in candidates:
                if entry.get("year") == year:
                    return layer_id, entry
            return None
        static = [c for c in candidates if c[1].get("year") is None]
        if static:
            return static[0]
        dated = sorted(candidates, key=lambda c: c[1]["year"])
        return dated[-1] if dated else None

    def has_layer(self, band: str, year: Optional[int] = None) -> bool:
        """Return True if the registry can serve `band` for `year`."""
        self.ensure_initialized()
        return self._find_entry(band, year) is not None

    def build_grid(self, region: Region) -> AnalysisGrid:
        """Snap an analysis grid to a region at the provider's scale.

        The pixel size in degrees is derived from the analysis scale at the
        region's centre latitude and then stretched so that an integer number
        of pixels covers the region exactly.

        Raises:
            AreaTooLargeError: If the grid exceeds `max_pixels`.
        """
        west, south, east, north = region.as_tuple()
        lat_c = math.radians((south + north) / 2.0)
        y_res = self.analysis_scale_m / METERS_PER_DEGREE
        x_res = y_res / max(math.cos(lat_c), 0.01)
        width = max(1, int(math.ceil((east - west) / x_res)))
        height = max(1, int(math.ceil((north - south) / y_res)))
        if width * height > self.max_pixels:
            raise AreaTooLargeError(
                f"Area too large for processing ({width}x{height} pixels at "
                f"{self.analysis_scale_m:g}m). Please try a smaller region."
            )
        transform = from_bounds(west, south, east, north, width, height)
        lats = np.linspace(north, south, height + 1)
        row_areas = _row_pixel_areas_m2(lats, west, east, width)
        pixel_area_m2 = np.repeat(row_areas[:, np.newaxis], width, axis=1)
        logger.debug(
            "analysis grid %dx%d, mean pixel area %.0f m2",
            width,
            height,
            float(row_areas.mean()),
        )
        return AnalysisGrid(
            region=region,
            width=width,
            height=height,
            transform=transform,
            scale_m=self.analysis_scale_m,
            pixel_area_m2=pixel_area_m2,
        )

    def select(
        self, band: str, grid: AnalysisGrid, year: Optional[int] = None
    ) -> RasterLayer:
        """Materialize a registered band on the analysis grid.

        Args:
            band (str): Band name, one of KNOWN_BANDS.
            grid (AnalysisGrid): Target grid.
            year (int | None): Exact year, or None for a static layer.

        Returns:
            RasterLayer: Float64 values with nodata as NaN and the registry
            `scale_factor` applied.

        Raises:
            LayerNotFoundError: If the registry has no matching entry.
            ProviderTransientError: If reading the source raster fails.
        """
        self.ensure_initialized()
        found = self._find_entry(band, year)
        if found is None:
            raise LayerNotFoundError(band, year)
        layer_id, entry = found
        path = entry["file_path"]
        if not Path(path).exists():
            raise EnergyAccessError(f"raster file missing: {path}")

        destination = np.full(grid.shape, np.nan, dtype="float64")
        try:
            with rasterio.open(path) as ds:
                nodata = entry.get("nodata", ds.nodata)
                rs = _pick_resampling(ds.dtypes[0], entry.get("resampling"))
                reproject(
                    source=rasterio.band(ds, 1),
                    destination=destination,
                    src_transform=ds.transform,
                    src_crs=ds.crs,
                    src_nodata=nodata,
                    dst_transform=grid.transform,
                    dst_crs=grid.crs,
                    dst_nodata=np.nan,
                    resampling=rs,
                )
        except (RasterioIOError, OSError) as e:
            raise ProviderTransientError(
                f"reading {layer_id} failed: {type(e).__name__}: {e}"
            ) from e

        if nodata is not None and np.isfinite(nodata):
            destination[np.isclose(destination, nodata)] = np.nan
        scale_factor = entry.get("scale_factor")
        if scale_factor is not None:
            destination *= float(scale_factor)
        logger.debug(
            "selected %s (%s, year=%s): %d valid pixel(s)",
            layer_id,
            band,
            entry.get("year"),
            int(np.count_nonzero(np.isfinite(destination))),
        )
        return RasterLayer(
            name=layer_id,
            band=band,
            year=entry.get("year"),
            values=destination,
            grid=grid,
        )

    def reduce_region(
        self, values: np.ndarray, mask: np.ndarray, reducer: Reducer
    ) -> Dict[str, Optional[float]]:
        """Reduce the finite pixels of `values` inside `mask`.

        Returns:
            dict: `{"mean": x}`, `{"sum": x}`, `{"min": a, "max": b}` or
            `{"p10": a, "p90": b, ...}`. Values are None when no pixel
            qualifies (a sum of nothing is 0.0).
        """
        sample = values[mask & np.isfinite(values)]
        if reducer.kind == "sum":
            return {"sum": float(sample.sum()) if sample.size else 0.0}
        if reducer.kind == "mean":
            return {"mean": float(sample.mean()) if sample.size else None}
        if reducer.kind == "min_max":
            if not sample.size:
                return {"min": None, "max": None}
            return {"min": float(sample.min()), "max": float(sample.max())}
        if reducer.kind == "percentile":
            keys = [percentile_key(p) for p in reducer.percentiles]
            if not sample.size:
                return {k: None for k in keys}
            pct = np.percentile(sample, list(reducer.percentiles))
            return {k: float(v) for k, v in zip(keys, pct)}
        raise ValueError(f"unknown reducer: {reducer.kind}")

    def area_km2(
        self, weights: Dict[str, np.ndarray], grid: AnalysisGrid
    ) -> Dict[str, float]:
        """Integrate pixel area under several masks or weights in one call.

        Each entry is multiplied into the pixel-area grid and summed, so a
        boolean mask gives its area and a [0, 1] weight a weighted area.
        Non-finite weights count as zero.

        Returns:
            dict: Same keys as `weights`, values in km².
        """
        out = {}
        for name, weight in weights.items():
            w = np.asarray(weight, dtype="float64")
            w = np.where(np.isfinite(w), w, 0.0)
            out[name] = float((w * grid.pixel_area_m2).sum()) / 1e6
        return out

    def aoi_area_km2(self, grid: AnalysisGrid) -> float:
        """Ellipsoidal area of the region itself, independent of any mask.

        The boundary is densified at the grid's column and row edges so that
        the AOI area and the sum of pixel areas describe the same polygon.
        """
        west, south, east, north = grid.region.as_tuple()
        lons = np.linspace(west, east, grid.width + 1)
        lats = np.linspace(south, north, grid.height + 1)
        ring = (
            [(lon, south) for lon in lons]
            + [(east, lat) for lat in lats[1:]]
            + [(lon, north) for lon in lons[::-1][1:]]
            + [(west, lat) for lat in lats[::-1][1:-1]]
        )
        area, _ = _GEOD.geometry_area_perimeter(Polygon(ring))
        return abs(area) / 1e6

    def render_preview(
        self,
        values: np.ndarray,
        vmin: float,
        vmax: float,
        palette: Sequence[str],
        dimensions: int,
    ) -> bytes:
        """Render a continuous raster to an RGBA PNG.

        Values are stretched over [vmin, vmax] onto a linear color ramp built
        from `palette`; NaN pixels take the low end of the ramp. The longest
        side of the image is `dimensions` pixels.

        Returns:
            bytes: PNG file content.
        """
        height, width = values.shape
        factor = dimensions / float(max(height, width))
        out_h = max(1, int(round(height * factor)))
        out_w = max(1, int(round(width * factor)))
        rows = np.minimum((np.arange(out_h) / factor).astype(int), height - 1)
        cols = np.minimum((np.arange(out_w) / factor).astype(int), width - 1)
        sampled = values[np.ix_(rows, cols)]

        span = max(vmax - vmin, 1e-12)
        norm = np.clip((sampled - vmin) / span, 0.0, 1.0)
        norm = np.where(np.isfinite(norm), norm, 0.0)

        ramp = np.array(
            [[int(c[i : i + 2], 16) for i in (1, 3, 5)] for c in palette],
            dtype="float64",
        )
        pos = norm * (len(ramp) - 1)
        lo = np.floor(pos).astype(int)
        hi = np.minimum(lo + 1, len(ramp) - 1)
        frac = (pos - lo)[..., np.newaxis]
        rgb = ramp[lo] * (1.0 - frac) + ramp[hi] * frac

        rgba = np.empty((4, out_h, out_w), dtype="uint8")
        rgba[:3] = np.moveaxis(np.round(rgb), -1, 0).astype("uint8")
        rgba[3] = 255
        with MemoryFile() as memfile:
            with memfile.open(
                driver="PNG",
                width=out_w,
                height=out_h,
                count=4,
                dtype="uint8",
            ) as dst:
                dst.write(rgba)
            return memfile.read()
