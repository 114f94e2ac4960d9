"""Command line entry point: compute an energy access report as YAML."""

from __future__ import annotations

from pathlib import Path
import argparse
import base64
import logging
import sys

import yaml

from .config import load_settings
from .errors import CityNotFoundError, EnergyAccessError, ValidationError
from .models import Region, city_region, validate_region, validate_year
from .pipeline import run_city_energy_access, run_energy_access
from .provider import RasterProvider

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="energy-access",
        description=(
            "Estimate energy-access deprivation for a bounding box from "
            "built-up and night-light rasters."
        ),
    )
    area = parser.add_mutually_exclusive_group(required=True)
    area.add_argument(
        "--bounds",
        help="Area of interest as west,south,east,north in degrees",
    )
    area.add_argument(
        "--city",
        help="Analyze the predefined bounds of a supported city",
    )
    parser.add_argument(
        "--year", required=True, type=int, help="Night-light year to analyze"
    )
    parser.add_argument(
        "--rasters",
        default=None,
        help="Raster registry YAML (default: $RASTERS_YAML_PATH)",
    )
    parser.add_argument(
        "--settings",
        default=None,
        help="Settings override YAML (default: $ENERGY_SETTINGS_YAML_PATH)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Request budget in seconds",
    )
    parser.add_argument(
        "--preview-out",
        type=Path,
        default=None,
        help="Write the preview PNG to this path",
    )
    parser.add_argument(
        "--include-image",
        action="store_true",
        help="Keep the base64 preview data URI in the printed report",
    )
    return parser


def main(argv=None) -> int:
    """Run one request and print the report; returns the exit code."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.settings)
    except FileNotFoundError as e:
        logger.error("settings file not found: %s", e)
        return 1

    try:
        if args.city is not None:
            region = city_region(args.city)
        else:
            region = Region.parse_bounds(args.bounds)
        validate_region(region, settings.max_area_deg2)
        validate_year(args.year, settings.min_year, settings.max_year)
    except CityNotFoundError as e:
        supported = ", ".join(e.supported_cities)
        parser.error(f"{e.message}; supported cities: {supported}")
    except ValidationError as e:
        parser.error(e.message)

    try:
        provider = RasterProvider(
            args.rasters,
            analysis_scale_m=settings.analysis_scale_m,
            max_pixels=settings.max_pixels,
        )
        render = args.preview_out is not None or args.include_image
        if args.city is not None:
            report = run_city_energy_access(
                provider,
                args.city,
                args.year,
                settings=settings,
                timeout_s=args.timeout,
                render_preview=render,
            )
        else:
            report = run_energy_access(
                provider,
                region,
                args.year,
                settings=settings,
                timeout_s=args.timeout,
                render_preview=render,
            )
    except EnergyAccessError as e:
        logger.error("energy access failed: %s", e.to_dict())
        return 1

    if args.preview_out is not None and report.image_url:
        encoded = report.image_url.split(",", 1)[1]
        args.preview_out.write_bytes(base64.b64decode(encoded))
        logger.info("preview written to %s", args.preview_out)

    doc = report.model_dump(by_alias=True, mode="json")
    if not args.include_image:
        doc.pop("imageUrl", None)
    sys.stdout.write(yaml.safe_dump(doc, sort_keys=False, allow_unicode=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
