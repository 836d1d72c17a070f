#!/usr/bin/env python
"""Pull campus boundary polygons from OpenStreetMap for a CSV of institutions."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from campusgeo.campus.batch import DEFAULT_REQUEST_DELAY_S, run_batch  # noqa: E402
from campusgeo.campus.resolver import (  # noqa: E402
    DEFAULT_BACKOFF_BASE_S,
    DEFAULT_MAX_RETRIES,
    DEFAULT_SEARCH_RADIUS_M,
    CampusPolygonResolver,
)
from campusgeo.campus.tables import ColumnMap, load_institutions, write_outputs  # noqa: E402
from campusgeo.osm.overpass import (  # noqa: E402
    CAMPUS_AMENITIES,
    DEFAULT_OVERPASS_FALLBACKS,
    DEFAULT_OVERPASS_URL,
    DEFAULT_TIMEOUT_S,
    OverpassFeatureSource,
)

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--input",
        type=Path,
        default=Path("data") / "campus_data_pull_enrollment.csv",
        help="CSV with one row per institution.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("data") / "processed",
        help="Directory for polygon layers and status tables.",
    )
    parser.add_argument("--id-column", default="unitid")
    parser.add_argument("--name-column", default="inst_name")
    parser.add_argument("--lat-column", default="latitude")
    parser.add_argument("--lon-column", default="longitude")
    parser.add_argument(
        "--max-campuses",
        type=int,
        default=None,
        help="Limit the number of institutions processed from the top of the list.",
    )
    parser.add_argument(
        "--radius",
        type=float,
        default=DEFAULT_SEARCH_RADIUS_M,
        help="Search radius in metres around each campus point (default: %(default)s).",
    )
    parser.add_argument(
        "--amenity",
        nargs="*",
        default=list(CAMPUS_AMENITIES),
        help="amenity=* values treated as campus areas.",
    )
    parser.add_argument("--overpass-url", default=DEFAULT_OVERPASS_URL, help="Primary Overpass endpoint")
    parser.add_argument(
        "--fallback-overpass",
        nargs="*",
        default=DEFAULT_OVERPASS_FALLBACKS,
        help="Fallback Overpass endpoints",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT_S,
        help="Per-query timeout in seconds (default: %(default)s).",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=DEFAULT_MAX_RETRIES,
        help="Attempts per campus before giving up (default: %(default)s).",
    )
    parser.add_argument(
        "--backoff-base",
        type=float,
        default=DEFAULT_BACKOFF_BASE_S,
        help="Retry wait is 2**attempt * this many seconds (default: %(default)s).",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=DEFAULT_REQUEST_DELAY_S,
        help="Pause in seconds between campuses (default: %(default)s).",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=1,
        help="Number of parallel worker threads (default: 1)",
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Cache raw Overpass responses in this directory.",
    )
    parser.add_argument("--no-shapefile", action="store_true", help="Only write the GeoPackage layer.")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    LOGGER.debug("Arguments: %s", args)

    columns = ColumnMap(
        id=args.id_column,
        name=args.name_column,
        latitude=args.lat_column,
        longitude=args.lon_column,
    )
    frame, queries = load_institutions(args.input, columns, limit=args.max_campuses)

    source = OverpassFeatureSource(
        args.overpass_url,
        args.fallback_overpass,
        amenities=args.amenity,
        timeout_s=args.timeout,
        cache_dir=args.cache_dir,
    )
    resolver = CampusPolygonResolver(
        source,
        radius_m=args.radius,
        max_retries=max(1, args.max_retries),
        backoff_base_s=max(0.0, args.backoff_base),
    )
    try:
        result = run_batch(
            queries,
            resolver,
            delay_s=max(0.0, args.delay),
            threads=max(1, args.threads),
            show_progress=not args.no_progress,
        )
    finally:
        source.close()

    summary = result.summary
    print("\n===========================================")
    print("RESULTS")
    print("===========================================")
    for line in summary.format_lines():
        print(line)

    written = write_outputs(result, frame, args.output_dir, columns, write_shapefile=not args.no_shapefile)
    for label, path in written.items():
        LOGGER.info("Wrote %s: %s", label, path)
    LOGGER.info("Overpass requests: %d, cache hits: %d", source.request_count, source.cache_hits)

    return 0 if summary.found else 1


if __name__ == "__main__":
    sys.exit(main())
