"""Tabular input and output around the batch runner.

Institution records arrive as a CSV with one row per campus. Everything the
resolver does not need is carried through untouched so the status table can
reproduce the input with one extra ``polygon_found`` column.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import geopandas as gpd
import pandas as pd

from campusgeo.campus.batch import BatchResult
from campusgeo.campus.models import InstitutionQuery
from campusgeo.osm.geometry import GEOGRAPHIC_CRS

LOGGER = logging.getLogger(__name__)

STATUS_COLUMN = "polygon_found"
FOUND_COLUMN = "osm_found"
MANUAL_CONTEXT_COLUMNS = ("state_abbr", "urban_centric_locale")
SHAPEFILE_SUFFIXES = (".shp", ".shx", ".dbf", ".prj", ".cpg")

POLYGONS_GPKG = "campus_polygons.gpkg"
POLYGONS_SHP = "campus_polygons.shp"
STATUS_CSV = "campus_with_polygon_status.csv"
MANUAL_CSV = "campuses_need_manual_polygons.csv"
SUMMARY_JSON = "run_summary.json"


@dataclass(frozen=True)
class ColumnMap:
    id: str = "unitid"
    name: str = "inst_name"
    latitude: str = "latitude"
    longitude: str = "longitude"

    @property
    def required(self) -> Tuple[str, str, str, str]:
        return (self.id, self.name, self.latitude, self.longitude)


def queries_from_frame(frame: pd.DataFrame, columns: ColumnMap = ColumnMap()) -> List[InstitutionQuery]:
    missing = [column for column in columns.required if column not in frame.columns]
    if missing:
        raise ValueError(f"Institution table is missing required column(s): {', '.join(missing)}")

    # Unparseable coordinates become NaN and are rejected per institution later.
    latitudes = pd.to_numeric(frame[columns.latitude], errors="coerce")
    longitudes = pd.to_numeric(frame[columns.longitude], errors="coerce")
    passthrough = [column for column in frame.columns if column not in columns.required]

    queries: List[InstitutionQuery] = []
    for position, (_, row) in enumerate(frame.iterrows()):
        queries.append(
            InstitutionQuery(
                id=row[columns.id],
                name=str(row[columns.name]),
                latitude=float(latitudes.iloc[position]),
                longitude=float(longitudes.iloc[position]),
                attributes={column: row[column] for column in passthrough},
            )
        )
    return queries


def load_institutions(
    path: Path,
    columns: ColumnMap = ColumnMap(),
    limit: Optional[int] = None,
) -> Tuple[pd.DataFrame, List[InstitutionQuery]]:
    if not Path(path).exists():
        raise FileNotFoundError(f"Institution list not found: {path}")
    frame = pd.read_csv(path)
    if limit is not None:
        frame = frame.head(limit)
    frame = frame.reset_index(drop=True)
    queries = queries_from_frame(frame, columns)
    if not queries:
        raise ValueError(f"No institutions were loaded from {path}")
    LOGGER.info("Loaded %d campuses from %s", len(queries), path)
    return frame, queries


def found_frame(result: BatchResult, columns: ColumnMap = ColumnMap()) -> gpd.GeoDataFrame:
    """All resolved polygons in one WGS84 layer."""

    rows = [
        {
            columns.id: polygon.id,
            columns.name: polygon.name,
            columns.latitude: polygon.latitude,
            columns.longitude: polygon.longitude,
            FOUND_COLUMN: True,
            "osm_type": polygon.osm_type,
            "osm_id": polygon.osm_id,
            "area_m2": polygon.area_m2,
            "geometry": polygon.geometry,
        }
        for polygon in result.found_polygons
    ]
    attribute_columns = list(columns.required) + [FOUND_COLUMN, "osm_type", "osm_id", "area_m2"]
    frame = pd.DataFrame(rows, columns=attribute_columns + ["geometry"])
    return gpd.GeoDataFrame(frame, geometry="geometry", crs=GEOGRAPHIC_CRS)


def status_table(frame: pd.DataFrame, result: BatchResult) -> pd.DataFrame:
    """The input table, in input order, plus the ``polygon_found`` flag."""

    flags = [found for _, found in result.status_table]
    if len(flags) != len(frame):
        raise ValueError(
            f"Status table mismatch: {len(frame)} input rows but {len(flags)} outcomes"
        )
    status = frame.reset_index(drop=True).copy()
    status[STATUS_COLUMN] = flags
    return status


def manual_table(status: pd.DataFrame, columns: ColumnMap = ColumnMap()) -> pd.DataFrame:
    wanted = list(columns.required) + list(MANUAL_CONTEXT_COLUMNS)
    keep = [column for column in wanted if column in status.columns]
    return status.loc[~status[STATUS_COLUMN].astype(bool), keep].reset_index(drop=True)


def _remove_shapefile(path: Path) -> None:
    for suffix in SHAPEFILE_SUFFIXES:
        sibling = path.with_suffix(suffix)
        if sibling.exists():
            sibling.unlink()


def write_outputs(
    result: BatchResult,
    frame: pd.DataFrame,
    output_dir: Path,
    columns: ColumnMap = ColumnMap(),
    write_shapefile: bool = True,
) -> Dict[str, Path]:
    """Write the polygon layers, status tables and run summary; return written paths."""

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[str, Path] = {}

    polygons = found_frame(result, columns)
    gpkg_path = output_dir / POLYGONS_GPKG
    shp_path = output_dir / POLYGONS_SHP
    if len(polygons):
        if gpkg_path.exists():
            gpkg_path.unlink()
        polygons.to_file(gpkg_path, driver="GPKG", layer="campus_polygons")
        written["gpkg"] = gpkg_path
        LOGGER.info("Saved to: %s", gpkg_path)

        if write_shapefile:
            # Shapefile truncates column names to 10 characters.
            _remove_shapefile(shp_path)
            polygons.to_file(shp_path, driver="ESRI Shapefile")
            written["shapefile"] = shp_path
            LOGGER.info("Saved to: %s", shp_path)
    else:
        LOGGER.error("No polygons found for any campus; skipping polygon layers")
        # Drop layers left by an earlier run.
        if gpkg_path.exists():
            gpkg_path.unlink()
        _remove_shapefile(shp_path)

    status = status_table(frame, result)
    status_path = output_dir / STATUS_CSV
    status.to_csv(status_path, index=False)
    written["status"] = status_path

    manual = manual_table(status, columns)
    manual_path = output_dir / MANUAL_CSV
    manual.to_csv(manual_path, index=False)
    written["manual"] = manual_path
    LOGGER.info("Campuses without polygons: %d (saved to %s)", len(manual), manual_path)

    summary_path = output_dir / SUMMARY_JSON
    with summary_path.open("w", encoding="utf-8") as handle:
        json.dump(result.summary.as_dict(), handle, indent=2)
    written["summary"] = summary_path
    return written
