"""Geospatial helpers for campus polygon lookups.

Search regions are built in Web Mercator so that a buffer expressed in metres
is meaningful, then taken back to WGS84 as an axis-aligned bounding box that
Overpass understands. Candidate areas are compared in an equal-area frame.
"""
from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import shapely
from pyproj import Transformer
from shapely.geometry import LineString, MultiPolygon, Point, Polygon, box
from shapely.ops import polygonize, unary_union

GEOGRAPHIC_CRS = "EPSG:4326"
PLANAR_CRS = "EPSG:3857"
# Global equal-area grid; candidate ranking needs area, not shape.
AREA_CRS = "EPSG:6933"

# Web Mercator is undefined at the poles.
MAX_MERCATOR_LAT = 85.05112878

_LOCAL = threading.local()


def _transformer(source: str, target: str) -> Transformer:
    """Per-thread transformer; PROJ contexts must not be shared between threads."""

    cache = getattr(_LOCAL, "transformers", None)
    if cache is None:
        cache = _LOCAL.transformers = {}
    key = (source, target)
    if key not in cache:
        cache[key] = Transformer.from_crs(source, target, always_xy=True)
    return cache[key]


def _reproject(geometry: Any, source: str, target: str) -> Any:
    return shapely.transform(geometry, _transformer(source, target).transform, interleaved=False)


class CoordinateError(ValueError):
    """Raised when a query point or radius cannot be turned into a search region."""


@dataclass(frozen=True)
class BoundingRegion:
    """Axis-aligned WGS84 extent."""

    west: float
    south: float
    east: float
    north: float

    def as_overpass(self) -> str:
        """Overpass expects (south, west, north, east)."""

        return f"{self.south:.7f},{self.west:.7f},{self.north:.7f},{self.east:.7f}"

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def strictly_contains(self, lat: float, lon: float) -> bool:
        return self.south < lat < self.north and self.west < lon < self.east

    @property
    def is_degenerate(self) -> bool:
        return self.west == self.east and self.south == self.north

    def to_polygon(self) -> Polygon:
        return box(self.west, self.south, self.east, self.north)


def validate_coordinates(lat: Any, lon: Any) -> None:
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError) as exc:
        raise CoordinateError(f"Coordinates must be numeric, got lat={lat!r} lon={lon!r}") from exc
    if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
        raise CoordinateError(f"Coordinates must be finite, got lat={lat!r} lon={lon!r}")
    if not -90.0 <= lat_f <= 90.0:
        raise CoordinateError(f"Latitude {lat_f} is outside [-90, 90]")
    if not -180.0 <= lon_f <= 180.0:
        raise CoordinateError(f"Longitude {lon_f} is outside [-180, 180]")
    if abs(lat_f) > MAX_MERCATOR_LAT:
        raise CoordinateError(
            f"Latitude {lat_f} is beyond the Web Mercator limit of +/-{MAX_MERCATOR_LAT}"
        )


def compute_search_region(lat: float, lon: float, radius_m: float = 1000.0) -> BoundingRegion:
    """Return the WGS84 bounding box of a ``radius_m`` disk around the point.

    The point is buffered in Web Mercator and the disk is reprojected back before
    taking its bounds. A zero radius yields the point itself as a zero-area box.
    """

    validate_coordinates(lat, lon)
    try:
        radius = float(radius_m)
    except (TypeError, ValueError) as exc:
        raise CoordinateError(f"Radius must be numeric, got {radius_m!r}") from exc
    if not math.isfinite(radius) or radius < 0:
        raise CoordinateError(f"Radius must be a non-negative number of metres, got {radius_m!r}")

    lat_f = float(lat)
    lon_f = float(lon)
    if radius == 0:
        return BoundingRegion(west=lon_f, south=lat_f, east=lon_f, north=lat_f)

    planar_point = _reproject(Point(lon_f, lat_f), GEOGRAPHIC_CRS, PLANAR_CRS)
    disk = planar_point.buffer(radius)
    west, south, east, north = _reproject(disk, PLANAR_CRS, GEOGRAPHIC_CRS).bounds
    return BoundingRegion(west=west, south=south, east=east, north=north)


def planar_areas(geometries: Sequence[Any]) -> np.ndarray:
    """Areas in square metres of WGS84 geometries, measured in an equal-area frame."""

    return np.array([_reproject(geom, GEOGRAPHIC_CRS, AREA_CRS).area for geom in geometries], dtype=float)


# ---------------------------------------------------------------------------
# OSM element conversion
# ---------------------------------------------------------------------------

def _coords(geometry: Iterable[Dict[str, float]]) -> List[tuple]:
    return [(point["lon"], point["lat"]) for point in geometry if point]


def _repair(polygon: Any) -> Optional[Any]:
    if not polygon.is_valid:
        polygon = polygon.buffer(0)
    if polygon.is_empty or not polygon.is_valid:
        return None
    return polygon


def way_to_polygon(element: Dict[str, Any]) -> Optional[Polygon]:
    """Closed ways become polygons. Open ways are not areas and are skipped."""

    coords = _coords(element.get("geometry") or [])
    if len(coords) < 4 or coords[0] != coords[-1]:
        return None
    polygon = _repair(Polygon(coords))
    if polygon is None:
        return None
    if isinstance(polygon, MultiPolygon):
        # buffer(0) on a bow-tie ring splits it; keep the dominant part.
        polygon = max(polygon.geoms, key=lambda part: part.area)
    return polygon if isinstance(polygon, Polygon) else None


def _rings_from_members(members: Iterable[Dict[str, Any]], role: str) -> List[Polygon]:
    lines = []
    for member in members:
        if member.get("type") != "way":
            continue
        member_role = member.get("role") or "outer"
        if member_role != role:
            continue
        coords = _coords(member.get("geometry") or [])
        if len(coords) >= 2:
            lines.append(LineString(coords))
    if not lines:
        return []
    return [poly for poly in polygonize(unary_union(lines)) if not poly.is_empty]


def relation_to_multipolygon(element: Dict[str, Any]) -> Optional[MultiPolygon]:
    """Assemble a multipolygon relation from the geometry of its member ways."""

    members = element.get("members") or []
    outers = _rings_from_members(members, "outer")
    if not outers:
        return None
    shape = unary_union(outers)
    inners = _rings_from_members(members, "inner")
    if inners:
        shape = shape.difference(unary_union(inners))
    shape = _repair(shape)
    if shape is None:
        return None
    if isinstance(shape, Polygon):
        return MultiPolygon([shape])
    if isinstance(shape, MultiPolygon):
        return shape
    parts = [geom for geom in getattr(shape, "geoms", []) if isinstance(geom, Polygon)]
    return MultiPolygon(parts) if parts else None
