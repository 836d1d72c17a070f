from __future__ import annotations

import math
import threading
from typing import Callable, List, Optional, Sequence, Union

import pytest
from shapely.geometry import MultiPolygon, Polygon, box

from campusgeo.campus.models import InstitutionQuery
from campusgeo.campus.resolver import Clock
from campusgeo.osm.geometry import BoundingRegion
from campusgeo.osm.overpass import AreaFeature, FeatureSet, FeatureSource


class FakeClock(Clock):
    """Records sleeps and advances a virtual monotonic time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    def monotonic(self) -> float:
        with self._lock:
            return self.now


class ThreadClock(Clock):
    """Virtual time kept per thread, so parallel sleeps do not add up.

    Each worker sees its own clock advance only by what it slept itself, the
    way real threads sleeping side by side share one wall clock.
    """

    def __init__(self) -> None:
        self._local = threading.local()
        self._lock = threading.Lock()
        self.sleeps: List[float] = []

    def sleep(self, seconds: float) -> None:
        self._local.now = self.monotonic() + seconds
        with self._lock:
            self.sleeps.append(seconds)

    def monotonic(self) -> float:
        return getattr(self._local, "now", 0.0)


Step = Union[FeatureSet, Exception]


class ScriptedSource(FeatureSource):
    """Returns (or raises) the scripted steps in order; the last step repeats."""

    def __init__(self, steps: Sequence[Step]) -> None:
        self.steps = list(steps)
        self.regions: List[BoundingRegion] = []

    @property
    def calls(self) -> int:
        return len(self.regions)

    def fetch(self, region: BoundingRegion) -> FeatureSet:
        index = min(len(self.regions), len(self.steps) - 1)
        self.regions.append(region)
        step = self.steps[index]
        if isinstance(step, Exception):
            raise step
        return step


class RegionSource(FeatureSource):
    """Answers by looking at the region; safe to share between threads."""

    def __init__(self, respond: Callable[[BoundingRegion], Step], clock: Optional[Clock] = None) -> None:
        self._respond = respond
        self._clock = clock
        self._lock = threading.Lock()
        self.calls = 0
        self.fetch_times: List[float] = []

    def fetch(self, region: BoundingRegion) -> FeatureSet:
        with self._lock:
            self.calls += 1
            if self._clock is not None:
                self.fetch_times.append(self._clock.monotonic())
        step = self._respond(region)
        if isinstance(step, Exception):
            raise step
        return step


def square(lon: float, lat: float, side_deg: float) -> Polygon:
    half = side_deg / 2
    return box(lon - half, lat - half, lon + half, lat + half)


def square_of_area(area_units: float, lon: float = 0.0, lat: float = 0.0) -> Polygon:
    """Near the equator a 0.001 degree side is roughly 111 m, so areas keep their ratios."""

    return square(lon, lat, math.sqrt(area_units) * 1e-3)


def way_feature(osm_id: int, geometry: Polygon, **tags: str) -> AreaFeature:
    return AreaFeature(osm_type="way", osm_id=osm_id, geometry=geometry, tags=dict(tags))


def relation_feature(osm_id: int, geometry: Polygon, **tags: str) -> AreaFeature:
    return AreaFeature(osm_type="relation", osm_id=osm_id, geometry=MultiPolygon([geometry]), tags=dict(tags))


def feature_set(polygons: Optional[list] = None, multipolygons: Optional[list] = None) -> FeatureSet:
    return FeatureSet(polygons=list(polygons or []), multipolygons=list(multipolygons or []))


def make_query(ident: int, lat: float = 30.2849, lon: float = -97.7341, name: Optional[str] = None) -> InstitutionQuery:
    return InstitutionQuery(
        id=ident,
        name=name or f"Campus {ident}",
        latitude=lat,
        longitude=lon,
        attributes={"state_abbr": "TX"},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
