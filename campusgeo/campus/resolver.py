"""Resolve one institution to a campus polygon with retry and backoff."""
from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

from campusgeo.campus.models import InstitutionQuery, ResolutionOutcome, ResolvedPolygon
from campusgeo.campus.selection import select_largest
from campusgeo.osm.geometry import compute_search_region
from campusgeo.osm.overpass import FeatureSource, ServiceError

LOGGER = logging.getLogger(__name__)

DEFAULT_SEARCH_RADIUS_M = float(os.getenv("CAMPUS_SEARCH_RADIUS_M", "1000"))
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_S = 3.0


class Clock:
    """Time source used for every wait so tests can run without sleeping."""

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()


class RateLimiter:
    """Space outbound requests at least ``interval_s`` apart, across threads.

    A caller reserves its slot under the lock and sleeps outside it, so waiting
    threads queue up in order without holding each other.
    """

    def __init__(self, interval_s: float, clock: Optional[Clock] = None) -> None:
        self.interval_s = max(0.0, float(interval_s))
        self._clock = clock or Clock()
        self._lock = threading.Lock()
        self._next_slot: Optional[float] = None

    def wait(self) -> float:
        with self._lock:
            now = self._clock.monotonic()
            start = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = start + self.interval_s
        delay = start - now
        if delay > 0:
            LOGGER.debug("Throttling Overpass request: waiting %.2fs", delay)
            self._clock.sleep(delay)
        return delay


def backoff_seconds(attempt: int, base_s: float = DEFAULT_BACKOFF_BASE_S) -> float:
    """Wait after failed ``attempt`` (1-based): 6, 12, 24 ... seconds with the default base."""

    return (2 ** attempt) * base_s


class CampusPolygonResolver:
    """Build the search box, fetch candidates and keep the largest one.

    Only :class:`ServiceError` is retried. A response without any matching area
    is a final answer, and invalid coordinates raise
    :class:`~campusgeo.osm.geometry.CoordinateError` before any request is made.
    """

    def __init__(
        self,
        source: FeatureSource,
        *,
        radius_m: float = DEFAULT_SEARCH_RADIUS_M,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base_s: float = DEFAULT_BACKOFF_BASE_S,
        clock: Optional[Clock] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.source = source
        self.radius_m = radius_m
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.clock = clock or Clock()
        self.rate_limiter = rate_limiter

    def resolve(self, query: InstitutionQuery, rate_limiter: Optional[RateLimiter] = None) -> ResolutionOutcome:
        """Resolve ``query``; ``rate_limiter`` overrides the resolver's own for this call."""

        limiter = rate_limiter or self.rate_limiter
        region = compute_search_region(query.latitude, query.longitude, self.radius_m)
        last_error = ""

        for attempt in range(1, self.max_retries + 1):
            if limiter is not None:
                limiter.wait()
            try:
                features = self.source.fetch(region)
                candidate = select_largest(features)
            except ServiceError as exc:
                last_error = str(exc)
                if attempt < self.max_retries:
                    wait_s = backoff_seconds(attempt, self.backoff_base_s)
                    LOGGER.warning(
                        "%s: attempt %d/%d failed: %s. Waiting %.0fs before retry",
                        query.name,
                        attempt,
                        self.max_retries,
                        exc,
                        wait_s,
                    )
                    self.clock.sleep(wait_s)
                continue

            if candidate is None:
                LOGGER.info("%s: no polygon found", query.name)
                return ResolutionOutcome.not_found(query, attempts=attempt)

            polygon = ResolvedPolygon.for_query(
                query,
                candidate.geometry,
                osm_type=candidate.feature.osm_type,
                osm_id=candidate.feature.osm_id,
                area_m2=candidate.area_m2,
            )
            LOGGER.info("%s: found polygon (%s %s)", query.name, candidate.feature.osm_type, candidate.feature.osm_id)
            return ResolutionOutcome.found(query, polygon, attempts=attempt)

        LOGGER.error("%s: FAILED after %d attempts: %s", query.name, self.max_retries, last_error)
        return ResolutionOutcome.failed(query, attempts=self.max_retries, message=last_error)
