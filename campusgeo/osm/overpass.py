"""Overpass API access for campus area features.

A single :meth:`OverpassFeatureSource.fetch` call issues at most one HTTP
request. Retrying belongs to the caller; the source only remembers which
endpoint failed last so the following call goes to the next mirror.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from campusgeo.osm.geometry import BoundingRegion, relation_to_multipolygon, way_to_polygon
from campusgeo.utils.cache import PayloadCache

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Network configuration
# ---------------------------------------------------------------------------

DEFAULT_OVERPASS_URL = os.getenv("OVERPASS_URL", "https://overpass-api.de/api/interpreter")

DEFAULT_OVERPASS_FALLBACKS = [
    "https://overpass.kumi.systems/api/interpreter",
    "https://overpass.openstreetmap.ru/api/interpreter",
]

DEFAULT_TIMEOUT_S = int(os.getenv("OVERPASS_TIMEOUT_S", "120"))

USER_AGENT = "campusgeo/0.1 (campus polygon pull)"

CAMPUS_AMENITIES = ("university", "college")

RELATION_AREA_TYPES = {"multipolygon", "boundary"}


class ServiceError(RuntimeError):
    """Raised when the spatial data service cannot answer a query."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


@dataclass(frozen=True)
class AreaFeature:
    osm_type: str
    osm_id: int
    geometry: Any
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> Optional[str]:
        return self.tags.get("name")


@dataclass
class FeatureSet:
    """Area features split by representation: closed ways and assembled relations."""

    polygons: List[AreaFeature] = field(default_factory=list)
    multipolygons: List[AreaFeature] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.polygons and not self.multipolygons

    def __len__(self) -> int:
        return len(self.polygons) + len(self.multipolygons)


# ---------------------------------------------------------------------------
# Query building and parsing
# ---------------------------------------------------------------------------

def build_campus_query(
    region: BoundingRegion,
    amenities: Sequence[str] = CAMPUS_AMENITIES,
    timeout_s: int = DEFAULT_TIMEOUT_S,
) -> str:
    if not amenities:
        raise ValueError("At least one amenity value is required")
    pattern = "|".join(sorted(set(amenities)))
    bbox_str = region.as_overpass()
    return f"""
    [out:json][timeout:{int(timeout_s)}];
    (
      way["amenity"~"^({pattern})$"]({bbox_str});
      relation["amenity"~"^({pattern})$"]({bbox_str});
    );
    out geom;
    """


def parse_elements(elements: Iterable[Dict[str, Any]]) -> FeatureSet:
    features = FeatureSet()
    for element in elements:
        element_type = element.get("type")
        tags = element.get("tags") or {}
        if element_type == "way":
            polygon = way_to_polygon(element)
            if polygon is not None:
                features.polygons.append(
                    AreaFeature(osm_type="way", osm_id=element.get("id"), geometry=polygon, tags=tags)
                )
        elif element_type == "relation":
            if tags.get("type", "multipolygon") not in RELATION_AREA_TYPES:
                continue
            multipolygon = relation_to_multipolygon(element)
            if multipolygon is not None:
                features.multipolygons.append(
                    AreaFeature(osm_type="relation", osm_id=element.get("id"), geometry=multipolygon, tags=tags)
                )
    return features


def _check_payload(payload: Any, url: str) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict) or not isinstance(payload.get("elements"), list):
        raise ServiceError(f"Unexpected Overpass response from {url}: missing 'elements'", endpoint=url)
    remark = payload.get("remark") or ""
    if "runtime error" in remark.lower() or "timed out" in remark.lower():
        raise ServiceError(f"Overpass reported an error at {url}: {remark.strip()}", endpoint=url)
    return payload["elements"]


# ---------------------------------------------------------------------------
# Feature sources
# ---------------------------------------------------------------------------

class FeatureSource:
    """Something that returns campus area features for a region."""

    def fetch(self, region: BoundingRegion) -> FeatureSet:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - hook for resources
        return None


class OverpassFeatureSource(FeatureSource):
    """Query Overpass for ``amenity`` areas with endpoint fallback and an optional cache."""

    def __init__(
        self,
        overpass_url: str = DEFAULT_OVERPASS_URL,
        fallback_urls: Sequence[str] = DEFAULT_OVERPASS_FALLBACKS,
        *,
        amenities: Sequence[str] = CAMPUS_AMENITIES,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        session: Optional[Any] = None,
        cache_dir: Optional[Path] = None,
    ) -> None:
        urls = [overpass_url]
        for candidate in fallback_urls:
            if candidate and candidate not in urls:
                urls.append(candidate)
        self._urls = urls
        self._url_index = 0
        self._lock = threading.Lock()
        if not amenities:
            raise ValueError("At least one amenity value is required")
        self._amenities = tuple(amenities)
        self._timeout_s = timeout_s
        self._owns_session = session is None
        self._session = session if session is not None else requests.Session()
        self._cache = PayloadCache(cache_dir) if cache_dir is not None else None

        self._request_count = 0
        self._cache_hits = 0

    @property
    def current_url(self) -> str:
        with self._lock:
            return self._urls[self._url_index]

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def cache_hits(self) -> int:
        return self._cache_hits

    def _advance_endpoint(self, failed_url: str) -> None:
        with self._lock:
            if len(self._urls) <= 1 or self._urls[self._url_index] != failed_url:
                return
            self._url_index = (self._url_index + 1) % len(self._urls)
            next_url = self._urls[self._url_index]
        LOGGER.info("Falling back to alternate Overpass endpoint %s", next_url)

    def _post(self, query: str) -> Tuple[str, Dict[str, Any]]:
        url = self.current_url
        with self._lock:
            self._request_count += 1
        try:
            response = self._session.post(
                url,
                data=query.encode("utf-8"),
                headers={"User-Agent": USER_AGENT},
                timeout=self._timeout_s,
            )
        except requests.RequestException as exc:
            self._advance_endpoint(url)
            raise ServiceError(f"Request to {url} failed: {exc}", endpoint=url) from exc

        if response.status_code >= 400:
            self._advance_endpoint(url)
            detail = "rate limited" if response.status_code == 429 else (response.text or "")[:200]
            raise ServiceError(
                f"Overpass {response.status_code} from {url}: {detail}",
                endpoint=url,
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            self._advance_endpoint(url)
            raise ServiceError(f"Overpass returned invalid JSON from {url}", endpoint=url) from exc
        return url, payload

    def _features(self, payload: Any, url: str) -> FeatureSet:
        elements = _check_payload(payload, url)
        try:
            return parse_elements(elements)
        except (KeyError, TypeError, AttributeError) as exc:
            raise ServiceError(f"Malformed Overpass element from {url}: {exc!r}", endpoint=url) from exc

    def _from_cache(self, query: str) -> Optional[FeatureSet]:
        cached = self._cache.get(query)
        if not cached.hit:
            return None
        try:
            features = self._features(cached.value, "cache")
        except ServiceError as exc:
            LOGGER.warning("Discarding unusable cached Overpass payload: %s", exc)
            self._cache.discard(query)
            return None
        with self._lock:
            self._cache_hits += 1
        return features

    def fetch(self, region: BoundingRegion) -> FeatureSet:
        query = build_campus_query(region, self._amenities, self._timeout_s)
        LOGGER.debug("Overpass query: %s", query.strip())
        if self._cache is not None:
            features = self._from_cache(query)
            if features is not None:
                LOGGER.debug("Cache hit for region %s", region.as_overpass())
                return features

        url, payload = self._post(query)
        try:
            features = self._features(payload, url)
        except ServiceError:
            self._advance_endpoint(url)
            raise
        # Cache only payloads that parsed.
        if self._cache is not None:
            self._cache.set(query, payload)
        return features

    def close(self) -> None:
        if not self._owns_session:
            return
        try:
            self._session.close()
        except Exception:  # pragma: no cover
            return
