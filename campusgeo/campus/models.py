"""Records passed between the resolver, the batch runner and the exporters."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class InstitutionQuery:
    id: Any
    name: str
    latitude: float
    longitude: float
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ResolvedPolygon:
    id: Any
    name: str
    latitude: float
    longitude: float
    geometry: Any
    osm_type: Optional[str] = None
    osm_id: Optional[int] = None
    area_m2: Optional[float] = None
    found: bool = True

    @classmethod
    def for_query(cls, query: InstitutionQuery, geometry: Any, **extra: Any) -> "ResolvedPolygon":
        return cls(
            id=query.id,
            name=query.name,
            latitude=query.latitude,
            longitude=query.longitude,
            geometry=geometry,
            **extra,
        )


class ResolutionStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class ResolutionOutcome:
    """Result of resolving one institution.

    ``NOT_FOUND`` means the service answered without a matching area;
    ``FAILED`` means it never answered usefully. Neither carries a polygon.
    """

    query: InstitutionQuery
    status: ResolutionStatus
    polygon: Optional[ResolvedPolygon] = None
    attempts: int = 0
    message: str = ""

    @classmethod
    def found(cls, query: InstitutionQuery, polygon: ResolvedPolygon, attempts: int) -> "ResolutionOutcome":
        return cls(query=query, status=ResolutionStatus.FOUND, polygon=polygon, attempts=attempts)

    @classmethod
    def not_found(cls, query: InstitutionQuery, attempts: int) -> "ResolutionOutcome":
        return cls(query=query, status=ResolutionStatus.NOT_FOUND, attempts=attempts)

    @classmethod
    def failed(cls, query: InstitutionQuery, attempts: int, message: str) -> "ResolutionOutcome":
        return cls(query=query, status=ResolutionStatus.FAILED, attempts=attempts, message=message)

    @property
    def polygon_found(self) -> bool:
        return self.status is ResolutionStatus.FOUND
