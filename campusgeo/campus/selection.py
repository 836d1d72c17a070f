"""Pick one campus outline out of everything Overpass returned."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from campusgeo.osm.geometry import planar_areas
from campusgeo.osm.overpass import AreaFeature, FeatureSet

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateFeature:
    feature: AreaFeature
    area_m2: float

    @property
    def geometry(self):
        return self.feature.geometry


def rank_candidates(features: FeatureSet) -> List[CandidateFeature]:
    """Merge both representations and attach planar areas, in service order."""

    merged = list(features.polygons) + list(features.multipolygons)
    if not merged:
        return []
    areas = planar_areas([feature.geometry for feature in merged])
    return [CandidateFeature(feature=feature, area_m2=float(area)) for feature, area in zip(merged, areas)]


def select_largest(features: FeatureSet) -> Optional[CandidateFeature]:
    """Return the candidate with the largest area, or ``None`` when nothing came back.

    Small buildings tagged as a university or college often sit next to the
    campus outline itself; the largest area inside the search box is taken as
    the main campus. The first maximal candidate wins ties.
    """

    candidates = rank_candidates(features)
    if not candidates:
        return None
    areas = np.array([candidate.area_m2 for candidate in candidates])
    best = candidates[int(np.argmax(areas))]
    LOGGER.debug(
        "Selected %s/%s (%.0f m2) out of %d candidate(s)",
        best.feature.osm_type,
        best.feature.osm_id,
        best.area_m2,
        len(candidates),
    )
    return best
