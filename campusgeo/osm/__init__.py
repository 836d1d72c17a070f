"""Utilities for querying OpenStreetMap campus areas."""
from .geometry import (  # noqa: F401
    AREA_CRS,
    GEOGRAPHIC_CRS,
    PLANAR_CRS,
    BoundingRegion,
    CoordinateError,
    compute_search_region,
    planar_areas,
    relation_to_multipolygon,
    validate_coordinates,
    way_to_polygon,
)
from .overpass import (  # noqa: F401
    CAMPUS_AMENITIES,
    DEFAULT_OVERPASS_FALLBACKS,
    DEFAULT_OVERPASS_URL,
    DEFAULT_TIMEOUT_S,
    AreaFeature,
    FeatureSet,
    FeatureSource,
    OverpassFeatureSource,
    ServiceError,
    build_campus_query,
    parse_elements,
)
