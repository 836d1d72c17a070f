"""Campus polygon resolution: per-institution resolver and batch runner."""
from .batch import BatchResult, BatchSummary, OutcomeCollector, run_batch
from .models import InstitutionQuery, ResolutionOutcome, ResolutionStatus, ResolvedPolygon
from .resolver import CampusPolygonResolver, Clock, RateLimiter, backoff_seconds
from .selection import CandidateFeature, select_largest

__all__ = [
    "BatchResult",
    "BatchSummary",
    "CampusPolygonResolver",
    "CandidateFeature",
    "Clock",
    "InstitutionQuery",
    "OutcomeCollector",
    "RateLimiter",
    "ResolutionOutcome",
    "ResolutionStatus",
    "ResolvedPolygon",
    "backoff_seconds",
    "run_batch",
    "select_largest",
]
