"""Batch runner that resolves every institution and tracks the outcome of each."""
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from campusgeo.campus.models import InstitutionQuery, ResolutionOutcome, ResolutionStatus, ResolvedPolygon
from campusgeo.campus.resolver import CampusPolygonResolver, Clock, RateLimiter
from campusgeo.osm.geometry import CoordinateError

LOGGER = logging.getLogger(__name__)

# Pause after every institution to stay inside the Overpass usage policy.
DEFAULT_REQUEST_DELAY_S = float(os.getenv("CAMPUS_REQUEST_DELAY_S", "3"))


@dataclass(frozen=True)
class BatchSummary:
    attempted: int
    found: int
    missing: int
    failed: int

    @property
    def success_rate(self) -> float:
        """Percentage of attempted institutions with a polygon, one decimal."""

        if self.attempted == 0:
            return 0.0
        return round(self.found / self.attempted * 100, 1)

    def as_dict(self) -> Dict[str, float]:
        return {
            "attempted": self.attempted,
            "found": self.found,
            "missing": self.missing,
            "failed": self.failed,
            "success_rate": self.success_rate,
        }

    def format_lines(self) -> List[str]:
        return [
            f"Total campuses attempted: {self.attempted}",
            f"Polygons found: {self.found}",
            f"Polygons missing: {self.missing} ({self.failed} after service errors)",
            f"Success rate: {self.success_rate} %",
        ]


@dataclass
class BatchResult:
    queries: List[InstitutionQuery]
    outcomes: List[ResolutionOutcome]

    @property
    def found_polygons(self) -> List[ResolvedPolygon]:
        return [outcome.polygon for outcome in self.outcomes if outcome.polygon_found]

    @property
    def status_table(self) -> List[Tuple[InstitutionQuery, bool]]:
        """One ``(institution, polygon_found)`` row per input, in input order."""

        return [(outcome.query, outcome.polygon_found) for outcome in self.outcomes]

    @property
    def needs_manual(self) -> List[InstitutionQuery]:
        return [outcome.query for outcome in self.outcomes if not outcome.polygon_found]

    @property
    def summary(self) -> BatchSummary:
        found = sum(1 for outcome in self.outcomes if outcome.polygon_found)
        failed = sum(1 for outcome in self.outcomes if outcome.status is ResolutionStatus.FAILED)
        attempted = len(self.outcomes)
        return BatchSummary(attempted=attempted, found=found, missing=attempted - found, failed=failed)


class OutcomeCollector:
    """Holds one slot per input institution; outcomes may arrive in any order."""

    def __init__(self, queries: Sequence[InstitutionQuery]) -> None:
        self._queries = list(queries)
        self._outcomes: List[Optional[ResolutionOutcome]] = [None] * len(self._queries)
        self._lock = threading.Lock()
        self.found = 0
        self.missing = 0
        self.failed = 0

    def __len__(self) -> int:
        return sum(1 for outcome in self._outcomes if outcome is not None)

    def record(self, index: int, outcome: ResolutionOutcome) -> None:
        with self._lock:
            if self._outcomes[index] is not None:
                raise ValueError(f"Outcome for institution #{index} was already recorded")
            self._outcomes[index] = outcome
            if outcome.polygon_found:
                self.found += 1
            else:
                self.missing += 1
                if outcome.status is ResolutionStatus.FAILED:
                    self.failed += 1

    def result(self) -> BatchResult:
        pending = [self._queries[i].name for i, outcome in enumerate(self._outcomes) if outcome is None]
        if pending:
            raise RuntimeError(f"{len(pending)} institution(s) have no recorded outcome: {pending[:5]}")
        return BatchResult(queries=list(self._queries), outcomes=list(self._outcomes))


def resolve_isolated(
    resolver: CampusPolygonResolver,
    query: InstitutionQuery,
    rate_limiter: Optional[RateLimiter] = None,
) -> ResolutionOutcome:
    """Resolve one institution, turning any error into a ``FAILED`` outcome."""

    try:
        return resolver.resolve(query, rate_limiter=rate_limiter)
    except CoordinateError as exc:
        LOGGER.error("%s: invalid coordinates, not queried: %s", query.name, exc)
        return ResolutionOutcome.failed(query, attempts=0, message=f"invalid coordinates: {exc}")
    except Exception as exc:
        LOGGER.exception("Unexpected error while processing %s", query.name)
        return ResolutionOutcome.failed(query, attempts=0, message=str(exc))


def _progress_postfix(progress: tqdm, collector: OutcomeCollector) -> None:
    progress.update(1)
    progress.set_postfix(found=collector.found, missing=collector.missing, failed=collector.failed)


def _report(outcome: ResolutionOutcome) -> None:
    if outcome.status is ResolutionStatus.FAILED:
        tqdm.write(f"Campus {outcome.query.name} failed: {outcome.message or 'see logs'}")


def run_batch(
    queries: Sequence[InstitutionQuery],
    resolver: CampusPolygonResolver,
    *,
    delay_s: float = DEFAULT_REQUEST_DELAY_S,
    threads: int = 1,
    clock: Optional[Clock] = None,
    show_progress: bool = True,
) -> BatchResult:
    """Resolve every institution and return outcomes in input order.

    With ``threads == 1`` institutions run strictly one after another with a
    fixed ``delay_s`` pause after each. With more threads the pause becomes a
    shared rate limit on outbound requests, while retry backoff stays inside
    each worker.
    """

    queries = list(queries)
    clock = clock or resolver.clock
    collector = OutcomeCollector(queries)
    total = len(queries)
    workers = max(1, threads)

    with tqdm(total=total, unit="campus", desc="Campuses", disable=not show_progress) as progress:
        if workers == 1:
            for index, query in enumerate(queries):
                LOGGER.info("[%d/%d] Processing: %s", index + 1, total, query.name)
                outcome = resolve_isolated(resolver, query)
                collector.record(index, outcome)
                _report(outcome)
                _progress_postfix(progress, collector)
                if delay_s > 0:
                    clock.sleep(delay_s)
        else:
            # Per-run limiter; the resolver is not modified.
            limiter = resolver.rate_limiter or RateLimiter(delay_s, clock=clock)
            with ThreadPoolExecutor(max_workers=workers) as executor:
                future_map = {
                    executor.submit(resolve_isolated, resolver, query, limiter): index
                    for index, query in enumerate(queries)
                }
                for future in as_completed(future_map):
                    index = future_map[future]
                    outcome = future.result()
                    collector.record(index, outcome)
                    _report(outcome)
                    _progress_postfix(progress, collector)

    result = collector.result()
    summary = result.summary
    if summary.found == 0 and summary.attempted:
        LOGGER.error("No polygons found for any campus")
    LOGGER.info(
        "Completed batch: %d attempted, %d found, %d missing (%d failed), success rate %.1f%%",
        summary.attempted,
        summary.found,
        summary.missing,
        summary.failed,
        summary.success_rate,
    )
    return result
