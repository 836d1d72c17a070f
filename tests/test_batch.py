from __future__ import annotations

import pytest

from campusgeo.campus.batch import BatchSummary, OutcomeCollector, run_batch
from campusgeo.campus.models import ResolutionOutcome, ResolutionStatus
from campusgeo.campus.resolver import CampusPolygonResolver
from campusgeo.osm.overpass import ServiceError

from conftest import RegionSource, ScriptedSource, ThreadClock, feature_set, make_query, square, way_feature


def _found(lon=-97.7341, lat=30.2849, osm_id=1):
    return feature_set(polygons=[way_feature(osm_id, square(lon, lat, 0.005))])


def _run(source, queries, clock, **kwargs):
    resolver = CampusPolygonResolver(source, clock=clock)
    return run_batch(queries, resolver, clock=clock, show_progress=False, **kwargs)


def test_every_institution_gets_exactly_one_status_row(clock):
    queries = [make_query(1), make_query(2), make_query(3)]
    source = ScriptedSource([_found(), feature_set(), ServiceError("down")])

    result = _run(source, queries, clock)

    assert len(result.status_table) == len(queries)
    assert [query.id for query, _ in result.status_table] == [1, 2, 3]
    assert [found for _, found in result.status_table] == [True, False, False]
    assert [outcome.status for outcome in result.outcomes] == [
        ResolutionStatus.FOUND,
        ResolutionStatus.NOT_FOUND,
        ResolutionStatus.FAILED,
    ]


def test_found_institutions_are_not_in_manual_list(clock):
    queries = [make_query(1), make_query(2), make_query(3)]
    source = ScriptedSource([_found(), feature_set(), ServiceError("down")])

    result = _run(source, queries, clock)

    found_ids = [polygon.id for polygon in result.found_polygons]
    manual_ids = [query.id for query in result.needs_manual]
    assert found_ids == [1]
    assert manual_ids == [2, 3]
    assert not set(found_ids) & set(manual_ids)


def test_summary_counts_add_up(clock):
    queries = [make_query(i) for i in range(1, 4)]
    source = ScriptedSource([_found(), feature_set(), ServiceError("down")])

    summary = _run(source, queries, clock).summary

    assert summary == BatchSummary(attempted=3, found=1, missing=2, failed=1)
    assert summary.found + summary.missing == summary.attempted
    assert summary.success_rate == pytest.approx(33.3)


def test_delay_after_every_institution_plus_backoff(clock):
    queries = [make_query(1), make_query(2), make_query(3)]
    source = ScriptedSource([_found(), feature_set(), ServiceError("down")])

    _run(source, queries, clock, delay_s=3.0)

    assert clock.sleeps == [3.0, 3.0, 6, 12, 3.0]


def test_total_outage_still_produces_full_status_table(clock):
    queries = [make_query(i) for i in range(5)]
    source = ScriptedSource([ServiceError("overpass unreachable")])

    result = _run(source, queries, clock, delay_s=0)

    assert len(result.status_table) == 5
    assert result.found_polygons == []
    assert len(result.needs_manual) == 5
    assert result.summary.failed == 5
    assert result.summary.success_rate == 0.0


def test_invalid_coordinates_only_affect_that_institution(clock):
    queries = [make_query(1, lat=float("nan")), make_query(2)]
    source = ScriptedSource([_found()])

    result = _run(source, queries, clock, delay_s=0)

    assert result.outcomes[0].status is ResolutionStatus.FAILED
    assert "invalid coordinates" in result.outcomes[0].message
    assert result.outcomes[1].status is ResolutionStatus.FOUND
    assert source.calls == 1


def test_unexpected_errors_are_isolated(clock):
    queries = [make_query(1), make_query(2)]
    source = ScriptedSource([RuntimeError("boom"), _found()])

    result = _run(source, queries, clock, delay_s=0)

    assert [outcome.status for outcome in result.outcomes] == [ResolutionStatus.FAILED, ResolutionStatus.FOUND]


def test_empty_input(clock):
    result = _run(ScriptedSource([feature_set()]), [], clock)

    assert result.status_table == []
    assert result.summary.success_rate == 0.0


def test_threaded_run_keeps_input_order(clock):
    lats = [30.0 + i * 0.5 for i in range(8)]
    queries = [make_query(i, lat=lat) for i, lat in enumerate(lats)]

    def respond(region):
        center = (region.south + region.north) / 2
        index = min(range(len(lats)), key=lambda i: abs(lats[i] - center))
        if index % 3 == 0:
            return feature_set()
        return _found(lat=lats[index], osm_id=index)

    source = RegionSource(respond)

    result = _run(source, queries, clock, threads=4, delay_s=3.0)

    assert [query.id for query, _ in result.status_table] == list(range(8))
    assert [found for _, found in result.status_table] == [i % 3 != 0 for i in range(8)]
    assert [polygon.id for polygon in result.found_polygons] == [1, 2, 4, 5, 7]
    assert source.calls == 8


def test_threaded_run_spaces_requests_by_delay():
    clock = ThreadClock()
    queries = [make_query(i) for i in range(6)]
    source = RegionSource(lambda region: feature_set(), clock=clock)
    resolver = CampusPolygonResolver(source, clock=clock)

    run_batch(queries, resolver, clock=clock, threads=3, delay_s=3.0, show_progress=False)

    times = sorted(source.fetch_times)
    assert len(times) == 6
    assert all(later - earlier >= 3.0 for earlier, later in zip(times, times[1:]))


def test_threaded_run_leaves_resolver_limiter_alone(clock):
    source = RegionSource(lambda region: feature_set())
    resolver = CampusPolygonResolver(source, clock=clock)

    run_batch([make_query(1), make_query(2)], resolver, clock=clock, threads=2, delay_s=3.0, show_progress=False)
    assert resolver.rate_limiter is None

    clock.sleeps.clear()
    run_batch([make_query(3)], resolver, clock=clock, delay_s=1.0, show_progress=False)
    assert clock.sleeps == [1.0]


def test_collector_rejects_duplicate_outcomes():
    query = make_query(1)
    collector = OutcomeCollector([query])
    collector.record(0, ResolutionOutcome.not_found(query, attempts=1))

    with pytest.raises(ValueError):
        collector.record(0, ResolutionOutcome.not_found(query, attempts=1))


def test_collector_requires_every_outcome():
    collector = OutcomeCollector([make_query(1), make_query(2)])
    collector.record(1, ResolutionOutcome.not_found(make_query(2), attempts=1))

    assert len(collector) == 1
    with pytest.raises(RuntimeError):
        collector.result()


def test_summary_lines():
    lines = BatchSummary(attempted=4, found=3, missing=1, failed=0).format_lines()

    assert lines[0] == "Total campuses attempted: 4"
    assert lines[-1] == "Success rate: 75.0 %"
