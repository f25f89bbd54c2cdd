"""
Query Router Tests.

Rollup vs raw routing, labeling of the answering source, and raw fallbacks.
"""

from datetime import timedelta

import pytest

from fleetstore.app.core.exceptions import QueryUnavailable
from fleetstore.app.domain.timeutil import TimeRange
from fleetstore.app.models.enums import QuerySource

from conftest import T0

DAY = timedelta(days=1)


@pytest.fixture
def two_days(telemetry, make_point):
    """Two trucks reporting speed over two days."""
    for day in range(2):
        for minute in range(0, 120, 10):
            seconds = day * 86400 + minute * 60
            telemetry.ingest(make_point(entity_id=1, seconds=seconds, speed_kph=50 + minute))
            telemetry.ingest(make_point(entity_id=2, seconds=seconds, speed_kph=80))
    return telemetry


def _rows(answer):
    return [(r.bucket_start, r.entity_id, r.value, r.samples) for r in answer.rows]


def test_aligned_covered_range_uses_rollup(two_days):
    two_days.refresh("daily_avg_speed")
    answer = two_days.aggregate_query("daily_avg_speed", None, TimeRange(T0, T0 + 2 * DAY))

    assert answer.source == QuerySource.ROLLUP
    assert answer.reason == "range covered by watermark"
    assert [(r.bucket_start, r.entity_id) for r in answer.rows] == [
        (T0, 1), (T0, 2), (T0 + DAY, 1), (T0 + DAY, 2),
    ]


def test_rollup_and_raw_answers_agree(two_days):
    two_days.refresh("daily_avg_speed")
    window = TimeRange(T0, T0 + 2 * DAY)

    rollup = two_days.aggregate_query("daily_avg_speed", [1], window)
    raw = two_days.aggregate_query("daily_avg_speed", [1], window, source=QuerySource.RAW)

    assert rollup.source == QuerySource.ROLLUP
    assert raw.source == QuerySource.RAW
    assert _rows(rollup) == _rows(raw)


def test_unrefreshed_aggregate_falls_back_to_raw(two_days):
    answer = two_days.aggregate_query("daily_avg_speed", None, TimeRange(T0, T0 + DAY))

    assert answer.source == QuerySource.RAW
    assert answer.reason == "aggregate not yet refreshed"
    assert answer.watermark is None
    assert len(answer.rows) == 2


def test_unaligned_range_goes_raw(two_days):
    two_days.refresh("daily_avg_speed")
    answer = two_days.aggregate_query(
        "daily_avg_speed", None, TimeRange(T0 + timedelta(minutes=30), T0 + 2 * DAY),
    )

    assert answer.source == QuerySource.RAW
    assert answer.reason == "range start not aligned to bucket width"
    # Only buckets starting inside the range are returned, each reduced in full
    assert [(r.bucket_start, r.entity_id) for r in answer.rows] == [(T0 + DAY, 1), (T0 + DAY, 2)]
    assert answer.rows[0].samples == 12


def test_unaligned_end_reduces_whole_last_bucket(two_days):
    answer = two_days.aggregate_query(
        "daily_avg_speed", [2], TimeRange(T0, T0 + timedelta(hours=1)), source=QuerySource.RAW,
    )
    assert _rows(answer) == [(T0, 2, 80.0, 12)]


def test_range_past_watermark_goes_raw(two_days):
    two_days.refresh("daily_avg_speed", T0 + DAY + timedelta(hours=2))
    answer = two_days.aggregate_query("daily_avg_speed", None, TimeRange(T0, T0 + 2 * DAY))

    assert answer.source == QuerySource.RAW
    assert answer.reason == "range extends past watermark"


def test_late_point_routes_raw_until_refreshed(telemetry, make_point):
    telemetry.ingest(make_point(seconds=0, latitude=0.0, longitude=0.0))
    telemetry.ingest(make_point(seconds=20, latitude=0.0, longitude=0.01))
    telemetry.refresh("daily_distance")
    telemetry.ingest(make_point(seconds=10, latitude=10.0, longitude=0.0))
    window = TimeRange(T0, T0 + DAY)

    stale = telemetry.aggregate_query("daily_distance", [1], window)
    raw = telemetry.aggregate_query("daily_distance", [1], window, source=QuerySource.RAW)
    assert stale.source == QuerySource.RAW
    assert stale.reason == "late points awaiting refresh"
    assert _rows(stale) == _rows(raw)
    assert stale.rows[0].value > 2_000_000

    other = telemetry.aggregate_query("daily_distance", [2], window)
    assert other.source == QuerySource.ROLLUP

    telemetry.refresh("daily_distance")
    fresh = telemetry.aggregate_query("daily_distance", [1], window)
    assert fresh.source == QuerySource.ROLLUP
    assert _rows(fresh) == _rows(raw)


def test_open_ended_range_goes_raw(two_days):
    two_days.refresh("daily_avg_speed")
    answer = two_days.aggregate_query("daily_avg_speed")
    assert answer.source == QuerySource.RAW


def test_forced_rollup_before_refresh_is_unavailable(two_days):
    with pytest.raises(QueryUnavailable) as exc_info:
        two_days.aggregate_query("daily_avg_speed", None, TimeRange(T0, T0 + DAY), source=QuerySource.ROLLUP)
    assert exc_info.value.error_code == "ERR_QUERY_001"


def test_unknown_aggregate_is_unavailable(telemetry):
    with pytest.raises(QueryUnavailable):
        telemetry.aggregate_query("weekly_mood")


def test_rollups_outlive_evicted_raw_data(test_settings, clock, make_point):
    from fleetstore.app.domain.engine import TelemetryEngine

    settings = test_settings.model_copy(update={"retention_seconds": 30 * 86400})
    telemetry = TelemetryEngine.from_settings(settings, clock=clock)
    telemetry.ingest(make_point(seconds=0, speed_kph=40))
    telemetry.refresh("daily_avg_speed")
    telemetry.run_compaction(T0 + timedelta(days=40))

    window = TimeRange(T0, T0 + DAY)
    answer = telemetry.aggregate_query("daily_avg_speed", None, window)
    assert answer.source == QuerySource.ROLLUP
    assert [r.value for r in answer.rows] == [40.0]

    with pytest.raises(QueryUnavailable):
        telemetry.aggregate_query("daily_avg_speed", None, window, source=QuerySource.RAW)


def test_sync_aggregate_always_uses_rollup(telemetry, make_point):
    from fleetstore.app.domain.rollup.definitions import POINT_COUNT_METRIC, AggregateDefinition
    from fleetstore.app.models.enums import AggregateFunction, RefreshMode

    telemetry.define_aggregate(AggregateDefinition(
        "daily_points", POINT_COUNT_METRIC, AggregateFunction.COUNT, DAY, RefreshMode.SYNC,
    ))
    telemetry.ingest(make_point(seconds=0))

    answer = telemetry.aggregate_query("daily_points", None, TimeRange(T0, T0 + DAY))
    assert answer.source == QuerySource.ROLLUP
    assert [r.value for r in answer.rows] == [1.0]


def test_range_query_projects_fields(telemetry, make_point):
    telemetry.ingest(make_point(entity_id=1, seconds=0, speed_kph=55.0, fuel_pct=70.0))

    (row,) = telemetry.range_query([1], TimeRange(T0, T0 + DAY), ["latitude", "speed_kph"])
    assert row == {
        "entity_id": 1,
        "time": T0,
        "latitude": 47.60,
        "measurements": {"speed_kph": 55.0},
    }

    (full,) = telemetry.range_query()
    assert full["measurements"] == {"fuel_pct": 70.0, "speed_kph": 55.0}


def test_routing_stats_count_sources(two_days):
    two_days.refresh("daily_avg_speed")
    two_days.aggregate_query("daily_avg_speed", None, TimeRange(T0, T0 + DAY))
    two_days.aggregate_query("daily_avg_speed")
    two_days.range_query()

    stats = two_days.router.get_stats()
    assert stats["total_queries"] == 3
    assert stats["by_source"] == {"rollup": 1, "raw": 2}
    assert stats["by_reason"]["range query"] == 1
    assert stats["rollup_ratio"] == pytest.approx(1 / 3)
