"""
Compactor Tests.

Lifecycle transitions, fidelity of the columnar form, failed compaction and
retention.
"""

from datetime import timedelta

import pytest

from fleetstore.app.core.exceptions import OutOfOrderRejected, QueryUnavailable
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.storage.columnar import CompactedSegment
from fleetstore.app.domain.timeutil import TimeRange
from fleetstore.app.models.enums import PartitionState

from conftest import T0

AFTER_COMPACTION_AGE = T0 + timedelta(days=8)


def _dump(points):
    return [p.model_dump() for p in points]


def test_compaction_preserves_points_exactly(telemetry, make_point):
    """Three points of one truck in one day read back identically after compaction."""
    telemetry.ingest(make_point(entity_id=2, seconds=0, speed_kph=50.5, fuel_pct=80))
    telemetry.ingest(make_point(entity_id=2, seconds=5, latitude=47.61, speed_kph=51.25))
    telemetry.ingest(make_point(entity_id=2, seconds=10, latitude=47.62, engine_temp_c=90.125))
    before = _dump(telemetry.store.scan())

    report = telemetry.run_compaction(AFTER_COMPACTION_AGE)

    partition = telemetry.store.partitions()[0]
    assert report.compacted == [T0]
    assert partition.state == PartitionState.COMPACTED
    assert partition.pending_rows == 0
    assert partition.compressed_bytes > 0
    assert _dump(telemetry.store.scan()) == before


def test_young_partitions_are_left_open(telemetry, make_point):
    telemetry.ingest(make_point(seconds=0))
    report = telemetry.run_compaction(T0 + timedelta(days=3))

    assert report.compacted == []
    assert telemetry.store.partitions()[0].state == PartitionState.OPEN


def test_recompaction_is_a_noop(telemetry, make_point):
    telemetry.ingest(make_point(seconds=0))
    telemetry.run_compaction(AFTER_COMPACTION_AGE)
    partition = telemetry.store.partitions()[0]
    version = partition.segment_version

    report = telemetry.run_compaction(AFTER_COMPACTION_AGE + timedelta(hours=1))

    assert report.compacted == []
    assert partition.segment_version == version
    assert partition.state == PartitionState.COMPACTED


def test_late_rows_are_merged_on_next_cycle(telemetry, make_point):
    telemetry.ingest(make_point(seconds=100))
    telemetry.run_compaction(AFTER_COMPACTION_AGE)
    telemetry.ingest(make_point(seconds=50))

    partition = telemetry.store.partitions()[0]
    assert partition.state == PartitionState.COMPACTED
    assert partition.pending_rows == 1
    assert [p.time for p in telemetry.store.scan()] == [T0 + timedelta(seconds=50), T0 + timedelta(seconds=100)]

    report = telemetry.run_compaction(AFTER_COMPACTION_AGE)
    assert report.compacted == [T0]
    assert partition.segment_version == 2
    assert partition.pending_rows == 0
    assert partition.point_count == 2


def test_failed_compaction_keeps_rows_queryable(telemetry, make_point, mocker):
    for seconds in range(3):
        telemetry.ingest(make_point(seconds=seconds))
    before = _dump(telemetry.store.scan())

    mocker.patch.object(telemetry.compactor, "encoder", side_effect=MemoryError("out of memory"))
    report = telemetry.run_compaction(AFTER_COMPACTION_AGE)

    partition = telemetry.store.partitions()[0]
    assert report.compacted == []
    assert T0 in report.failed
    assert "out of memory" in report.failed[T0]
    assert partition.state == PartitionState.OPEN
    assert partition.pending_rows == 3
    assert _dump(telemetry.store.scan()) == before


def test_spatial_index_survives_compaction(telemetry, make_point):
    telemetry.ingest(make_point(entity_id=4, latitude=47.6, longitude=-122.3))
    telemetry.run_compaction(AFTER_COMPACTION_AGE)

    hits = telemetry.geo_within(47.6, -122.3, 10)
    assert [(h.entity_id, h.time) for h in hits] == [(4, T0)]


def test_segment_survives_serialization(make_point):
    from fleetstore.app.domain.storage.columnar import encode_partition

    points = [
        make_point(entity_id=1, seconds=0, speed_kph=40.0),
        make_point(entity_id=1, seconds=5, fuel_pct=55.5),
    ]
    segment = encode_partition({1: points})
    restored = CompactedSegment.from_bytes(segment.to_bytes())

    assert restored.point_count == 2
    assert restored.raw_bytes == segment.raw_bytes
    # Measurements absent from a point stay absent
    assert _dump(restored.decode_entity(1)) == _dump(points)


def test_retention_evicts_and_archives(test_settings, clock, make_point):
    settings = test_settings.model_copy(update={"retention_seconds": 30 * 86400})
    telemetry = TelemetryEngine.from_settings(settings, clock=clock)
    telemetry.ingest(make_point(seconds=0))
    telemetry.ingest(make_point(seconds=10))

    report = telemetry.run_compaction(T0 + timedelta(days=32))

    partition = telemetry.store.partitions()[0]
    assert partition.state == PartitionState.EVICTED
    assert report.compacted == [T0]
    assert report.evicted == [T0]
    assert [a.segment.point_count for a in report.archived] == [2]

    with pytest.raises(QueryUnavailable):
        telemetry.range_query(None, TimeRange(T0, T0 + timedelta(days=1)))
    with pytest.raises(OutOfOrderRejected):
        telemetry.ingest(make_point(seconds=20))
    assert telemetry.geo_within(47.60, -122.33, 100) == []


def test_retention_status_reports_lifecycle(telemetry, make_point):
    telemetry.ingest(make_point(seconds=0))
    telemetry.ingest(make_point(seconds=86400))
    telemetry.run_compaction(AFTER_COMPACTION_AGE)

    statuses = telemetry.retention_status(AFTER_COMPACTION_AGE)
    assert [s.state for s in statuses] == [PartitionState.COMPACTED, PartitionState.OPEN]
    assert statuses[0].age_seconds == 7 * 86400
    assert statuses[0].compacted_at is not None
    assert statuses[1].pending_rows == 1
