"""
Concurrency Tests.

Appends, compaction and refreshes running at the same time must not lose
or double count points.
"""

import asyncio

import pytest

from fleetstore.app.domain.rollup.definitions import reduce_points
from fleetstore.app.domain.timeutil import TimeRange, from_micros

from conftest import T0

POINTS_PER_WRITER = 500


def _append_many(telemetry, make_point, entity_id, offset=0):
    for i in range(POINTS_PER_WRITER):
        telemetry.ingest(make_point(
            entity_id=entity_id,
            seconds=offset + i,
            latitude=47.60 + i * 1e-4,
            speed_kph=float(i % 90),
        ))


@pytest.mark.asyncio
async def test_concurrent_appends_keep_every_point(telemetry, make_point):
    await asyncio.gather(*[
        asyncio.to_thread(_append_many, telemetry, make_point, entity_id)
        for entity_id in range(1, 5)
    ])

    points = list(telemetry.store.scan())
    assert len(points) == 4 * POINTS_PER_WRITER
    for entity_id in range(1, 5):
        times = [p.time for p in telemetry.store.scan([entity_id])]
        assert times == sorted(times)
        assert len(times) == POINTS_PER_WRITER


@pytest.mark.asyncio
async def test_compaction_during_appends_loses_nothing(telemetry, make_point):
    """Writers keep landing late points in a partition the compactor is working on."""
    _append_many(telemetry, make_point, entity_id=1)

    async def compact_repeatedly():
        for _ in range(5):
            await asyncio.to_thread(telemetry.run_compaction)
            await asyncio.sleep(0)

    await asyncio.gather(
        compact_repeatedly(),
        asyncio.to_thread(_append_many, telemetry, make_point, 2),
        asyncio.to_thread(_append_many, telemetry, make_point, 3, 1000),
    )
    telemetry.run_compaction()

    assert len(list(telemetry.store.scan())) == 3 * POINTS_PER_WRITER
    assert len(telemetry.geo_within(47.60, -122.33, 50_000, TimeRange(T0, None))) == 3 * POINTS_PER_WRITER
    (partition,) = telemetry.store.partitions()
    assert partition.pending_rows == 0


@pytest.mark.asyncio
async def test_refresh_during_late_appends_converges(telemetry, make_point):
    _append_many(telemetry, make_point, entity_id=1, offset=3600)

    await asyncio.gather(
        asyncio.to_thread(telemetry.refresh, "daily_avg_speed"),
        asyncio.to_thread(telemetry.refresh, "daily_distance"),
        asyncio.to_thread(_append_many, telemetry, make_point, 1),
        asyncio.to_thread(_append_many, telemetry, make_point, 2),
    )
    telemetry.refresh("daily_avg_speed")
    telemetry.refresh("daily_distance")

    for name in ("daily_avg_speed", "daily_distance"):
        definition = telemetry.rollups.definition(name)
        expected = {
            (entity_id, from_micros(start)): acc.value
            for (entity_id, start), acc in reduce_points(definition, telemetry.store.scan()).items()
        }
        rolled = {(b.entity_id, b.bucket_start): b.value for b in telemetry.rollups.buckets(name)}
        assert rolled.keys() == expected.keys()
        for key, value in expected.items():
            assert rolled[key] == pytest.approx(value)
