"""
Spatial Index Tests.

Radius and polygon queries must return exactly what a brute-force check
over every point returns, before and after a partition is frozen.
"""

from datetime import timedelta

import numpy as np
import pytest

from fleetstore.app.core.exceptions import ResourceNotFoundError, ValidationError
from fleetstore.app.domain.geodesy import haversine_m, polygon_contains
from fleetstore.app.domain.spatial.spatial_index import SpatialIndex
from fleetstore.app.domain.timeutil import TimeRange, duration_micros, to_micros
from fleetstore.app.schemas.telemetry import TelemetryPoint

from conftest import T0

DAY = duration_micros(timedelta(days=1))
FIRST_PARTITION = to_micros(T0) // DAY


def _random_points(count, seed=7):
    rng = np.random.default_rng(seed)
    points = []
    for i in range(count):
        points.append(TelemetryPoint(
            entity_id=int(rng.integers(1, 6)),
            time=T0 + timedelta(seconds=int(rng.integers(0, 2 * 86400))),
            latitude=float(47.0 + rng.random()),
            longitude=float(-123.0 + rng.random()),
        ))
    return points


@pytest.mark.parametrize("frozen", [False, True])
def test_within_matches_brute_force(frozen):
    points = _random_points(500)
    index = SpatialIndex(DAY, cell_degrees=0.1)
    for point in points:
        index.index(point)
    if frozen:
        for partition_index in (FIRST_PARTITION, FIRST_PARTITION + 1):
            index.compact_partition(partition_index)

    center = (47.5, -122.5)
    radius = 20_000.0
    hits = index.query_within(center[0], center[1], radius)

    expected = sorted(
        (p.micros, p.entity_id) for p in points
        if haversine_m(center[0], center[1], p.latitude, p.longitude) <= radius
    )
    assert [(h.micros, h.entity_id) for h in hits] == expected
    assert all(h.distance_m <= radius for h in hits)


def test_within_radius_is_inclusive():
    index = SpatialIndex(DAY)
    point = TelemetryPoint(entity_id=1, time=T0, latitude=47.61, longitude=-122.33)
    index.index(point)

    radius = haversine_m(47.60, -122.33, 47.61, -122.33)
    assert len(index.query_within(47.60, -122.33, radius)) == 1
    assert index.query_within(47.60, -122.33, radius * 0.999) == []


def test_contains_matches_brute_force():
    points = _random_points(300, seed=11)
    index = SpatialIndex(DAY, cell_degrees=0.25)
    for point in points:
        index.index(point)

    polygon = [(47.2, -122.8), (47.8, -122.8), (47.8, -122.2), (47.2, -122.2)]
    hits = index.query_contains(polygon)
    expected = sorted(
        (p.micros, p.entity_id) for p in points
        if polygon_contains(polygon, p.latitude, p.longitude)
    )
    assert [(h.micros, h.entity_id) for h in hits] == expected


def test_time_range_limits_results():
    index = SpatialIndex(DAY)
    for hours in (1, 30):
        index.index(TelemetryPoint(
            entity_id=1, time=T0 + timedelta(hours=hours), latitude=47.6, longitude=-122.3,
        ))

    first_day = TimeRange(T0, T0 + timedelta(days=1))
    hits = index.query_within(47.6, -122.3, 100, first_day)
    assert [h.time for h in hits] == [T0 + timedelta(hours=1)]


def test_dropped_partition_is_not_searched():
    index = SpatialIndex(DAY)
    index.index(TelemetryPoint(entity_id=1, time=T0, latitude=47.6, longitude=-122.3))
    partition_index = FIRST_PARTITION

    assert index.indexed_count(partition_index) == 1
    index.drop_partition(partition_index)
    assert index.query_within(47.6, -122.3, 1000) == []


def test_engine_geo_within_uses_place_center(telemetry, make_point):
    telemetry.ingest(make_point(entity_id=1, latitude=47.6062, longitude=-122.3321))
    telemetry.ingest(make_point(entity_id=2, latitude=41.8781, longitude=-87.6298))

    hits = telemetry.geo_within(place="seattle")
    assert [h.entity_id for h in hits] == [1]
    assert hits[0].distance_m == pytest.approx(0.0, abs=1e-6)

    with pytest.raises(ResourceNotFoundError):
        telemetry.geo_within(place="Atlantis")


def test_engine_geo_queries_validate_input(telemetry):
    with pytest.raises(ValidationError):
        telemetry.geo_within(47.6, -122.3, -1)
    with pytest.raises(ValidationError):
        telemetry.geo_within(None, None, 100)
    with pytest.raises(ValidationError):
        telemetry.geo_within(95.0, 0.0, 100)
    with pytest.raises(ValidationError):
        telemetry.geo_contains([(0.0, 0.0), (1.0, 1.0), (0.0, 0.0)])


def test_engine_geo_contains_accepts_closed_ring(telemetry, make_point):
    telemetry.ingest(make_point(entity_id=3, latitude=47.5, longitude=-122.5))
    ring = [(47.0, -123.0), (48.0, -123.0), (48.0, -122.0), (47.0, -122.0), (47.0, -123.0)]
    hits = telemetry.geo_contains(ring)
    assert [(h.entity_id, h.time) for h in hits] == [(3, T0)]


def test_engine_geo_contains_polygon_around_north_pole(telemetry, make_point):
    telemetry.ingest(make_point(entity_id=4, latitude=89.0, longitude=10.0))
    telemetry.ingest(make_point(entity_id=5, latitude=70.0, longitude=10.0))
    ring = [(80.0, 0.0), (80.0, 90.0), (80.0, 180.0), (80.0, -90.0)]

    hits = telemetry.geo_contains(ring)
    assert [h.entity_id for h in hits] == [4]
