"""
Reference Data Tests.

Places, route assignment, route interpolation and the feed simulator.
"""

from datetime import timedelta

import pytest

from fleetstore.app.core.exceptions import ResourceNotFoundError
from fleetstore.app.domain.fleet.reference import (
    ROUTE_CYCLE,
    Entity,
    ReferenceData,
    entity_for,
    route_fraction,
    simulate_feed,
)

from conftest import T0


def test_route_assignment():
    assert entity_for(1) == Entity(1, 2, 4)
    assert entity_for(5) == Entity(5, 1, 3)
    assert entity_for(3) == Entity(3, 4, 1)


def test_route_fraction_cycles_every_eight_hours():
    assert route_fraction(T0, T0) == 0.0
    assert route_fraction(T0 + ROUTE_CYCLE / 4, T0) == pytest.approx(0.25)
    assert route_fraction(T0 + ROUTE_CYCLE + timedelta(hours=4), T0) == pytest.approx(0.5)


def test_route_position_starts_at_origin():
    reference = ReferenceData()
    reference.register(entity_for(1))
    origin = reference.place(2)

    assert reference.route_position(1, T0, T0) == pytest.approx((origin.latitude, origin.longitude))


def test_places_lookup():
    reference = ReferenceData()
    assert [p.name for p in reference.places()] == [
        "Seattle", "San Francisco", "Los Angeles", "Denver", "Chicago",
    ]
    assert reference.place_by_name("DENVER").id == 4
    with pytest.raises(ResourceNotFoundError):
        reference.place(99)
    with pytest.raises(ResourceNotFoundError):
        reference.entity(1)


def test_simulated_feed_is_reproducible_and_in_range():
    end = T0 + timedelta(minutes=10)
    first = [p.model_dump() for p in simulate_feed(ReferenceData(), [1, 2], T0, end, seed=42)]
    second = [p.model_dump() for p in simulate_feed(ReferenceData(), [1, 2], T0, end, seed=42)]

    assert first == second
    assert len(first) == 2 * 120
    for point in first:
        m = point["measurements"]
        assert 40 <= m["speed_kph"] <= 110
        assert 0 <= m["heading_deg"] <= 360
        assert 70 <= m["engine_temp_c"] <= 110
        assert 10 <= m["fuel_pct"] <= 100
        assert 0 <= m["cargo_kg"] <= 20000
        assert (point["origin_id"], point["destination_id"]) in {(2, 4), (3, 5)}
