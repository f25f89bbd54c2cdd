"""
Fleet reference data.

Known places (the depots trucks drive between), the origin/destination
assignment of each truck, and the route model used to place a truck on its
route at a given time. Also a small simulator that produces a feed shaped
like the real one for seeding and load tests.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from fleetstore.app.core.exceptions import ResourceNotFoundError
from fleetstore.app.domain.geodesy import interpolate
from fleetstore.app.domain.timeutil import ensure_utc
from fleetstore.app.schemas.telemetry import TelemetryPoint

# One leg from origin to destination takes this long, then the route repeats
ROUTE_CYCLE = timedelta(hours=8)

# Default geofence radius around a place
DEFAULT_GEOFENCE_M = 25_000.0


@dataclass(frozen=True)
class Place:
    id: int
    name: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Entity:
    id: int
    origin_id: int
    destination_id: int


DEFAULT_PLACES: Tuple[Place, ...] = (
    Place(1, "Seattle", 47.6062, -122.3321),
    Place(2, "San Francisco", 37.7749, -122.4194),
    Place(3, "Los Angeles", 34.0522, -118.2437),
    Place(4, "Denver", 39.7392, -104.9903),
    Place(5, "Chicago", 41.8781, -87.6298),
)


def entity_for(entity_id: int, place_count: int = len(DEFAULT_PLACES)) -> Entity:
    """Route assignment for a truck: origin (id % n) + 1, destination ((id + 2) % n) + 1."""
    return Entity(
        id=entity_id,
        origin_id=(entity_id % place_count) + 1,
        destination_id=((entity_id + 2) % place_count) + 1,
    )


def route_fraction(at: datetime, start: datetime) -> float:
    """How far along the current leg a truck is, in [0, 1)."""
    elapsed = (ensure_utc(at) - ensure_utc(start)).total_seconds()
    cycle = ROUTE_CYCLE.total_seconds()
    return (elapsed % cycle) / cycle


class ReferenceData:
    """
    In-memory registry of places and entities.

    Entities are registered when first seen in the feed; their route comes
    from the point when it carries one, otherwise from `entity_for`.
    """

    def __init__(self, places: Sequence[Place] = DEFAULT_PLACES):
        self._places: Dict[int, Place] = {p.id: p for p in places}
        self._entities: Dict[int, Entity] = {}
        self._lock = threading.Lock()

    def places(self) -> List[Place]:
        return [self._places[i] for i in sorted(self._places)]

    def place(self, place_id: int) -> Place:
        place = self._places.get(place_id)
        if place is None:
            raise ResourceNotFoundError("Place", place_id)
        return place

    def place_by_name(self, name: str) -> Place:
        for place in self._places.values():
            if place.name.lower() == name.lower():
                return place
        raise ResourceNotFoundError("Place", name)

    def entities(self) -> List[Entity]:
        with self._lock:
            return [self._entities[i] for i in sorted(self._entities)]

    def entity(self, entity_id: int) -> Entity:
        with self._lock:
            entity = self._entities.get(entity_id)
        if entity is None:
            raise ResourceNotFoundError("Entity", entity_id)
        return entity

    def register(self, entity: Entity) -> None:
        with self._lock:
            self._entities[entity.id] = entity

    def observe(self, point: TelemetryPoint) -> None:
        """Register the point's entity if it is new."""
        if point.entity_id in self._entities:
            return
        if point.origin_id is not None and point.destination_id is not None:
            entity = Entity(point.entity_id, point.origin_id, point.destination_id)
        else:
            entity = entity_for(point.entity_id, len(self._places))
        with self._lock:
            self._entities.setdefault(entity.id, entity)

    def route_position(self, entity_id: int, at: datetime, start: datetime) -> Tuple[float, float]:
        """Expected (lat, lon) of an entity on its great-circle route at `at`."""
        entity = self.entity(entity_id)
        origin = self.place(entity.origin_id)
        destination = self.place(entity.destination_id)
        return interpolate(
            origin.latitude, origin.longitude,
            destination.latitude, destination.longitude,
            route_fraction(at, start),
        )


def simulate_feed(reference: ReferenceData, entity_ids: Sequence[int], start: datetime, end: datetime,
                  step: timedelta = timedelta(seconds=5), seed: Optional[int] = None) -> Iterator[TelemetryPoint]:
    """
    Synthetic telemetry: every entity reports every `step` from `start` to `end`.

    Positions follow each entity's route; readings are uniform random in
    the ranges the real trucks report.
    """
    rng = np.random.default_rng(seed)
    known = {e.id for e in reference.entities()}
    for entity_id in entity_ids:
        if entity_id not in known:
            reference.register(entity_for(entity_id, len(reference.places())))

    at = ensure_utc(start)
    end = ensure_utc(end)
    while at < end:
        for entity_id in entity_ids:
            entity = reference.entity(entity_id)
            lat, lon = reference.route_position(entity_id, at, start)
            speed, heading, temp, fuel, cargo = rng.random(5)
            yield TelemetryPoint(
                entity_id=entity_id,
                time=at,
                latitude=lat,
                longitude=lon,
                measurements={
                    "speed_kph": 40 + float(speed) * 70,
                    "heading_deg": float(heading) * 360,
                    "engine_temp_c": 70 + float(temp) * 40,
                    "fuel_pct": 10 + float(fuel) * 90,
                    "cargo_kg": float(cargo) * 20000,
                },
                origin_id=entity.origin_id,
                destination_id=entity.destination_id,
            )
        at += step
