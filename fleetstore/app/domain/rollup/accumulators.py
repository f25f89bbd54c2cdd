"""
Bucket accumulators.

Each accumulator holds just enough state to answer its aggregate without
rescanning raw points, and serializes to a plain dict for the catalog.
"""

from typing import Any, Dict, Optional, Type

from fleetstore.app.domain.geodesy import haversine_m


class OrderViolation(Exception):
    """A sequential accumulator was fed a point older than its last one."""


class Accumulator:
    kind = "base"

    def __init__(self):
        self.samples = 0

    def add(self, micros: int, value: float) -> None:
        raise NotImplementedError

    @property
    def value(self) -> Optional[float]:
        raise NotImplementedError

    def copy(self) -> "Accumulator":
        clone = type(self).__new__(type(self))
        clone.__dict__.update(self.__dict__)
        return clone

    def to_state(self) -> Dict[str, Any]:
        return {"kind": self.kind, **self.__dict__}

    def __eq__(self, other):
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __repr__(self):
        return f"<{type(self).__name__} samples={self.samples} value={self.value}>"


class SumAccumulator(Accumulator):
    kind = "sum"

    def __init__(self):
        super().__init__()
        self.total = 0.0

    def add(self, micros: int, value: float) -> None:
        self.total += value
        self.samples += 1

    @property
    def value(self) -> Optional[float]:
        return self.total


class AvgAccumulator(SumAccumulator):
    kind = "avg"

    @property
    def value(self) -> Optional[float]:
        if not self.samples:
            return None
        return self.total / self.samples


class CountAccumulator(Accumulator):
    kind = "count"

    def add(self, micros: int, value: float) -> None:
        self.samples += 1

    @property
    def value(self) -> Optional[float]:
        return float(self.samples)


class MaxAccumulator(Accumulator):
    kind = "max"

    def __init__(self):
        super().__init__()
        self.extreme: Optional[float] = None

    def _better(self, value: float) -> bool:
        return value > self.extreme

    def add(self, micros: int, value: float) -> None:
        if self.extreme is None or self._better(value):
            self.extreme = value
        self.samples += 1

    @property
    def value(self) -> Optional[float]:
        return self.extreme


class MinAccumulator(MaxAccumulator):
    kind = "min"

    def _better(self, value: float) -> bool:
        return value < self.extreme


class LastAccumulator(Accumulator):
    """Latest value by timestamp; on equal timestamps the later arrival wins."""
    kind = "last"

    def __init__(self):
        super().__init__()
        self.last_micros: Optional[int] = None
        self.last_value: Optional[float] = None

    def add(self, micros: int, value: float) -> None:
        if self.last_micros is None or micros >= self.last_micros:
            self.last_micros = micros
            self.last_value = value
        self.samples += 1

    @property
    def value(self) -> Optional[float]:
        return self.last_value


class DistanceAccumulator(Accumulator):
    """
    Distance traveled: sum of haversine legs between consecutive positions.

    Order-sensitive. The first position contributes nothing; every later
    one adds the leg from the previous position, which must not be newer.
    """
    kind = "distance"

    def __init__(self):
        super().__init__()
        self.total_m = 0.0
        self.last_micros: Optional[int] = None
        self.last_lat: Optional[float] = None
        self.last_lon: Optional[float] = None

    def add_position(self, micros: int, lat: float, lon: float) -> None:
        if self.last_micros is not None:
            if micros < self.last_micros:
                raise OrderViolation(
                    f"position at {micros} precedes last processed position at {self.last_micros}"
                )
            self.total_m += haversine_m(self.last_lat, self.last_lon, lat, lon)
        self.last_micros = micros
        self.last_lat = lat
        self.last_lon = lon
        self.samples += 1

    def add(self, micros: int, value: float) -> None:
        raise TypeError("DistanceAccumulator consumes positions, use add_position()")

    @property
    def value(self) -> Optional[float]:
        return self.total_m


ACCUMULATOR_TYPES: Dict[str, Type[Accumulator]] = {
    cls.kind: cls
    for cls in (
        SumAccumulator, AvgAccumulator, CountAccumulator,
        MaxAccumulator, MinAccumulator, LastAccumulator, DistanceAccumulator,
    )
}


def accumulator_from_state(state: Dict[str, Any]) -> Accumulator:
    """Rebuild an accumulator from `Accumulator.to_state()` output."""
    state = dict(state)
    cls = ACCUMULATOR_TYPES[state.pop("kind")]
    acc = cls.__new__(cls)
    acc.__dict__.update(state)
    return acc
