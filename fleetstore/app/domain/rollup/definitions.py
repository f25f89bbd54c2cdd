"""
Aggregate definitions and the direct-scan reduction.

`reduce_points` is the reference answer: a rollup bucket is correct when it
equals what this function computes over the same raw points.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, Tuple

from fleetstore.app.core.exceptions import ConfigurationError
from fleetstore.app.domain.rollup.accumulators import (
    Accumulator,
    AvgAccumulator,
    CountAccumulator,
    DistanceAccumulator,
    LastAccumulator,
    MaxAccumulator,
    MinAccumulator,
    SumAccumulator,
)
from fleetstore.app.domain.timeutil import duration_micros, floor_micros
from fleetstore.app.models.enums import AggregateFunction, RefreshMode
from fleetstore.app.schemas.telemetry import TelemetryPoint

# Metric names with special meaning
DISTANCE_METRIC = "distance"
POINT_COUNT_METRIC = "count"

BucketKey = Tuple[int, int]  # (entity_id, bucket_start_micros)

_FUNCTIONS = {
    AggregateFunction.SUM: SumAccumulator,
    AggregateFunction.AVG: AvgAccumulator,
    AggregateFunction.COUNT: CountAccumulator,
    AggregateFunction.MAX: MaxAccumulator,
    AggregateFunction.MIN: MinAccumulator,
    AggregateFunction.LAST: LastAccumulator,
}


@dataclass(frozen=True)
class AggregateDefinition:
    """
    A named rollup.

    Attributes:
        name: Unique aggregate name
        metric: Measurement name, `distance` for distance traveled, or `count`
            to count points
        function: Reduction applied inside each bucket
        bucket_width: Width of each time bucket
        mode: Refresh in the background (async) or on every append (sync)
    """
    name: str
    metric: str
    function: AggregateFunction
    bucket_width: timedelta = timedelta(days=1)
    mode: RefreshMode = RefreshMode.ASYNC

    def __post_init__(self):
        try:
            object.__setattr__(self, "function", AggregateFunction(self.function))
            object.__setattr__(self, "mode", RefreshMode(self.mode))
        except ValueError as exc:
            raise ConfigurationError(str(exc), {"aggregate": self.name}) from exc

        if not self.name:
            raise ConfigurationError("Aggregate name must not be empty")
        if not self.metric:
            raise ConfigurationError("Aggregate metric must not be empty", {"aggregate": self.name})
        if self.bucket_width <= timedelta(0):
            raise ConfigurationError(
                "Aggregate bucket width must be positive",
                {"aggregate": self.name, "bucket_width_seconds": self.bucket_width.total_seconds()},
            )
        if self.metric == DISTANCE_METRIC and self.function != AggregateFunction.SUM:
            raise ConfigurationError(
                "Distance traveled can only be summed",
                {"aggregate": self.name, "function": self.function.value},
            )
        if self.metric == POINT_COUNT_METRIC and self.function != AggregateFunction.COUNT:
            raise ConfigurationError(
                "The 'count' metric can only be counted",
                {"aggregate": self.name, "function": self.function.value},
            )

    @property
    def bucket_width_micros(self) -> int:
        return duration_micros(self.bucket_width)

    def bucket_start(self, micros: int) -> int:
        return floor_micros(micros, self.bucket_width_micros)

    def bucket_key(self, point: TelemetryPoint) -> BucketKey:
        return point.entity_id, self.bucket_start(point.micros)

    def new_accumulator(self) -> Accumulator:
        if self.metric == DISTANCE_METRIC:
            return DistanceAccumulator()
        return _FUNCTIONS[self.function]()

    def contributes(self, point: TelemetryPoint) -> bool:
        """Whether the point carries the metric (missing measurements are skipped)."""
        if self.metric in (DISTANCE_METRIC, POINT_COUNT_METRIC):
            return True
        return self.metric in point.measurements

    def feed(self, acc: Accumulator, point: TelemetryPoint) -> None:
        if self.metric == DISTANCE_METRIC:
            acc.add_position(point.micros, point.latitude, point.longitude)
        elif self.metric == POINT_COUNT_METRIC:
            acc.add(point.micros, 1.0)
        else:
            acc.add(point.micros, point.measurements[self.metric])


def reduce_points(definition: AggregateDefinition, points: Iterable[TelemetryPoint]) -> Dict[BucketKey, Accumulator]:
    """
    Bucket and reduce raw points from scratch.

    Points must arrive in time order per entity, as a store scan yields them.
    """
    buckets: Dict[BucketKey, Accumulator] = {}
    for point in points:
        if not definition.contributes(point):
            continue
        key = definition.bucket_key(point)
        acc = buckets.get(key)
        if acc is None:
            acc = definition.new_accumulator()
            buckets[key] = acc
        definition.feed(acc, point)
    return buckets


DEFAULT_AGGREGATES = (
    AggregateDefinition("daily_distance", DISTANCE_METRIC, AggregateFunction.SUM, timedelta(days=1)),
    AggregateDefinition("daily_avg_speed", "speed_kph", AggregateFunction.AVG, timedelta(days=1)),
    AggregateDefinition("hourly_max_engine_temp", "engine_temp_c", AggregateFunction.MAX, timedelta(hours=1)),
    AggregateDefinition("daily_last_fuel", "fuel_pct", AggregateFunction.LAST, timedelta(days=1)),
)
