"""
Query Router.

Serves reads from the cheapest correct source. Aggregate queries use
rollup buckets when the requested range lines up with bucket boundaries
and is fully covered by the aggregate's watermark; everything else falls
back to a raw Point Store scan reduced with the same accumulators. Every
answer names the source that produced it.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from fleetstore.app.core.exceptions import QueryUnavailable
from fleetstore.app.domain.rollup.definitions import AggregateDefinition, reduce_points
from fleetstore.app.domain.rollup.rollup_engine import BucketValue, RollupEngine
from fleetstore.app.domain.storage.point_store import PointStore
from fleetstore.app.domain.timeutil import TimeRange, from_micros
from fleetstore.app.models.enums import PartitionState, QuerySource, RefreshMode
from fleetstore.app.schemas.telemetry import TelemetryPoint

logger = logging.getLogger(__name__)

POINT_FIELDS = ("entity_id", "time", "latitude", "longitude", "origin_id", "destination_id")


@dataclass(frozen=True)
class RoutingDecision:
    source: QuerySource
    reason: str


@dataclass(frozen=True)
class AggregateAnswer:
    """Aggregate rows plus the source that produced them."""
    name: str
    source: QuerySource
    reason: str
    watermark: Optional[datetime]
    rows: List[BucketValue] = field(default_factory=list)


class QueryRouter:
    """
    Chooses rollup or raw for each read and keeps routing statistics.

    Args:
        store: Raw point source
        rollups: Rollup engine holding aggregate buckets
    """

    def __init__(self, store: PointStore, rollups: RollupEngine):
        self.store = store
        self.rollups = rollups
        self._stats_lock = threading.Lock()
        self.query_stats: Dict[str, int] = {source.value: 0 for source in QuerySource}
        self.reason_stats: Dict[str, int] = {}

    def _record(self, decision: RoutingDecision) -> None:
        with self._stats_lock:
            self.query_stats[decision.source.value] += 1
            self.reason_stats[decision.reason] = self.reason_stats.get(decision.reason, 0) + 1

    def route_aggregate(self, definition: AggregateDefinition, time_range: TimeRange,
                        entity_ids: Optional[Iterable[int]] = None) -> RoutingDecision:
        """Decide which source can answer an aggregate query exactly."""
        width = definition.bucket_width_micros
        if time_range.start is not None and time_range.start_micros % width:
            return RoutingDecision(QuerySource.RAW, "range start not aligned to bucket width")
        if time_range.end is not None and time_range.end_micros % width:
            return RoutingDecision(QuerySource.RAW, "range end not aligned to bucket width")

        if definition.mode == RefreshMode.SYNC:
            return RoutingDecision(QuerySource.ROLLUP, "synchronous aggregate is always current")

        watermark = self.rollups.watermark_micros(definition.name)
        if watermark is None:
            return RoutingDecision(QuerySource.RAW, "aggregate not yet refreshed")
        if time_range.end is None or time_range.end_micros > watermark:
            return RoutingDecision(QuerySource.RAW, "range extends past watermark")
        if self.rollups.has_pending_invalidations(definition.name, entity_ids, time_range):
            return RoutingDecision(QuerySource.RAW, "late points awaiting refresh")
        return RoutingDecision(QuerySource.ROLLUP, "range covered by watermark")

    def _require_raw(self, time_range: TimeRange) -> None:
        evicted = [
            p for p in self.store.partitions_overlapping(time_range)
            if p.state == PartitionState.EVICTED
        ]
        if evicted:
            raise QueryUnavailable(
                "Raw data for the requested range has been evicted by retention",
                {"evicted_partitions": [p.start.isoformat() for p in evicted]},
            )

    def aggregate_query(self, name: str, entity_ids: Optional[Iterable[int]] = None,
                        time_range: Optional[TimeRange] = None,
                        source: Optional[QuerySource] = None) -> AggregateAnswer:
        """
        Answer an aggregate query.

        Args:
            name: Aggregate name
            entity_ids: Restrict to these entities
            time_range: Buckets whose start lies in this range
            source: Force a source instead of routing

        Raises:
            QueryUnavailable: Aggregate not defined, rollup requested before
                the first refresh, or raw data evicted
        """
        definition = self.rollups.definition(name)
        time_range = time_range or TimeRange.everything()
        ids = sorted(set(entity_ids)) if entity_ids is not None else None

        if source is None:
            decision = self.route_aggregate(definition, time_range, ids)
        else:
            decision = RoutingDecision(QuerySource(source), "source requested by caller")
            if decision.source == QuerySource.ROLLUP and not self.rollups.is_initialized(name):
                raise QueryUnavailable(
                    f"Aggregate '{name}' has not been refreshed yet", {"aggregate": name}
                )

        if decision.source == QuerySource.ROLLUP:
            rows = self.rollups.buckets(name, ids, time_range)
        else:
            rows = self._raw_buckets(definition, ids, time_range)

        self._record(decision)
        logger.debug("Aggregate %s answered from %s (%s)", name, decision.source.value, decision.reason)
        return AggregateAnswer(
            name=name,
            source=decision.source,
            reason=decision.reason,
            watermark=self.rollups.watermark(name),
            rows=rows,
        )

    def _raw_buckets(self, definition: AggregateDefinition, entity_ids: Optional[List[int]],
                     time_range: TimeRange) -> List[BucketValue]:
        # The last bucket starting inside the range is reduced in full
        width = definition.bucket_width_micros
        end = None
        if time_range.end is not None:
            end = from_micros(-(-time_range.end_micros // width) * width)
        scan_range = TimeRange(time_range.start, end)
        self._require_raw(scan_range)

        reduced = reduce_points(definition, self.store.scan(entity_ids, scan_range))
        rows = [
            BucketValue(definition.name, entity_id, from_micros(bucket_start), acc.value, acc.samples)
            for (entity_id, bucket_start), acc in reduced.items()
            if time_range.contains_micros(bucket_start)
        ]
        rows.sort(key=lambda v: (v.bucket_start, v.entity_id))
        return rows

    def range_query(self, entity_ids: Optional[Iterable[int]] = None,
                    time_range: Optional[TimeRange] = None,
                    fields: Optional[Sequence[str]] = None) -> List[Dict]:
        """
        Raw points in (time, entity_id) order, optionally projected.

        Measurement names may be requested as fields alongside the point
        attributes; `entity_id` and `time` are always returned.
        """
        time_range = time_range or TimeRange.everything()
        self._require_raw(time_range)
        self._record(RoutingDecision(QuerySource.RAW, "range query"))
        return [_project(point, fields) for point in self.store.scan(entity_ids, time_range)]

    def get_stats(self) -> Dict:
        with self._stats_lock:
            total = sum(self.query_stats.values())
            return {
                "total_queries": total,
                "by_source": dict(self.query_stats),
                "by_reason": dict(self.reason_stats),
                "rollup_ratio": self.query_stats[QuerySource.ROLLUP.value] / total if total else 0.0,
            }


def _project(point: TelemetryPoint, fields: Optional[Sequence[str]]) -> Dict:
    row = point.model_dump()
    if fields is None:
        return row
    projected = {"entity_id": row["entity_id"], "time": row["time"]}
    measurements = {}
    for name in fields:
        if name in POINT_FIELDS:
            projected[name] = row[name]
        elif name in row["measurements"]:
            measurements[name] = row["measurements"][name]
    if any(name not in POINT_FIELDS for name in fields):
        projected["measurements"] = measurements
    return projected
