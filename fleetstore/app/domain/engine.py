"""
Telemetry engine.

Wires the point store, spatial index, compactor, rollup engine and query
router together and exposes the operations the API layer calls. Ingestion
commits a point to the store first; the spatial index, rollups and
reference registry are updated only for committed points.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from fleetstore.app.core.config import Settings
from fleetstore.app.core.exceptions import OutOfOrderRejected, ValidationError
from fleetstore.app.domain.fleet.reference import DEFAULT_GEOFENCE_M, ReferenceData
from fleetstore.app.domain.maintenance.compactor import CompactionReport, Compactor
from fleetstore.app.domain.query.query_router import AggregateAnswer, QueryRouter
from fleetstore.app.domain.rollup.definitions import DEFAULT_AGGREGATES, AggregateDefinition
from fleetstore.app.domain.rollup.rollup_engine import RefreshResult, RollupEngine
from fleetstore.app.domain.spatial.spatial_index import DistanceRef, PointRef, SpatialIndex
from fleetstore.app.domain.storage.columnar import CompactedSegment
from fleetstore.app.domain.storage.point_store import PointStore
from fleetstore.app.domain.timeutil import TimeRange, to_micros, utc_now
from fleetstore.app.models.enums import PartitionState, QuerySource, RefreshMode
from fleetstore.app.schemas.telemetry import IngestRejection, IngestReport, TelemetryPoint

logger = logging.getLogger(__name__)

Record = Union[TelemetryPoint, Mapping[str, Any]]


@dataclass(frozen=True)
class PartitionStatus:
    start: datetime
    end: datetime
    state: PartitionState
    age_seconds: float
    point_count: int
    pending_rows: int
    compressed_bytes: int
    compacted_at: Optional[datetime]
    evicted_at: Optional[datetime]


def _pydantic_errors(exc: PydanticValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def _require_coordinate(lat: float, lon: float, what: str) -> None:
    if not (math.isfinite(lat) and math.isfinite(lon)) or not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise ValidationError(f"Invalid {what} coordinate", {"latitude": lat, "longitude": lon})


class TelemetryEngine:
    """Facade over the storage, indexing, maintenance and query components."""

    def __init__(self, store: PointStore, spatial_index: SpatialIndex, compactor: Compactor,
                 rollups: RollupEngine, router: QueryRouter, reference: ReferenceData,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.spatial_index = spatial_index
        self.compactor = compactor
        self.rollups = rollups
        self.router = router
        self.reference = reference
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Callable[[], datetime]] = None,
                      aggregates: Iterable[AggregateDefinition] = DEFAULT_AGGREGATES) -> "TelemetryEngine":
        """
        Build an engine from validated settings.

        Raises:
            ConfigurationError: Settings the store cannot run with
        """
        settings.validate_storage()
        clock = clock or utc_now
        store = PointStore(
            partition_width=settings.partition_width,
            strict=settings.strict_ordering,
            grace_window=settings.grace_window,
        )
        spatial_index = SpatialIndex(store.width_micros, settings.spatial_cell_degrees)
        compactor = Compactor(
            store,
            spatial_index,
            compact_after=settings.compact_after,
            retention=settings.retention,
        )
        rollups = RollupEngine(store, refresh_lag=settings.refresh_lag, clock=clock)
        for definition in aggregates:
            rollups.define(definition)
        engine = cls(store, spatial_index, compactor, rollups, QueryRouter(store, rollups), ReferenceData(), clock)
        logger.info(
            "Telemetry engine ready (partition width %s, strict=%s, %d aggregates)",
            settings.partition_width, settings.strict_ordering, len(rollups.names()),
        )
        return engine

    # Ingestion

    def ingest(self, point: TelemetryPoint) -> TelemetryPoint:
        """
        Append one validated point.

        Raises:
            OutOfOrderRejected: Strict-mode lateness or an evicted window
        """
        self.store.append(point)
        self.spatial_index.index(point)
        self.rollups.on_append(point)
        self.reference.observe(point)
        return point

    def ingest_record(self, record: Record) -> TelemetryPoint:
        """
        Validate and append one raw record.

        Raises:
            ValidationError: The record is malformed
            OutOfOrderRejected: Strict-mode lateness or an evicted window
        """
        if isinstance(record, TelemetryPoint):
            point = record
        else:
            try:
                point = TelemetryPoint.model_validate(record)
            except PydanticValidationError as exc:
                raise ValidationError("Malformed telemetry record", {"errors": _pydantic_errors(exc)}) from exc
        return self.ingest(point)

    def ingest_many(self, records: Iterable[Record]) -> IngestReport:
        """Ingest a batch record by record; a rejected record never stops the batch."""
        accepted = 0
        rejected: List[IngestRejection] = []
        received = 0
        for index, record in enumerate(records):
            received += 1
            try:
                self.ingest_record(record)
                accepted += 1
            except (ValidationError, OutOfOrderRejected) as exc:
                logger.warning(
                    "Rejected record %d: %s",
                    index,
                    exc.message,
                    extra={"error_code": exc.error_code, "record_index": index},
                )
                rejected.append(IngestRejection(
                    index=index, error_code=exc.error_code, message=exc.message, details=exc.details,
                ))
        return IngestReport(received=received, accepted=accepted, rejected=rejected)

    # Queries

    def range_query(self, entity_ids: Optional[Iterable[int]] = None, time_range: Optional[TimeRange] = None,
                    fields: Optional[Sequence[str]] = None) -> List[Dict]:
        return self.router.range_query(entity_ids, time_range, fields)

    def _live(self, refs: List) -> List:
        """Drop references whose partition was evicted while the query ran."""
        evicted = {
            p.index for p in self.store.partitions() if p.state == PartitionState.EVICTED
        }
        if not evicted:
            return refs
        return [r for r in refs if self.store.partition_index(r.micros) not in evicted]

    def geo_within(self, latitude: Optional[float] = None, longitude: Optional[float] = None,
                   radius_m: float = DEFAULT_GEOFENCE_M, time_range: Optional[TimeRange] = None,
                   place: Optional[str] = None) -> List[DistanceRef]:
        """
        Points within `radius_m` of a center (inclusive), by (time, entity_id).

        The center is either explicit coordinates or a known place name.
        """
        if place is not None:
            center = self.reference.place_by_name(place)
            latitude, longitude = center.latitude, center.longitude
        if latitude is None or longitude is None:
            raise ValidationError("A center coordinate or place name is required")
        _require_coordinate(latitude, longitude, "center")
        if not math.isfinite(radius_m) or radius_m < 0:
            raise ValidationError("Radius must be a non-negative number of meters", {"radius_m": radius_m})
        return self._live(self.spatial_index.query_within(latitude, longitude, radius_m, time_range))

    def geo_contains(self, polygon: Sequence[Tuple[float, float]],
                     time_range: Optional[TimeRange] = None) -> List[PointRef]:
        """Points inside a polygon of (lat, lon) vertices, by (time, entity_id)."""
        vertices = [(float(lat), float(lon)) for lat, lon in polygon]
        if len(vertices) > 1 and vertices[0] == vertices[-1]:
            vertices = vertices[:-1]
        if len(vertices) < 3:
            raise ValidationError("A polygon needs at least three distinct vertices", {"vertices": len(vertices)})
        for lat, lon in vertices:
            _require_coordinate(lat, lon, "polygon")
        return self._live(self.spatial_index.query_contains(vertices, time_range))

    def aggregate_query(self, name: str, entity_ids: Optional[Iterable[int]] = None,
                        time_range: Optional[TimeRange] = None,
                        source: Optional[QuerySource] = None) -> AggregateAnswer:
        return self.router.aggregate_query(name, entity_ids, time_range, source)

    def retention_status(self, now: Optional[datetime] = None) -> List[PartitionStatus]:
        """Per-partition lifecycle state, age (from the partition end) and size."""
        now_micros = to_micros(now or self.clock())
        statuses = []
        for partition in self.store.partitions():
            age = max(0, now_micros - partition.end_micros) / 1_000_000
            statuses.append(PartitionStatus(
                start=partition.start,
                end=partition.end,
                state=partition.state,
                age_seconds=age,
                point_count=partition.point_count,
                pending_rows=partition.pending_rows,
                compressed_bytes=partition.compressed_bytes,
                compacted_at=partition.compacted_at,
                evicted_at=partition.evicted_at,
            ))
        return statuses

    # Maintenance

    def run_compaction(self, now: Optional[datetime] = None) -> CompactionReport:
        report = self.compactor.run_cycle(now or self.clock())
        if report.changed or report.failed:
            logger.info(
                "Compaction cycle: %d compacted, %d evicted, %d failed",
                len(report.compacted), len(report.evicted), len(report.failed),
            )
        return report

    def refresh(self, name: str, now: Optional[datetime] = None,
                should_stop: Optional[Callable[[], bool]] = None) -> RefreshResult:
        return self.rollups.refresh(name, now or self.clock(), should_stop)

    def refresh_all(self, now: Optional[datetime] = None) -> Dict[str, RefreshResult]:
        return self.rollups.refresh_all(now or self.clock())

    def define_aggregate(self, definition: AggregateDefinition) -> None:
        """Register an aggregate; sync ones are built from what is already stored."""
        self.rollups.define(definition)
        if definition.mode == RefreshMode.SYNC:
            self.rollups.rebuild(definition.name)

    # Restore

    def restore_partition(self, start: datetime, state: PartitionState,
                          segment: Optional[CompactedSegment] = None, segment_version: int = 0) -> None:
        index = self.store.partition_index(to_micros(start))
        partition = self.store.restore_partition(index, state, segment, segment_version)
        if segment is not None:
            points = [p for entity_id in segment.entity_ids() for p in segment.decode_entity(entity_id)]
            self.spatial_index.load_partition(index, points)
            for point in points:
                self.reference.observe(point)
        logger.info("Restored partition %s as %s", partition.start.isoformat(), state.value)
