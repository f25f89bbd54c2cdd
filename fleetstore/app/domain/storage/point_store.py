"""
Point Store.

Append-only, time-partitioned storage of telemetry points keyed by
(entity_id, time). Owns every partition and every point in it.
"""

import heapq
import logging
import threading
from datetime import timedelta
from typing import Dict, Iterable, Iterator, List, Optional

from fleetstore.app.core.exceptions import ConfigurationError, OutOfOrderRejected
from fleetstore.app.domain.storage.columnar import CompactedSegment
from fleetstore.app.domain.storage.partition import Partition, PartitionSnapshot
from fleetstore.app.domain.timeutil import TimeRange, duration_micros, from_micros
from fleetstore.app.models.enums import PartitionState
from fleetstore.app.schemas.telemetry import TelemetryPoint

logger = logging.getLogger(__name__)


def _scan_key(point: TelemetryPoint):
    return point.micros, point.entity_id


class PointScan:
    """
    Lazy, restartable scan over the store.

    Every iteration starts over from the first partition in range and
    snapshots each partition only when it is reached.
    """

    def __init__(self, store: "PointStore", entity_ids: Optional[Iterable[int]], time_range: TimeRange):
        self._store = store
        self.entity_ids = frozenset(entity_ids) if entity_ids is not None else None
        self.time_range = time_range

    def __iter__(self) -> Iterator[TelemetryPoint]:
        start = self.time_range.start_micros
        end = self.time_range.end_micros
        for partition in self._store.partitions_overlapping(self.time_range):
            yield from _iter_snapshot(partition.snapshot(), self.entity_ids, start, end)


def _iter_snapshot(snapshot: PartitionSnapshot, entity_ids, start: int, end: int) -> Iterator[TelemetryPoint]:
    ids = snapshot.entity_ids()
    if entity_ids is not None:
        ids = [entity_id for entity_id in ids if entity_id in entity_ids]
    per_entity = [snapshot.entity_points(entity_id, start, end) for entity_id in ids]
    yield from heapq.merge(*[points for points in per_entity if points], key=_scan_key)


class PointStore:
    """
    Time-partitioned telemetry storage.

    Args:
        partition_width: Width of each partition window
        strict: Reject points older than the low-watermark
        grace_window: Lateness tolerated in strict mode
    """

    def __init__(self, partition_width: timedelta = timedelta(days=1), strict: bool = False,
                 grace_window: timedelta = timedelta(hours=1)):
        self.width_micros = duration_micros(partition_width)
        if self.width_micros <= 0:
            raise ConfigurationError(
                "Partition width must be positive",
                {"partition_width_seconds": partition_width.total_seconds()},
            )
        self.strict = strict
        self.grace_micros = duration_micros(grace_window)

        self._partitions: Dict[int, Partition] = {}
        self._catalog_lock = threading.Lock()
        self._watermark_lock = threading.Lock()
        self._latest_micros: Optional[int] = None

    @property
    def partition_width(self) -> timedelta:
        return timedelta(microseconds=self.width_micros)

    @property
    def latest_micros(self) -> Optional[int]:
        return self._latest_micros

    @property
    def low_watermark_micros(self) -> Optional[int]:
        """Oldest time still accepted in strict mode."""
        if self._latest_micros is None:
            return None
        return self._latest_micros - self.grace_micros

    def partition_index(self, micros: int) -> int:
        return micros // self.width_micros

    def append(self, point: TelemetryPoint) -> Partition:
        """
        Store a point in the partition covering its timestamp.

        Raises:
            OutOfOrderRejected: In strict mode when the point is older than
                the low-watermark, or in any mode when its window was evicted
        """
        micros = point.micros
        with self._watermark_lock:
            if self.strict and self._latest_micros is not None and micros < self._latest_micros - self.grace_micros:
                raise OutOfOrderRejected(
                    "Point is older than the grace window allows",
                    {
                        "entity_id": point.entity_id,
                        "time": point.time.isoformat(),
                        "low_watermark": from_micros(self._latest_micros - self.grace_micros).isoformat(),
                    },
                )

        partition = self._partition_for_write(self.partition_index(micros))
        partition.append(point)

        with self._watermark_lock:
            if self._latest_micros is None or micros > self._latest_micros:
                self._latest_micros = micros
        return partition

    def _partition_for_write(self, index: int) -> Partition:
        partition = self._partitions.get(index)
        if partition is not None:
            return partition
        with self._catalog_lock:
            partition = self._partitions.get(index)
            if partition is None:
                partition = Partition(index, self.width_micros)
                self._partitions[index] = partition
                logger.debug("Created partition starting %s", partition.start.isoformat())
            return partition

    def restore_partition(self, index: int, state: PartitionState,
                          segment: Optional[CompactedSegment] = None, segment_version: int = 0) -> Partition:
        """Recreate a compacted or evicted partition from the catalog."""
        partition = self._partition_for_write(index)
        partition.restore(state, segment, segment_version)
        newest = segment.latest_micros() if segment is not None else None
        if newest is not None:
            with self._watermark_lock:
                if self._latest_micros is None or newest > self._latest_micros:
                    self._latest_micros = newest
        return partition

    def get_partition(self, index: int) -> Optional[Partition]:
        return self._partitions.get(index)

    def partitions(self) -> List[Partition]:
        """All partitions ordered by start time."""
        with self._catalog_lock:
            return [self._partitions[i] for i in sorted(self._partitions)]

    def partitions_overlapping(self, time_range: TimeRange) -> List[Partition]:
        return [
            p for p in self.partitions()
            if time_range.overlaps(p.start_micros, p.end_micros)
        ]

    def scan(self, entity_ids: Optional[Iterable[int]] = None,
             time_range: Optional[TimeRange] = None) -> PointScan:
        """Points ordered by (time, entity_id), optionally filtered."""
        return PointScan(self, entity_ids, time_range or TimeRange.everything())
