"""
Compactor.

Turns aged partitions into compressed columnar segments and evicts
partitions past retention. Encoding runs against a frozen snapshot, so
reads and appends continue while a partition is being compacted; only the
freeze and commit steps take the partition lock.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from fleetstore.app.core.exceptions import CompactionRetryable
from fleetstore.app.domain.spatial.spatial_index import SpatialIndex
from fleetstore.app.domain.storage.columnar import CompactedSegment, encode_partition
from fleetstore.app.domain.storage.partition import Partition
from fleetstore.app.domain.storage.point_store import PointStore
from fleetstore.app.domain.timeutil import duration_micros, to_micros, utc_now
from fleetstore.app.models.enums import PartitionState
from fleetstore.app.schemas.telemetry import TelemetryPoint

logger = logging.getLogger(__name__)

Encoder = Callable[[Mapping[int, Sequence[TelemetryPoint]]], CompactedSegment]


@dataclass(frozen=True)
class ArchivedPartition:
    """Segment handed over for cold storage before eviction."""
    start: datetime
    end: datetime
    segment: CompactedSegment


@dataclass
class CompactionReport:
    """What one compactor cycle did."""
    compacted: List[datetime] = field(default_factory=list)
    evicted: List[datetime] = field(default_factory=list)
    failed: Dict[datetime, str] = field(default_factory=dict)
    archived: List[ArchivedPartition] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.compacted or self.evicted)


class Compactor:
    """
    Background reorganizer for the point store.

    Args:
        store: Point store whose partitions are maintained
        spatial_index: Index whose per-partition buckets follow compaction/eviction
        compact_after: Age (measured from a partition's end) before compaction
        retention: Age after which partitions are evicted, None keeps forever
        encoder: Row-to-columnar encoder
    """

    def __init__(self, store: PointStore, spatial_index: SpatialIndex,
                 compact_after: timedelta = timedelta(days=7),
                 retention: Optional[timedelta] = None,
                 encoder: Encoder = encode_partition):
        self.store = store
        self.spatial_index = spatial_index
        self.compact_after = compact_after
        self.retention = retention
        self.encoder = encoder

    def compact_partition(self, partition: Partition) -> bool:
        """
        Compact one partition.

        Returns:
            True if a new segment was committed, False if there was nothing to do

        Raises:
            CompactionRetryable: Encoding failed; the partition keeps its rows
        """
        work = partition.begin_compaction()
        if work is None:
            return False

        try:
            segment = self.encoder(work.points_by_entity())
        except Exception as exc:
            partition.abort_compaction()
            raise CompactionRetryable(partition.start.isoformat(), str(exc)) from exc

        partition.commit_compaction(segment)
        self.spatial_index.compact_partition(partition.index)
        logger.info(
            "Compacted partition %s: %d points, %d -> %d bytes",
            partition.start.isoformat(), segment.point_count, segment.raw_bytes, segment.compressed_bytes,
        )
        return True

    def evict_partition(self, partition: Partition) -> Optional[ArchivedPartition]:
        segment = partition.evict()
        self.spatial_index.drop_partition(partition.index)
        logger.info("Evicted partition %s", partition.start.isoformat())
        if segment is None:
            return None
        return ArchivedPartition(partition.start, partition.end, segment)

    def run_cycle(self, now: Optional[datetime] = None) -> CompactionReport:
        """
        One pass over every partition.

        Failures are recorded in the report and retried on the next cycle.
        """
        now_micros = to_micros(now or utc_now())
        compact_before = now_micros - duration_micros(self.compact_after)
        evict_before = now_micros - duration_micros(self.retention) if self.retention is not None else None

        report = CompactionReport()
        for partition in self.store.partitions():
            if partition.state == PartitionState.EVICTED:
                continue

            expired = evict_before is not None and partition.end_micros <= evict_before
            if not expired and partition.end_micros > compact_before:
                continue

            try:
                if self.compact_partition(partition):
                    report.compacted.append(partition.start)
            except CompactionRetryable as exc:
                logger.warning(exc.message)
                report.failed[partition.start] = exc.details["reason"]
                continue

            if expired and partition.state != PartitionState.COMPACTING:
                archived = self.evict_partition(partition)
                report.evicted.append(partition.start)
                if archived is not None:
                    report.archived.append(archived)

        return report
