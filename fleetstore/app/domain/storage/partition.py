"""
Time partition with its lifecycle state machine.

OPEN -> COMPACTING -> COMPACTED -> EVICTED. A failed compaction goes back
to the state it started from with the rows untouched.
"""

import heapq
import threading
from bisect import bisect_left, insort
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from fleetstore.app.core.exceptions import OutOfOrderRejected
from fleetstore.app.domain.storage.columnar import CompactedSegment
from fleetstore.app.domain.timeutil import MAX_MICROS, MIN_MICROS, from_micros, utc_now
from fleetstore.app.models.enums import PartitionState
from fleetstore.app.schemas.telemetry import TelemetryPoint

Rows = Dict[int, List[TelemetryPoint]]


def _time_key(point: TelemetryPoint) -> int:
    return point.micros


def _slice(points: List[TelemetryPoint], start_micros: int, end_micros: int) -> List[TelemetryPoint]:
    lo = bisect_left(points, start_micros, key=_time_key)
    hi = bisect_left(points, end_micros, key=_time_key)
    return points[lo:hi]


def merge_in_time_order(*sources: List[TelemetryPoint]) -> List[TelemetryPoint]:
    """Merge time-ordered lists; on equal times earlier sources come first."""
    present = [s for s in sources if s]
    if len(present) == 1:
        return list(present[0])
    return list(heapq.merge(*present, key=_time_key))


@dataclass(frozen=True)
class PartitionSnapshot:
    """
    Immutable read view of a partition.

    Holds the committed segment (if any), rows frozen for an in-flight
    compaction, and a copy of the live rows taken under the partition lock.
    """
    index: int
    start_micros: int
    end_micros: int
    state: PartitionState
    segment: Optional[CompactedSegment]
    frozen: Optional[Mapping[int, List[TelemetryPoint]]]
    rows: Mapping[int, List[TelemetryPoint]]

    def entity_ids(self) -> List[int]:
        ids = set(self.rows)
        if self.frozen:
            ids.update(self.frozen)
        if self.segment is not None:
            ids.update(self.segment.entity_ids())
        return sorted(ids)

    def entity_points(self, entity_id: int, start_micros: int = MIN_MICROS,
                      end_micros: int = MAX_MICROS) -> List[TelemetryPoint]:
        """Points of one entity inside [start_micros, end_micros), time ordered."""
        sources = []
        if self.segment is not None:
            sources.append(self.segment.decode_entity(entity_id, start_micros, end_micros))
        if self.frozen:
            sources.append(_slice(self.frozen.get(entity_id, []), start_micros, end_micros))
        sources.append(_slice(self.rows.get(entity_id, []), start_micros, end_micros))
        return merge_in_time_order(*sources)


@dataclass(frozen=True)
class CompactionWork:
    """Everything a compaction pass must encode for one partition."""
    partition_index: int
    previous: Optional[CompactedSegment]
    rows: Mapping[int, List[TelemetryPoint]]

    def points_by_entity(self) -> Dict[int, List[TelemetryPoint]]:
        ids = set(self.rows)
        if self.previous is not None:
            ids.update(self.previous.entity_ids())
        merged = {}
        for entity_id in sorted(ids):
            older = self.previous.decode_entity(entity_id) if self.previous is not None else []
            merged[entity_id] = merge_in_time_order(older, self.rows.get(entity_id, []))
        return merged


class Partition:
    """
    All points whose time falls in [start, start + width), grouped by entity.

    The partition lock guards appends, snapshots and state transitions only;
    encoding a compaction runs outside it.
    """

    def __init__(self, index: int, width_micros: int):
        self.index = index
        self.start_micros = index * width_micros
        self.end_micros = self.start_micros + width_micros
        self.state = PartitionState.OPEN
        self.created_at: datetime = utc_now()
        self.compacted_at: Optional[datetime] = None
        self.evicted_at: Optional[datetime] = None

        self._lock = threading.Lock()
        self._rows: Rows = {}
        self._frozen: Optional[Rows] = None
        self._segment: Optional[CompactedSegment] = None
        self._row_count = 0
        self._resume_state = PartitionState.OPEN
        # Bumped on every committed segment so the catalog knows what to persist
        self.segment_version = 0

    def __repr__(self):
        return f"<Partition(start={self.start.isoformat()}, state={self.state.value})>"

    @property
    def start(self) -> datetime:
        return from_micros(self.start_micros)

    @property
    def end(self) -> datetime:
        return from_micros(self.end_micros)

    @property
    def point_count(self) -> int:
        with self._lock:
            frozen = sum(len(v) for v in self._frozen.values()) if self._frozen else 0
            segment = self._segment.point_count if self._segment is not None else 0
            return segment + frozen + self._row_count

    @property
    def compressed_bytes(self) -> int:
        segment = self._segment
        return segment.compressed_bytes if segment is not None else 0

    @property
    def pending_rows(self) -> int:
        """Rows not yet part of the committed segment."""
        with self._lock:
            return self._row_count

    def append(self, point: TelemetryPoint) -> None:
        with self._lock:
            if self.state == PartitionState.EVICTED:
                raise OutOfOrderRejected(
                    "Partition window has been evicted by retention",
                    {"partition_start": self.start.isoformat(), "entity_id": point.entity_id},
                )
            insort(self._rows.setdefault(point.entity_id, []), point, key=_time_key)
            self._row_count += 1

    def snapshot(self) -> PartitionSnapshot:
        with self._lock:
            return PartitionSnapshot(
                index=self.index,
                start_micros=self.start_micros,
                end_micros=self.end_micros,
                state=self.state,
                segment=self._segment,
                frozen=self._frozen,
                rows={entity_id: list(points) for entity_id, points in self._rows.items()},
            )

    def begin_compaction(self) -> Optional[CompactionWork]:
        """
        Freeze the current rows for encoding.

        Returns None when there is nothing to do: the partition is already
        compacted with no new rows, is being compacted, or was evicted.
        """
        with self._lock:
            if self.state not in (PartitionState.OPEN, PartitionState.COMPACTED) or not self._rows:
                return None

            self._frozen = self._rows
            self._rows = {}
            self._row_count = 0
            self._resume_state = self.state
            self.state = PartitionState.COMPACTING
            return CompactionWork(self.index, self._segment, self._frozen)

    def commit_compaction(self, segment: CompactedSegment) -> None:
        with self._lock:
            if self.state != PartitionState.COMPACTING:
                return
            self._segment = segment
            self._frozen = None
            self.state = PartitionState.COMPACTED
            self.compacted_at = utc_now()
            self.segment_version += 1

    def abort_compaction(self) -> None:
        """Put the frozen rows back; appends made meanwhile are kept."""
        with self._lock:
            if self.state != PartitionState.COMPACTING:
                return
            frozen = self._frozen or {}
            for entity_id, points in frozen.items():
                newer = self._rows.get(entity_id, [])
                self._rows[entity_id] = merge_in_time_order(points, newer)
                self._row_count += len(points)
            self._frozen = None
            self.state = self._resume_state

    @property
    def segment(self) -> Optional[CompactedSegment]:
        return self._segment

    def restore(self, state: PartitionState, segment: Optional[CompactedSegment],
                segment_version: int = 0) -> None:
        """Reload persisted state into an empty partition."""
        with self._lock:
            if self._rows or self._segment is not None or self.state != PartitionState.OPEN:
                raise ValueError(f"Partition {self.start.isoformat()} already holds data")
            self._segment = segment
            self.state = state
            self.segment_version = segment_version
            if state == PartitionState.COMPACTED:
                self.compacted_at = utc_now()
            elif state == PartitionState.EVICTED:
                self.evicted_at = utc_now()

    def evict(self) -> Optional[CompactedSegment]:
        """Drop all data and return the segment that held it."""
        with self._lock:
            segment = self._segment
            self._segment = None
            self._rows = {}
            self._frozen = None
            self._row_count = 0
            self.state = PartitionState.EVICTED
            self.evicted_at = utc_now()
            return segment
