"""
Spatial Index.

Secondary index from location to (entity_id, time) references, bucketed per
partition so a partition's spatial structure can be frozen or dropped
without touching any other. Fresh points sit in a lat/lon cell grid; on
compaction a bucket is frozen into numpy columns.
"""

import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from fleetstore.app.domain.geodesy import (
    LonInterval,
    haversine_m,
    polygon_bounding_box,
    polygon_contains,
    radius_bounding_box,
)
from fleetstore.app.domain.timeutil import TimeRange, from_micros
from fleetstore.app.schemas.telemetry import TelemetryPoint

# (latitude, longitude, entity_id, micros)
Entry = Tuple[float, float, int, int]
Cell = Tuple[int, int]


@dataclass(frozen=True)
class PointRef:
    """Non-owning reference to a stored point."""
    entity_id: int
    micros: int

    @property
    def time(self) -> datetime:
        return from_micros(self.micros)


@dataclass(frozen=True)
class DistanceRef:
    """Reference plus its distance from the query center."""
    entity_id: int
    micros: int
    distance_m: float

    @property
    def time(self) -> datetime:
        return from_micros(self.micros)


class _FrozenColumns:
    def __init__(self, entries: Sequence[Entry]):
        self.lat = np.array([e[0] for e in entries], dtype=np.float64)
        self.lon = np.array([e[1] for e in entries], dtype=np.float64)
        self.entity = np.array([e[2] for e in entries], dtype=np.int64)
        self.micros = np.array([e[3] for e in entries], dtype=np.int64)

    def __len__(self):
        return len(self.micros)

    def entries(self) -> List[Entry]:
        return [
            (float(self.lat[i]), float(self.lon[i]), int(self.entity[i]), int(self.micros[i]))
            for i in range(len(self))
        ]

    def candidates(self, lat_lo: float, lat_hi: float, lon_intervals: List[LonInterval],
                   start: int, end: int) -> Iterator[Entry]:
        if not len(self):
            return
        lon_mask = np.zeros(len(self), dtype=bool)
        for lo, hi in lon_intervals:
            lon_mask |= (self.lon >= lo) & (self.lon <= hi)
        mask = (
            (self.lat >= lat_lo) & (self.lat <= lat_hi) & lon_mask
            & (self.micros >= start) & (self.micros < end)
        )
        for i in np.nonzero(mask)[0]:
            yield float(self.lat[i]), float(self.lon[i]), int(self.entity[i]), int(self.micros[i])


class PartitionGrid:
    """Spatial bucket for one partition."""

    def __init__(self, cell_degrees: float):
        self.cell_degrees = cell_degrees
        self._lock = threading.Lock()
        self._cells: Dict[Cell, List[Entry]] = {}
        self._frozen: Optional[_FrozenColumns] = None

    def _cell(self, lat: float, lon: float) -> Cell:
        return math.floor(lat / self.cell_degrees), math.floor(lon / self.cell_degrees)

    @property
    def size(self) -> int:
        with self._lock:
            frozen = len(self._frozen) if self._frozen is not None else 0
            return frozen + sum(len(v) for v in self._cells.values())

    def add(self, entry: Entry) -> None:
        with self._lock:
            self._cells.setdefault(self._cell(entry[0], entry[1]), []).append(entry)

    def freeze(self) -> None:
        """Fold grid entries into the frozen numpy columns."""
        with self._lock:
            if not self._cells:
                return
            entries = self._frozen.entries() if self._frozen is not None else []
            for cell_entries in self._cells.values():
                entries.extend(cell_entries)
            entries.sort(key=lambda e: (e[3], e[2]))
            self._frozen = _FrozenColumns(entries)
            self._cells = {}

    def candidates(self, lat_lo: float, lat_hi: float, lon_intervals: List[LonInterval],
                   start: int, end: int) -> Iterator[Entry]:
        """Entries inside the box and time window. Superset of the exact answer."""
        with self._lock:
            frozen = self._frozen
            row_lo = math.floor(lat_lo / self.cell_degrees)
            row_hi = math.floor(lat_hi / self.cell_degrees)
            cols = [
                (math.floor(lo / self.cell_degrees), math.floor(hi / self.cell_degrees))
                for lo, hi in lon_intervals
            ]
            matched = [
                list(entries) for (row, col), entries in self._cells.items()
                if row_lo <= row <= row_hi and any(c_lo <= col <= c_hi for c_lo, c_hi in cols)
            ]

        if frozen is not None:
            yield from frozen.candidates(lat_lo, lat_hi, lon_intervals, start, end)
        for entries in matched:
            for entry in entries:
                if start <= entry[3] < end:
                    yield entry


class SpatialIndex:
    """
    Location index over the point store.

    Returns references only; callers resolve full points through the
    point store.
    """

    def __init__(self, partition_width_micros: int, cell_degrees: float = 0.5):
        self.partition_width_micros = partition_width_micros
        self.cell_degrees = cell_degrees
        self._grids: Dict[int, PartitionGrid] = {}
        self._lock = threading.Lock()

    def _grid_for_write(self, partition_index: int) -> PartitionGrid:
        grid = self._grids.get(partition_index)
        if grid is not None:
            return grid
        with self._lock:
            grid = self._grids.get(partition_index)
            if grid is None:
                grid = PartitionGrid(self.cell_degrees)
                self._grids[partition_index] = grid
            return grid

    def index(self, point: TelemetryPoint) -> None:
        micros = point.micros
        grid = self._grid_for_write(micros // self.partition_width_micros)
        grid.add((point.latitude, point.longitude, point.entity_id, micros))

    def compact_partition(self, partition_index: int) -> None:
        grid = self._grids.get(partition_index)
        if grid is not None:
            grid.freeze()

    def load_partition(self, partition_index: int, points: Iterable[TelemetryPoint]) -> None:
        """Index a restored compacted partition in one pass."""
        grid = self._grid_for_write(partition_index)
        for point in points:
            grid.add((point.latitude, point.longitude, point.entity_id, point.micros))
        grid.freeze()

    def drop_partition(self, partition_index: int) -> None:
        with self._lock:
            self._grids.pop(partition_index, None)

    def indexed_count(self, partition_index: int) -> int:
        grid = self._grids.get(partition_index)
        return grid.size if grid is not None else 0

    def _grids_overlapping(self, time_range: TimeRange) -> List[PartitionGrid]:
        with self._lock:
            indexes = sorted(self._grids)
            return [
                self._grids[i] for i in indexes
                if time_range.overlaps(i * self.partition_width_micros, (i + 1) * self.partition_width_micros)
            ]

    def query_within(self, lat: float, lon: float, radius_m: float,
                     time_range: Optional[TimeRange] = None) -> List[DistanceRef]:
        """
        References within `radius_m` meters of (lat, lon), inclusive.

        Ordered by (time, entity_id).
        """
        time_range = time_range or TimeRange.everything()
        lat_lo, lat_hi, lon_intervals = radius_bounding_box(lat, lon, radius_m)
        start, end = time_range.start_micros, time_range.end_micros

        hits = []
        for grid in self._grids_overlapping(time_range):
            for p_lat, p_lon, entity_id, micros in grid.candidates(lat_lo, lat_hi, lon_intervals, start, end):
                distance = haversine_m(lat, lon, p_lat, p_lon)
                if distance <= radius_m:
                    hits.append(DistanceRef(entity_id, micros, distance))
        hits.sort(key=lambda h: (h.micros, h.entity_id))
        return hits

    def query_contains(self, polygon: Sequence[Tuple[float, float]],
                       time_range: Optional[TimeRange] = None) -> List[PointRef]:
        """References inside a polygon with great-circle edges, ordered by (time, entity_id)."""
        time_range = time_range or TimeRange.everything()
        lat_lo, lat_hi, lon_intervals = polygon_bounding_box(polygon)
        start, end = time_range.start_micros, time_range.end_micros

        hits = []
        for grid in self._grids_overlapping(time_range):
            for p_lat, p_lon, entity_id, micros in grid.candidates(lat_lo, lat_hi, lon_intervals, start, end):
                if polygon_contains(polygon, p_lat, p_lon):
                    hits.append(PointRef(entity_id, micros))
        hits.sort(key=lambda h: (h.micros, h.entity_id))
        return hits
