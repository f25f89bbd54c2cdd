"""
Rollup Engine.

Keeps named aggregates current as points are appended. Async definitions
are refreshed behind a watermark: each refresh folds points in
[watermark, now - refresh_lag) into staged bucket copies and commits them
together with the new watermark, so a failed or cancelled refresh changes
nothing. Late points below a watermark invalidate their bucket, which the
next refresh recomputes from raw partitions.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from fleetstore.app.core.exceptions import ConfigurationError, QueryUnavailable, RefreshRetryable
from fleetstore.app.domain.rollup.accumulators import Accumulator, OrderViolation
from fleetstore.app.domain.rollup.definitions import AggregateDefinition, BucketKey, reduce_points
from fleetstore.app.domain.storage.point_store import PointStore
from fleetstore.app.domain.timeutil import TimeRange, duration_micros, from_micros, to_micros, utc_now
from fleetstore.app.models.enums import RefreshMode
from fleetstore.app.schemas.telemetry import TelemetryPoint

logger = logging.getLogger(__name__)

# How many points a sweep processes between cancellation checks
CANCEL_CHECK_EVERY = 1024


@dataclass(frozen=True)
class BucketValue:
    aggregate_name: str
    entity_id: int
    bucket_start: datetime
    value: Optional[float]
    samples: int


@dataclass(frozen=True)
class RefreshResult:
    aggregate_name: str
    watermark: Optional[datetime]
    buckets_updated: int
    buckets_recomputed: int
    points_processed: int


@dataclass
class _AggregateState:
    definition: AggregateDefinition
    buckets: Dict[BucketKey, Accumulator] = field(default_factory=dict)
    watermark_micros: Optional[int] = None
    sweeping_to: Optional[int] = None
    invalidated: Set[BucketKey] = field(default_factory=set)
    # Invalidated keys an in-flight refresh is recomputing
    recomputing: Set[BucketKey] = field(default_factory=set)
    dirty: Set[BucketKey] = field(default_factory=set)
    # Serializes refresh sweeps and sync updates of this definition
    sweep_lock: threading.Lock = field(default_factory=threading.Lock)
    # Guards buckets, watermark and the invalidation log for readers
    state_lock: threading.Lock = field(default_factory=threading.Lock)

    def horizon(self) -> Optional[int]:
        marks = [m for m in (self.watermark_micros, self.sweeping_to) if m is not None]
        return max(marks) if marks else None


class RollupEngine:
    """
    Maintainer of aggregate buckets derived from the point store.

    Args:
        store: Source of raw points
        refresh_lag: Only points older than now - lag are folded by a refresh
        clock: Returns the current time
    """

    def __init__(self, store: PointStore, refresh_lag: timedelta = timedelta(hours=1),
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.refresh_lag = refresh_lag
        self.clock = clock
        self._states: Dict[str, _AggregateState] = {}
        self._lock = threading.Lock()

    def define(self, definition: AggregateDefinition) -> None:
        with self._lock:
            if definition.name in self._states:
                raise ConfigurationError(
                    f"Aggregate '{definition.name}' is already defined", {"aggregate": definition.name}
                )
            self._states[definition.name] = _AggregateState(definition)
        logger.info(
            "Defined aggregate %s (%s of %s per %s, %s)",
            definition.name, definition.function.value, definition.metric,
            definition.bucket_width, definition.mode.value,
        )

    def _state(self, name: str) -> _AggregateState:
        state = self._states.get(name)
        if state is None:
            raise QueryUnavailable(f"Aggregate '{name}' is not defined", {"aggregate": name})
        return state

    def definition(self, name: str) -> AggregateDefinition:
        return self._state(name).definition

    def definitions(self) -> List[AggregateDefinition]:
        with self._lock:
            return [s.definition for s in self._states.values()]

    def names(self) -> List[str]:
        return [d.name for d in self.definitions()]

    def watermark_micros(self, name: str) -> Optional[int]:
        """
        Instant up to which the aggregate is complete.

        Sync aggregates are complete up to the newest stored point.
        """
        state = self._state(name)
        if state.definition.mode == RefreshMode.SYNC:
            latest = self.store.latest_micros
            return latest + 1 if latest is not None else None
        return state.watermark_micros

    def watermark(self, name: str) -> Optional[datetime]:
        micros = self.watermark_micros(name)
        return from_micros(micros) if micros is not None else None

    def is_initialized(self, name: str) -> bool:
        state = self._state(name)
        return state.definition.mode == RefreshMode.SYNC or state.watermark_micros is not None

    def has_pending_invalidations(self, name: str, entity_ids: Optional[Iterable[int]] = None,
                                  time_range: Optional[TimeRange] = None) -> bool:
        """
        True if a late point made a bucket in the range stale and no
        refresh has committed its recomputation yet.
        """
        state = self._state(name)
        time_range = time_range or TimeRange.everything()
        wanted = set(entity_ids) if entity_ids is not None else None
        with state.state_lock:
            stale = state.invalidated | state.recomputing
        return any(
            (wanted is None or entity_id in wanted) and time_range.contains_micros(bucket_start)
            for entity_id, bucket_start in stale
        )

    # Ingestion hook

    def on_append(self, point: TelemetryPoint) -> None:
        """Called after a point is committed to the store."""
        for state in list(self._states.values()):
            definition = state.definition
            if not definition.contributes(point):
                continue
            if definition.mode == RefreshMode.SYNC:
                self._apply_sync(state, point)
                continue
            with state.state_lock:
                horizon = state.horizon()
                if horizon is not None and point.micros < horizon:
                    state.invalidated.add(definition.bucket_key(point))

    def _apply_sync(self, state: _AggregateState, point: TelemetryPoint) -> None:
        definition = state.definition
        key = definition.bucket_key(point)
        with state.sweep_lock:
            current = state.buckets.get(key)
            acc = current.copy() if current is not None else definition.new_accumulator()
            try:
                definition.feed(acc, point)
            except OrderViolation:
                acc = self._recompute_bucket(definition, key)
            with state.state_lock:
                state.buckets[key] = acc
                state.dirty.add(key)

    def _recompute_bucket(self, definition: AggregateDefinition, key: BucketKey,
                          until_micros: Optional[int] = None) -> Optional[Accumulator]:
        entity_id, bucket_start = key
        bucket_end = bucket_start + definition.bucket_width_micros
        if until_micros is not None:
            bucket_end = min(bucket_end, until_micros)
        window = TimeRange(from_micros(bucket_start), from_micros(bucket_end))
        reduced = reduce_points(definition, self.store.scan([entity_id], window))
        return reduced.get(key)

    # Background refresh

    def refresh(self, name: str, now: Optional[datetime] = None,
                should_stop: Optional[Callable[[], bool]] = None) -> RefreshResult:
        """
        Fold newly settled points into the aggregate's buckets.

        Raises:
            QueryUnavailable: Aggregate not defined
            RefreshRetryable: Sweep failed or was cancelled; nothing committed
        """
        state = self._state(name)
        definition = state.definition
        if definition.mode == RefreshMode.SYNC:
            return RefreshResult(name, self.watermark(name), 0, 0, 0)

        target = to_micros(now or self.clock()) - duration_micros(self.refresh_lag)

        with state.sweep_lock:
            with state.state_lock:
                start = state.watermark_micros
                if start is not None:
                    target = max(target, start)
                if start == target and not state.invalidated:
                    return RefreshResult(name, self.watermark(name), 0, 0, 0)
                invalidated = set(state.invalidated)
                state.invalidated.clear()
                state.recomputing = invalidated
                state.sweeping_to = target

            try:
                staged, processed = self._sweep(state, start, target, invalidated, should_stop)
            except Exception as exc:
                with state.state_lock:
                    state.invalidated |= invalidated
                    state.sweeping_to = None
                    state.recomputing = set()
                if isinstance(exc, RefreshRetryable):
                    raise
                raise RefreshRetryable(name, str(exc)) from exc

            with state.state_lock:
                for key, acc in staged.items():
                    if acc is None:
                        state.buckets.pop(key, None)
                    else:
                        state.buckets[key] = acc
                state.dirty.update(staged)
                state.watermark_micros = target
                state.sweeping_to = None
                state.recomputing = set()

        recomputed = len([k for k in invalidated if k[1] < target])
        logger.info(
            "Refreshed aggregate %s to %s: %d buckets updated (%d recomputed), %d points",
            name, from_micros(target).isoformat(), len(staged), recomputed, processed,
        )
        return RefreshResult(name, from_micros(target), len(staged), recomputed, processed)

    def _sweep(self, state: _AggregateState, start: Optional[int], target: int,
               invalidated: Set[BucketKey], should_stop: Optional[Callable[[], bool]]):
        definition = state.definition
        name = definition.name
        staged: Dict[BucketKey, Optional[Accumulator]] = {}

        for key in sorted(invalidated, key=lambda k: (k[1], k[0])):
            if key[1] >= target:
                continue
            if should_stop is not None and should_stop():
                raise RefreshRetryable(name, "cancelled")
            staged[key] = self._recompute_bucket(definition, key, until_micros=target)

        window = TimeRange(from_micros(start) if start is not None else None, from_micros(target))
        processed = 0
        for point in self.store.scan(None, window):
            processed += 1
            if should_stop is not None and processed % CANCEL_CHECK_EVERY == 0 and should_stop():
                raise RefreshRetryable(name, "cancelled")
            if not definition.contributes(point):
                continue
            key = definition.bucket_key(point)
            if key in invalidated:
                continue
            acc = staged.get(key)
            if acc is None:
                current = state.buckets.get(key)
                acc = current.copy() if current is not None else definition.new_accumulator()
                staged[key] = acc
            definition.feed(acc, point)

        return staged, processed

    def refresh_all(self, now: Optional[datetime] = None) -> Dict[str, RefreshResult]:
        """Refresh every async aggregate; failures are logged and skipped."""
        results = {}
        for name in self.names():
            try:
                results[name] = self.refresh(name, now)
            except RefreshRetryable as exc:
                logger.warning(exc.message)
        return results

    # Reads

    def buckets(self, name: str, entity_ids: Optional[Iterable[int]] = None,
                time_range: Optional[TimeRange] = None) -> List[BucketValue]:
        """Buckets whose start lies in the time range, ordered by (bucket, entity)."""
        state = self._state(name)
        time_range = time_range or TimeRange.everything()
        wanted = set(entity_ids) if entity_ids is not None else None
        with state.state_lock:
            items = list(state.buckets.items())

        values = [
            BucketValue(name, entity_id, from_micros(bucket_start), acc.value, acc.samples)
            for (entity_id, bucket_start), acc in items
            if (wanted is None or entity_id in wanted) and time_range.contains_micros(bucket_start)
        ]
        values.sort(key=lambda v: (v.bucket_start, v.entity_id))
        return values

    # Catalog export/restore

    def drain_dirty(self, name: str) -> Tuple[Optional[int], List[Tuple[int, int, Optional[Accumulator]]]]:
        """
        Buckets changed since the last drain, with the watermark they are
        consistent with.

        Returns:
            (watermark_micros, [(entity_id, bucket_start_micros, acc or None)])
        """
        state = self._state(name)
        with state.state_lock:
            keys = state.dirty
            state.dirty = set()
            changes = [(key[0], key[1], state.buckets.get(key)) for key in sorted(keys)]
            return state.watermark_micros, changes

    def mark_dirty(self, name: str, keys: Iterable[BucketKey]) -> None:
        """Put drained keys back after a failed catalog write."""
        state = self._state(name)
        with state.state_lock:
            state.dirty.update(keys)

    def rebuild(self, name: str) -> int:
        """Recompute every bucket of a sync aggregate from the store."""
        state = self._state(name)
        with state.sweep_lock:
            reduced = reduce_points(state.definition, self.store.scan())
            with state.state_lock:
                state.dirty.update(state.buckets)
                state.dirty.update(reduced)
                state.buckets = reduced
        return len(reduced)

    def restore(self, name: str, watermark_micros: Optional[int],
                buckets: Iterable[Tuple[int, int, Accumulator]]) -> None:
        """Load previously persisted state for a defined aggregate."""
        state = self._state(name)
        with state.sweep_lock, state.state_lock:
            state.buckets = {(entity_id, bucket_start): acc for entity_id, bucket_start, acc in buckets}
            state.watermark_micros = watermark_micros
            state.dirty = set()
            state.invalidated = set()
            state.recomputing = set()
