"""
Catalog service.

Mirrors the in-memory store into the catalog database: partition records
(with compacted segments), rollup buckets and watermarks, archived segments
for evicted partitions, and reference data. On startup the same tables are
read back to rebuild compacted partitions and rollup state.

Catalog writes go through a circuit breaker; a failing database never stops
ingestion or maintenance, and unsynced changes are retried next cycle.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetstore.app.core.reliability import CircuitBreaker, CircuitOpenError
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.fleet.reference import Entity
from fleetstore.app.domain.maintenance.compactor import ArchivedPartition
from fleetstore.app.domain.rollup.accumulators import accumulator_from_state
from fleetstore.app.domain.rollup.definitions import BucketKey
from fleetstore.app.domain.storage.columnar import CompactedSegment
from fleetstore.app.domain.timeutil import from_micros, to_micros, utc_now
from fleetstore.app.models.aggregate_watermark import AggregateWatermark
from fleetstore.app.models.archived_segment import ArchivedSegment
from fleetstore.app.models.enums import PartitionState, RefreshMode
from fleetstore.app.models.partition_record import PartitionRecord
from fleetstore.app.models.place import EntityRecord, PlaceRecord
from fleetstore.app.models.rollup_bucket import RollupBucket

logger = logging.getLogger(__name__)

# Max bind parameters per IN clause
_CHUNK = 500


@dataclass
class SyncResult:
    partitions: int = 0
    segments_written: int = 0
    segments_archived: int = 0
    buckets_written: int = 0
    buckets_deleted: int = 0
    entities_added: int = 0


@dataclass
class RestoreResult:
    partitions: Dict[str, int] = field(default_factory=dict)
    buckets: int = 0
    entities: int = 0


def _chunks(items: Sequence, size: int = _CHUNK):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class CatalogService:
    """
    Catalog persistence for one engine.

    Args:
        session_factory: async_sessionmaker bound to the catalog database
        breaker: Circuit breaker guarding catalog writes
    """

    def __init__(self, session_factory: async_sessionmaker, breaker: Optional[CircuitBreaker] = None):
        self.session_factory = session_factory
        self.breaker = breaker or CircuitBreaker(failure_threshold=3, reset_timeout=60)
        self._pending_archives: List[ArchivedPartition] = []

    def queue_archives(self, archived: Sequence[ArchivedPartition]) -> None:
        """Hold evicted segments until the next successful sync writes them."""
        self._pending_archives.extend(archived)

    async def sync(self, engine: TelemetryEngine) -> Optional[SyncResult]:
        """
        Write everything changed since the last sync.

        Returns None when the catalog could not be written; drained rollup
        changes are put back so the next sync retries them.
        """
        drained: Dict[str, List[BucketKey]] = {}
        try:
            result = await self.breaker.call(self._sync, engine, drained)
        except CircuitOpenError:
            logger.warning("Catalog circuit open, skipping sync")
            self._requeue(engine, drained)
            return None
        except SQLAlchemyError as exc:
            logger.error("Catalog sync failed: %s", exc, extra={"error": str(exc)})
            self._requeue(engine, drained)
            return None
        except Exception as exc:
            logger.exception("Unexpected catalog sync error: %s", exc)
            self._requeue(engine, drained)
            return None

        logger.info(
            "Catalog synced: %d partitions, %d segments written, %d archived, %d buckets written",
            result.partitions, result.segments_written, result.segments_archived, result.buckets_written,
        )
        return result

    def _requeue(self, engine: TelemetryEngine, drained: Dict[str, List[BucketKey]]) -> None:
        for name, keys in drained.items():
            engine.rollups.mark_dirty(name, keys)

    async def _sync(self, engine: TelemetryEngine, drained: Dict[str, List[BucketKey]]) -> SyncResult:
        result = SyncResult()
        async with self.session_factory() as db:
            await self._sync_partitions(db, engine, result)
            await self._sync_rollups(db, engine, drained, result)
            await self._sync_entities(db, engine, result)
            await db.commit()
        self._pending_archives = []
        return result

    async def _sync_partitions(self, db: AsyncSession, engine: TelemetryEngine, result: SyncResult) -> None:
        partitions = engine.store.partitions()
        existing = {}
        for chunk in _chunks([p.start for p in partitions]):
            rows = await db.execute(select(PartitionRecord).where(PartitionRecord.start.in_(chunk)))
            for record in rows.scalars():
                existing[to_micros(record.start)] = record

        archived_starts = {to_micros(a.start) for a in self._pending_archives}
        for archived in self._pending_archives:
            db.add(ArchivedSegment(
                partition_start=archived.start,
                partition_end=archived.end,
                point_count=archived.segment.point_count,
                raw_bytes=archived.segment.raw_bytes,
                payload=archived.segment.to_bytes(),
                archived_at=utc_now(),
            ))
            result.segments_archived += 1

        for partition in partitions:
            record = existing.get(partition.start_micros)
            if record is None:
                record = PartitionRecord(start=partition.start, end=partition.end, segment_version=0)
                db.add(record)

            state = partition.state
            record.state = state
            record.point_count = partition.point_count
            record.compressed_bytes = partition.compressed_bytes
            record.compacted_at = partition.compacted_at
            record.evicted_at = partition.evicted_at

            if state == PartitionState.EVICTED:
                # Move a segment persisted earlier into cold storage
                if record.segment is not None and partition.start_micros not in archived_starts:
                    segment = CompactedSegment.from_bytes(record.segment)
                    db.add(ArchivedSegment(
                        partition_start=partition.start,
                        partition_end=partition.end,
                        point_count=segment.point_count,
                        raw_bytes=segment.raw_bytes,
                        payload=record.segment,
                        archived_at=utc_now(),
                    ))
                    result.segments_archived += 1
                record.segment = None
            else:
                segment = partition.segment
                version = partition.segment_version
                if segment is not None and version > (record.segment_version or 0):
                    record.segment = segment.to_bytes()
                    record.segment_version = version
                    result.segments_written += 1
            result.partitions += 1

    async def _sync_rollups(self, db: AsyncSession, engine: TelemetryEngine,
                            drained: Dict[str, List[BucketKey]], result: SyncResult) -> None:
        for name in engine.rollups.names():
            watermark_micros, changes = engine.rollups.drain_dirty(name)
            drained[name] = [(entity_id, start) for entity_id, start, _ in changes]

            mark = await db.get(AggregateWatermark, name)
            if mark is None:
                mark = AggregateWatermark(aggregate_name=name)
                db.add(mark)
            mark.watermark_micros = watermark_micros
            mark.watermark = from_micros(watermark_micros) if watermark_micros is not None else None

            if not changes:
                continue

            existing: Dict[Tuple[int, int], RollupBucket] = {}
            starts = sorted({from_micros(start) for _, start, _ in changes})
            for chunk in _chunks(starts):
                rows = await db.execute(
                    select(RollupBucket).where(
                        RollupBucket.aggregate_name == name,
                        RollupBucket.bucket_start.in_(chunk),
                    )
                )
                for bucket in rows.scalars():
                    existing[(bucket.entity_id, to_micros(bucket.bucket_start))] = bucket

            for entity_id, start, acc in changes:
                bucket = existing.get((entity_id, start))
                if acc is None:
                    if bucket is not None:
                        await db.delete(bucket)
                        result.buckets_deleted += 1
                    continue
                if bucket is None:
                    bucket = RollupBucket(aggregate_name=name, entity_id=entity_id, bucket_start=from_micros(start))
                    db.add(bucket)
                bucket.value = acc.value
                bucket.sample_count = acc.samples
                bucket.state = acc.to_state()
                result.buckets_written += 1

    async def _sync_entities(self, db: AsyncSession, engine: TelemetryEngine, result: SyncResult) -> None:
        known = set((await db.execute(select(EntityRecord.id))).scalars())
        places = set((await db.execute(select(PlaceRecord.id))).scalars())
        for entity in engine.reference.entities():
            if entity.id in known:
                continue
            if entity.origin_id not in places or entity.destination_id not in places:
                logger.debug("Entity %d routes through unknown places, not cataloged", entity.id)
                continue
            db.add(EntityRecord(id=entity.id, origin_id=entity.origin_id, destination_id=entity.destination_id))
            result.entities_added += 1

    async def seed_reference(self, engine: TelemetryEngine) -> int:
        """Insert the built-in places that are not in the catalog yet."""
        async with self.session_factory() as db:
            known = set((await db.execute(select(PlaceRecord.id))).scalars())
            added = 0
            for place in engine.reference.places():
                if place.id in known:
                    continue
                db.add(PlaceRecord(id=place.id, name=place.name, latitude=place.latitude, longitude=place.longitude))
                added += 1
            await db.commit()
        if added:
            logger.info("Seeded %d places", added)
        return added

    async def restore(self, engine: TelemetryEngine) -> RestoreResult:
        """
        Rebuild compacted/evicted partitions, rollup state and entities.

        Must run before the engine accepts points.
        """
        result = RestoreResult()
        async with self.session_factory() as db:
            rows = await db.execute(select(PartitionRecord).order_by(PartitionRecord.start))
            for record in rows.scalars():
                if record.state == PartitionState.EVICTED:
                    engine.restore_partition(record.start, PartitionState.EVICTED)
                elif record.segment is not None:
                    # A partition caught mid-compaction still has its last committed segment
                    engine.restore_partition(
                        record.start,
                        PartitionState.COMPACTED,
                        CompactedSegment.from_bytes(record.segment),
                        record.segment_version or 0,
                    )
                else:
                    continue
                state = PartitionState.EVICTED if record.state == PartitionState.EVICTED else PartitionState.COMPACTED
                result.partitions[state.value] = result.partitions.get(state.value, 0) + 1

            for definition in engine.rollups.definitions():
                name = definition.name
                if definition.mode == RefreshMode.SYNC:
                    engine.rollups.rebuild(name)
                    continue
                mark = await db.get(AggregateWatermark, name)
                buckets = await db.execute(select(RollupBucket).where(RollupBucket.aggregate_name == name))
                restored = [
                    (bucket.entity_id, to_micros(bucket.bucket_start), accumulator_from_state(bucket.state))
                    for bucket in buckets.scalars()
                ]
                engine.rollups.restore(name, mark.watermark_micros if mark is not None else None, restored)
                result.buckets += len(restored)

            entities = await db.execute(select(EntityRecord))
            for record in entities.scalars():
                engine.reference.register(Entity(record.id, record.origin_id, record.destination_id))
                result.entities += 1

        logger.info(
            "Catalog restored: partitions %s, %d buckets, %d entities",
            result.partitions, result.buckets, result.entities,
        )
        return result
