"""
Maintenance Scheduler - runs compaction and rollup refreshes
Runs as background tasks alongside the API
"""

import asyncio
import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetstore.app.core.exceptions import CompactionRetryable, QueryUnavailable, RefreshRetryable
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.maintenance.compactor import CompactionReport
from fleetstore.app.domain.rollup.rollup_engine import RefreshResult
from fleetstore.app.models.enums import RefreshMode
from fleetstore.app.services.catalog import CatalogService
from fleetstore.app.services.dead_letter import record_task_failure

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """
    Background loops for the compactor and each async aggregate.

    Every loop runs its work in a worker thread, so compaction and the
    refreshes of different aggregates proceed independently. Stopping the
    scheduler cancels in-flight refreshes before they commit.
    """

    def __init__(self, engine: TelemetryEngine, catalog: Optional[CatalogService] = None,
                 session_factory: Optional[async_sessionmaker] = None,
                 compaction_interval: float = 3600, refresh_interval: float = 3600):
        self.engine = engine
        self.catalog = catalog
        self.session_factory = session_factory
        self.compaction_interval = compaction_interval
        self.refresh_interval = refresh_interval
        self.running = False
        self._stop = threading.Event()
        self._tasks: List[asyncio.Task] = []
        self._catalog_lock = asyncio.Lock()

    def start(self) -> None:
        """Start the scheduler loops."""
        if self.running:
            return
        self.running = True
        self._stop.clear()
        self._tasks = [asyncio.create_task(self._compaction_loop(), name="compaction")]
        for definition in self.engine.rollups.definitions():
            if definition.mode == RefreshMode.ASYNC:
                self._tasks.append(
                    asyncio.create_task(self._refresh_loop(definition.name), name=f"refresh:{definition.name}")
                )
        logger.info("Maintenance scheduler started with %d loops", len(self._tasks))

    async def stop(self) -> None:
        """Stop the scheduler and wait for the loops to exit."""
        self.running = False
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Maintenance scheduler stopped")

    async def _compaction_loop(self) -> None:
        while self.running:
            try:
                await self.run_compaction()
            except Exception as e:
                logger.exception("Compaction loop error: %s", e)
            await asyncio.sleep(self.compaction_interval)

    async def _refresh_loop(self, name: str) -> None:
        while self.running:
            try:
                await self.run_refresh(name)
            except Exception as e:
                logger.exception("Refresh loop error for %s: %s", name, e)
            await asyncio.sleep(self.refresh_interval)

    async def run_compaction(self) -> CompactionReport:
        """One compactor cycle, then a catalog sync."""
        report = await asyncio.to_thread(self.engine.run_compaction)
        for start, reason in report.failed.items():
            await self._dead_letter(
                "compaction",
                CompactionRetryable(start.isoformat(), reason),
            )
        if self.catalog is not None:
            self.catalog.queue_archives(report.archived)
            await self.sync_catalog()
        return report

    async def run_refresh(self, name: str) -> Optional[RefreshResult]:
        """
        Refresh one aggregate.

        Failures leave the watermark where it was and are retried next
        interval.
        """
        try:
            result = await asyncio.to_thread(self.engine.refresh, name, None, self._stop.is_set)
        except RefreshRetryable as exc:
            logger.warning(exc.message, extra={"error_code": exc.error_code, "aggregate": name})
            if not self._stop.is_set():
                await self._dead_letter(f"refresh:{name}", exc)
            return None
        except QueryUnavailable as exc:
            logger.warning(exc.message, extra={"error_code": exc.error_code, "aggregate": name})
            return None

        if result.buckets_updated and self.catalog is not None:
            await self.sync_catalog()
        return result

    async def run_all_refreshes(self) -> Dict[str, Optional[RefreshResult]]:
        return {name: await self.run_refresh(name) for name in self.engine.rollups.names()}

    async def sync_catalog(self) -> None:
        if self.catalog is None:
            return
        async with self._catalog_lock:
            await self.catalog.sync(self.engine)

    async def _dead_letter(self, task_name: str, exc) -> None:
        if self.session_factory is None:
            return
        try:
            async with self.session_factory() as db:
                await record_task_failure(db, task_name, exc)
                await db.commit()
        except SQLAlchemyError as db_exc:
            logger.error("Could not record failed task %s: %s", task_name, db_exc)
