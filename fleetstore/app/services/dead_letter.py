"""
Dead letter service.

Captures rejected telemetry records and failed maintenance tasks in the
dead letter queue so they can be inspected or replayed.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.app.core.exceptions import AppException
from fleetstore.app.models.dlq import DeadLetterQueue, DLQStatus
from fleetstore.app.schemas.telemetry import IngestReport

logger = logging.getLogger(__name__)

INGEST_TASK = "telemetry_ingest"


def _jsonable(record: Any) -> Any:
    """Best-effort JSON form of a rejected record."""
    try:
        return json.loads(json.dumps(record, default=str))
    except (TypeError, ValueError):
        return {"repr": repr(record)}


def claimed_entity_id(record: Any) -> Optional[int]:
    """Entity id of a rejected record, if it carries a usable one."""
    if not isinstance(record, dict):
        return None
    value = record.get("entity_id")
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def record_rejections(db: AsyncSession, report: IngestReport, records: Sequence[Any]) -> int:
    """
    Write one DLQ row per rejected record of an ingest batch.

    Returns:
        Number of rows added (the caller commits)
    """
    for rejection in report.rejected:
        record = records[rejection.index] if rejection.index < len(records) else None
        db.add(DeadLetterQueue(
            task_name=INGEST_TASK,
            error_code=rejection.error_code,
            error_message=rejection.message,
            payload={"record": _jsonable(record), "details": _jsonable(rejection.details)},
            entity_id=claimed_entity_id(record),
            record_index=rejection.index,
            status=DLQStatus.FAILED,
        ))
    return len(report.rejected)


async def record_task_failure(db: AsyncSession, task_name: str, exc: AppException,
                              payload: Optional[Dict[str, Any]] = None) -> DeadLetterQueue:
    """Capture a failed background task."""
    item = DeadLetterQueue(
        task_name=task_name,
        error_code=exc.error_code,
        error_message=exc.message,
        payload=_jsonable({**exc.details, **(payload or {})}),
        status=DLQStatus.FAILED,
    )
    db.add(item)
    return item


async def list_dead_letters(db: AsyncSession, status: Optional[DLQStatus] = None,
                            task_name: Optional[str] = None, entity_id: Optional[int] = None,
                            limit: int = 100) -> List[DeadLetterQueue]:
    query = select(DeadLetterQueue)
    if status is not None:
        query = query.where(DeadLetterQueue.status == status)
    if task_name is not None:
        query = query.where(DeadLetterQueue.task_name == task_name)
    if entity_id is not None:
        query = query.where(DeadLetterQueue.entity_id == entity_id)
    result = await db.execute(query.order_by(desc(DeadLetterQueue.id)).limit(limit))
    return list(result.scalars().all())
