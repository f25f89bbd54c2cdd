"""
Dead Letter Queue (DLQ) Model.

Rejected telemetry records and failed maintenance tasks, kept for replay
or audit.
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, DateTime, JSON, Enum
from sqlalchemy.sql import func
from fleetstore.app.db.session import Base
import enum


class DLQStatus(str, enum.Enum):
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    PROCESSED = "PROCESSED"
    ARCHIVED = "ARCHIVED"  # Gave up


class DeadLetterQueue(Base):
    """
    Dead letter entry.

    Ingest rejections carry the offending record and, when it could be
    read, the entity it claimed to come from. Maintenance failures carry
    the partition or aggregate that failed.
    """
    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # "telemetry_ingest", "compaction" or "refresh:<aggregate>"
    task_name = Column(String(100), nullable=False, index=True)
    error_code = Column(String(50), nullable=True, index=True)
    error_message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    # Ingest rejections only
    entity_id = Column(BigInteger, nullable=True, index=True)
    record_index = Column(Integer, nullable=True)

    status = Column(Enum(DLQStatus), default=DLQStatus.FAILED, nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<DeadLetter(id={self.id}, task='{self.task_name}', entity={self.entity_id}, status='{self.status}')>"
