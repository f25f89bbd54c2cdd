"""
Partition catalog model.

One row per time partition of the point store, with its lifecycle state
and, once compacted, the serialized columnar segment.
"""

from sqlalchemy import Column, Integer, BigInteger, DateTime, Enum, LargeBinary
from sqlalchemy.sql import func
from fleetstore.app.db.session import Base
from fleetstore.app.models.enums import PartitionState


class PartitionRecord(Base):
    """
    Partition catalog entry.

    Open partitions only carry counters; their rows live in memory until
    compaction writes the segment here.
    """
    __tablename__ = "partitions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Window [start, end)
    start = Column(DateTime(timezone=True), nullable=False, unique=True, index=True)
    end = Column(DateTime(timezone=True), nullable=False)

    state = Column(Enum(PartitionState), default=PartitionState.OPEN, nullable=False, index=True)
    point_count = Column(BigInteger, default=0, nullable=False)
    compressed_bytes = Column(BigInteger, default=0, nullable=False)

    # Compacted form
    segment_version = Column(Integer, default=0, nullable=False)
    segment = Column(LargeBinary, nullable=True)

    compacted_at = Column(DateTime(timezone=True), nullable=True)
    evicted_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<PartitionRecord(start={self.start}, state='{self.state}', points={self.point_count})>"
