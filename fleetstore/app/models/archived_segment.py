"""
Archived Segment Model.

Cold storage for partitions evicted by retention.
"""

from sqlalchemy import Column, Integer, BigInteger, DateTime, LargeBinary
from fleetstore.app.db.session import Base


class ArchivedSegment(Base):
    """
    Archived partition segment.
    Same columnar payload the partition held when it was evicted.
    Written once, never queried by the store.
    """
    __tablename__ = "archived_segments"

    id = Column(Integer, primary_key=True, autoincrement=True)

    partition_start = Column(DateTime(timezone=True), nullable=False, index=True)
    partition_end = Column(DateTime(timezone=True), nullable=False)

    point_count = Column(BigInteger, nullable=False)
    raw_bytes = Column(BigInteger, nullable=False)
    payload = Column(LargeBinary, nullable=False)

    archived_at = Column(DateTime(timezone=True), nullable=False)
