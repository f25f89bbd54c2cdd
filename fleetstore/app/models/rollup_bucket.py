"""
Rollup bucket model.

Persists aggregate buckets keyed by (aggregate_name, entity_id, bucket_start).
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql import func
from fleetstore.app.db.session import Base


class RollupBucket(Base):
    """
    One aggregate bucket.

    `value` and `sample_count` are for readers of the catalog; `state` holds
    the accumulator so refreshes can continue from it after a restart.
    """
    __tablename__ = "rollup_buckets"
    __table_args__ = (
        UniqueConstraint("aggregate_name", "entity_id", "bucket_start", name="uq_rollup_bucket"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    aggregate_name = Column(String(100), nullable=False, index=True)
    entity_id = Column(Integer, nullable=False, index=True)
    bucket_start = Column(DateTime(timezone=True), nullable=False, index=True)

    value = Column(Float, nullable=True)
    sample_count = Column(Integer, default=0, nullable=False)
    state = Column(JSON, nullable=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<RollupBucket(aggregate='{self.aggregate_name}', entity_id={self.entity_id}, "
            f"bucket_start={self.bucket_start}, value={self.value})>"
        )
