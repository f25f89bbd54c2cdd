"""
Aggregate watermark model.

The last fully refreshed instant of each aggregate.
"""

from sqlalchemy import Column, String, BigInteger, DateTime
from sqlalchemy.sql import func
from fleetstore.app.db.session import Base


class AggregateWatermark(Base):
    __tablename__ = "aggregate_watermarks"

    aggregate_name = Column(String(100), primary_key=True)

    # Exact microseconds since epoch; `watermark` is the readable form
    watermark_micros = Column(BigInteger, nullable=True)
    watermark = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<AggregateWatermark(aggregate='{self.aggregate_name}', watermark={self.watermark})>"
