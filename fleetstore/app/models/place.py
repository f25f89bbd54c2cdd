"""
Place and entity database models.

Reference data: the depots trucks drive between and each truck's route.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey
from sqlalchemy.sql import func
from fleetstore.app.db.session import Base


class PlaceRecord(Base):
    """A named location with geolocation."""
    __tablename__ = "places"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, unique=True)

    # Geolocation
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Place(id={self.id}, name='{self.name}')>"


class EntityRecord(Base):
    """A tracked truck and its route between two places."""
    __tablename__ = "entities"

    id = Column(Integer, primary_key=True, index=True)

    origin_id = Column(Integer, ForeignKey('places.id'), nullable=False)
    destination_id = Column(Integer, ForeignKey('places.id'), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Entity(id={self.id}, origin={self.origin_id}, destination={self.destination_id})>"
