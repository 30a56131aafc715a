"""SQLAlchemy models for devices, raw locations, and the persisted Detour graph."""

import datetime
from sqlalchemy import Column, Integer, Float, String, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


class Device(Base):
    """A tracked subject; every device owns an independent graph."""

    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    identifier = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    last_seen = Column(DateTime, nullable=True)

    locations = relationship("Location", back_populates="device", cascade="all, delete-orphan")
    places = relationship("Place", back_populates="device", cascade="all, delete-orphan")
    trips = relationship("Trip", back_populates="device", cascade="all, delete-orphan")


class Location(Base):
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    altitude = Column(Float, nullable=True)
    horizontal_accuracy = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    received_at = Column(DateTime, default=datetime.datetime.utcnow)
    batch_id = Column(String, nullable=True, index=True)

    device = relationship("Device", back_populates="locations")


class Place(Base):
    """A graph node: a location where the device stopped one or more times.

    ``place_index`` is the node id inside the device's graph. The bounding box
    is kept in projected (EPSG:3857) meters so the clusterer can be reseeded.
    """

    __tablename__ = "places"
    __table_args__ = (UniqueConstraint("device_id", "place_index"),)

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False)
    place_index = Column(Integer, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    min_x = Column(Float, nullable=False)
    min_y = Column(Float, nullable=False)
    max_x = Column(Float, nullable=False)
    max_y = Column(Float, nullable=False)
    address = Column(Text, nullable=True)
    visit_count = Column(Integer, default=0)
    total_duration_seconds = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    device = relationship("Device", back_populates="places")
    visits = relationship(
        "Visit", back_populates="place", cascade="all, delete-orphan", order_by="Visit.visit_index",
    )


class Visit(Base):
    """One (enter, exit) interval at a Place."""

    __tablename__ = "visits"

    id = Column(Integer, primary_key=True, index=True)
    place_id = Column(Integer, ForeignKey("places.id"), nullable=False)
    visit_index = Column(Integer, nullable=False)
    arrival = Column(DateTime, nullable=False)
    departure = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)

    place = relationship("Place", back_populates="visits")


class Trip(Base):
    """A graph edge. NULL source/destination index means the trace was open there."""

    __tablename__ = "trips"
    __table_args__ = (UniqueConstraint("device_id", "trip_index"),)

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False)
    trip_index = Column(Integer, nullable=False)
    source_index = Column(Integer, nullable=True)
    destination_index = Column(Integer, nullable=True)
    departure = Column(DateTime, nullable=False)
    arrival = Column(DateTime, nullable=False)
    polyline = Column(Text, nullable=False)  # JSON [[x, y, t], ...] in projected meters
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    device = relationship("Device", back_populates="trips")


class Config(Base):
    """Key/value store for algorithm thresholds."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
