"""Shared pytest fixtures: in-memory DB, test device, hand-built projected traces."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base, _seed_config
from models import Device, Location
from thresholds import Thresholds


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db(engine):
    """Provide a DB session with the default thresholds seeded."""
    Session = sessionmaker(bind=engine)
    _seed_config(Session)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def test_device(db):
    device = Device(name="Test iPhone", identifier="test-device-001")
    db.add(device)
    db.commit()
    db.refresh(device)
    return device


def _add_locations(db, device, records):
    for pt in records:
        db.add(Location(
            device_id=device.id,
            latitude=pt["latitude"],
            longitude=pt["longitude"],
            altitude=pt.get("altitude"),
            horizontal_accuracy=pt.get("horizontal_accuracy"),
            speed=pt.get("speed"),
            timestamp=pt["timestamp"],
        ))
    db.commit()


@pytest.fixture
def add_locations(db):
    """Insert fixture records as Location rows for a device."""
    return lambda device, records: _add_locations(db, device, records)


@pytest.fixture
def populated_device(db, test_device):
    """Create a device populated with the full GPS trace fixture data."""
    from tests.gps_test_fixtures import GPS_TRACE

    _add_locations(db, test_device, GPS_TRACE)
    return test_device


@pytest.fixture
def small_thresholds():
    """Thresholds for hand-built traces in projected meters (no scaling applied)."""
    return Thresholds(
        min_stop_duration=30,
        min_move_duration=10,
        max_gap=300,
        stop_radius_m=50,
        cluster_radius_m=50,
        simplify_tolerance_m=10,
    )


@pytest.fixture
def commute_points():
    from tests.gps_test_fixtures import COMMUTE_XYT, pts

    return pts(COMMUTE_XYT)


@pytest.fixture
def loop_points():
    from tests.gps_test_fixtures import LOOP_XYT, pts

    return pts(LOOP_XYT)
