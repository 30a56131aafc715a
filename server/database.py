"""Database setup and session management using SQLAlchemy + SQLite."""

import logging
import os

logger = logging.getLogger(__name__)

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///detour.db")

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables and seed the default thresholds."""
    from models import Device, Location, Place, Visit, Trip, Config  # noqa: F401

    logger.info("Initializing database at %s", DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    _seed_config()


def default_thresholds() -> dict[str, str]:
    from thresholds import Thresholds

    return {key: str(value) for key, value in Thresholds().model_dump().items()}


def _seed_config(session_factory=None):
    """Insert default algorithm thresholds if not present."""
    from models import Config

    db = (session_factory or SessionLocal)()
    try:
        for key, value in default_thresholds().items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=value))
        db.commit()
    finally:
        db.close()
