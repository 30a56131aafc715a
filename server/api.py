"""REST API endpoints (devices, location uploads, graph export, thresholds)."""

import datetime
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from database import get_db
from errors import DetourError, InvalidCoordinate
from export import graph_to_dict, route_to_dict
from geo import validate
from models import Config, Device, Location, Place
from processing import find_routes, load_graph, process_device_locations, rebuild_device
from thresholds import Thresholds, get_thresholds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class DeviceCreate(BaseModel):
    name: str
    identifier: str


class DeviceResponse(BaseModel):
    id: int
    name: str
    identifier: str
    last_seen: Optional[str] = None


class LocationPoint(BaseModel):
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    horizontal_accuracy: Optional[float] = None
    speed: Optional[float] = None
    timestamp: str = Field(..., description="ISO 8601 timestamp from the device")


class LocationBatch(BaseModel):
    device_id: int
    locations: list[LocationPoint]


class BatchResponse(BaseModel):
    received: int
    skipped: int = 0
    batch_id: str
    trips_detected: int = 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_device(db: Session, device_id: int) -> Device:
    device = db.query(Device).filter(Device.id == device_id).first()
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


def _parse_timestamp(value: str) -> datetime.datetime:
    """Naive UTC datetime from an ISO 8601 string."""
    dt = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return dt


def _detour_error(e: DetourError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"error": str(e), "time_range": getattr(e, "time_range", None)},
    )


# ---------------------------------------------------------------------------
# Device endpoints
# ---------------------------------------------------------------------------

@router.get("/devices", response_model=list[DeviceResponse])
def list_devices(db: Session = Depends(get_db)):
    devices = db.query(Device).order_by(Device.id).all()
    return [
        DeviceResponse(
            id=d.id,
            name=d.name,
            identifier=d.identifier,
            last_seen=d.last_seen.isoformat() if d.last_seen else None,
        )
        for d in devices
    ]


@router.post("/devices", response_model=DeviceResponse, status_code=201)
def create_device(req: DeviceCreate, db: Session = Depends(get_db)):
    existing = db.query(Device).filter(Device.identifier == req.identifier).first()
    if existing:
        raise HTTPException(status_code=409, detail="Device identifier already registered")
    device = Device(name=req.name, identifier=req.identifier)
    db.add(device)
    db.commit()
    db.refresh(device)
    logger.info("Device created: %s (id=%d)", device.name, device.id)
    return DeviceResponse(id=device.id, name=device.name, identifier=device.identifier)


@router.delete("/devices/{device_id}", status_code=204)
def delete_device(device_id: int, db: Session = Depends(get_db)):
    device = _get_device(db, device_id)
    db.delete(device)
    db.commit()
    logger.info("Device deleted: id=%d", device_id)


# ---------------------------------------------------------------------------
# Location endpoints
# ---------------------------------------------------------------------------

@router.post("/locations", response_model=BatchResponse)
def upload_locations(batch: LocationBatch, db: Session = Depends(get_db)):
    device = _get_device(db, batch.device_id)

    batch_id = uuid.uuid4().hex[:12]
    now = datetime.datetime.utcnow()
    skipped = 0

    for pt in batch.locations:
        try:
            validate(pt.latitude, pt.longitude)
            timestamp = _parse_timestamp(pt.timestamp)
        except (InvalidCoordinate, ValueError) as e:
            logger.warning("Skipping location from device=%d: %s", device.id, e)
            skipped += 1
            continue
        db.add(Location(
            device_id=device.id,
            latitude=pt.latitude,
            longitude=pt.longitude,
            altitude=pt.altitude,
            horizontal_accuracy=pt.horizontal_accuracy,
            speed=pt.speed,
            timestamp=timestamp,
            received_at=now,
            batch_id=batch_id,
        ))

    device.last_seen = now
    db.commit()

    received = len(batch.locations) - skipped
    logger.info(
        "Received %d locations (%d skipped) from device=%d batch=%s",
        received, skipped, device.id, batch_id,
    )

    try:
        new_trips = process_device_locations(db, device.id)
    except DetourError as e:
        raise _detour_error(e)

    return BatchResponse(received=received, skipped=skipped, batch_id=batch_id, trips_detected=len(new_trips))


@router.get("/locations/{device_id}")
def get_locations(
    device_id: int,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    _get_device(db, device_id)
    locations = (
        db.query(Location)
        .filter(Location.device_id == device_id)
        .order_by(Location.timestamp.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [
        {
            "id": loc.id,
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "altitude": loc.altitude,
            "speed": loc.speed,
            "timestamp": loc.timestamp.isoformat(),
            "batch_id": loc.batch_id,
        }
        for loc in locations
    ]


# ---------------------------------------------------------------------------
# Graph endpoints
# ---------------------------------------------------------------------------

@router.get("/graph/{device_id}")
def get_graph(device_id: int, db: Session = Depends(get_db)):
    """The device's Detour graph in EPSG:4326, with reverse-geocoded addresses."""
    _get_device(db, device_id)
    try:
        graph = load_graph(db, device_id)
    except DetourError as e:
        raise _detour_error(e)

    out = graph_to_dict(graph)
    addresses = {
        p.place_index: p.address
        for p in db.query(Place).filter(Place.device_id == device_id).all()
    }
    for place in out["places"]:
        place["address"] = addresses.get(place["id"])
    return out


@router.get("/graph/{device_id}/routes")
def get_routes(device_id: int, db: Session = Depends(get_db)):
    """Repeated trips between the same two places, grouped by path similarity."""
    _get_device(db, device_id)
    try:
        graph = load_graph(db, device_id)
    except DetourError as e:
        raise _detour_error(e)
    return [route_to_dict(r) for r in find_routes(graph, get_thresholds(db))]


@router.post("/graph/{device_id}/rebuild")
def rebuild_graph(device_id: int, db: Session = Depends(get_db)):
    """Delete the device's graph and rebuild it from all stored locations."""
    _get_device(db, device_id)
    try:
        counts = rebuild_device(db, device_id)
    except DetourError as e:
        raise _detour_error(e)
    return {"rebuilt": True, **counts}


# ---------------------------------------------------------------------------
# Threshold endpoints
# ---------------------------------------------------------------------------

@router.get("/config")
def get_config(db: Session = Depends(get_db)):
    return get_thresholds(db).model_dump()


@router.put("/config")
def update_config(body: dict, db: Session = Depends(get_db)):
    """Update thresholds; the merged set is validated before anything is stored."""
    current = get_thresholds(db).model_dump()
    try:
        merged = Thresholds(**{**current, **body})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    for key in body:
        value = str(getattr(merged, key))
        row = db.query(Config).filter(Config.key == key).first()
        if row:
            row.value = value
        else:
            db.add(Config(key=key, value=value))
    db.commit()
    logger.info("Thresholds updated: %s", ", ".join(sorted(body)))
    return merged.model_dump()
