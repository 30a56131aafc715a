"""Geo math: WGS-84 <-> Web Mercator projection and distances.

All clustering and simplification happens in projected meters (EPSG:3857).
Mercator stretches distances by 1/cos(lat), so thresholds expressed in ground
meters are scaled with ``scale_factor`` before being applied to a trace.
"""

import math
from dataclasses import dataclass

from errors import InvalidCoordinate

EARTH_RADIUS_M = 6_378_137.0       # WGS-84 semi-major axis, spherical Mercator
MEAN_EARTH_RADIUS_M = 6_371_000.0  # for haversine
MAX_LATITUDE = 85.05112878         # Mercator is square at this latitude


@dataclass(frozen=True)
class Point:
    """A projected sample: easting/northing in meters, epoch seconds."""

    x: float
    y: float
    t: float


def validate(lat: float, lon: float) -> None:
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidCoordinate(f"non-finite coordinate ({lat}, {lon})")
    if abs(lat) > MAX_LATITUDE:
        raise InvalidCoordinate(f"latitude {lat} outside +/-{MAX_LATITUDE}")
    if abs(lon) > 180.0:
        raise InvalidCoordinate(f"longitude {lon} outside +/-180")


def to_3857(lat: float, lon: float) -> tuple[float, float]:
    """Project WGS-84 degrees to Web Mercator meters."""
    validate(lat, lon)
    x = EARTH_RADIUS_M * math.radians(lon)
    y = EARTH_RADIUS_M * math.log(math.tan(math.pi / 4 + math.radians(lat) / 2))
    return x, y


def to_4326(x: float, y: float) -> tuple[float, float]:
    """Inverse of ``to_3857``; returns (lat, lon) in degrees."""
    if not (math.isfinite(x) and math.isfinite(y)):
        raise InvalidCoordinate(f"non-finite projected coordinate ({x}, {y})")
    lon = math.degrees(x / EARTH_RADIUS_M)
    lat = math.degrees(2 * math.atan(math.exp(y / EARTH_RADIUS_M)) - math.pi / 2)
    return lat, lon


def project(lat: float, lon: float, t: float) -> Point:
    x, y = to_3857(lat, lon)
    return Point(x, y, t)


def unproject(point: Point) -> tuple[float, float, float]:
    lat, lon = to_4326(point.x, point.y)
    return lat, lon, point.t


def scale_factor(lat: float) -> float:
    """Mercator scale at ``lat``: projected meters per ground meter."""
    validate(lat, 0.0)
    return 1.0 / math.cos(math.radians(lat))


def distance(a: Point, b: Point) -> float:
    """Planar distance in projected meters."""
    return math.hypot(b.x - a.x, b.y - a.y)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    R = MEAN_EARTH_RADIUS_M
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
