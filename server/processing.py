"""Location processing engine: GPS filtering, segmentation, graph construction, persistence.

Processing pipeline (runs server-side after each batch upload, or offline from the CLI):
1. Filter out GPS errors (invalid coordinates, accuracy, impossible speeds, duplicates)
2. Project to Web Mercator and scale distance thresholds to the trace's latitude
3. Optionally drop convex-hull spikes
4. Cut the trace into STOP/MOVE runs (with hysteresis and timeout breaks)
5. Simplify MOVE runs, cluster STOP runs into places, assemble the Detour graph
6. Persist places/visits/trips and reverse-geocode new places via Nominatim
"""

import datetime
import json
import logging
import time
from dataclasses import replace
from typing import Iterable, Iterator, Optional

import requests
from sqlalchemy.orm import Session

from bbox import BoundingBox
from clustering import PlaceClusterer
from detector import MotionStopDetector, Run
from errors import DetourError, InvalidCoordinate
from geo import Point, haversine_m, project, scale_factor, to_3857, to_4326, validate
from graph import Checkpoint, DetourGraph, TimePair
from guards import MotionState, TimeGuard, TimeoutHandler
from models import Location, Place as PlaceRow, Trip as TripRow, Visit as VisitRow
from path_builder import BuildStats, PathBuilder
from routes import Route, group_routes
from simplify import douglas_peucker
from spikes import remove_spikes
from thresholds import Thresholds, get_thresholds

logger = logging.getLogger(__name__)

# Nominatim rate limiting (max 1 req/sec per OSM policy)
_last_nominatim_call = 0.0


# ---------------------------------------------------------------------------
# Time helpers (database datetimes are naive UTC)
# ---------------------------------------------------------------------------

def to_epoch(value) -> float:
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return value.timestamp()
    return float(value)


def from_epoch(t: float) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(t, tz=datetime.timezone.utc).replace(tzinfo=None)


def _record_time(rec: dict) -> float:
    return to_epoch(rec["timestamp"])


# ---------------------------------------------------------------------------
# Step 1: GPS error filtering
# ---------------------------------------------------------------------------

def filter_gps_errors(records: list[dict], thresholds: Thresholds | None = None) -> list[dict]:
    """Remove GPS records that are likely erroneous, sorted by timestamp.

    Filters applied:
    - Latitude/longitude outside the projectable range (skipped with a warning)
    - Horizontal accuracy > max_horizontal_accuracy_m
    - Reported or implied speed > max_speed_ms (physically impossible)
    - Timestamps within min_point_interval_s of the previous kept record
    """
    if not records:
        return []
    thresholds = thresholds or Thresholds()

    filtered: list[dict] = []
    last_t = None

    for rec in sorted(records, key=_record_time):
        try:
            validate(rec["latitude"], rec["longitude"])
        except InvalidCoordinate as e:
            logger.warning("Skipping record at %s: %s", rec.get("timestamp"), e)
            continue

        acc = rec.get("horizontal_accuracy")
        if acc is not None and acc > thresholds.max_horizontal_accuracy_m:
            continue

        speed = rec.get("speed")
        if speed is not None and speed > thresholds.max_speed_ms:
            continue

        t = _record_time(rec)
        if last_t is not None:
            dt = t - last_t
            if dt <= 0 or dt < thresholds.min_point_interval_s:
                continue
            prev = filtered[-1]
            jump = haversine_m(prev["latitude"], prev["longitude"], rec["latitude"], rec["longitude"])
            if jump / dt > thresholds.max_speed_ms:
                continue

        filtered.append(rec)
        last_t = t

    dropped = len(records) - len(filtered)
    if dropped:
        logger.debug("Filtered %d of %d records", dropped, len(records))
    return filtered


# ---------------------------------------------------------------------------
# Steps 2-5: projection, spikes, segmentation, graph construction
# ---------------------------------------------------------------------------

def project_records(records: Iterable[dict]) -> list[Point]:
    """Project validated records; invalid ones are skipped with a warning."""
    points = []
    for rec in records:
        try:
            points.append(project(rec["latitude"], rec["longitude"], _record_time(rec)))
        except InvalidCoordinate as e:
            logger.warning("Skipping record at %s: %s", rec.get("timestamp"), e)
    return points


def simplify_run(run: Run, tolerance: float) -> Run:
    if run.kind is not MotionState.MOVE:
        return run
    return replace(run, polyline=tuple(douglas_peucker(run.points, tolerance)))


def make_detector(thresholds: Thresholds) -> MotionStopDetector:
    return MotionStopDetector(
        thresholds.stop_radius_m,
        TimeGuard(thresholds.min_stop_duration, thresholds.min_move_duration),
        TimeoutHandler(thresholds.max_gap),
    )


def detect_runs(points: Iterable[Point], thresholds: Thresholds) -> Iterator[Run]:
    """Classified runs with MOVE runs already simplified (thresholds in projected meters)."""
    for run in make_detector(thresholds).runs(points):
        yield simplify_run(run, thresholds.simplify_tolerance_m)


def build_graph(
    points: Iterable[Point],
    thresholds: Thresholds,
    graph: DetourGraph | None = None,
    checkpoint: Checkpoint | None = None,
) -> tuple[DetourGraph, BuildStats]:
    """Run segmentation and graph assembly over projected points.

    Distance thresholds must already be in projected meters. Spikes are
    removed first when ``spike_window`` is set. When ``graph`` is given it is
    extended in place; ``checkpoint`` lets the first run continue the visit
    or open trip the previous session ended with.
    """
    graph = graph if graph is not None else DetourGraph()
    clusterer = PlaceClusterer.from_graph(graph, thresholds.cluster_radius_m)
    detector = make_detector(thresholds)
    builder = PathBuilder(graph, clusterer, max_gap=thresholds.max_gap, checkpoint=checkpoint)

    for run in detector.runs(remove_spikes(points, thresholds.spike_window)):
        builder.add_run(simplify_run(run, thresholds.simplify_tolerance_m))
    builder.finish()

    stats = builder.stats
    stats.timeouts = list(detector.stats.timeouts)
    logger.info("Built graph: %s", stats)
    return graph, stats


def build_graph_from_records(
    records: list[dict],
    thresholds: Thresholds | None = None,
    graph: DetourGraph | None = None,
    checkpoint: Checkpoint | None = None,
) -> tuple[DetourGraph, BuildStats]:
    """Full pipeline from raw ``{latitude, longitude, timestamp}`` records."""
    thresholds = thresholds or Thresholds()
    clean = filter_gps_errors(records, thresholds)
    if checkpoint is not None:
        clean = [rec for rec in clean if _record_time(rec) > checkpoint.time]
    if not clean:
        return (graph if graph is not None else DetourGraph()), BuildStats()

    ref_lat = sum(rec["latitude"] for rec in clean) / len(clean)
    scaled = thresholds.projected(scale_factor(ref_lat))
    return build_graph(project_records(clean), scaled, graph, checkpoint)


def find_routes(graph: DetourGraph, thresholds: Thresholds) -> list[Route]:
    """Group repeated trips, with ``max_hausdorff_m`` scaled to the places' mean latitude."""
    places = graph.places()
    if not places:
        return []
    mean_y = sum(p.centroid[1] for p in places) / len(places)
    lat, _ = to_4326(0.0, mean_y)
    return group_routes(graph, thresholds.max_hausdorff_m * scale_factor(lat))


# ---------------------------------------------------------------------------
# Step 6a: persistence
# ---------------------------------------------------------------------------

def _polyline_from_json(text: str) -> tuple[Point, ...]:
    return tuple(Point(x, y, t) for x, y, t in json.loads(text))


def _polyline_to_json(polyline: Iterable[Point]) -> str:
    return json.dumps([[p.x, p.y, p.t] for p in polyline])


def load_graph(db: Session, device_id: int) -> DetourGraph:
    """Rebuild a device's DetourGraph from its persisted places, visits and trips."""
    graph = DetourGraph()
    places = (
        db.query(PlaceRow)
        .filter(PlaceRow.device_id == device_id)
        .order_by(PlaceRow.place_index.asc())
        .all()
    )
    for row in places:
        bbox = BoundingBox(row.min_x, row.min_y, row.max_x, row.max_y)
        place_id = graph.add_place(to_3857(row.latitude, row.longitude), bbox)
        if place_id != row.place_index:
            raise DetourError(f"device {device_id} has a gap in place indices at {row.place_index}")
        for v in row.visits:
            graph.append_visit(place_id, TimePair(to_epoch(v.arrival), to_epoch(v.departure)))

    trips = (
        db.query(TripRow)
        .filter(TripRow.device_id == device_id)
        .order_by(TripRow.trip_index.asc())
        .all()
    )
    for row in trips:
        polyline = _polyline_from_json(row.polyline)
        graph.add_trip(
            row.source_index, row.destination_index, polyline,
            TimePair(polyline[0].t, polyline[-1].t),
        )
    return graph


def save_graph(db: Session, device_id: int, graph: DetourGraph) -> tuple[list[PlaceRow], list[TripRow]]:
    """Write new and changed graph elements. Returns (new place rows, new or extended trip rows).

    Trips with a known destination never change once saved; open ones are
    rewritten because a later session can extend or close them.
    """
    existing = {
        row.place_index: row
        for row in db.query(PlaceRow).filter(PlaceRow.device_id == device_id).all()
    }
    new_places = []
    for place in graph.places():
        lat, lon = to_4326(*place.centroid)
        row = existing.get(place.place_id)
        if row is None:
            row = PlaceRow(device_id=device_id, place_index=place.place_id, visit_count=0)
            db.add(row)
            new_places.append(row)
        row.latitude, row.longitude = lat, lon
        row.min_x, row.min_y = place.bbox.min_x, place.bbox.min_y
        row.max_x, row.max_y = place.bbox.max_x, place.bbox.max_y
        row.visit_count = len(place.visits)
        row.total_duration_seconds = int(place.total_duration)

        visit_rows = {v.visit_index: v for v in row.visits}
        for i, pair in enumerate(place.visits):
            v = visit_rows.get(i)
            if v is None:
                v = VisitRow(visit_index=i)
                row.visits.append(v)
            v.arrival = from_epoch(pair.enter)
            v.departure = from_epoch(pair.exit)
            v.duration_seconds = int(pair.duration)

    saved = {
        row.trip_index: row
        for row in db.query(TripRow).filter(TripRow.device_id == device_id).all()
    }
    written = []
    for trip in graph.trips():
        row = saved.get(trip.trip_id)
        if row is None:
            row = TripRow(device_id=device_id, trip_index=trip.trip_id)
            db.add(row)
        elif row.destination_index is not None:
            continue
        elif _polyline_from_json(row.polyline) == trip.polyline:
            continue
        written.append(row)
        # Open trips may have been resumed and extended since they were saved
        row.source_index = trip.source
        row.destination_index = trip.destination
        row.departure = from_epoch(trip.interval.enter)
        row.arrival = from_epoch(trip.interval.exit)
        row.polyline = _polyline_to_json(trip.polyline)

    db.flush()
    return new_places, written


# ---------------------------------------------------------------------------
# Step 6b: Reverse geocoding (Nominatim / OpenStreetMap)
# ---------------------------------------------------------------------------

def reverse_geocode(lat: float, lon: float) -> Optional[str]:
    """Look up an address from coordinates using Nominatim (free, 1 req/s)."""
    global _last_nominatim_call

    # Rate limit
    elapsed = time.time() - _last_nominatim_call
    if elapsed < 1.1:
        time.sleep(1.1 - elapsed)

    try:
        resp = requests.get(
            "https://nominatim.openstreetmap.org/reverse",
            params={
                "lat": lat,
                "lon": lon,
                "format": "jsonv2",
                "zoom": 18,
            },
            headers={"User-Agent": "DetourGraph/0.1"},
            timeout=10,
        )
        _last_nominatim_call = time.time()

        if resp.status_code == 200:
            return resp.json().get("display_name")
    except requests.RequestException as e:
        logger.warning("Nominatim reverse geocode failed: %s", e)

    return None


# ---------------------------------------------------------------------------
# Full pipeline: process locations for a device
# ---------------------------------------------------------------------------

def process_device_locations(
    db: Session, device_id: int, thresholds: Thresholds | None = None,
) -> list[TripRow]:
    """Extend the device's graph with all locations newer than its last committed element.

    Returns Trip rows created or extended by this batch. A DetourError leaves
    the persisted graph untouched.
    """
    if thresholds is None:
        thresholds = get_thresholds(db)

    graph = load_graph(db, device_id)
    checkpoint = graph.checkpoint()
    since = from_epoch(checkpoint.time) if checkpoint else datetime.datetime.min

    raw_locations = (
        db.query(Location)
        .filter(Location.device_id == device_id, Location.timestamp > since)
        .order_by(Location.timestamp.asc())
        .all()
    )
    if not raw_locations:
        return []

    records = [
        {
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "horizontal_accuracy": loc.horizontal_accuracy,
            "speed": loc.speed,
            "timestamp": loc.timestamp,
        }
        for loc in raw_locations
    ]

    try:
        graph, stats = build_graph_from_records(records, thresholds, graph, checkpoint)
    except DetourError as e:
        db.rollback()
        logger.error("Graph build failed for device=%d: %s", device_id, e)
        raise

    new_places, new_trips = save_graph(db, device_id, graph)

    for place in new_places:
        if not place.address:
            addr = reverse_geocode(place.latitude, place.longitude)
            if addr:
                place.address = addr

    db.commit()
    logger.info(
        "Processed device=%d: %d locations, %d new places, %d new trips",
        device_id, len(raw_locations), len(new_places), len(new_trips),
    )
    return new_trips


def rebuild_device(db: Session, device_id: int) -> dict:
    """Delete the device's graph and rebuild it from all stored locations.

    Returns {"places": int, "trips": int}.
    """
    for place in db.query(PlaceRow).filter(PlaceRow.device_id == device_id).all():
        db.delete(place)
    db.query(TripRow).filter(TripRow.device_id == device_id).delete(synchronize_session=False)
    db.commit()

    trips = process_device_locations(db, device_id)
    places = db.query(PlaceRow).filter(PlaceRow.device_id == device_id).count()

    logger.info("Rebuilt device=%d: %d places, %d trips", device_id, places, len(trips))
    return {"places": places, "trips": len(trips)}
