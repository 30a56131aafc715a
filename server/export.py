"""Output boundary: convert a DetourGraph to lat/lon dictionaries and write the output folder.

Output folder layout:
- ``nodes.csv``: one row per place (label, centroid, bounding box corners, dwell)
- ``visits.csv``: one row per TimePair (label, enter, exit)
- ``edge_{i}.csv``: one file per trip, polyline as ``lat,lon,t``
- ``graph.graphml``: the graph structure (networkx MultiDiGraph)
- ``routes.csv``: repeated trips grouped per place pair (when routes are given)
- ``stats.json``: build statistics
- ``config.json``: the thresholds used
"""

import csv
import json
import logging
from pathlib import Path
from typing import Optional

import networkx as nx

from geo import Point, to_4326
from graph import DetourGraph, Place, Trip
from path_builder import BuildStats
from routes import Route
from thresholds import Thresholds

logger = logging.getLogger(__name__)

OPEN = "open"


def _latlon(x: float, y: float) -> tuple[float, float]:
    return to_4326(x, y)


def _point(p: Point) -> list[float]:
    lat, lon = _latlon(p.x, p.y)
    return [lat, lon, p.t]


def place_to_dict(place: Place) -> dict:
    lat, lon = _latlon(*place.centroid)
    min_lat, min_lon = _latlon(place.bbox.min_x, place.bbox.min_y)
    max_lat, max_lon = _latlon(place.bbox.max_x, place.bbox.max_y)
    return {
        "id": place.place_id,
        "latitude": lat,
        "longitude": lon,
        "bbox": [min_lat, min_lon, max_lat, max_lon],
        "visits": [{"enter": v.enter, "exit": v.exit} for v in place.visits],
        "total_duration": place.total_duration,
    }


def trip_to_dict(trip: Trip) -> dict:
    return {
        "id": trip.trip_id,
        "source": OPEN if trip.source is None else trip.source,
        "destination": OPEN if trip.destination is None else trip.destination,
        "interval": {"enter": trip.interval.enter, "exit": trip.interval.exit},
        "polyline": [_point(p) for p in trip.polyline],
    }


def route_to_dict(route: Route) -> dict:
    return {
        "source": route.source,
        "destination": route.destination,
        "trips": list(route.trip_ids),
        "representative": route.representative,
    }


def graph_to_dict(
    graph: DetourGraph,
    stats: Optional[BuildStats] = None,
    routes: Optional[list[Route]] = None,
) -> dict:
    """JSON-ready form of the graph, coordinates in EPSG:4326."""
    out = {
        "places": [place_to_dict(p) for p in graph.places()],
        "trips": [trip_to_dict(t) for t in graph.trips()],
    }
    if routes is not None:
        out["routes"] = [route_to_dict(r) for r in routes]
    if stats is not None:
        out["stats"] = stats.as_dict()
    return out


def to_networkx(graph: DetourGraph) -> nx.MultiDiGraph:
    """Places as nodes, trips as keyed edges. Open endpoints get their own ``open`` node."""
    G = nx.MultiDiGraph()
    for place in graph.places():
        d = place_to_dict(place)
        G.add_node(
            place.place_id,
            kind="place",
            latitude=d["latitude"],
            longitude=d["longitude"],
            visits=len(place.visits),
            total_duration=place.total_duration,
        )
    for trip in graph.trips():
        u = trip.source
        if u is None:
            u = f"{OPEN}-{trip.trip_id}-start"
            G.add_node(u, kind=OPEN)
        v = trip.destination
        if v is None:
            v = f"{OPEN}-{trip.trip_id}-end"
            G.add_node(v, kind=OPEN)
        G.add_edge(
            u, v, key=trip.trip_id,
            enter=trip.interval.enter,
            exit=trip.interval.exit,
            points=len(trip.polyline),
            file=f"edge_{trip.trip_id}.csv",
        )
    return G


def write_output(
    graph: DetourGraph,
    outdir: str | Path,
    stats: Optional[BuildStats] = None,
    thresholds: Optional[Thresholds] = None,
    routes: Optional[list[Route]] = None,
) -> Path:
    """Write the output folder described in the module docstring."""
    out = Path(outdir)
    out.mkdir(parents=True, exist_ok=True)

    with (out / "nodes.csv").open("w", encoding="utf-8", newline="") as f:
        w = csv.writer(f)
        w.writerow(["label", "latitude", "longitude", "min_lat", "min_lon", "max_lat", "max_lon",
                    "visits", "total_duration"])
        for place in graph.places():
            d = place_to_dict(place)
            w.writerow([place.place_id, d["latitude"], d["longitude"], *d["bbox"],
                        len(place.visits), place.total_duration])

    with (out / "visits.csv").open("w", encoding="utf-8", newline="") as f:
        w = csv.writer(f)
        w.writerow(["label", "enter", "exit"])
        for place in graph.places():
            for v in place.visits:
                w.writerow([place.place_id, v.enter, v.exit])

    for trip in graph.trips():
        with (out / f"edge_{trip.trip_id}.csv").open("w", encoding="utf-8", newline="") as f:
            w = csv.writer(f)
            w.writerow(["lat", "lon", "t"])
            w.writerows(_point(p) for p in trip.polyline)

    nx.write_graphml(to_networkx(graph), out / "graph.graphml")

    if routes is not None:
        with (out / "routes.csv").open("w", encoding="utf-8", newline="") as f:
            w = csv.writer(f)
            w.writerow(["source", "destination", "trips", "representative"])
            for r in routes:
                w.writerow([r.source, r.destination, " ".join(map(str, r.trip_ids)), r.representative])

    if stats is not None:
        (out / "stats.json").write_text(json.dumps(stats.as_dict(), indent=2), encoding="utf-8")
    if thresholds is not None:
        (out / "config.json").write_text(thresholds.model_dump_json(indent=2), encoding="utf-8")

    logger.info("Wrote %d places and %d trips to %s", len(graph.places()), len(graph.trips()), out)
    return out
