"""The Detour graph: places (nodes) with visit intervals, trips (edges) between them.

The graph is the sole owner of places and trips. Trips refer to places by
index only; ``None`` as a trip endpoint means the trace started or ended
mid-move ("open").

Invariants, checked on every mutation (``GraphInvariantViolation``):
- visits of a place are sorted and strictly non-overlapping;
- a trip starts strictly after the exit of a source visit and ends strictly
  before the enter of a destination visit, with no visit of either place
  inside the trip interval;
- trips are stored in time order.
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional

from bbox import BoundingBox
from errors import GraphInvariantViolation
from geo import Point


@dataclass(frozen=True)
class TimePair:
    """An (enter, exit) interval in epoch seconds."""

    enter: float
    exit: float

    def __post_init__(self):
        if self.exit < self.enter:
            raise GraphInvariantViolation(f"interval ends before it starts: {self}")

    @property
    def duration(self) -> float:
        return self.exit - self.enter

    def overlaps(self, other: "TimePair") -> bool:
        return self.enter <= other.exit and other.enter <= self.exit


@dataclass
class Place:
    place_id: int
    centroid: tuple[float, float]
    bbox: BoundingBox
    visits: list[TimePair] = field(default_factory=list)

    @property
    def total_duration(self) -> float:
        return sum(v.duration for v in self.visits)


@dataclass(frozen=True)
class Trip:
    trip_id: int
    source: Optional[int]
    destination: Optional[int]
    polyline: tuple[Point, ...]
    interval: TimePair

    @property
    def is_open(self) -> bool:
        return self.source is None or self.destination is None


@dataclass(frozen=True)
class Checkpoint:
    """Last committed element: a visit at ``place_id`` or the open trip ``trip_id``."""

    place_id: Optional[int]
    time: float
    trip_id: Optional[int] = None


class DetourGraph:
    def __init__(self):
        self._places: list[Place] = []
        self._trips: list[Trip] = []

    def __repr__(self):
        return f"DetourGraph(places={len(self._places)}, trips={len(self._trips)})"

    # -- queries -----------------------------------------------------------

    def places(self) -> list[Place]:
        return list(self._places)

    def trips(self) -> list[Trip]:
        return list(self._trips)

    def place(self, place_id: int) -> Place:
        if not 0 <= place_id < len(self._places):
            raise KeyError(f"unknown place {place_id}")
        return self._places[place_id]

    def trip(self, trip_id: int) -> Trip:
        if not 0 <= trip_id < len(self._trips):
            raise KeyError(f"unknown trip {trip_id}")
        return self._trips[trip_id]

    def trips_from(self, place_id: int) -> Iterator[Trip]:
        return (t for t in self._trips if t.source == place_id)

    def trips_to(self, place_id: int) -> Iterator[Trip]:
        return (t for t in self._trips if t.destination == place_id)

    def checkpoint(self) -> Optional[Checkpoint]:
        latest: Optional[Checkpoint] = None
        for place in self._places:
            if place.visits and (latest is None or place.visits[-1].exit > latest.time):
                latest = Checkpoint(place.place_id, place.visits[-1].exit)
        if self._trips:
            last_trip = self._trips[-1]
            if latest is None or last_trip.interval.exit > latest.time:
                latest = Checkpoint(None, last_trip.interval.exit, last_trip.trip_id)
        return latest

    # -- mutations ---------------------------------------------------------

    def add_place(self, centroid: tuple[float, float], bbox: BoundingBox) -> int:
        place_id = len(self._places)
        self._places.append(Place(place_id, centroid, bbox))
        return place_id

    def update_place(self, place_id: int, centroid: tuple[float, float], bbox: BoundingBox) -> None:
        place = self._known_place(place_id)
        place.centroid = centroid
        place.bbox = bbox

    def append_visit(self, place_id: int, interval: TimePair) -> None:
        place = self._known_place(place_id)
        if place.visits and interval.enter <= place.visits[-1].exit:
            raise GraphInvariantViolation(
                f"visit {interval} at place {place_id} overlaps or precedes {place.visits[-1]}"
            )
        for trip in self._trips:
            if place_id in (trip.source, trip.destination) and interval.overlaps(trip.interval):
                raise GraphInvariantViolation(
                    f"visit {interval} at place {place_id} overlaps trip {trip.trip_id}"
                )
        place.visits.append(interval)

    def extend_visit(self, place_id: int, exit_time: float) -> None:
        """Push back the exit of the place's latest visit (continued stop)."""
        place = self._known_place(place_id)
        if not place.visits:
            raise GraphInvariantViolation(f"place {place_id} has no visit to extend")
        last = place.visits[-1]
        if exit_time < last.exit:
            raise GraphInvariantViolation(
                f"cannot shrink visit {last} at place {place_id} to exit {exit_time}"
            )
        extended = TimePair(last.enter, exit_time)
        for trip in self._trips:
            if place_id in (trip.source, trip.destination) and extended.overlaps(trip.interval):
                raise GraphInvariantViolation(
                    f"extended visit {extended} at place {place_id} overlaps trip {trip.trip_id}"
                )
        place.visits[-1] = extended

    def add_trip(
        self,
        source: Optional[int],
        destination: Optional[int],
        polyline: tuple[Point, ...],
        interval: TimePair,
    ) -> int:
        if not polyline:
            raise GraphInvariantViolation("trip needs a non-empty polyline")
        if self._trips and interval.enter <= self._trips[-1].interval.exit:
            raise GraphInvariantViolation(
                f"trip {interval} does not follow trip {self._trips[-1].trip_id}"
            )
        if source is not None:
            self._check_endpoint(source, interval, departing=True)
        if destination is not None:
            self._check_endpoint(destination, interval, departing=False)

        trip = Trip(len(self._trips), source, destination, tuple(polyline), interval)
        self._trips.append(trip)
        return trip.trip_id

    def reopen_trip(self, trip_id: int) -> Trip:
        """Take back the latest trip so a later session can extend or close it.

        Only the last trip can be reopened and only while its destination is
        open. The caller re-adds it through ``add_trip`` under the same id.
        """
        trip = self.trip(trip_id)
        if trip_id != len(self._trips) - 1:
            raise GraphInvariantViolation(f"trip {trip_id} is not the latest trip")
        if trip.destination is not None:
            raise GraphInvariantViolation(f"trip {trip_id} already reached place {trip.destination}")
        return self._trips.pop()

    # -- helpers -----------------------------------------------------------

    def _known_place(self, place_id: int) -> Place:
        try:
            return self.place(place_id)
        except KeyError as e:
            raise GraphInvariantViolation(str(e)) from e

    def _check_endpoint(self, place_id: int, interval: TimePair, departing: bool) -> None:
        place = self._known_place(place_id)
        if any(v.overlaps(interval) for v in place.visits):
            raise GraphInvariantViolation(
                f"trip {interval} overlaps a visit at place {place_id}"
            )
        if departing:
            ok = any(v.exit < interval.enter for v in place.visits)
            side = "after an exit from"
        else:
            ok = any(v.enter > interval.exit for v in place.visits)
            side = "before an enter into"
        if not ok:
            raise GraphInvariantViolation(f"trip {interval} does not lie {side} place {place_id}")
