"""Incremental graph construction from classified runs.

The path builder consumes STOP/MOVE runs in time order and is the only code
that writes to a ``DetourGraph``:

- a STOP run is clustered into a place and recorded as a visit; if a trip is
  pending it is closed with this place as destination;
- a MOVE run opens a pending trip that departs from the preceding stop, or
  from nowhere ("open") when the segment started mid-move;
- a new segment (timeout break) or the end of the stream commits a pending
  trip with an open destination.

Boundary points where a trip leaves or reaches a place are interpolated
halfway in time between the last sample of one run and the first sample of
the next, so a trip always lies strictly between the visits it connects.

A session that starts within ``max_gap`` of the graph's checkpoint picks up
where the previous one stopped: a visit is extended, or an open trip is
taken back as the pending trip and keeps growing until a stop closes it.
"""

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from clustering import Assignment, PlaceClusterer
from detector import Run
from errors import OutOfRange, PathBuilderError
from geo import Point
from graph import Checkpoint, DetourGraph, TimePair
from guards import MotionState
from interpolate import midpoint

logger = logging.getLogger(__name__)


class RootCase(enum.Enum):
    """How the first run of a segment attaches to the graph."""

    MID_STOP = "mid_stop"          # trace starts while stopped, no prior place
    MID_MOVE = "mid_move"          # trace starts while moving, trip source is open
    CONTINUATION = "continuation"  # resumes the visit or open trip a previous session ended with


@dataclass(frozen=True)
class PointsForElement:
    """The points and interval a run contributes to its graph element."""

    points: tuple[Point, ...]
    interval: TimePair


@dataclass(frozen=True)
class StopElement:
    run: Run
    assignment: Assignment
    staged: PointsForElement


@dataclass(frozen=True)
class MoveElement:
    run: Run
    source: Optional[int]
    staged: PointsForElement


PathElement = Union[StopElement, MoveElement]


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class PendingTrip:
    element: MoveElement
    resumed: bool = False


Slot = Union[Idle, PendingTrip]


@dataclass
class BuildStats:
    segments: int = 0
    timeouts: list[float] = field(default_factory=list)
    stop_runs: int = 0
    move_runs: int = 0
    places_created: int = 0
    visits: int = 0
    extended_visits: int = 0
    resumed_trips: int = 0
    trips: int = 0
    open_trips: int = 0
    root_cases: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "segments": self.segments,
            "timeouts": len(self.timeouts),
            "longest_gap_s": max(self.timeouts) if self.timeouts else 0.0,
            "stop_runs": self.stop_runs,
            "move_runs": self.move_runs,
            "places_created": self.places_created,
            "visits": self.visits,
            "extended_visits": self.extended_visits,
            "resumed_trips": self.resumed_trips,
            "trips": self.trips,
            "open_trips": self.open_trips,
            "root_cases": list(self.root_cases),
        }

    def __str__(self):
        return (
            f"{self.segments} segments ({len(self.timeouts)} timeouts), "
            f"{self.stop_runs} stops / {self.move_runs} moves, "
            f"{self.places_created} new places, {self.visits} visits, "
            f"{self.trips} trips ({self.open_trips} open)"
        )


class PathBuilder:
    """State machine turning runs into places, visits and trips.

    ``checkpoint`` and ``max_gap`` enable continuation of a graph built in an
    earlier session: if the first run starts within ``max_gap`` of the
    checkpoint it attaches to the place visited there, or to the open trip
    that ended there.
    """

    def __init__(
        self,
        graph: DetourGraph,
        clusterer: PlaceClusterer,
        max_gap: Optional[float] = None,
        checkpoint: Optional[Checkpoint] = None,
        stats: Optional[BuildStats] = None,
    ):
        self.graph = graph
        self.clusterer = clusterer
        self.max_gap = max_gap
        self.checkpoint = checkpoint
        self.stats = stats if stats is not None else BuildStats()
        self.root_case: Optional[RootCase] = None

        self._slot: Slot = Idle()
        self._anchor: Optional[tuple[int, Point]] = None  # (place_id, last stop sample)
        self._segment: Optional[int] = None
        self._first_in_segment = False
        self._last_time: Optional[float] = checkpoint.time if checkpoint else None

    @property
    def pending(self) -> Optional[MoveElement]:
        if isinstance(self._slot, PendingTrip):
            return self._slot.element
        return None

    def add_run(self, run: Run) -> Optional[PathElement]:
        """Insert one run. Returns None when nothing of it is newer than the last element."""
        self._check_order(run)
        run = self._after_last_element(run)
        if run is None:
            return None

        if run.segment != self._segment:
            self._start_segment(run)
        else:
            self._first_in_segment = False

        if run.is_stop:
            element = self._stage_stop(run)
            self._commit_stop(element)
        else:
            element = self._stage_move(run)
            self._commit_move(element)
        self._last_time = run.end
        return element

    def finish(self) -> DetourGraph:
        """Commit a trailing pending trip with an open destination."""
        self._commit_open_trip()
        return self.graph

    # -- segment handling --------------------------------------------------

    def _check_order(self, run: Run) -> None:
        for a, b in zip(run.points, run.points[1:]):
            if b.t < a.t:
                raise PathBuilderError(
                    f"{run.kind.value} run has out-of-order samples at t={b.t}",
                    (run.start, run.end),
                )
        if self._last_time is not None and run.start < self._last_time:
            raise PathBuilderError(
                f"{run.kind.value} run starting at t={run.start} does not follow "
                f"the last committed element at t={self._last_time}",
                (run.start, run.end),
            )

    def _after_last_element(self, run: Run) -> Optional[Run]:
        # Samples taken at the instant the previous element ended belong to it
        last = self._last_time
        if last is None or run.start > last:
            return run
        points = tuple(p for p in run.points if p.t > last)
        if not points:
            logger.debug("Dropping %s run at t=%.0f: no samples after the last element", run.kind.value, last)
            return None
        polyline = None
        if run.polyline is not None:
            polyline = tuple(p for p in run.polyline if p.t > last)
        return replace(run, points=points, polyline=polyline)

    def _start_segment(self, run: Run) -> None:
        self._commit_open_trip()
        self._anchor = None
        first_session_segment = self._segment is None
        self._segment = run.segment
        self._first_in_segment = True
        self.stats.segments += 1

        cp = self.checkpoint
        resumable = (
            first_session_segment
            and cp is not None
            and self.max_gap is not None
            and run.start - cp.time <= self.max_gap
        )
        if resumable and cp.place_id is not None:
            self.root_case = RootCase.CONTINUATION
            cx, cy = self.graph.place(cp.place_id).centroid
            self._anchor = (cp.place_id, Point(cx, cy, cp.time))
        elif resumable and cp.trip_id is not None:
            self.root_case = RootCase.CONTINUATION
            self._resume_trip(cp.trip_id, run)
        elif run.is_stop:
            self.root_case = RootCase.MID_STOP
        else:
            self.root_case = RootCase.MID_MOVE
        self.stats.root_cases.append(self.root_case.value)
        logger.debug("Segment %d starts as %s at t=%.0f", run.segment, self.root_case.value, run.start)

    def _resume_trip(self, trip_id: int, run: Run) -> None:
        trip = self.graph.reopen_trip(trip_id)
        previous = Run(MotionState.MOVE, trip.polyline, run.segment)
        element = MoveElement(previous, trip.source, PointsForElement(trip.polyline, trip.interval))
        self._slot = PendingTrip(element, resumed=True)
        self.stats.resumed_trips += 1
        logger.debug("Resuming open trip %d from t=%.0f", trip_id, trip.interval.enter)

    # -- staging -----------------------------------------------------------

    def _stage_stop(self, run: Run) -> StopElement:
        extend = None
        if self.root_case is RootCase.CONTINUATION and self._first_in_segment:
            extend = self.checkpoint.place_id
        assignment = self.clusterer.assign(run.centroid, run.bbox, extend=extend)
        staged = PointsForElement(run.points, TimePair(run.start, run.end))
        return StopElement(run, assignment, staged)

    def _stage_move(self, run: Run) -> MoveElement:
        shape = run.shape
        resumed = self._resumed_trip()
        if resumed is not None:
            source = resumed.source
            points = resumed.staged.points + tuple(shape)
        elif self._anchor is not None:
            source, last_stop = self._anchor
            departure = self._boundary(last_stop, run.points[0], run)
            points = (departure,) + tuple(shape)
        else:
            source = None
            points = tuple(shape)
        staged = PointsForElement(points, TimePair(points[0].t, points[-1].t))
        return MoveElement(run, source, staged)

    def _resumed_trip(self) -> Optional[MoveElement]:
        if isinstance(self._slot, PendingTrip) and self._slot.resumed and self._first_in_segment:
            return self._slot.element
        return None

    def _boundary(self, a: Point, b: Point, run: Run) -> Point:
        try:
            return midpoint(a, b)
        except OutOfRange as e:
            raise PathBuilderError(
                f"cannot place run boundary between t={a.t} and t={b.t}: {e}",
                (run.start, run.end),
            ) from e

    # -- commits -----------------------------------------------------------

    def _commit_stop(self, element: StopElement) -> None:
        run, a = element.run, element.assignment
        self.stats.stop_runs += 1
        if a.created:
            place_id = self.graph.add_place(a.centroid, a.bbox)
            if place_id != a.place_id:
                raise PathBuilderError(
                    f"clusterer allocated place {a.place_id} but graph assigned {place_id}",
                    (run.start, run.end),
                )
            self.stats.places_created += 1
        else:
            place_id = a.place_id
            self.graph.update_place(place_id, a.centroid, a.bbox)

        pending = self.pending
        arrival = None
        if pending is not None:
            arrival = self._boundary(pending.staged.points[-1], run.points[0], run)

        if a.extended:
            self.graph.extend_visit(place_id, run.end)
            self.stats.extended_visits += 1
        else:
            self.graph.append_visit(place_id, element.staged.interval)
            self.stats.visits += 1

        if pending is not None:
            polyline = pending.staged.points + (arrival,)
            self._add_trip(
                pending.source, place_id, polyline,
                TimePair(pending.staged.interval.enter, arrival.t),
            )
        self._slot = Idle()
        self._anchor = (place_id, run.points[-1])

    def _commit_move(self, element: MoveElement) -> None:
        if self.pending is not None and self._resumed_trip() is None:
            run = element.run
            raise PathBuilderError(
                "two consecutive move runs in one segment", (run.start, run.end)
            )
        self.stats.move_runs += 1
        self._slot = PendingTrip(element)

    def _commit_open_trip(self) -> None:
        pending = self.pending
        if pending is None:
            return
        self._add_trip(pending.source, None, pending.staged.points, pending.staged.interval)
        self._slot = Idle()

    def _add_trip(self, source, destination, polyline, interval) -> None:
        trip_id = self.graph.add_trip(source, destination, polyline, interval)
        self.stats.trips += 1
        if self.graph.trip(trip_id).is_open:
            self.stats.open_trips += 1
