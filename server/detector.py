"""Streaming motion/stop classification.

The detector walks a projected trace point by point and cuts it into runs:
maximal stretches where the subject was either stationary (STOP) or
travelling (MOVE).

- A STOP is a set of points that stays within ``stop_radius`` of its running
  centroid.
- A candidate transition only becomes a run boundary once the new state has
  persisted for the TimeGuard minimum; shorter excursions fold back into the
  current run.
- A gap longer than ``max_gap`` cuts the trace into a new segment no matter
  what the TimeGuard says.
- Samples sharing the timestamp of the previous sample are dropped, so
  consecutive runs never share an instant.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from bbox import BoundingBox
from geo import Point, distance
from guards import MotionState, TimeGuard, TimeoutHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Run:
    """A sealed, non-empty sequence of same-state points.

    ``polyline`` is filled in by the trajectory filter for MOVE runs.
    """

    kind: MotionState
    points: tuple[Point, ...]
    segment: int = 0
    polyline: Optional[tuple[Point, ...]] = None

    def __post_init__(self):
        if not self.points:
            raise ValueError("a run needs at least one point")

    @property
    def is_stop(self) -> bool:
        return self.kind is MotionState.STOP

    @property
    def start(self) -> float:
        return self.points[0].t

    @property
    def end(self) -> float:
        return self.points[-1].t

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def bbox(self) -> BoundingBox:
        return BoundingBox.from_points(self.points)

    @property
    def centroid(self) -> tuple[float, float]:
        n = len(self.points)
        return (
            sum(p.x for p in self.points) / n,
            sum(p.y for p in self.points) / n,
        )

    @property
    def shape(self) -> tuple[Point, ...]:
        """Simplified polyline when available, raw points otherwise."""
        return self.polyline if self.polyline is not None else self.points


@dataclass
class _Centroid:
    x: float = 0.0
    y: float = 0.0
    n: int = 0

    def add(self, p: Point) -> None:
        # Running mean
        self.n += 1
        self.x += (p.x - self.x) / self.n
        self.y += (p.y - self.y) / self.n

    def reset(self, points: Iterable[Point]) -> None:
        self.x, self.y, self.n = 0.0, 0.0, 0
        for p in points:
            self.add(p)

    def distance_to(self, p: Point) -> float:
        return distance(Point(self.x, self.y, p.t), p)


@dataclass
class DetectorStats:
    segments: int = 0
    timeouts: list[float] = field(default_factory=list)
    relabelled_starts: int = 0
    duplicate_times: int = 0


class MotionStopDetector:
    """Incremental STOP/MOVE classifier; see the module docstring.

    Use ``feed`` for each point and ``flush`` at the end of the stream, or
    ``runs`` to do both over an iterable.
    """

    def __init__(self, stop_radius: float, time_guard: TimeGuard, timeout: TimeoutHandler):
        if stop_radius <= 0:
            raise ValueError("stop_radius must be positive")
        self.stop_radius = stop_radius
        self.time_guard = time_guard
        self.timeout = timeout
        self.stats = DetectorStats()

        self.state: Optional[MotionState] = None
        self._buffer: list[Point] = []
        self._pending: list[Point] = []
        self._centroid = _Centroid()
        self._initial = True
        self._last: Optional[Point] = None
        self._segment = -1

    def runs(self, points: Iterable[Point]) -> Iterator[Run]:
        for point in points:
            yield from self.feed(point)
        yield from self.flush()

    def feed(self, point: Point) -> list[Run]:
        if self._last is not None and point.t == self._last.t:
            # One fix per instant; the first one wins
            self.stats.duplicate_times += 1
            return []

        sealed: list[Run] = []
        if self._last is not None and self.timeout.is_break(self._last.t, point.t):
            gap = point.t - self._last.t
            logger.debug("Timeout: %.0fs gap at t=%.0f, breaking trace", gap, point.t)
            self.stats.timeouts.append(gap)
            sealed.extend(self.flush())
        self._last = point

        if self.state is None:
            self._start_segment(point)
        elif self.state is MotionState.STOP:
            sealed.extend(self._feed_stop(point))
        else:
            sealed.extend(self._feed_move(point))
        return sealed

    def flush(self) -> list[Run]:
        """Seal whatever is buffered, ignoring the TimeGuard."""
        if self.state is None:
            return []
        points = self._buffer + self._pending
        run = Run(self.state, tuple(points), self._segment)
        self.state = None
        self._buffer, self._pending = [], []
        return [run]

    # -- internals ---------------------------------------------------------

    def _start_segment(self, point: Point) -> None:
        # The first point is its own reference, so it is always stationary.
        self._segment += 1
        self.stats.segments += 1
        self.state = MotionState.STOP
        self._buffer = [point]
        self._pending = []
        self._centroid.reset(self._buffer)
        self._initial = True

    def _feed_stop(self, point: Point) -> list[Run]:
        if self._centroid.distance_to(point) <= self.stop_radius:
            if self._pending:
                # Excursion too short to count as movement
                for p in self._pending:
                    self._buffer.append(p)
                    self._centroid.add(p)
                self._pending = []
            self._buffer.append(point)
            self._centroid.add(point)
            return []

        self._pending.append(point)
        persisted = point.t - self._pending[0].t
        if not self.time_guard.accepts(MotionState.MOVE, persisted):
            return []

        sealed = []
        stop_duration = self._buffer[-1].t - self._buffer[0].t
        if self._initial and not self.time_guard.accepts(MotionState.STOP, stop_duration):
            # Trace started while already moving
            self.stats.relabelled_starts += 1
            self._buffer = self._buffer + self._pending
        else:
            sealed.append(Run(MotionState.STOP, tuple(self._buffer), self._segment))
            self._buffer = self._pending
        self._pending = []
        self._initial = False
        self.state = MotionState.MOVE
        return sealed

    def _feed_move(self, point: Point) -> list[Run]:
        if not self._pending:
            self._pending = [point]
        elif distance(self._pending[0], point) <= self.stop_radius:
            self._pending.append(point)
        else:
            self._buffer.extend(self._pending)
            self._pending = [point]

        persisted = self._pending[-1].t - self._pending[0].t
        if not self.time_guard.accepts(MotionState.STOP, persisted):
            return []

        sealed = []
        if self._buffer:
            sealed.append(Run(MotionState.MOVE, tuple(self._buffer), self._segment))
        self._buffer = self._pending
        self._pending = []
        self._centroid.reset(self._buffer)
        self._initial = False
        self.state = MotionState.STOP
        return sealed


def detect_runs(
    points: Iterable[Point],
    stop_radius: float,
    time_guard: TimeGuard,
    timeout: TimeoutHandler,
) -> Iterator[Run]:
    """Convenience generator over a fresh detector."""
    return MotionStopDetector(stop_radius, time_guard, timeout).runs(points)
