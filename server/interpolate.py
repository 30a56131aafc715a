"""Piecewise-linear interpolation along a timed point series."""

import bisect
from typing import Sequence

from errors import OutOfRange
from geo import Point


def interpolate(series: Sequence[Point], t: float) -> Point:
    """Position at time ``t`` between the two samples that bracket it.

    ``series`` must be ordered by time. Raises ``OutOfRange`` when ``t`` lies
    outside ``[series[0].t, series[-1].t]``.
    """
    if not series:
        raise OutOfRange("cannot interpolate on an empty series")
    first, last = series[0], series[-1]
    if t < first.t or t > last.t:
        raise OutOfRange(f"t={t} outside series span [{first.t}, {last.t}]")

    times = [p.t for p in series]
    hi = bisect.bisect_left(times, t)
    if times[hi] == t:
        p = series[hi]
        return Point(p.x, p.y, t)
    a, b = series[hi - 1], series[hi]
    span = b.t - a.t
    if span <= 0:
        raise OutOfRange(f"series is not ordered around t={t}")
    u = (t - a.t) / span
    return Point(a.x + u * (b.x - a.x), a.y + u * (b.y - a.y), t)


def midpoint(a: Point, b: Point) -> Point:
    """Boundary point halfway in time between two consecutive samples."""
    return interpolate((a, b), a.t + (b.t - a.t) / 2)
