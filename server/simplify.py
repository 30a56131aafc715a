"""Trajectory simplification (Douglas-Peucker) for MOVE runs.

The timestamp rides along as the Z coordinate of a shapely ``LineString``;
GEOS simplifies in the plane and keeps Z of the retained vertices untouched.
"""

import math
from typing import Sequence

from shapely.geometry import LineString

from geo import Point


def perpendicular_distance(p: Point, a: Point, b: Point) -> float:
    """Distance from ``p`` to the segment ``a``-``b`` (not the infinite line)."""
    dx, dy = b.x - a.x, b.y - a.y
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq == 0.0:
        return math.hypot(p.x - a.x, p.y - a.y)
    u = ((p.x - a.x) * dx + (p.y - a.y) * dy) / seg_len_sq
    u = max(0.0, min(1.0, u))
    return math.hypot(p.x - (a.x + u * dx), p.y - (a.y + u * dy))


def douglas_peucker(points: Sequence[Point], tolerance: float) -> list[Point]:
    """Drop points whose removal moves the polyline by at most ``tolerance`` meters.

    The first and last points are always kept and retained points keep their
    original order (and therefore their timestamps).
    """
    if tolerance < 0:
        raise ValueError("tolerance must be non-negative")
    if len(points) <= 2:
        return list(points)

    line = LineString([(p.x, p.y, p.t) for p in points])
    simplified = line.simplify(tolerance, preserve_topology=False)
    coords = list(simplified.coords)
    if len(coords) < 2:
        return [points[0], points[-1]]
    return [Point(x, y, t) for x, y, t in coords]


def max_deviation(original: Sequence[Point], simplified: Sequence[Point]) -> float:
    """Largest distance from a dropped point to the simplified segment spanning it.

    Both sequences must share endpoints and ``simplified`` must be a
    subsequence of ``original`` (as produced by ``douglas_peucker``).
    """
    if len(simplified) < 2:
        return 0.0
    worst = 0.0
    seg = 0
    for p in original:
        while seg < len(simplified) - 2 and p.t > simplified[seg + 1].t:
            seg += 1
        worst = max(worst, perpendicular_distance(p, simplified[seg], simplified[seg + 1]))
    return worst
