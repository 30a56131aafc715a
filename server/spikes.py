"""Convex-hull spike removal for projected traces.

A window of the most recent samples is kept. Whenever a sample enters, the
window samples that are vertices of its convex hull are taken in time order;
a hull sample ``q`` between hull neighbours ``p`` and ``r`` is a spike when it
lies farther from either neighbour than ``p`` lies from ``r``. Spikes leave
the window at once; the oldest sample is released once the window is full.
"""

import logging
from typing import Iterable, Iterator

from shapely.geometry import MultiPoint

from geo import Point, distance

logger = logging.getLogger(__name__)


def hull_indices(window: list[Point]) -> list[int]:
    """Indices of the window samples lying on its convex hull, in time order."""
    hull = MultiPoint([(p.x, p.y) for p in window]).convex_hull
    if hull.geom_type == "Polygon":
        vertices = set(hull.exterior.coords)
    else:
        # Collinear or coincident samples: a LineString or a Point
        vertices = set(hull.coords)
    return [i for i, p in enumerate(window) if (p.x, p.y) in vertices]


def spike_indices(window: list[Point]) -> set[int]:
    hull = hull_indices(window)
    spikes = set()
    for i, j, k in zip(hull, hull[1:], hull[2:]):
        p, q, r = window[i], window[j], window[k]
        span = distance(p, r)
        if distance(p, q) > span or distance(q, r) > span:
            spikes.add(j)
    return spikes


def remove_spikes(points: Iterable[Point], window: int) -> Iterator[Point]:
    """Yield ``points`` without spikes. A window below 3 samples passes everything through."""
    if window < 3:
        yield from points
        return

    buffer: list[Point] = []
    for point in points:
        buffer.append(point)
        spikes = spike_indices(buffer)
        if spikes:
            for i in sorted(spikes):
                logger.debug("Dropping spike at t=%.0f", buffer[i].t)
            buffer = [p for i, p in enumerate(buffer) if i not in spikes]
        if len(buffer) >= window:
            yield buffer.pop(0)
    yield from buffer
