"""Online clustering of stop centroids into persistent places.

Each STOP run is matched against the places seen so far: the nearest place
whose centroid lies within ``radius`` wins (ties go to the earliest place).
Matched places move their centroid as a running mean over visits and grow
their bounding box; unmatched stops open a new place. Committed visits are
never reassigned, so a decision costs one pass over the (small) place list.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from bbox import BoundingBox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignment:
    place_id: int
    created: bool
    centroid: tuple[float, float]
    bbox: BoundingBox
    extended: bool = False


@dataclass
class _Cluster:
    centroid: tuple[float, float]
    bbox: BoundingBox
    weight: int


class PlaceClusterer:
    def __init__(self, radius: float):
        if radius <= 0:
            raise ValueError("cluster radius must be positive")
        self.radius = radius
        self._clusters: list[_Cluster] = []

    @classmethod
    def from_graph(cls, graph, radius: float) -> "PlaceClusterer":
        """Seed with the places of an existing graph (ids must be dense, 0..n-1)."""
        clusterer = cls(radius)
        for place in graph.places():
            if place.place_id != len(clusterer._clusters):
                raise ValueError(f"place ids are not dense at {place.place_id}")
            clusterer._clusters.append(
                _Cluster(place.centroid, place.bbox, max(1, len(place.visits)))
            )
        return clusterer

    def __len__(self) -> int:
        return len(self._clusters)

    def candidates(self, centroid: tuple[float, float]) -> list[tuple[float, int]]:
        """(distance, place_id) of every place within the radius, nearest first."""
        x, y = centroid
        found = []
        for place_id, cluster in enumerate(self._clusters):
            if not cluster.bbox.expand(self.radius).contains(x, y):
                continue
            d = math.hypot(cluster.centroid[0] - x, cluster.centroid[1] - y)
            if d <= self.radius:
                found.append((d, place_id))
        found.sort()
        return found

    def assign(
        self,
        centroid: tuple[float, float],
        bbox: BoundingBox,
        extend: Optional[int] = None,
    ) -> Assignment:
        """Match a stop to a place, or open a new one.

        When the nearest place is ``extend`` the stop continues that place's
        latest visit: only the bounding box grows, the visit weight and
        centroid stay as they are.
        """
        matches = self.candidates(centroid)
        if not matches:
            cluster = _Cluster(centroid, bbox, 1)
            self._clusters.append(cluster)
            place_id = len(self._clusters) - 1
            logger.debug("New place %d at (%.1f, %.1f)", place_id, *centroid)
            return Assignment(place_id, True, cluster.centroid, cluster.bbox)

        _, place_id = matches[0]
        cluster = self._clusters[place_id]
        if place_id == extend:
            cluster.bbox = cluster.bbox.union(bbox)
            return Assignment(place_id, False, cluster.centroid, cluster.bbox, extended=True)

        cluster.weight += 1
        cx, cy = cluster.centroid
        cluster.centroid = (
            cx + (centroid[0] - cx) / cluster.weight,
            cy + (centroid[1] - cy) / cluster.weight,
        )
        cluster.bbox = cluster.bbox.union(bbox)
        return Assignment(place_id, False, cluster.centroid, cluster.bbox)
