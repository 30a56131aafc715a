"""Route grouping: repeated trips between the same two places.

Closed trips are grouped by ``(source, destination)``. Inside a group they
are clustered by single linkage on the Hausdorff distance of their polylines:
two clusters join while some pair of trips across them is closer than
``max_distance``. A route is one such cluster, represented by its medoid trip
(smallest summed distance to the other members, lowest trip id on ties).

Grouping is a read-only view over the graph; trips and their intervals are
never merged or rewritten.
"""

from collections import defaultdict
from dataclasses import dataclass

from shapely.geometry import LineString

from graph import DetourGraph, Trip


@dataclass(frozen=True)
class Route:
    source: int
    destination: int
    trip_ids: tuple[int, ...]
    representative: int

    @property
    def count(self) -> int:
        return len(self.trip_ids)


def trip_groups(graph: DetourGraph) -> dict[tuple[int, int], list[Trip]]:
    """Closed trips keyed by (source, destination), each list in time order."""
    groups: dict[tuple[int, int], list[Trip]] = defaultdict(list)
    for trip in graph.trips():
        if not trip.is_open:
            groups[(trip.source, trip.destination)].append(trip)
    return dict(groups)


def _line(trip: Trip) -> LineString:
    coords = [(p.x, p.y) for p in trip.polyline]
    if len(coords) == 1:
        coords = coords * 2
    return LineString(coords)


def _single_linkage(dist: list[list[float]], threshold: float) -> list[list[int]]:
    parent = list(range(len(dist)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(dist)):
        for j in range(i + 1, len(dist)):
            if dist[i][j] < threshold:
                parent[find(j)] = find(i)

    clusters: dict[int, list[int]] = defaultdict(list)
    for i in range(len(dist)):
        clusters[find(i)].append(i)
    return sorted(clusters.values())


def group_routes(graph: DetourGraph, max_distance: float) -> list[Route]:
    """All routes of the graph, ordered by place pair and then by first trip."""
    if max_distance <= 0:
        raise ValueError("max_distance must be positive")

    routes = []
    for (source, destination), trips in sorted(trip_groups(graph).items()):
        lines = [_line(t) for t in trips]
        n = len(trips)
        dist = [[0.0] * n for _ in range(n)]
        for i in range(n):
            for j in range(i + 1, n):
                dist[i][j] = dist[j][i] = lines[i].hausdorff_distance(lines[j])

        for members in _single_linkage(dist, max_distance):
            medoid = min(members, key=lambda i: (sum(dist[i][j] for j in members), i))
            routes.append(Route(
                source,
                destination,
                tuple(trips[i].trip_id for i in members),
                trips[medoid].trip_id,
            ))
    return routes
