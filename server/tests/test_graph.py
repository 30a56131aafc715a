"""Tests for the Detour graph container and its invariants."""

import pytest

from bbox import BoundingBox
from errors import GraphInvariantViolation
from graph import Checkpoint, DetourGraph, TimePair
from tests.gps_test_fixtures import pts

BOX = BoundingBox(-5, -5, 5, 5)


def polyline(t0, t1):
    return tuple(pts([(0, 0, t0), (10, 10, t1)]))


@pytest.fixture
def two_places():
    graph = DetourGraph()
    a = graph.add_place((0, 0), BOX)
    b = graph.add_place((100, 0), BOX)
    graph.append_visit(a, TimePair(0, 100))
    graph.append_visit(b, TimePair(200, 300))
    return graph, a, b


class TestTimePair:
    def test_duration(self):
        assert TimePair(10, 25).duration == 15

    def test_instant_is_allowed(self):
        assert TimePair(5, 5).duration == 0

    def test_exit_before_enter(self):
        with pytest.raises(GraphInvariantViolation):
            TimePair(10, 9)

    def test_overlaps_is_closed(self):
        assert TimePair(0, 10).overlaps(TimePair(10, 20))
        assert not TimePair(0, 10).overlaps(TimePair(10.5, 20))


class TestPlaces:
    def test_ids_are_dense(self):
        graph = DetourGraph()
        assert [graph.add_place((i, 0), BOX) for i in range(3)] == [0, 1, 2]

    def test_unknown_place(self):
        with pytest.raises(KeyError):
            DetourGraph().place(0)

    def test_visits_must_be_increasing(self, two_places):
        graph, a, _ = two_places
        with pytest.raises(GraphInvariantViolation):
            graph.append_visit(a, TimePair(50, 150))
        with pytest.raises(GraphInvariantViolation):
            graph.append_visit(a, TimePair(100, 150))

    def test_total_duration(self, two_places):
        graph, a, _ = two_places
        graph.append_visit(a, TimePair(400, 450))
        assert graph.place(a).total_duration == 150

    def test_extend_visit(self, two_places):
        graph, a, _ = two_places
        graph.extend_visit(a, 150)
        assert graph.place(a).visits == [TimePair(0, 150)]

    def test_extend_visit_cannot_shrink(self, two_places):
        graph, a, _ = two_places
        with pytest.raises(GraphInvariantViolation):
            graph.extend_visit(a, 50)

    def test_extend_visit_without_visits(self):
        graph = DetourGraph()
        pid = graph.add_place((0, 0), BOX)
        with pytest.raises(GraphInvariantViolation):
            graph.extend_visit(pid, 10)

    def test_mutating_unknown_place(self):
        with pytest.raises(GraphInvariantViolation):
            DetourGraph().append_visit(3, TimePair(0, 1))


class TestTrips:
    def test_add_trip_between_visits(self, two_places):
        graph, a, b = two_places
        tid = graph.add_trip(a, b, polyline(110, 190), TimePair(110, 190))
        trip = graph.trip(tid)
        assert (trip.source, trip.destination) == (a, b)
        assert not trip.is_open
        assert list(graph.trips_from(a)) == [trip]
        assert list(graph.trips_to(b)) == [trip]

    def test_trip_must_start_after_source_exit(self, two_places):
        graph, a, b = two_places
        with pytest.raises(GraphInvariantViolation):
            graph.add_trip(a, b, polyline(100, 190), TimePair(100, 190))

    def test_trip_must_end_before_destination_enter(self, two_places):
        graph, a, b = two_places
        with pytest.raises(GraphInvariantViolation):
            graph.add_trip(a, b, polyline(110, 200), TimePair(110, 200))

    def test_trip_without_later_destination_visit(self, two_places):
        graph, a, b = two_places
        with pytest.raises(GraphInvariantViolation):
            graph.add_trip(b, a, polyline(310, 400), TimePair(310, 400))

    def test_open_endpoints(self, two_places):
        graph, a, b = two_places
        graph.add_trip(None, a, polyline(-50, -10), TimePair(-50, -10))
        graph.add_trip(b, None, polyline(310, 400), TimePair(310, 400))
        assert [t.is_open for t in graph.trips()] == [True, True]

    def test_trips_in_time_order(self, two_places):
        graph, a, b = two_places
        graph.add_trip(b, None, polyline(310, 400), TimePair(310, 400))
        with pytest.raises(GraphInvariantViolation):
            graph.add_trip(a, b, polyline(110, 190), TimePair(110, 190))

    def test_empty_polyline(self, two_places):
        graph, a, b = two_places
        with pytest.raises(GraphInvariantViolation):
            graph.add_trip(a, b, (), TimePair(110, 190))

    def test_visit_cannot_overlap_trip(self, two_places):
        graph, a, b = two_places
        graph.add_trip(b, None, polyline(310, 400), TimePair(310, 400))
        with pytest.raises(GraphInvariantViolation):
            graph.extend_visit(b, 350)

    def test_unknown_trip(self):
        with pytest.raises(KeyError):
            DetourGraph().trip(0)


class TestCheckpoint:
    def test_empty_graph(self):
        assert DetourGraph().checkpoint() is None

    def test_latest_visit(self, two_places):
        graph, _, b = two_places
        assert graph.checkpoint() == Checkpoint(b, 300)

    def test_open_trip_after_last_visit(self, two_places):
        graph, _, b = two_places
        graph.add_trip(b, None, polyline(310, 400), TimePair(310, 400))
        assert graph.checkpoint() == Checkpoint(None, 400, 0)

    def test_closed_trip_does_not_hide_destination_visit(self, two_places):
        graph, a, b = two_places
        graph.add_trip(a, b, polyline(110, 190), TimePair(110, 190))
        assert graph.checkpoint() == Checkpoint(b, 300)


class TestReopenTrip:
    def test_reopen_last_open_trip(self, two_places):
        graph, _, b = two_places
        tid = graph.add_trip(b, None, polyline(310, 400), TimePair(310, 400))
        trip = graph.reopen_trip(tid)
        assert trip.interval == TimePair(310, 400)
        assert graph.trips() == []
        # Re-added under the same id
        assert graph.add_trip(b, None, polyline(310, 500), TimePair(310, 500)) == tid

    def test_closed_trip_cannot_be_reopened(self, two_places):
        graph, a, b = two_places
        tid = graph.add_trip(a, b, polyline(110, 190), TimePair(110, 190))
        with pytest.raises(GraphInvariantViolation):
            graph.reopen_trip(tid)
        assert len(graph.trips()) == 1

    def test_only_latest_trip(self, two_places):
        graph, a, b = two_places
        first = graph.add_trip(None, a, polyline(-50, -10), TimePair(-50, -10))
        graph.add_trip(b, None, polyline(310, 400), TimePair(310, 400))
        with pytest.raises(GraphInvariantViolation):
            graph.reopen_trip(first)

    def test_unknown_trip(self):
        with pytest.raises(KeyError):
            DetourGraph().reopen_trip(0)
