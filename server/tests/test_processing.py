"""Tests for the processing pipeline: filtering, graph building, persistence."""

import datetime
import json
import logging
from unittest.mock import patch

import pytest

from errors import PathBuilderError
from graph import Checkpoint
from models import Location, Place, Trip, Visit
from processing import (
    build_graph_from_records,
    detect_runs,
    filter_gps_errors,
    from_epoch,
    load_graph,
    process_device_locations,
    rebuild_device,
    reverse_geocode,
    to_epoch,
)
from thresholds import Thresholds, get_thresholds
from tests.gps_test_fixtures import (
    GPS_TRACE,
    HOME_SEGMENT,
    WALK_TO_COFFEE,
    COFFEE_SEGMENT,
    WALK_TO_OFFICE,
    OFFICE_SEGMENT,
    HOME_CENTER,
    COFFEE_SHOP_CENTER,
    OFFICE_CENTER,
    BAD_ACCURACY_POINT,
    BAD_SPEED_POINT,
    DUPLICATE_TIME_POINT,
    COMMUTE_XYT,
    pts,
    records_from,
)


# =====================================================================
# Time helpers
# =====================================================================

class TestEpoch:
    def test_naive_datetime_is_utc(self):
        assert to_epoch(datetime.datetime(1970, 1, 1, 0, 1)) == 60.0

    def test_round_trip(self):
        dt = datetime.datetime(2024, 1, 15, 8, 12, 30, 500000)
        assert from_epoch(to_epoch(dt)) == dt

    def test_numbers_pass_through(self):
        assert to_epoch(12) == 12.0


# =====================================================================
# GPS error filter tests
# =====================================================================

class TestFilterGPSErrors:
    def test_clean_data_passes_through(self):
        result = filter_gps_errors(HOME_SEGMENT)
        assert len(result) == len(HOME_SEGMENT)

    def test_full_trace_preserves_all_points(self):
        result = filter_gps_errors(GPS_TRACE)
        assert len(result) == len(GPS_TRACE)

    def test_filters_bad_accuracy(self):
        points = [HOME_SEGMENT[0], BAD_ACCURACY_POINT, HOME_SEGMENT[1]]
        result = filter_gps_errors(points)
        lats = [p["latitude"] for p in result]
        assert BAD_ACCURACY_POINT["latitude"] not in lats

    def test_filters_bad_speed(self):
        points = [HOME_SEGMENT[0], HOME_SEGMENT[1], BAD_SPEED_POINT, HOME_SEGMENT[2]]
        result = filter_gps_errors(points)
        speeds = [p["speed"] for p in result]
        assert 200.0 not in speeds

    def test_filters_implied_speed(self):
        # 10 km in 10 s, no reported speed
        jump = {"latitude": 37.85, "longitude": -122.4240,
                "timestamp": HOME_SEGMENT[0]["timestamp"] + datetime.timedelta(seconds=10)}
        result = filter_gps_errors([HOME_SEGMENT[0], jump, HOME_SEGMENT[1]])
        assert jump not in result
        assert len(result) == 2

    def test_filters_duplicate_timestamps(self):
        points = [HOME_SEGMENT[0], DUPLICATE_TIME_POINT]
        result = filter_gps_errors(points)
        assert len(result) == 1

    def test_min_interval_threshold(self):
        close = dict(HOME_SEGMENT[0], timestamp=HOME_SEGMENT[0]["timestamp"] + datetime.timedelta(seconds=3))
        loose = Thresholds(min_point_interval_s=5)
        assert len(filter_gps_errors([HOME_SEGMENT[0], close], loose)) == 1
        assert len(filter_gps_errors([HOME_SEGMENT[0], close])) == 2

    def test_skips_invalid_coordinates(self, caplog):
        bad = dict(HOME_SEGMENT[1], latitude=91.0)
        with caplog.at_level(logging.WARNING, logger="processing"):
            result = filter_gps_errors([HOME_SEGMENT[0], bad, HOME_SEGMENT[2]])
        assert len(result) == 2
        assert "Skipping record" in caplog.text

    def test_empty_input(self):
        assert filter_gps_errors([]) == []

    def test_sorts_by_timestamp(self):
        reversed_pts = list(reversed(HOME_SEGMENT))
        result = filter_gps_errors(reversed_pts)
        timestamps = [p["timestamp"] for p in result]
        assert timestamps == sorted(timestamps)

    def test_epoch_timestamps(self):
        result = filter_gps_errors(list(reversed(records_from(HOME_SEGMENT))))
        assert [r["timestamp"] for r in result] == sorted(r["timestamp"] for r in result)


# =====================================================================
# Graph building from records
# =====================================================================

class TestBuildGraphFromRecords:
    def test_commute_gives_three_places_two_trips(self):
        graph, stats = build_graph_from_records(GPS_TRACE)
        assert len(graph.places()) == 3
        assert len(graph.trips()) == 2
        assert [(t.source, t.destination) for t in graph.trips()] == [(0, 1), (1, 2)]
        assert stats.open_trips == 0

    def test_places_near_centers(self):
        from export import place_to_dict

        graph, _ = build_graph_from_records(GPS_TRACE)
        for place, center in zip(graph.places(), [HOME_CENTER, COFFEE_SHOP_CENTER, OFFICE_CENTER]):
            d = place_to_dict(place)
            assert abs(d["latitude"] - center["latitude"]) < 0.0005
            assert abs(d["longitude"] - center["longitude"]) < 0.0005

    def test_office_visit_is_longest(self):
        graph, _ = build_graph_from_records(GPS_TRACE)
        durations = [p.total_duration for p in graph.places()]
        assert max(durations) == durations[2]
        assert durations[2] >= 30 * 60

    def test_walking_only_gives_open_trip(self):
        graph, _ = build_graph_from_records(WALK_TO_OFFICE)
        assert graph.places() == []
        assert len(graph.trips()) == 1
        assert graph.trip(0).is_open

    def test_short_stay_is_not_a_place(self):
        # Coffee stop shortened to 4 minutes
        short = COFFEE_SEGMENT[:3]
        graph, _ = build_graph_from_records(HOME_SEGMENT + WALK_TO_COFFEE + short + WALK_TO_OFFICE + OFFICE_SEGMENT)
        assert len(graph.places()) == 2
        assert len(graph.trips()) == 1

    def test_empty_input(self):
        graph, stats = build_graph_from_records([])
        assert graph.places() == []
        assert stats.trips == 0

    def test_checkpoint_drops_older_records(self):
        home_end = to_epoch(HOME_SEGMENT[-1]["timestamp"])
        graph, _ = build_graph_from_records(HOME_SEGMENT, checkpoint=Checkpoint(None, home_end))
        assert graph.places() == []

    def test_detect_runs_simplifies_moves(self, small_thresholds):
        runs = list(detect_runs(pts(COMMUTE_XYT), small_thresholds))
        move = runs[1]
        assert [p.t for p in move.shape] == [135, 165, 195]
        assert len(move.points) == 5


# =====================================================================
# Persistence and the full device pipeline
# =====================================================================

class TestProcessDeviceLocations:
    @patch("processing.reverse_geocode", return_value="123 Test St, San Francisco, CA")
    def test_full_pipeline(self, mock_geocode, db, populated_device):
        trips = process_device_locations(db, populated_device.id)

        assert len(trips) == 2
        places = db.query(Place).filter(Place.device_id == populated_device.id).all()
        assert len(places) == 3
        assert all(p.address is not None for p in places)
        assert mock_geocode.call_count == 3

    @patch("processing.reverse_geocode", return_value=None)
    def test_pipeline_handles_geocode_failure(self, mock_geocode, db, populated_device):
        trips = process_device_locations(db, populated_device.id)
        assert len(trips) == 2
        places = db.query(Place).all()
        assert all(p.address is None for p in places)

    @patch("processing.reverse_geocode", return_value="Test Address")
    def test_persisted_rows(self, mock_geocode, db, populated_device):
        process_device_locations(db, populated_device.id)

        places = db.query(Place).order_by(Place.place_index).all()
        assert [p.visit_count for p in places] == [1, 1, 1]
        assert db.query(Visit).count() == 3

        trips = db.query(Trip).order_by(Trip.trip_index).all()
        assert [(t.source_index, t.destination_index) for t in trips] == [(0, 1), (1, 2)]
        polyline = json.loads(trips[0].polyline)
        assert polyline[0][2] == to_epoch(trips[0].departure)
        assert trips[0].departure > places[0].visits[0].departure
        assert trips[0].arrival < places[1].visits[0].arrival

    @patch("processing.reverse_geocode", return_value="Test Address")
    def test_load_graph_round_trip(self, mock_geocode, db, populated_device):
        process_device_locations(db, populated_device.id)
        expected, _ = build_graph_from_records(GPS_TRACE, get_thresholds(db))

        loaded = load_graph(db, populated_device.id)
        assert [p.visits for p in loaded.places()] == [p.visits for p in expected.places()]
        assert [t.interval for t in loaded.trips()] == [t.interval for t in expected.trips()]
        assert [t.polyline for t in loaded.trips()] == [t.polyline for t in expected.trips()]

    @patch("processing.reverse_geocode", return_value="Test Address")
    def test_no_new_data(self, mock_geocode, db, populated_device):
        assert len(process_device_locations(db, populated_device.id)) == 2
        assert process_device_locations(db, populated_device.id) == []

    @patch("processing.reverse_geocode", return_value="Test Address")
    def test_incremental_batches(self, mock_geocode, db, test_device, add_locations):
        add_locations(test_device, HOME_SEGMENT + WALK_TO_COFFEE + COFFEE_SEGMENT)
        first = process_device_locations(db, test_device.id)
        assert [(t.source_index, t.destination_index) for t in first] == [(0, 1)]

        add_locations(test_device, WALK_TO_OFFICE + OFFICE_SEGMENT)
        second = process_device_locations(db, test_device.id)
        assert [(t.source_index, t.destination_index) for t in second] == [(1, 2)]

        assert db.query(Place).count() == 3
        coffee = db.query(Place).filter(Place.place_index == 1).one()
        assert coffee.visit_count == 1
        assert second[0].departure > coffee.visits[0].departure

    @patch("processing.reverse_geocode", return_value="Test Address")
    def test_trip_split_across_batches(self, mock_geocode, db, test_device, add_locations):
        add_locations(test_device, HOME_SEGMENT + WALK_TO_COFFEE[:5])
        first = process_device_locations(db, test_device.id)
        assert [(t.source_index, t.destination_index) for t in first] == [(0, None)]
        departure = first[0].departure

        add_locations(test_device, WALK_TO_COFFEE[5:] + COFFEE_SEGMENT)
        second = process_device_locations(db, test_device.id)
        assert [(t.source_index, t.destination_index) for t in second] == [(0, 1)]

        trips = db.query(Trip).filter(Trip.device_id == test_device.id).all()
        assert [(t.trip_index, t.source_index, t.destination_index) for t in trips] == [(0, 0, 1)]
        assert trips[0].departure == departure
        assert db.query(Place).count() == 2

        times = [p[2] for p in json.loads(trips[0].polyline)]
        assert times == sorted(set(times))

        # Same trip as when the walk arrives in one upload
        expected, _ = build_graph_from_records(
            HOME_SEGMENT + WALK_TO_COFFEE + COFFEE_SEGMENT, get_thresholds(db)
        )
        loaded = load_graph(db, test_device.id)
        assert [t.interval for t in loaded.trips()] == [t.interval for t in expected.trips()]

    @patch("processing.reverse_geocode", return_value="Test Address")
    def test_build_error_leaves_graph_untouched(self, mock_geocode, db, populated_device):
        with patch("processing.build_graph_from_records", side_effect=PathBuilderError("boom", (0.0, 1.0))):
            with pytest.raises(PathBuilderError):
                process_device_locations(db, populated_device.id)
        assert db.query(Place).count() == 0
        assert db.query(Location).count() == len(GPS_TRACE)

    def test_empty_device(self, db, test_device):
        assert process_device_locations(db, test_device.id) == []

    @patch("processing.reverse_geocode", return_value="Test Address")
    def test_rebuild_device(self, mock_geocode, db, populated_device):
        process_device_locations(db, populated_device.id)
        counts = rebuild_device(db, populated_device.id)
        assert counts == {"places": 3, "trips": 2}
        assert db.query(Trip).count() == 2
        assert db.query(Visit).count() == 3

    @patch("processing.reverse_geocode", return_value="Test Address")
    def test_thresholds_from_config_table(self, mock_geocode, db, populated_device):
        from models import Config

        row = db.query(Config).filter(Config.key == "cluster_radius_m").one()
        row.value = "5000"
        db.commit()
        process_device_locations(db, populated_device.id)
        # Everything within 5 km collapses into one place
        assert db.query(Place).count() == 1


# =====================================================================
# Reverse geocoding
# =====================================================================

class TestReverseGeocode:
    @patch("processing.time.sleep")
    @patch("processing.requests.get")
    def test_returns_display_name(self, mock_get, mock_sleep):
        mock_get.return_value.status_code = 200
        mock_get.return_value.json.return_value = {"display_name": "Ferry Building, San Francisco"}
        assert reverse_geocode(37.7956, -122.3935) == "Ferry Building, San Francisco"

    @patch("processing.time.sleep")
    @patch("processing.requests.get")
    def test_http_error_returns_none(self, mock_get, mock_sleep):
        mock_get.return_value.status_code = 503
        assert reverse_geocode(37.7956, -122.3935) is None

    @patch("processing.time.sleep")
    @patch("processing.requests.get")
    def test_network_failure_returns_none(self, mock_get, mock_sleep):
        import requests

        mock_get.side_effect = requests.ConnectionError("offline")
        assert reverse_geocode(37.7956, -122.3935) is None
