"""Tests for EventNormalizer and GTFS-RT feed splitting."""

import unittest
from datetime import datetime
import sys
from pathlib import Path

import pytz
from google.transit import gtfs_realtime_pb2

# Add src to path so we can import commuteguard
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from commuteguard.models import ScheduleRelationship
from commuteguard.normalizer import (
    EventNormalizer,
    FeedStopTimeEvent,
    FeedVehicleEvent,
    parse_timestamp,
    split_feed,
)
from gtfs_samples import load_sample_static_data

TZ = pytz.timezone("America/New_York")

# Scheduled arrival of RED-1 at 70075 (Park Street) on 2024-05-08
SCHEDULED = TZ.localize(datetime(2024, 5, 8, 12, 0)).timestamp()


def build_feed(stop_updates=(), vehicles=(), header_timestamp=None):
    """
    Build a FeedMessage.

    stop_updates: (trip_id, route_id, stop_id, delay, time, extra) tuples where
    extra is a dict of optional fields (direction_id, canceled, skipped).
    vehicles: (trip_id, route_id, stop_id, status, timestamp) tuples.
    """
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    if header_timestamp is not None:
        feed.header.timestamp = int(header_timestamp)

    for i, (trip_id, route_id, stop_id, delay, event_time, extra) in enumerate(stop_updates):
        entity = feed.entity.add()
        entity.id = f"tu-{i}"
        trip_update = entity.trip_update
        trip_update.trip.trip_id = trip_id
        if route_id:
            trip_update.trip.route_id = route_id
        if "direction_id" in extra:
            trip_update.trip.direction_id = extra["direction_id"]
        if extra.get("canceled"):
            trip_update.trip.schedule_relationship = gtfs_realtime_pb2.TripDescriptor.CANCELED
        trip_update.vehicle.id = f"V{i}"

        stop_time = trip_update.stop_time_update.add()
        stop_time.stop_id = stop_id
        if extra.get("skipped"):
            stop_time.schedule_relationship = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate.SKIPPED
        if delay is not None:
            stop_time.arrival.delay = delay
        if event_time is not None:
            stop_time.arrival.time = int(event_time)

    for i, (trip_id, route_id, stop_id, status, timestamp) in enumerate(vehicles):
        entity = feed.entity.add()
        entity.id = f"vp-{i}"
        vehicle = entity.vehicle
        vehicle.trip.trip_id = trip_id
        vehicle.trip.route_id = route_id
        vehicle.stop_id = stop_id
        vehicle.current_status = status
        vehicle.timestamp = int(timestamp)
        vehicle.vehicle.id = f"V{i}"

    return feed


class TestSplitFeed(unittest.TestCase):
    """Test breaking feeds into single events."""

    def test_split_serialized_feed(self):
        """Test one event per stop time update and per vehicle."""
        feed = build_feed(
            stop_updates=[("RED-1", "Red", "70075", 60, SCHEDULED + 60, {})],
            vehicles=[("RED-2", "Red", "70076", gtfs_realtime_pb2.VehiclePosition.STOPPED_AT, SCHEDULED)],
            header_timestamp=SCHEDULED,
        )
        events = split_feed(feed.SerializeToString())

        self.assertEqual(len(events), 2)
        self.assertIsInstance(events[0], FeedStopTimeEvent)
        self.assertIsInstance(events[1], FeedVehicleEvent)
        self.assertEqual(events[0].header_timestamp, int(SCHEDULED))


class TestParseTimestamp(unittest.TestCase):
    """Test timestamp parsing."""

    def test_formats(self):
        """Test epoch, numeric strings and ISO 8601."""
        self.assertEqual(parse_timestamp(1715184000), 1715184000.0)
        self.assertEqual(parse_timestamp("1715184000"), 1715184000.0)
        self.assertEqual(parse_timestamp("2024-05-08T16:00:00Z"), SCHEDULED)
        self.assertEqual(parse_timestamp("2024-05-08T12:00:00-04:00"), SCHEDULED)
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(""))

    def test_invalid(self):
        """Test error handling for unparseable values."""
        with self.assertRaises(ValueError):
            parse_timestamp("yesterday")


class TestEventNormalizer(unittest.TestCase):
    """Test normalization of each supported message type."""

    def setUp(self):
        """Set up test fixtures."""
        self.normalizer = EventNormalizer(TZ)
        self.static_normalizer = EventNormalizer(TZ, static_data=load_sample_static_data())

    def test_trip_update_with_delay(self):
        """Test that an explicit delay is taken as-is."""
        feed = build_feed(stop_updates=[("RED-1", "Red", "70075", 90, SCHEDULED + 90, {"direction_id": 1})])
        observations = self.normalizer.normalize_feed(feed)

        self.assertEqual(len(observations), 1)
        obs = observations[0]
        self.assertEqual(obs.route_id, "Red")
        self.assertEqual(obs.stop_id, "70075")
        self.assertEqual(obs.delay_seconds, 90)
        self.assertEqual(obs.observed_at, SCHEDULED + 90)
        self.assertEqual(obs.direction_id, 1)
        self.assertEqual(obs.trip_id, "RED-1")
        self.assertEqual(obs.vehicle_id, "V0")
        self.assertEqual(obs.source, "gtfs-rt")
        self.assertEqual(obs.schedule_relationship, ScheduleRelationship.SCHEDULED)

    def test_delay_inferred_from_schedule(self):
        """Test delay inference and parent station collapse with static data."""
        feed = build_feed(stop_updates=[("RED-1", None, "70075", None, SCHEDULED + 150, {})])
        obs = self.static_normalizer.normalize_feed(feed)[0]

        self.assertEqual(obs.route_id, "Red")
        self.assertEqual(obs.stop_id, "place-pktrm")
        self.assertEqual(obs.delay_seconds, 150)
        self.assertEqual(obs.direction_id, 1)

    def test_delay_after_midnight_uses_previous_service_day(self):
        """Test that a 25:30 trip arriving early Thursday is anchored to Wednesday's service."""
        arrival = TZ.localize(datetime(2024, 5, 9, 1, 31)).isoformat()
        resource = {
            "attributes": {"arrival_time": arrival, "direction_id": 0},
            "relationships": {
                "route": {"data": {"id": "Red"}},
                "stop": {"data": {"id": "70076"}},
                "trip": {"data": {"id": "RED-2"}},
            },
        }
        obs = self.static_normalizer.normalize(resource)
        self.assertEqual(obs.delay_seconds, 60)

        feed = build_feed(stop_updates=[("RED-2", "Red", "70076", None, parse_timestamp(arrival) + 30, {})])
        self.assertEqual(self.static_normalizer.normalize_feed(feed)[0].delay_seconds, 90)

    def test_non_finite_or_out_of_range_time_is_malformed(self):
        """Test that event times that cannot be bucketed are rejected."""
        with self.assertLogs("commuteguard.normalizer", level="WARNING"):
            for timestamp in ("nan", "inf", 1e20):
                self.assertIsNone(self.normalizer.normalize(
                    {"route_id": "Red", "stop_id": "place-pktrm", "timestamp": timestamp, "delay_seconds": 30}
                ))
        self.assertEqual(self.normalizer.counts["malformed"], 3)
        self.assertEqual(self.normalizer.counts["normalized"], 0)

    def test_normalize_entity(self):
        """Test that one trip update entity yields one observation per stop."""
        feed = build_feed(stop_updates=[("RED-1", "Red", "70075", 30, SCHEDULED + 30, {})])
        trip_update = feed.entity[0].trip_update
        second = trip_update.stop_time_update.add()
        second.stop_id = "70068"
        second.arrival.delay = 45
        second.arrival.time = int(SCHEDULED + 765)

        observations = self.normalizer.normalize_entity(feed.entity[0])
        self.assertEqual([o.stop_id for o in observations], ["70075", "70068"])
        self.assertEqual([o.delay_seconds for o in observations], [30, 45])

    def test_no_delay_without_schedule(self):
        """Test that a bare event time yields a headway-only observation."""
        feed = build_feed(stop_updates=[("RED-1", "Red", "70075", None, SCHEDULED, {})])
        obs = self.normalizer.normalize_feed(feed)[0]

        self.assertIsNone(obs.delay_seconds)
        self.assertEqual(obs.schedule_relationship, ScheduleRelationship.NO_DATA)

    def test_observed_at_falls_back_to_header(self):
        """Test that delay-only updates take the feed header time."""
        feed = build_feed(
            stop_updates=[("RED-1", "Red", "70075", 45, None, {})],
            header_timestamp=SCHEDULED + 10,
        )
        obs = self.normalizer.normalize_feed(feed)[0]
        self.assertEqual(obs.observed_at, SCHEDULED + 10)
        self.assertEqual(obs.delay_seconds, 45)

    def test_missing_time_is_skipped(self):
        """Test that an update with no time anywhere is skipped."""
        feed = build_feed(stop_updates=[("RED-1", "Red", "70075", 45, None, {})])
        self.assertEqual(self.normalizer.normalize_feed(feed), [])
        self.assertEqual(self.normalizer.counts["skipped"], 1)

    def test_canceled_trip_is_skipped(self):
        """Test that canceled trips produce no observation."""
        feed = build_feed(stop_updates=[("RED-1", "Red", "70075", 60, SCHEDULED, {"canceled": True})])
        self.assertEqual(self.normalizer.normalize_feed(feed), [])

    def test_skipped_stop_without_delay(self):
        """Test that a skipped stop with no inferable delay is dropped."""
        feed = build_feed(stop_updates=[("RED-1", "Red", "70075", None, SCHEDULED, {"skipped": True})])
        self.assertEqual(self.normalizer.normalize_feed(feed), [])

    def test_unknown_route_is_skipped(self):
        """Test that a trip with no resolvable route is dropped."""
        feed = build_feed(stop_updates=[("UNKNOWN-9", None, "70075", 60, SCHEDULED, {})])
        self.assertEqual(self.static_normalizer.normalize_feed(feed), [])

    def test_vehicle_stopped_at(self):
        """Test that a stopped vehicle becomes a headway-only observation."""
        feed = build_feed(vehicles=[
            ("RED-2", "Red", "70076", gtfs_realtime_pb2.VehiclePosition.STOPPED_AT, SCHEDULED),
            ("RED-1", "Red", "70075", gtfs_realtime_pb2.VehiclePosition.IN_TRANSIT_TO, SCHEDULED),
        ])
        observations = self.static_normalizer.normalize_feed(feed)

        self.assertEqual(len(observations), 1)
        obs = observations[0]
        self.assertIsNone(obs.delay_seconds)
        self.assertEqual(obs.stop_id, "place-pktrm")
        self.assertEqual(obs.direction_id, 0)
        self.assertEqual(obs.vehicle_id, "V0")

    def test_mbta_prediction(self):
        """Test an MBTA v3 JSON:API prediction resource."""
        resource = {
            "type": "prediction",
            "id": "prediction-RED-1-70075-1",
            "attributes": {
                "arrival_time": "2024-05-08T12:02:30-04:00",
                "departure_time": "2024-05-08T12:03:00-04:00",
                "direction_id": 1,
                "schedule_relationship": None,
            },
            "relationships": {
                "route": {"data": {"id": "Red", "type": "route"}},
                "stop": {"data": {"id": "70075", "type": "stop"}},
                "trip": {"data": {"id": "RED-1", "type": "trip"}},
                "vehicle": {"data": None},
            },
        }
        obs = self.static_normalizer.normalize(resource)

        self.assertEqual(obs.source, "mbta-v3")
        self.assertEqual(obs.delay_seconds, 150)
        self.assertEqual(obs.stop_id, "place-pktrm")
        self.assertIsNone(obs.vehicle_id)

    def test_mbta_cancelled_prediction(self):
        """Test that cancelled predictions are skipped."""
        resource = {
            "attributes": {"arrival_time": None, "schedule_relationship": "CANCELLED"},
            "relationships": {"route": {"data": {"id": "Red"}}, "stop": {"data": {"id": "70075"}}},
        }
        self.assertIsNone(self.normalizer.normalize(resource))

    def test_flat_record(self):
        """Test a replay record."""
        obs = self.normalizer.normalize({
            "route_id": "Red",
            "stop_id": "place-pktrm",
            "timestamp": "2024-05-08T16:00:00Z",
            "delay_seconds": "75",
            "direction_id": "0",
        })

        self.assertEqual(obs.observed_at, SCHEDULED)
        self.assertEqual(obs.delay_seconds, 75)
        self.assertEqual(obs.direction_id, 0)
        self.assertEqual(obs.source, "replay")

    def test_record_missing_stop(self):
        """Test that records without a stop are skipped, not errors."""
        self.assertIsNone(self.normalizer.normalize({"route_id": "Red", "timestamp": SCHEDULED}))
        self.assertEqual(self.normalizer.counts, {"normalized": 0, "skipped": 1, "malformed": 0})

    def test_malformed_messages(self):
        """Test that malformed messages are logged and counted, never raised."""
        with self.assertLogs("commuteguard.normalizer", level="WARNING"):
            self.assertIsNone(self.normalizer.normalize("not a message"))
            self.assertIsNone(self.normalizer.normalize(
                {"route_id": "Red", "stop_id": "place-pktrm", "timestamp": "not-a-time"}
            ))
            self.assertIsNone(self.normalizer.normalize(
                {"route_id": "Red", "stop_id": "place-pktrm", "timestamp": SCHEDULED, "schedule_relationship": "LOST"}
            ))
        self.assertEqual(self.normalizer.counts["malformed"], 3)


if __name__ == "__main__":
    unittest.main()
