"""Tests for CommuteGuardEngine."""

import threading
import unittest
from datetime import datetime
import sys
from pathlib import Path

import pytz
from google.transit import gtfs_realtime_pb2

# Add src to path so we can import commuteguard
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from commuteguard import (
    AlreadyRunningError,
    ArrivalObservation,
    CommuteGuardEngine,
    EngineConfig,
    InvalidJourneyError,
    ReplayFeedSource,
    RiskLevel,
)
from commuteguard.alerts import StaticAlertSource
from commuteguard.ingestion import IngestionState
from gtfs_samples import load_sample_static_data

TZ = pytz.timezone("America/New_York")

# Wednesday 2024-05-08 12:00 local
NOON = TZ.localize(datetime(2024, 5, 8, 12, 0)).timestamp()


def red_observation(delay, offset=0, stop_id="place-pktrm", direction_id=None):
    return ArrivalObservation(
        route_id="Red",
        stop_id=stop_id,
        observed_at=NOON + offset,
        delay_seconds=delay,
        direction_id=direction_id,
    )


class TestCommuteGuardEngine(unittest.TestCase):
    """Test the engine's query surface."""

    def setUp(self):
        """Set up test fixtures."""
        self.engine = CommuteGuardEngine(
            static_data=load_sample_static_data(),
            alert_source=StaticAlertSource({"Red": ["Single tracking near Harvard"]}),
        )

    def tearDown(self):
        self.engine.cleanup()

    def test_cold_engine(self):
        """Test queries before any observation."""
        key = self.engine.bucket_for("Red", "place-pktrm", NOON)

        self.assertIsNone(self.engine.predict(key))
        self.assertIsNone(self.engine.compute_stats(key))
        self.assertIsNone(self.engine.route_reliability("Red"))

        assessment = self.engine.classify("Red", "place-pktrm", now=NOON)
        self.assertTrue(assessment.used_default_rate)
        self.assertEqual(assessment.historical_on_time, 0.75)  # Subway default

    def test_ingest_feeds_estimator_and_aggregator(self):
        """Test that one observation updates both live and historical state."""
        self.engine.ingest(red_observation(90))
        key = self.engine.bucket_for("Red", "place-pktrm", NOON)

        self.assertEqual(self.engine.predict(key).value, 90.0)
        self.assertEqual(self.engine.compute_stats(key).sample_count, 1)

    def test_ingest_raw_record(self):
        """Test normalizing and applying one raw message."""
        obs = self.engine.ingest_raw(
            {"route_id": "Red", "stop_id": "70075", "timestamp": NOON, "delay_seconds": 30}
        )

        self.assertEqual(obs.stop_id, "place-pktrm")
        self.assertIsNotNone(self.engine.predict(self.engine.bucket_for("Red", "place-pktrm", NOON)))
        self.assertIsNone(self.engine.ingest_raw({"route_id": "Red"}))

    def test_ingest_feed(self):
        """Test applying a whole GTFS-RT feed."""
        feed = gtfs_realtime_pb2.FeedMessage()
        feed.header.gtfs_realtime_version = "2.0"
        entity = feed.entity.add()
        entity.id = "1"
        entity.trip_update.trip.trip_id = "RED-1"
        for stop_id, arrival in (("70075", NOON + 60), ("70068", NOON + 780)):
            stop_time = entity.trip_update.stop_time_update.add()
            stop_time.stop_id = stop_id
            stop_time.arrival.time = int(arrival)

        self.assertEqual(self.engine.ingest_feed(feed.SerializeToString()), 2)
        harvard = self.engine.compute_stats(self.engine.bucket_for("Red", "place-harsq", NOON + 780))
        self.assertEqual(harvard.median_delay_seconds, 60.0)

    def test_classify_with_history_and_alerts(self):
        """Test classification combines history, alerts and factors."""
        for i, delay in enumerate([0, 30, 60, 90, 400]):
            self.engine.ingest(red_observation(delay, offset=i * 60))

        assessment = self.engine.classify("Red", "place-pktrm", now=NOON + 600)
        self.assertAlmostEqual(assessment.historical_on_time, 0.8)
        self.assertEqual(assessment.overall_risk, RiskLevel.LOW)
        self.assertEqual(assessment.active_service_alerts, ["Single tracking near Harvard"])
        self.assertIn("Major transfer station - potential crowding", assessment.risk_factors)

    def test_advise_resolves_route(self):
        """Test leave-now advice end to end with route resolution."""
        self.engine.ingest(red_observation(0))

        advice = self.engine.advise("place-pktrm", "place-harsq", journey_time_minutes=12, now=NOON + 60)
        self.assertEqual(advice.route_id, "Red")
        self.assertEqual(len(advice.departure_windows), 3)
        self.assertEqual(advice.risk_assessment.active_service_alerts, ["Single tracking near Harvard"])

    def test_advise_rejects_same_stop(self):
        """Test that journey validation surfaces through the engine."""
        with self.assertRaises(InvalidJourneyError):
            self.engine.advise("place-pktrm", "place-pktrm", journey_time_minutes=12)

    def test_route_reliability_uses_stop_names(self):
        """Test route reliability with display names from static data."""
        self.engine.ingest(red_observation(0))
        self.engine.ingest(red_observation(300, stop_id="place-harsq"))

        reliability = self.engine.route_reliability("Red", day_of_week="WED", hour=12)
        names = {s.stop_id: s.stop_name for s in reliability.stops}
        self.assertEqual(names, {"place-pktrm": "Park Street", "place-harsq": "Harvard"})
        self.assertAlmostEqual(reliability.overall.on_time_percentage, 0.5)

    def test_route_reliability_name_fallbacks(self):
        """Test that stops unknown to static data, or with no static data, keep their IDs."""
        self.engine.ingest(red_observation(0, stop_id="place-unknown"))
        reliability = self.engine.route_reliability("Red")
        self.assertEqual(reliability.stops[0].stop_name, "place-unknown")

        bare = CommuteGuardEngine()
        bare.ingest(red_observation(0))
        self.assertEqual(bare.route_reliability("Red").stops[0].stop_name, "place-pktrm")

    def test_lifecycle(self):
        """Test start, double start and stop through the engine."""
        frames = [[{"route_id": "Red", "stop_id": "place-pktrm", "timestamp": NOON + i, "delay_seconds": 60}]
                  for i in range(3)]
        self.engine.add_source(ReplayFeedSource(frames, loop=True))

        self.engine.start()
        try:
            self.assertTrue(self.engine.is_running)
            with self.assertRaises(AlreadyRunningError):
                self.engine.start()
        finally:
            self.engine.stop(timeout=10)

        self.assertEqual(self.engine.state, IngestionState.IDLE)
        self.engine.stop()

    def test_replay_then_query(self):
        """Test a full replay at high speed followed by queries."""
        frames = [
            [{"route_id": "Red", "stop_id": "place-pktrm", "timestamp": NOON + f * 300 + d * 150,
              "delay_seconds": 60, "direction_id": d, "trip_id": f"T{f}-{d}"} for d in (0, 1)]
            for f in range(6)
        ]
        engine = CommuteGuardEngine(EngineConfig(), sources=[ReplayFeedSource(frames)])
        engine.start(speed_multiplier=100)
        self.assertTrue(engine.ingestion.wait(timeout=10))

        key = engine.bucket_for("Red", "place-pktrm", NOON)
        self.assertEqual(engine.predict(key).sample_count, 12)
        stats = engine.compute_stats(key)
        self.assertEqual(stats.on_time_percentage, 1.0)
        self.assertAlmostEqual(stats.headway_std_seconds, 0.0)

    def test_queries_during_concurrent_ingest(self):
        """Test that queries stay consistent while writers ingest."""
        key = self.engine.bucket_for("Red", "place-pktrm", NOON)
        errors = []

        def writer():
            for i in range(300):
                self.engine.ingest(red_observation(60, offset=i % 600))

        def reader():
            try:
                for _ in range(100):
                    self.engine.predict(key)
                    self.engine.compute_stats(key)
                    self.engine.classify("Red", "place-pktrm", now=NOON)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer) for _ in range(4)] + [threading.Thread(target=reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(self.engine.predict(key).sample_count, 1200)
        self.assertEqual(self.engine.compute_stats(key).sample_count, 1200)


if __name__ == "__main__":
    unittest.main()
