"""Example usage of CommuteGuardEngine."""

import logging
import sys
import time
from pathlib import Path

# Add src to path so we can import commuteguard
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from commuteguard import (
    CommuteGuardEngine,
    GtfsRealtimeFeedSource,
    InvalidJourneyError,
    ReplayFeedSource,
    StaticDataLoader,
    load_config,
)
from commuteguard.feeds import MBTA_FEEDS

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def synthetic_frames(now: float, frames: int = 6):
    """Build replay frames of Red Line arrivals at Park Street, running a few minutes late."""
    for i in range(frames):
        yield [
            {
                "route_id": "Red",
                "stop_id": "place-pktrm",
                "trip_id": f"demo-{i}-{direction}",
                "direction_id": direction,
                "timestamp": now - (frames - i) * 360 + direction * 40,
                "delay_seconds": 60 + 30 * i,
            }
            for direction in (0, 1)
        ]


def print_advice(engine: CommuteGuardEngine, from_stop: str, to_stop: str, minutes: float, route_id=None):
    """
    Fetch and display leave-now advice for a journey.

    Args:
        engine: A running or pre-loaded engine
        from_stop: Origin stop ID (e.g., "place-pktrm")
        to_stop: Destination stop ID (e.g., "place-harsq")
        minutes: Scheduled journey time in minutes
        route_id: Optional route (resolved from static data when omitted)
    """
    print(f"\n{'='*70}")
    print(f"Leave-now advice: {from_stop} -> {to_stop} ({minutes:g} min)")
    print(f"{'='*70}\n")

    try:
        advice = engine.advise(from_stop, to_stop, route_id=route_id, journey_time_minutes=minutes)
    except InvalidJourneyError as e:
        print(f"Error: {e}")
        sys.exit(1)

    assessment = advice.risk_assessment
    print(f"Route: {advice.route_id or 'unknown'}")
    print(f"Overall risk: {assessment.overall_risk.name}")
    print(f"Historical on-time: {assessment.historical_on_time:.0%}"
          + (" (route-type default)" if assessment.used_default_rate else ""))

    print("\nDEPARTURE WINDOWS:")
    print("-" * 70)
    for window in advice.departure_windows:
        print(f"  {window.departure_time.strftime('%H:%M')}  {window.advice_text}  "
              f"[confidence {window.confidence:.0%}]")

    if assessment.risk_factors:
        print("\nRISK FACTORS:")
        for factor in assessment.risk_factors:
            print(f"  - {factor}")

    if assessment.active_service_alerts:
        print("\nSERVICE ALERTS:")
        for alert in assessment.active_service_alerts:
            print(f"  {alert}")

    print("\n" + "=" * 70 + "\n")


def replay_demo():
    """Replay synthetic data at 10x speed and show the resulting estimates."""
    engine = CommuteGuardEngine(config=load_config())
    engine.add_source(ReplayFeedSource(list(synthetic_frames(time.time())), interval_seconds=1.0))

    engine.start(speed_multiplier=10)
    engine.ingestion.wait(timeout=30)
    engine.stop()

    key = engine.bucket_for("Red", "place-pktrm", time.time())
    state = engine.predict(key)
    stats = engine.compute_stats(key)
    if state is not None:
        print(f"Live EWMA delay at Park Street: {state.value:.0f}s over {state.sample_count} samples")
    if stats is not None:
        print(f"Median {stats.median_delay_seconds:.0f}s, p90 {stats.p90_delay_seconds:.0f}s, "
              f"on-time {stats.on_time_percentage:.0%}, headway std {stats.headway_std_seconds:.0f}s")

    print_advice(engine, "place-pktrm", "place-harsq", 12, route_id="Red")


def live_mode(from_stop: str, to_stop: str, minutes: float):
    """Ingest live MBTA feeds for a minute, then print advice."""
    print("Loading GTFS data... (this may take a minute on first run)")
    static_data = StaticDataLoader()
    try:
        static_data.load_from_url()
    except Exception as e:
        logger.error(f"Failed to load GTFS data: {e}")
        print(f"Error loading GTFS data: {e}")
        sys.exit(1)

    engine = CommuteGuardEngine(
        config=load_config(),
        static_data=static_data,
        sources=[GtfsRealtimeFeedSource(url) for url in MBTA_FEEDS.values()],
    )
    engine.start()
    try:
        time.sleep(60)
    except KeyboardInterrupt:
        print("\nInterrupted; using data gathered so far")
    finally:
        engine.stop()

    print_advice(engine, from_stop, to_stop, minutes)
    engine.cleanup()


if __name__ == "__main__":
    if len(sys.argv) == 4:
        # Command line mode: origin, destination and journey minutes
        live_mode(sys.argv[1], sys.argv[2], float(sys.argv[3]))
    else:
        replay_demo()
