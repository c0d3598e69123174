"""Main CommuteGuard engine class."""

import logging
from typing import Iterable, List, Optional

from .advisor import LeaveNowAdvisor
from .aggregator import ReliabilityAggregator
from .alerts import AlertSource
from .classifier import RiskClassifier
from .config import EngineConfig
from .estimator import EwmaDelayEstimator
from .feeds import FeedSource
from .ingestion import IngestionController, IngestionState
from .models import (
    ArrivalObservation,
    BucketKey,
    EwmaState,
    LeaveNowAdvice,
    ReliabilityWindowStats,
    RiskAssessment,
    RouteReliability,
)
from .normalizer import EventNormalizer
from .static_data import StaticDataLoader

logger = logging.getLogger(__name__)


class CommuteGuardEngine:
    """
    Real-time delay estimation and reliability engine.

    This class provides methods to:
    - Ingest realtime observations (directly or from feed sources)
    - Predict live delay per route/stop/hour/day bucket
    - Compute rolling reliability statistics
    - Classify route risk and produce leave-now advice

    The four query calls (predict, compute_stats, classify, advise) are safe
    to issue concurrently with ingestion.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        static_data: Optional[StaticDataLoader] = None,
        alert_source: Optional[AlertSource] = None,
        sources: Optional[Iterable[FeedSource]] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Engine configuration. Defaults to EngineConfig().
            static_data: Optional GTFS static data for route types, stop names,
                         parent stations and delay inference.
            alert_source: Optional service alert source for risk assessments.
            sources: Feed sources driven by start()/stop().
        """
        self.config = config or EngineConfig()
        self.tz = self.config.tz
        self.static_data = static_data

        self.normalizer = EventNormalizer(self.tz, static_data=static_data)
        self.estimator = EwmaDelayEstimator(self.tz, self.config.estimator)
        self.aggregator = ReliabilityAggregator(self.tz, self.config.aggregator)
        self.classifier = RiskClassifier(
            self.estimator,
            self.aggregator,
            self.tz,
            rules=self.config.risk,
            alert_source=alert_source,
            static_data=static_data,
        )
        self.advisor = LeaveNowAdvisor(
            self.classifier,
            self.estimator,
            self.aggregator,
            self.tz,
            config=self.config.advisor,
            static_data=static_data,
        )
        self.ingestion = IngestionController(list(sources or []), self.normalizer, self.ingest)

    def ingest(self, observation: ArrivalObservation) -> None:
        """Apply one observation to both the estimator and the aggregator."""
        self.estimator.update(observation)
        self.aggregator.record(observation)

    def ingest_raw(self, raw) -> Optional[ArrivalObservation]:
        """Normalize and apply one raw message. Returns the observation, or None if skipped."""
        observation = self.normalizer.normalize(raw)
        if observation is not None:
            self.ingest(observation)
        return observation

    def ingest_feed(self, feed) -> int:
        """Normalize and apply a whole GTFS-RT FeedMessage. Returns the number applied."""
        observations = self.normalizer.normalize_feed(feed)
        for observation in observations:
            self.ingest(observation)
        return len(observations)

    def bucket_for(self, route_id: str, stop_id: str, when) -> BucketKey:
        """Bucket for a route and stop at a time (epoch seconds or datetime), in agency local time."""
        return BucketKey.for_time(route_id, stop_id, when, self.tz)

    def predict(self, bucket_key: BucketKey, now: Optional[float] = None) -> Optional[EwmaState]:
        """Live delay estimate for a bucket, or None if the bucket is cold."""
        return self.estimator.predict(bucket_key, now=now)

    def compute_stats(self, bucket_key: BucketKey) -> Optional[ReliabilityWindowStats]:
        """Reliability statistics for a bucket, or None if it holds no samples."""
        return self.aggregator.compute_stats(bucket_key)

    def classify(
        self,
        route_id: Optional[str],
        stop_id: Optional[str] = None,
        bucket_key: Optional[BucketKey] = None,
        now: Optional[float] = None,
    ) -> RiskAssessment:
        """Risk assessment for a route, optionally at a stop."""
        return self.classifier.classify(route_id, stop_id, bucket_key=bucket_key, now=now)

    def advise(
        self,
        from_stop_id: str,
        to_stop_id: str,
        route_id: Optional[str] = None,
        journey_time_minutes: Optional[float] = None,
        now: Optional[float] = None,
    ) -> LeaveNowAdvice:
        """Three ranked departure windows plus the journey risk assessment."""
        return self.advisor.advise(from_stop_id, to_stop_id, route_id, journey_time_minutes, now=now)

    def route_reliability(
        self, route_id: str, day_of_week=None, hour: Optional[int] = None
    ) -> Optional[RouteReliability]:
        """Route-level reliability with a per-stop breakdown, optionally filtered."""
        return self.aggregator.route_reliability(route_id, day_of_week, hour, stop_name=self._stop_name)

    def _stop_name(self, stop_id: str) -> Optional[str]:
        stop = self.static_data.get_stop(stop_id) if self.static_data is not None else None
        return stop.name if stop is not None else None

    def add_source(self, source: FeedSource) -> None:
        """Register a feed source for the next start()."""
        self.ingestion.add_source(source)

    def start(self, speed_multiplier: float = 1.0) -> None:
        """
        Start feed ingestion.

        Raises:
            AlreadyRunningError: If ingestion is already running.
        """
        self.ingestion.start(speed_multiplier)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop feed ingestion after in-flight batches drain. No-op when idle."""
        self.ingestion.stop(timeout)

    @property
    def state(self) -> IngestionState:
        return self.ingestion.state

    @property
    def is_running(self) -> bool:
        return self.ingestion.is_running

    @property
    def sources(self) -> List[FeedSource]:
        return self.ingestion.sources

    def cleanup(self) -> None:
        """Stop ingestion and release feed source resources."""
        self.stop()
        for source in self.sources:
            source.close()
        logger.info("Cleaned up engine resources")
