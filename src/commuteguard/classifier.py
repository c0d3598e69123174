"""Maps reliability statistics and live delay estimates to a risk band."""

import logging
import time
from datetime import datetime
from typing import List, Optional, Tuple

from .aggregator import ReliabilityAggregator
from .alerts import AlertSource, NoAlerts
from .config import RiskRules
from .estimator import EwmaDelayEstimator
from .models import BucketKey, ReliabilityWindowStats, RiskAssessment, RiskLevel

logger = logging.getLogger(__name__)

SURFACE_RUNNING_FACTOR = "Surface running with traffic signals"
HIGH_TRANSFER_FACTOR = "Major transfer station - potential crowding"
PEAK_HOURS_FACTOR = "Peak commuting hours - increased delays possible"


def band_for(on_time_percentage: float, rules: Optional[RiskRules] = None) -> RiskLevel:
    """
    Rule table, first match wins: below high_below -> HIGH, below
    medium_below -> MEDIUM, otherwise LOW. Both comparisons are strict.
    """
    rules = rules or RiskRules()
    if on_time_percentage < rules.high_below:
        return RiskLevel.HIGH
    if on_time_percentage < rules.medium_below:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class RiskClassifier:
    """
    Classifies the delay risk of a route, optionally at a stop.

    The band depends only on the historical on-time percentage (or the
    route-type default when the bucket has no history). Risk factors are
    independent predicates evaluated in a fixed order, so identical inputs at
    the same instant always give identical output.
    """

    def __init__(
        self,
        estimator: EwmaDelayEstimator,
        aggregator: ReliabilityAggregator,
        tz,
        rules: Optional[RiskRules] = None,
        alert_source: Optional[AlertSource] = None,
        static_data=None,
    ):
        self.estimator = estimator
        self.aggregator = aggregator
        self.tz = tz
        self.rules = rules or RiskRules()
        self.alert_source = alert_source or NoAlerts()
        self.static_data = static_data

    def classify(
        self,
        route_id: Optional[str],
        stop_id: Optional[str] = None,
        bucket_key: Optional[BucketKey] = None,
        now: Optional[float] = None,
    ) -> RiskAssessment:
        """
        Assess risk for a route.

        Args:
            route_id: Route to assess; None assesses an unresolved route with
                      the unknown-route default rate.
            stop_id: Optional stop narrowing the assessment to one bucket.
            bucket_key: Explicit bucket context; overrides route/stop/now bucketing.
            now: Reference Unix time (defaults to time.time()).

        Returns:
            RiskAssessment computed fresh from current state.
        """
        now = time.time() if now is None else now
        if bucket_key is not None:
            route_id = bucket_key.route_id
            stop_id = bucket_key.stop_id

        stats, key = self._stats_for(route_id, stop_id, bucket_key, now)
        on_time, used_default = self.on_time_rate(route_id, stats)
        band = band_for(on_time, self.rules)

        alerts = self.alert_source.alerts_for_route(route_id) if route_id else []
        factors = self._risk_factors(route_id, stop_id, key, now)

        logger.debug(
            f"Classified route={route_id} stop={stop_id} on_time={on_time:.3f} "
            f"default={used_default} -> {band.name}"
        )
        return RiskAssessment(
            overall_risk=band,
            historical_on_time=on_time,
            active_service_alerts=alerts,
            risk_factors=factors,
            used_default_rate=used_default,
        )

    def on_time_rate(
        self, route_id: Optional[str], stats: Optional[ReliabilityWindowStats]
    ) -> Tuple[float, bool]:
        """On-time rate from stats, else the route-type default. Returns (rate, used_default)."""
        if stats is not None:
            return stats.on_time_percentage, False
        return self.rules.default_on_time(self._route_type(route_id)), True

    def _stats_for(
        self,
        route_id: Optional[str],
        stop_id: Optional[str],
        bucket_key: Optional[BucketKey],
        now: float,
    ) -> Tuple[Optional[ReliabilityWindowStats], Optional[BucketKey]]:
        if route_id is None:
            return None, None
        if bucket_key is not None:
            return self.aggregator.compute_stats(bucket_key), bucket_key
        if stop_id is not None:
            key = BucketKey.for_time(route_id, stop_id, now, self.tz)
            return self.aggregator.compute_stats(key), key

        # Route-level: every stop of the route at the current local hour and day
        local = datetime.fromtimestamp(now, self.tz)
        reliability = self.aggregator.route_reliability(
            route_id, day_of_week=local.isoweekday(), hour=local.hour
        )
        return (reliability.overall if reliability else None), None

    def _risk_factors(
        self, route_id: Optional[str], stop_id: Optional[str], key: Optional[BucketKey], now: float
    ) -> List[str]:
        factors: List[str] = []

        if route_id and self._is_surface_running(route_id):
            factors.append(SURFACE_RUNNING_FACTOR)

        if stop_id and stop_id in self.rules.high_transfer_stops:
            factors.append(HIGH_TRANSFER_FACTOR)

        local_hour = datetime.fromtimestamp(now, self.tz).hour
        if self.rules.is_peak_hour(local_hour):
            factors.append(PEAK_HOURS_FACTOR)

        if key is not None:
            state = self.estimator.predict(key, now=now)
            if state is not None and state.value > self.rules.elevated_delay_seconds:
                factors.append(f"Live delays elevated (about {state.value / 60:.0f} min late)")

        return factors

    def _is_surface_running(self, route_id: str) -> bool:
        if route_id in self.rules.surface_routes:
            return True
        return self._route_type(route_id) in self.rules.surface_route_types

    def _route_type(self, route_id: Optional[str]) -> Optional[int]:
        if self.static_data is None or route_id is None:
            return None
        return self.static_data.route_type(route_id)
