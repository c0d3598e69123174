"""Leave-now advice: three progressively more conservative departure windows."""

import logging
import math
import time
from datetime import datetime
from typing import List, NamedTuple, Optional

from .aggregator import ReliabilityAggregator
from .classifier import RiskClassifier, band_for
from .config import AdvisorConfig
from .estimator import EwmaDelayEstimator
from .exceptions import InvalidJourneyError
from .models import BucketKey, DepartureWindow, LeaveNowAdvice, RiskLevel

logger = logging.getLogger(__name__)


def confidence_for(on_time_percentage: float) -> float:
    """Confidence in a window's timing: 0.5 + 0.5 * on-time rate, within [0.5, 1]."""
    return 0.5 + 0.5 * min(max(on_time_percentage, 0.0), 1.0)


class _Outlook(NamedTuple):
    """Historical and live signals for one departure time."""
    on_time: float
    band: RiskLevel
    delay_seconds: float


class LeaveNowAdvisor:
    """
    Combines risk classification, live EWMA delay and a journey time into
    three departure windows: leave now, wait a short interval, and wait for
    the next service cycle.

    Each later window is capped at the previous window's risk and floored at
    its confidence, so confidence never decreases and risk never increases
    from window 0 to window 2.
    """

    def __init__(
        self,
        classifier: RiskClassifier,
        estimator: EwmaDelayEstimator,
        aggregator: ReliabilityAggregator,
        tz,
        config: Optional[AdvisorConfig] = None,
        static_data=None,
    ):
        self.classifier = classifier
        self.estimator = estimator
        self.aggregator = aggregator
        self.tz = tz
        self.config = config or AdvisorConfig()
        self.static_data = static_data

    def advise(
        self,
        from_stop_id: str,
        to_stop_id: str,
        route_id: Optional[str] = None,
        journey_time_minutes: Optional[float] = None,
        now: Optional[float] = None,
    ) -> LeaveNowAdvice:
        """
        Produce leave-now advice for a journey.

        Args:
            from_stop_id: Origin stop (e.g., "place-pktrm")
            to_stop_id: Destination stop (e.g., "place-harsq")
            route_id: Optional route; resolved from static data when omitted.
            journey_time_minutes: Scheduled in-vehicle journey time.
            now: Reference Unix time (defaults to time.time()).

        Returns:
            LeaveNowAdvice with exactly three departure windows.

        Raises:
            InvalidJourneyError: If the stops are equal or missing, or the
                journey time is not a positive finite number.
        """
        self._validate(from_stop_id, to_stop_id, journey_time_minutes)
        now = time.time() if now is None else now
        route_id = route_id or self._resolve_route(from_stop_id, to_stop_id)

        logger.info(
            f"Generating leave-now advice from {from_stop_id} to {to_stop_id} "
            f"(route: {route_id}, journey: {journey_time_minutes} min)"
        )

        assessment = self.classifier.classify(route_id, from_stop_id, now=now)
        current = self._outlook(route_id, from_stop_id, now, now)
        risk = assessment.overall_risk
        confidence = confidence_for(assessment.historical_on_time)

        windows = [
            self._window(now, current.delay_seconds, journey_time_minutes, risk, confidence, wait_minutes=0),
        ]
        for wait_minutes in (self.config.short_wait_minutes, self.config.long_wait_minutes):
            departure = now + wait_minutes * 60
            outlook = self._outlook(route_id, from_stop_id, departure, now)
            risk = min(risk, outlook.band)
            confidence = min(
                1.0, max(confidence, confidence_for(outlook.on_time)) + self.config.wait_confidence_bonus
            )
            windows.append(
                self._window(departure, outlook.delay_seconds, journey_time_minutes, risk, confidence, wait_minutes)
            )

        return LeaveNowAdvice(
            from_stop_id=from_stop_id,
            to_stop_id=to_stop_id,
            route_id=route_id,
            generated_at=datetime.fromtimestamp(now, self.tz),
            departure_windows=windows,
            risk_assessment=assessment,
        )

    @staticmethod
    def _validate(from_stop_id: str, to_stop_id: str, journey_time_minutes) -> None:
        if not from_stop_id or not to_stop_id:
            raise InvalidJourneyError("Both origin and destination stops are required")
        if from_stop_id == to_stop_id:
            raise InvalidJourneyError(f"Origin and destination are the same stop: {from_stop_id}")
        if (
            isinstance(journey_time_minutes, bool)
            or not isinstance(journey_time_minutes, (int, float))
            or not math.isfinite(journey_time_minutes)
            or journey_time_minutes <= 0
        ):
            raise InvalidJourneyError(
                f"journey_time_minutes must be a positive finite number, got {journey_time_minutes!r}"
            )

    def _resolve_route(self, from_stop_id: str, to_stop_id: str) -> Optional[str]:
        if self.static_data is None:
            return None
        routes = self.static_data.routes_between(from_stop_id, to_stop_id)
        if not routes:
            logger.debug(f"No single route serves both {from_stop_id} and {to_stop_id}")
            return None
        return routes[0]

    def _outlook(self, route_id: Optional[str], stop_id: str, departure: float, now: float) -> _Outlook:
        if route_id is None:
            on_time, _ = self.classifier.on_time_rate(None, None)
            return _Outlook(on_time, band_for(on_time, self.classifier.rules), 0.0)

        key = BucketKey.for_time(route_id, stop_id, departure, self.tz)
        on_time, _ = self.classifier.on_time_rate(route_id, self.aggregator.compute_stats(key))
        state = self.estimator.predict(key, now=now)
        delay = state.value if state is not None else 0.0
        return _Outlook(on_time, band_for(on_time, self.classifier.rules), delay)

    def _window(
        self,
        departure: float,
        delay_seconds: float,
        journey_time_minutes: float,
        risk: RiskLevel,
        confidence: float,
        wait_minutes: float,
    ) -> DepartureWindow:
        travel_seconds = max(journey_time_minutes * 60 + delay_seconds, 0.0)
        departure_time = datetime.fromtimestamp(departure, self.tz)
        arrival_time = datetime.fromtimestamp(departure + travel_seconds, self.tz)
        duration = max(1, int(round(travel_seconds / 60)))

        return DepartureWindow(
            departure_time=departure_time,
            expected_arrival_time=arrival_time,
            duration_minutes=duration,
            risk_level=risk,
            confidence=round(confidence, 4),
            advice_text=self._advice_text(wait_minutes, arrival_time, duration, risk, delay_seconds),
        )

    def _advice_text(
        self, wait_minutes: float, arrival_time: datetime, duration: int, risk: RiskLevel, delay_seconds: float
    ) -> str:
        if wait_minutes == 0:
            lead = "Leave now"
        elif wait_minutes >= self.config.long_wait_minutes:
            lead = f"Wait {wait_minutes:g} minutes for the next service cycle"
        else:
            lead = f"Wait {wait_minutes:g} minutes"

        text = f"{lead}: arrive around {arrival_time.strftime('%H:%M')} ({duration} min, {risk.name.lower()} risk)"
        if delay_seconds >= 60:
            text += f", including about {delay_seconds / 60:.0f} min of current delays"
        return text
