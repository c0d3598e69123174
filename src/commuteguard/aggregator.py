"""Rolling reliability statistics per bucket over a trailing time window."""

import logging
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .config import AggregatorConfig
from .exceptions import InvalidBucketKeyError
from .locks import KeyedLocks
from .models import (
    ArrivalObservation,
    BucketKey,
    DayOfWeek,
    ReliabilityWindowStats,
    RouteReliability,
    StopReliability,
)

logger = logging.getLogger(__name__)

HEADWAY_KEY_COLUMNS = ["route_id", "stop_id", "direction_id"]


class _BucketWindow:
    """Retained observations for one bucket, in arrival order."""

    __slots__ = ("observations", "newest")

    def __init__(self):
        self.observations: Deque[ArrivalObservation] = deque()
        self.newest: Optional[float] = None


class ReliabilityAggregator:
    """
    Keeps a trailing window of observations per bucket and derives reliability
    statistics from it on demand.

    The window is a fixed trailing duration (window_days, default 30) anchored
    at the newest observation recorded for the bucket, so a replay of
    historical data retains the same samples a live feed would have.
    Nothing is de-duplicated: recording an observation twice counts it twice.
    """

    def __init__(self, tz, config: Optional[AggregatorConfig] = None):
        """
        Initialize the aggregator.

        Args:
            tz: Agency timezone used to derive each observation's bucket.
            config: Window and on-time settings. Defaults to AggregatorConfig().
        """
        self.tz = tz
        self.config = config or AggregatorConfig()
        self._windows: Dict[BucketKey, _BucketWindow] = {}
        self._locks = KeyedLocks()

    def record(self, observation: ArrivalObservation) -> BucketKey:
        """
        Append an observation to its bucket's window and prune expired samples.

        Returns:
            The bucket the observation was recorded under.
        """
        key = BucketKey.for_time(
            observation.route_id, observation.stop_id, observation.observed_at, self.tz
        )

        with self._locks.get(key):
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = _BucketWindow()

            window.observations.append(observation)
            if window.newest is None or observation.observed_at > window.newest:
                window.newest = observation.observed_at

            # Arrival order is only roughly time order; stragglers are filtered at read time
            cutoff = window.newest - self.config.window_seconds
            while window.observations and window.observations[0].observed_at < cutoff:
                window.observations.popleft()

        return key

    def compute_stats(self, key: BucketKey) -> Optional[ReliabilityWindowStats]:
        """
        Compute reliability statistics for a bucket.

        Returns:
            ReliabilityWindowStats, or None when the bucket holds no
            delay-bearing observations.
        """
        return self.summarize(self._retained(key))

    def summarize(self, observations: Iterable[ArrivalObservation]) -> Optional[ReliabilityWindowStats]:
        """
        Reduce a set of observations to window statistics.

        Observations without a delay count toward headways only.
        """
        observations = list(observations)
        delays = pd.Series(
            [o.delay_seconds for o in observations if o.delay_seconds is not None],
            dtype="float64",
        )
        if delays.empty:
            return None

        threshold = self.config.on_time_threshold_seconds
        on_time = int((delays.abs() <= threshold).sum())
        timestamps = [o.observed_at for o in observations]

        return ReliabilityWindowStats(
            sample_count=len(delays),
            median_delay_seconds=float(delays.median()),
            p90_delay_seconds=float(delays.quantile(0.9)),
            on_time_percentage=on_time / len(delays),
            headway_std_seconds=self._headway_std(observations),
            window_start=min(timestamps),
            window_end=max(timestamps),
        )

    def route_reliability(
        self,
        route_id: str,
        day_of_week=None,
        hour: Optional[int] = None,
        stop_name: Optional[Callable[[str], Optional[str]]] = None,
    ) -> Optional[RouteReliability]:
        """
        Aggregate a route's buckets into overall and per-stop statistics.

        Args:
            route_id: Route to aggregate (e.g., "Red")
            day_of_week: Optional day filter (token or DayOfWeek)
            hour: Optional local hour filter in [0, 23]
            stop_name: Optional stop_id -> display name lookup

        Returns:
            RouteReliability, or None when no matching bucket has delay data.

        Raises:
            InvalidBucketKeyError: If the day token or hour is invalid.
        """
        day = DayOfWeek.parse(day_of_week) if day_of_week is not None else None
        if hour is not None and (isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23):
            raise InvalidBucketKeyError(f"hour must be an integer in [0, 23], got {hour!r}")

        by_stop: Dict[str, List[ArrivalObservation]] = {}
        for key in self.bucket_keys(route_id):
            if day is not None and key.day_of_week != day:
                continue
            if hour is not None and key.hour_of_day != hour:
                continue
            by_stop.setdefault(key.stop_id, []).extend(self._retained(key))

        overall = self.summarize(o for observations in by_stop.values() for o in observations)
        if overall is None:
            return None

        stops: List[StopReliability] = []
        for stop_id in sorted(by_stop):
            stats = self.summarize(by_stop[stop_id])
            if stats is not None:
                name = stop_name(stop_id) if stop_name is not None else None
                stops.append(StopReliability(stop_id, name or stop_id, stats))

        return RouteReliability(route_id=route_id, day_of_week=day, hour=hour, overall=overall, stops=stops)

    def bucket_keys(self, route_id: Optional[str] = None) -> List[BucketKey]:
        """List known buckets, optionally for one route."""
        keys = list(self._windows)
        if route_id is not None:
            keys = [k for k in keys if k.route_id == route_id]
        return keys

    def _retained(self, key: BucketKey) -> List[ArrivalObservation]:
        """Consistent copy of a bucket's in-window observations."""
        window = self._windows.get(key)
        if window is None:
            return []
        with self._locks.get(key):
            observations = list(window.observations)
            newest = window.newest
        if newest is None:
            return []
        cutoff = newest - self.config.window_seconds
        return [o for o in observations if o.observed_at >= cutoff]

    def _occurrence(self, timestamp: float) -> str:
        """Local date and hour of a timestamp, e.g. "2024-05-08 12"."""
        return datetime.fromtimestamp(timestamp, self.tz).strftime("%Y-%m-%d %H")

    def _headway_std(self, observations: List[ArrivalObservation]) -> float:
        """
        Standard deviation of inter-arrival gaps.

        Gaps are taken per (route, stop, direction) so that trips running in
        opposite directions never interleave, and within one local date and
        hour so that the jump between weeks of a bucket is never a gap.
        Repeated reports of one trip collapse to its latest arrival.
        Observations without a direction are left out. Fewer than two gaps
        gives 0.0.
        """
        rows: List[Tuple] = [
            (o.route_id, o.stop_id, o.direction_id, self._occurrence(o.observed_at), o.trip_id, o.observed_at)
            for o in observations
            if o.direction_id is not None
        ]
        if len(rows) < 3:
            return 0.0

        group_columns = HEADWAY_KEY_COLUMNS + ["occurrence"]
        frame = pd.DataFrame(rows, columns=group_columns + ["trip_id", "observed_at"])
        gaps = []
        for _, group in frame.groupby(group_columns):
            with_trip = (
                group[group["trip_id"].notna()]
                .sort_values("observed_at")
                .drop_duplicates("trip_id", keep="last")
            )
            without_trip = group[group["trip_id"].isna()]
            parts = [part for part in (with_trip, without_trip) if not part.empty]
            arrivals = pd.concat(parts)["observed_at"].sort_values()
            gaps.append(arrivals.diff().dropna())

        all_gaps = pd.concat(gaps) if gaps else pd.Series(dtype="float64")
        if len(all_gaps) < 2:
            return 0.0
        return float(all_gaps.std())
