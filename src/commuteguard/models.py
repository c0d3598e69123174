"""Data models for the CommuteGuard engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import List, Optional, Union

from .exceptions import InvalidBucketKeyError

_DAY_NAMES = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY")


class DayOfWeek(IntEnum):
    """Day of week using ISO numbering (1=Monday, 7=Sunday)."""
    MON = 1
    TUE = 2
    WED = 3
    THU = 4
    FRI = 5
    SAT = 6
    SUN = 7

    @classmethod
    def parse(cls, token: Union["DayOfWeek", int, str]) -> "DayOfWeek":
        """
        Parse a day token.

        Accepts a DayOfWeek, an ISO day number (1-7), a three-letter token
        ("MON") or a full day name ("Monday"), case-insensitively.

        Raises:
            InvalidBucketKeyError: If the token is not recognized.
        """
        if isinstance(token, cls):
            return token
        if isinstance(token, int) and not isinstance(token, bool):
            if 1 <= token <= 7:
                return cls(token)
        elif isinstance(token, str):
            upper = token.strip().upper()
            if upper in cls.__members__:
                return cls[upper]
            if upper in _DAY_NAMES:
                return cls(_DAY_NAMES.index(upper) + 1)
        raise InvalidBucketKeyError(f"Unrecognized day of week: {token!r}")


class ScheduleRelationship(str, Enum):
    """How an observed stop event relates to the schedule."""
    SCHEDULED = "SCHEDULED"
    SKIPPED = "SKIPPED"
    NO_DATA = "NO_DATA"


class RiskLevel(IntEnum):
    """Risk band; ordered so that LOW < MEDIUM < HIGH."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3


def to_epoch(when: Union[datetime, int, float]) -> float:
    """Convert a datetime or epoch seconds to epoch seconds. Naive datetimes are UTC."""
    if isinstance(when, datetime):
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return when.timestamp()
    return float(when)


@dataclass(frozen=True)
class BucketKey:
    """
    Aggregation granularity: (route, stop, local hour of day, day of week).

    Hour and day must come from the agency's local zone; use for_time() to
    derive them from an event timestamp.
    """
    route_id: str
    stop_id: str
    hour_of_day: int
    day_of_week: DayOfWeek

    def __post_init__(self):
        hour = self.hour_of_day
        if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23:
            raise InvalidBucketKeyError(f"hour_of_day must be an integer in [0, 23], got {hour!r}")
        object.__setattr__(self, "day_of_week", DayOfWeek.parse(self.day_of_week))

    @classmethod
    def for_time(
        cls,
        route_id: str,
        stop_id: str,
        when: Union[datetime, int, float],
        tz,
    ) -> "BucketKey":
        """
        Build the bucket for an event time.

        Args:
            route_id: Route identifier (e.g., "Red")
            stop_id: Stop identifier (e.g., "place-pktrm")
            when: Event time as epoch seconds or a datetime (naive means UTC)
            tz: Agency timezone (pytz timezone)

        Returns:
            BucketKey with hour/day in the agency's local time.
        """
        local = datetime.fromtimestamp(to_epoch(when), tz)
        return cls(
            route_id=route_id,
            stop_id=stop_id,
            hour_of_day=local.hour,
            day_of_week=DayOfWeek(local.isoweekday()),
        )


@dataclass(frozen=True)
class ArrivalObservation:
    """One normalized realtime signal for a route at a stop."""
    route_id: str
    stop_id: str
    observed_at: float  # Unix timestamp of the stop event
    delay_seconds: Optional[int]  # Positive = late, negative = early, None = unknown
    trip_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    schedule_relationship: ScheduleRelationship = ScheduleRelationship.SCHEDULED
    direction_id: Optional[int] = None  # Needed to keep headways per direction
    source: str = "unknown"  # e.g., "gtfs-rt", "mbta-v3", "replay"


@dataclass(frozen=True)
class EwmaState:
    """Smoothed delay estimate for one bucket."""
    value: float
    alpha: float
    sample_count: int
    last_updated: float  # Unix timestamp of the newest observation folded in


@dataclass(frozen=True)
class ReliabilityWindowStats:
    """Reliability statistics over a bucket's retained observation window."""
    sample_count: int
    median_delay_seconds: float
    p90_delay_seconds: float
    on_time_percentage: float  # Fraction in [0, 1]
    headway_std_seconds: float
    window_start: Optional[float] = None
    window_end: Optional[float] = None


@dataclass
class StopReliability:
    """Per-stop entry of a route reliability breakdown."""
    stop_id: str
    stop_name: str
    stats: ReliabilityWindowStats


@dataclass
class RouteReliability:
    """Route-level reliability with a per-stop breakdown."""
    route_id: str
    day_of_week: Optional[DayOfWeek]
    hour: Optional[int]
    overall: ReliabilityWindowStats
    stops: List[StopReliability] = field(default_factory=list)


@dataclass
class RiskAssessment:
    """Risk band and rationale for a route (optionally at one stop)."""
    overall_risk: RiskLevel
    historical_on_time: float
    active_service_alerts: List[str]
    risk_factors: List[str]
    used_default_rate: bool = False  # True when on-time came from the route-type table


@dataclass
class DepartureWindow:
    """One candidate departure with its expected outcome."""
    departure_time: datetime
    expected_arrival_time: datetime
    duration_minutes: int
    risk_level: RiskLevel
    confidence: float  # In [0, 1]
    advice_text: str


@dataclass
class LeaveNowAdvice:
    """Complete leave-now response: three windows plus the journey risk."""
    from_stop_id: str
    to_stop_id: str
    route_id: Optional[str]
    generated_at: datetime
    departure_windows: List[DepartureWindow]
    risk_assessment: RiskAssessment


@dataclass
class RouteInfo:
    """Static identity of a route."""
    route_id: str
    short_name: str
    long_name: str
    route_type: Optional[int] = None  # GTFS route_type
    color: Optional[str] = None


@dataclass
class StopInfo:
    """Static identity of a stop."""
    stop_id: str
    name: str
    latitude: float
    longitude: float
    parent_station: Optional[str] = None
    routes: List[str] = field(default_factory=list)  # Route IDs serving this stop
