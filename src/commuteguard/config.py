"""Configuration for the CommuteGuard engine.

Every threshold the engine uses lives here. ``load_config()`` reads overrides
from ``COMMUTEGUARD_*`` environment variables.
"""

import math
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

import pytz

# Agency local zone; all bucket hour/day derivation happens in this zone
DEFAULT_TIMEZONE = "America/New_York"

DEFAULT_ALPHA = 0.3
DEFAULT_ON_TIME_THRESHOLD_SECONDS = 120
DEFAULT_WINDOW_DAYS = 30

# GTFS route_type -> historical on-time rate used when a bucket has no history
DEFAULT_ROUTE_TYPE_ON_TIME = {
    0: 0.65,  # Light rail / streetcar (Green Line)
    1: 0.75,  # Subway
    2: 0.80,  # Commuter rail
    3: 0.70,  # Bus
    4: 0.85,  # Ferry
}
UNKNOWN_ROUTE_TYPE_ON_TIME = 0.75

# MBTA stations with heavy transfer volume
DEFAULT_HIGH_TRANSFER_STOPS = frozenset({
    "place-pktrm",  # Park Street
    "place-dwnxg",  # Downtown Crossing
    "place-gover",  # Government Center
    "place-state",  # State
    "place-north",  # North Station
    "place-sstat",  # South Station
    "place-haecl",  # Haymarket
})

DEFAULT_SURFACE_ROUTES = frozenset({"Green-B", "Green-C", "Green-D", "Green-E", "Mattapan"})

# Inclusive local-hour ranges treated as peak commuting hours
DEFAULT_PEAK_WINDOWS = ((7, 9), (17, 19))


def resolve_timezone(tz):
    """Return a pytz timezone for a zone name or pass an existing tzinfo through."""
    if isinstance(tz, str):
        return pytz.timezone(tz)
    return tz


@dataclass(frozen=True)
class EstimatorConfig:
    """Settings for the EWMA delay estimator."""
    alpha: float = DEFAULT_ALPHA
    # Per-route alpha overrides, applied when a bucket is first created
    route_alpha: Dict[str, float] = field(default_factory=dict)
    # When set, predict() treats buckets not updated for this long as cold
    stale_after_seconds: Optional[float] = None

    def __post_init__(self):
        for name, alpha in [("alpha", self.alpha)] + list(self.route_alpha.items()):
            if not (0.0 < alpha <= 1.0):
                raise ValueError(f"EWMA alpha for {name} must be in (0, 1], got {alpha}")
        if self.stale_after_seconds is not None and self.stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be positive")

    def alpha_for(self, route_id: str) -> float:
        return self.route_alpha.get(route_id, self.alpha)


@dataclass(frozen=True)
class AggregatorConfig:
    """Settings for the reliability aggregator's trailing window."""
    on_time_threshold_seconds: int = DEFAULT_ON_TIME_THRESHOLD_SECONDS
    window_days: float = DEFAULT_WINDOW_DAYS

    def __post_init__(self):
        if self.on_time_threshold_seconds < 0:
            raise ValueError("on_time_threshold_seconds must not be negative")
        if self.window_days <= 0:
            raise ValueError("window_days must be positive")

    @property
    def window_seconds(self) -> float:
        return self.window_days * 86400.0


@dataclass(frozen=True)
class RiskRules:
    """Rule table for the risk classifier. Thresholds are strict lower bounds."""
    high_below: float = 0.60
    medium_below: float = 0.80
    route_type_on_time: Dict[int, float] = field(
        default_factory=lambda: dict(DEFAULT_ROUTE_TYPE_ON_TIME)
    )
    unknown_route_on_time: float = UNKNOWN_ROUTE_TYPE_ON_TIME
    surface_routes: FrozenSet[str] = DEFAULT_SURFACE_ROUTES
    surface_route_types: FrozenSet[int] = frozenset({0, 3})
    high_transfer_stops: FrozenSet[str] = DEFAULT_HIGH_TRANSFER_STOPS
    peak_windows: Tuple[Tuple[int, int], ...] = DEFAULT_PEAK_WINDOWS
    # Live EWMA delay above this flags an elevated-delay factor
    elevated_delay_seconds: int = DEFAULT_ON_TIME_THRESHOLD_SECONDS

    def __post_init__(self):
        if not (0.0 <= self.high_below <= self.medium_below <= 1.0):
            raise ValueError("risk thresholds must satisfy 0 <= high_below <= medium_below <= 1")

    def default_on_time(self, route_type: Optional[int]) -> float:
        if route_type is None:
            return self.unknown_route_on_time
        return self.route_type_on_time.get(route_type, self.unknown_route_on_time)

    def is_peak_hour(self, hour: int) -> bool:
        return any(start <= hour <= end for start, end in self.peak_windows)


@dataclass(frozen=True)
class AdvisorConfig:
    """Settings for the leave-now advisor's three candidate windows."""
    short_wait_minutes: float = 5
    long_wait_minutes: float = 12
    # Added per step of waiting; confidence stays capped at 1.0
    wait_confidence_bonus: float = 0.05

    def __post_init__(self):
        if not (0 <= self.short_wait_minutes <= self.long_wait_minutes):
            raise ValueError("wait minutes must satisfy 0 <= short_wait <= long_wait")
        if not (0.0 <= self.wait_confidence_bonus <= 1.0):
            raise ValueError("wait_confidence_bonus must be in [0, 1]")


@dataclass(frozen=True)
class EngineConfig:
    """Top-level configuration handed to the engine at construction."""
    timezone: str = DEFAULT_TIMEZONE
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    risk: RiskRules = field(default_factory=RiskRules)
    advisor: AdvisorConfig = field(default_factory=AdvisorConfig)

    @property
    def tz(self):
        return resolve_timezone(self.timezone)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"{name} must be finite, got {raw!r}")
    return value


def load_config() -> EngineConfig:
    """Build an EngineConfig from ``COMMUTEGUARD_*`` environment variables."""
    timezone = os.getenv("COMMUTEGUARD_TIMEZONE", DEFAULT_TIMEZONE)
    # Raises on an unknown zone name
    resolve_timezone(timezone)

    return EngineConfig(
        timezone=timezone,
        estimator=EstimatorConfig(
            alpha=_env_float("COMMUTEGUARD_EWMA_ALPHA", DEFAULT_ALPHA),
            stale_after_seconds=_env_float("COMMUTEGUARD_EWMA_STALE_AFTER_SECONDS", None),
        ),
        aggregator=AggregatorConfig(
            on_time_threshold_seconds=int(
                _env_float("COMMUTEGUARD_ON_TIME_THRESHOLD_SECONDS", DEFAULT_ON_TIME_THRESHOLD_SECONDS)
            ),
            window_days=_env_float("COMMUTEGUARD_WINDOW_DAYS", DEFAULT_WINDOW_DAYS),
        ),
        advisor=AdvisorConfig(
            short_wait_minutes=_env_float("COMMUTEGUARD_SHORT_WAIT_MINUTES", 5),
            long_wait_minutes=_env_float("COMMUTEGUARD_LONG_WAIT_MINUTES", 12),
        ),
    )
