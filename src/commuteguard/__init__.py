"""CommuteGuard - real-time transit delay estimation and leave-now advice."""

__version__ = "0.1.0"

from .models import (
    ArrivalObservation,
    BucketKey,
    DayOfWeek,
    DepartureWindow,
    EwmaState,
    LeaveNowAdvice,
    ReliabilityWindowStats,
    RiskAssessment,
    RiskLevel,
    RouteReliability,
    ScheduleRelationship,
)
from .config import EngineConfig, load_config
from .exceptions import (
    AlreadyRunningError,
    CommuteGuardError,
    InvalidBucketKeyError,
    InvalidJourneyError,
)
from .engine import CommuteGuardEngine
from .feeds import GtfsRealtimeFeedSource, MbtaPredictionsSource, ReplayFeedSource
from .static_data import StaticDataLoader

__all__ = [
    "CommuteGuardEngine",
    "EngineConfig",
    "load_config",
    "StaticDataLoader",
    "GtfsRealtimeFeedSource",
    "MbtaPredictionsSource",
    "ReplayFeedSource",
    "ArrivalObservation",
    "BucketKey",
    "DayOfWeek",
    "DepartureWindow",
    "EwmaState",
    "LeaveNowAdvice",
    "ReliabilityWindowStats",
    "RiskAssessment",
    "RiskLevel",
    "RouteReliability",
    "ScheduleRelationship",
    "CommuteGuardError",
    "InvalidJourneyError",
    "InvalidBucketKeyError",
    "AlreadyRunningError",
]
