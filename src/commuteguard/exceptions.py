"""Exceptions raised by the CommuteGuard engine.

Expected absence (a cold bucket, an empty window) is never an exception; the
query methods return ``None`` for it. The types below cover caller misuse and
lifecycle conflicts only.
"""


class CommuteGuardError(Exception):
    """Base class for all CommuteGuard errors."""


class InvalidJourneyError(CommuteGuardError, ValueError):
    """Raised when leave-now advice is requested for an impossible journey."""


class InvalidBucketKeyError(CommuteGuardError, ValueError):
    """Raised when a bucket key component (hour, day token) is out of range."""


class AlreadyRunningError(CommuteGuardError, RuntimeError):
    """Raised when ingestion is started while it is already running."""
