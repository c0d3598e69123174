"""Streaming EWMA delay estimator, one state per bucket."""

import logging
import time
from typing import Dict, Optional

from .config import EstimatorConfig
from .locks import KeyedLocks
from .models import ArrivalObservation, BucketKey, EwmaState

logger = logging.getLogger(__name__)


class EwmaDelayEstimator:
    """
    Maintains an exponentially weighted moving average of delay per bucket.

    Observations for a bucket are folded in the order update() is called.
    A late-arriving observation (older than the bucket's last_updated) is
    still applied in arrival order, so the trajectory is reproducible for a
    given delivery order but not recency-consistent.

    States are immutable snapshots replaced under the bucket's lock, so
    predict() never sees a partially applied update.
    """

    def __init__(self, tz, config: Optional[EstimatorConfig] = None):
        """
        Initialize the estimator.

        Args:
            tz: Agency timezone used to derive each observation's bucket.
            config: Alpha and staleness settings. Defaults to EstimatorConfig().
        """
        self.tz = tz
        self.config = config or EstimatorConfig()
        self._states: Dict[BucketKey, EwmaState] = {}
        self._locks = KeyedLocks()

    def update(self, observation: ArrivalObservation) -> Optional[EwmaState]:
        """
        Fold one observation into its bucket.

        Args:
            observation: Normalized arrival observation.

        Returns:
            The new state, or None when the observation carries no delay.
        """
        if observation.delay_seconds is None:
            logger.debug(
                f"Ignoring observation without delay for {observation.route_id}@{observation.stop_id}"
            )
            return None

        key = BucketKey.for_time(
            observation.route_id, observation.stop_id, observation.observed_at, self.tz
        )
        delay = float(observation.delay_seconds)

        with self._locks.get(key):
            current = self._states.get(key)
            if current is None:
                state = EwmaState(
                    value=delay,
                    alpha=self.config.alpha_for(key.route_id),
                    sample_count=1,
                    last_updated=observation.observed_at,
                )
            else:
                state = EwmaState(
                    value=current.alpha * delay + (1.0 - current.alpha) * current.value,
                    alpha=current.alpha,
                    sample_count=current.sample_count + 1,
                    last_updated=max(current.last_updated, observation.observed_at),
                )
            self._states[key] = state

        return state

    def predict(self, key: BucketKey, now: Optional[float] = None) -> Optional[EwmaState]:
        """
        Get the current estimate for a bucket.

        Args:
            key: Bucket to look up.
            now: Reference time for the staleness check (defaults to time.time()).

        Returns:
            EwmaState, or None for a cold bucket (never observed, or stale
            when stale_after_seconds is configured).
        """
        state = self._states.get(key)
        if state is None:
            return None

        stale_after = self.config.stale_after_seconds
        if stale_after is not None:
            reference = time.time() if now is None else now
            if reference - state.last_updated > stale_after:
                logger.debug(f"EWMA state for {key} is stale; treating as cold")
                return None

        return state

    def snapshot(self) -> Dict[BucketKey, EwmaState]:
        """Copy of every bucket's current state."""
        return dict(self._states)

    def __len__(self) -> int:
        return len(self._states)
