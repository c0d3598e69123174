"""Ingestion lifecycle: drives feed sources into the engine with cooperative stop."""

import enum
import logging
import math
import threading
from typing import Callable, List, Optional, Sequence

from .exceptions import AlreadyRunningError
from .feeds import FeedSource
from .models import ArrivalObservation
from .normalizer import EventNormalizer

logger = logging.getLogger(__name__)

# Floor on the wait between batches, however high the speed multiplier
MIN_INTERVAL_SECONDS = 0.1


class IngestionState(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class IngestionController:
    """
    Runs one worker thread per feed source.

    State machine: IDLE -> RUNNING (start) -> STOPPING (stop) -> IDLE.
    stop() signals cancellation; each worker finishes applying the batch it
    holds, so every in-flight observation is applied exactly once, then
    exits before stop() returns. Workers also exit on their own when a finite
    source (a replay) runs out. The controller returns to IDLE after the last
    one finishes, including when stop() timed out before the workers exited.
    """

    def __init__(
        self,
        sources: Sequence[FeedSource],
        normalizer: EventNormalizer,
        sink: Callable[[ArrivalObservation], None],
    ):
        """
        Initialize the controller.

        Args:
            sources: Feed sources to drive, one worker thread each.
            normalizer: Converts raw messages to observations.
            sink: Receives every observation (the engine's ingest()).
        """
        self.sources = list(sources)
        self.normalizer = normalizer
        self.sink = sink
        self._lock = threading.Lock()
        self._state = IngestionState.IDLE
        self._stop_event = threading.Event()
        self._workers: List[threading.Thread] = []
        self._active_workers = 0
        self.speed_multiplier = 1.0
        self.observations_applied = 0

    @property
    def state(self) -> IngestionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == IngestionState.RUNNING

    def add_source(self, source: FeedSource) -> None:
        """Register a source; it is picked up on the next start()."""
        with self._lock:
            self.sources.append(source)

    def start(self, speed_multiplier: float = 1.0) -> None:
        """
        Start ingesting from every source.

        Args:
            speed_multiplier: Divides each source's interval (e.g., 10 = 10x faster).

        Raises:
            AlreadyRunningError: If ingestion is running or still stopping.
            ValueError: If speed_multiplier is not a positive finite number.
        """
        if not isinstance(speed_multiplier, (int, float)) or not math.isfinite(speed_multiplier) \
                or speed_multiplier <= 0:
            raise ValueError(f"speed_multiplier must be a positive number, got {speed_multiplier!r}")

        with self._lock:
            if self._state != IngestionState.IDLE:
                raise AlreadyRunningError(f"Ingestion is {self._state.value}; stop it first")
            if not self.sources:
                logger.warning("Starting ingestion with no feed sources")

            self.speed_multiplier = float(speed_multiplier)
            self._stop_event.clear()
            self._state = IngestionState.RUNNING
            self._active_workers = len(self.sources)
            self._workers = [
                threading.Thread(
                    target=self._run_source,
                    args=(source,),
                    name=f"ingest-{source.name}",
                    daemon=True,
                )
                for source in self.sources
            ]
            if not self._workers:
                self._state = IngestionState.IDLE

        for worker in self._workers:
            worker.start()
        logger.info(f"Started ingestion from {len(self._workers)} sources at {self.speed_multiplier:g}x speed")

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop ingestion and wait for workers to drain. No-op when idle.

        Args:
            timeout: Optional bound on the wait for each worker.
        """
        with self._lock:
            if self._state == IngestionState.IDLE:
                logger.debug("stop() called while idle; nothing to do")
                return
            self._state = IngestionState.STOPPING
            self._stop_event.set()
            workers = list(self._workers)

        logger.info("Stopping ingestion; draining in-flight batches")
        current = threading.current_thread()
        for worker in workers:
            if worker is not current:
                worker.join(timeout)

        with self._lock:
            if all(not w.is_alive() for w in workers):
                self._state = IngestionState.IDLE
                self._workers = []
        logger.info(f"Ingestion stopped ({self.observations_applied} observations applied)")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until all workers exit. Returns True if none are left running."""
        for worker in list(self._workers):
            worker.join(timeout)
        return all(not w.is_alive() for w in self._workers)

    def _run_source(self, source: FeedSource) -> None:
        interval = max(source.interval_seconds / self.speed_multiplier, MIN_INTERVAL_SECONDS)
        try:
            while not self._stop_event.is_set():
                batch = source.fetch()
                if batch is None:
                    logger.info(f"Source {source.name} exhausted")
                    break
                self._apply_batch(source, batch)
                # Event.wait doubles as an interruptible sleep
                if self._stop_event.wait(interval):
                    break
        except Exception:
            logger.exception(f"Ingestion worker for {source.name} failed")
        finally:
            self._worker_finished()

    def _apply_batch(self, source: FeedSource, batch: List) -> None:
        applied = 0
        for raw in batch:
            observation = self.normalizer.normalize(raw)
            if observation is None:
                continue
            try:
                self.sink(observation)
            except Exception as e:
                logger.warning(f"Dropping observation {observation.route_id}@{observation.stop_id} from {source.name}: {e}")
                continue
            applied += 1
        with self._lock:
            self.observations_applied += applied
        logger.debug(f"Applied {applied}/{len(batch)} messages from {source.name}")

    def _worker_finished(self) -> None:
        with self._lock:
            self._active_workers -= 1
            if self._active_workers > 0:
                return
            if self._state == IngestionState.RUNNING:
                logger.info("All ingestion sources finished")
            elif self._state == IngestionState.STOPPING:
                logger.info("Last ingestion worker exited after stop")
            self._state = IngestionState.IDLE
