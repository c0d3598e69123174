"""Realtime feed sources: GTFS-RT pollers, MBTA v3 predictions and fixture replay."""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Union

import requests

from .normalizer import split_feed

logger = logging.getLogger(__name__)

# MBTA GTFS-Realtime feed URLs
MBTA_FEEDS = {
    "trip_updates": "https://cdn.mbta.com/realtime/TripUpdates.pb",
    "vehicle_positions": "https://cdn.mbta.com/realtime/VehiclePositions.pb",
}

MBTA_API_BASE_URL = "https://api-v3.mbta.com"


class FeedSource(ABC):
    """
    Supplies batches of raw realtime messages.

    fetch() returns the next batch, or None once the source is exhausted
    (only finite sources such as replays ever return None). Polling sources
    log fetch failures and return an empty batch so one bad poll never stops
    ingestion.
    """

    name = "feed"
    interval_seconds: float = 30.0

    @abstractmethod
    def fetch(self) -> Optional[List[Any]]:
        raise NotImplementedError

    def close(self) -> None:
        """Release any held resources."""


class GtfsRealtimeFeedSource(FeedSource):
    """Polls a GTFS-Realtime protobuf feed (trip updates or vehicle positions)."""

    def __init__(
        self,
        url: str = MBTA_FEEDS["trip_updates"],
        interval_seconds: float = 30.0,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.name = f"gtfs-rt:{url}"
        self.url = url
        self.interval_seconds = interval_seconds
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self) -> Optional[List[Any]]:
        logger.debug(f"Fetching {self.url}")
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            return split_feed(response.content)
        except Exception as e:
            logger.warning(f"Failed to fetch feed {self.url}: {e}")
            return []

    def close(self) -> None:
        self.session.close()


class MbtaPredictionsSource(FeedSource):
    """Polls MBTA v3 API predictions for a set of routes."""

    def __init__(
        self,
        route_ids: Sequence[str],
        api_key: Optional[str] = None,
        base_url: str = MBTA_API_BASE_URL,
        interval_seconds: float = 30.0,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        if not route_ids:
            raise ValueError("MbtaPredictionsSource needs at least one route ID")
        self.name = f"mbta-v3:{','.join(route_ids)}"
        self.route_ids = list(route_ids)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.interval_seconds = interval_seconds
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self) -> Optional[List[Any]]:
        url = f"{self.base_url}/predictions"
        headers = {"Accept": "application/vnd.api+json"}
        # API key is optional but raises rate limits
        if self.api_key:
            headers["x-api-key"] = self.api_key
        params = {"filter[route]": ",".join(self.route_ids)}

        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except Exception as e:
            logger.warning(f"Failed to fetch MBTA predictions for {self.route_ids}: {e}")
            return []

        data = payload.get("data") or []
        logger.debug(f"Fetched {len(data)} predictions for {self.route_ids}")
        return list(data)

    def close(self) -> None:
        self.session.close()


def load_fixture_frame(path: Path) -> List[Any]:
    """
    Load one replay frame from disk.

    - ``*.pb``: a GTFS-RT FeedMessage
    - ``*.json``: a list of records, or a JSON:API document with "data"
    - ``*.jsonl``: one record per line
    """
    suffix = path.suffix.lower()
    if suffix == ".pb":
        return split_feed(path.read_bytes())
    if suffix == ".jsonl":
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
    if suffix == ".json":
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
        if isinstance(document, dict):
            return list(document.get("data") or [])
        return list(document)
    raise ValueError(f"Unsupported fixture file: {path}")


class ReplayFeedSource(FeedSource):
    """
    Replays recorded frames in order, one frame per fetch.

    Frames are given directly or read from a fixtures directory (sorted by
    file name). The ingestion loop divides interval_seconds by its speed
    multiplier, so a replay at 10x waits 0.1s between one-second frames.
    """

    FIXTURE_SUFFIXES = (".pb", ".json", ".jsonl")

    def __init__(
        self,
        frames: Union[str, Path, Iterable[List[Any]]],
        interval_seconds: float = 1.0,
        loop: bool = False,
    ):
        if isinstance(frames, (str, Path)):
            self.name = f"replay:{frames}"
            self._frames = self._load_directory(Path(frames))
        else:
            self.name = "replay"
            self._frames = [list(frame) for frame in frames]
        self.interval_seconds = interval_seconds
        self.loop = loop
        self._position = 0

    @classmethod
    def _load_directory(cls, directory: Path) -> List[List[Any]]:
        if not directory.is_dir():
            raise FileNotFoundError(f"Fixtures directory not found: {directory}")
        frames = []
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() not in cls.FIXTURE_SUFFIXES:
                continue
            try:
                frames.append(load_fixture_frame(path))
            except Exception as e:
                logger.warning(f"Skipping unreadable fixture {path}: {e}")
        logger.info(f"Loaded {len(frames)} replay frames from {directory}")
        return frames

    def fetch(self) -> Optional[List[Any]]:
        if self._position >= len(self._frames):
            if not self.loop or not self._frames:
                return None
            self._position = 0
        frame = self._frames[self._position]
        self._position += 1
        return frame

    def rewind(self) -> None:
        self._position = 0

    def __len__(self) -> int:
        return len(self._frames)
