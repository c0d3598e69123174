"""Service alert sources consumed read-only by the risk classifier."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import requests
from google.transit import gtfs_realtime_pb2

logger = logging.getLogger(__name__)

# MBTA GTFS-Realtime service alerts feed
MBTA_ALERTS_URL = "https://cdn.mbta.com/realtime/Alerts.pb"


class AlertSource(ABC):
    """Supplies the currently active service alert texts for a route."""

    @abstractmethod
    def alerts_for_route(self, route_id: str) -> List[str]:
        raise NotImplementedError


class NoAlerts(AlertSource):
    """Alert source for deployments without an alert feed."""

    def alerts_for_route(self, route_id: str) -> List[str]:
        return []


class StaticAlertSource(AlertSource):
    """In-memory alert table, replaced wholesale by its owner."""

    def __init__(self, alerts: Optional[Dict[str, Iterable[str]]] = None):
        self._alerts: Dict[str, List[str]] = {}
        self.set_alerts(alerts or {})

    def set_alerts(self, alerts: Dict[str, Iterable[str]]) -> None:
        self._alerts = {route_id: list(texts) for route_id, texts in alerts.items()}

    def alerts_for_route(self, route_id: str) -> List[str]:
        return list(self._alerts.get(route_id, []))


def parse_alerts(feed_data: bytes, now: Optional[float] = None) -> Dict[str, List[str]]:
    """
    Parse GTFS-Realtime alerts into route_id -> [alert text].

    Alerts whose active periods all lie outside ``now`` are dropped. An alert
    informing several routes is listed under each, once per route.

    Args:
        feed_data: Raw protobuf bytes of a FeedMessage.
        now: Reference time (defaults to time.time()).

    Returns:
        Mapping of route ID to alert texts in feed order.
    """
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.ParseFromString(feed_data)
    now = time.time() if now is None else now

    alerts: Dict[str, List[str]] = {}
    for entity in feed.entity:
        if not entity.HasField("alert"):
            continue
        alert_obj = entity.alert

        if alert_obj.active_period and not any(_period_contains(p, now) for p in alert_obj.active_period):
            continue

        header_text = ""
        description_text = ""
        if alert_obj.HasField("header_text") and alert_obj.header_text.translation:
            header_text = alert_obj.header_text.translation[0].text
        if alert_obj.HasField("description_text") and alert_obj.description_text.translation:
            description_text = alert_obj.description_text.translation[0].text
        message = f"{header_text} {description_text}".strip()
        if not message:
            continue

        # Informed entities name a route or a trip; one alert is listed once per route
        routes_seen = set()
        for informed_entity in alert_obj.informed_entity:
            route_id = informed_entity.route_id
            if not route_id and informed_entity.HasField("trip"):
                route_id = informed_entity.trip.route_id
            if route_id and route_id not in routes_seen:
                routes_seen.add(route_id)
                alerts.setdefault(route_id, []).append(message)

    logger.debug(f"Parsed alerts for {len(alerts)} routes")
    return alerts


def _period_contains(period, now: float) -> bool:
    start = period.start if period.HasField("start") else None
    end = period.end if period.HasField("end") else None
    return (start is None or start <= now) and (end is None or now <= end)


class GtfsRealtimeAlertSource(AlertSource):
    """Fetches a GTFS-Realtime alerts feed, caching it for a short TTL."""

    def __init__(self, url: str = MBTA_ALERTS_URL, cache_ttl: float = 60, timeout: float = 10, session=None):
        self.url = url
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self.session = session or requests.Session()
        self._cache: Dict[str, List[str]] = {}
        self._fetched_at: Optional[float] = None

    def alerts_for_route(self, route_id: str) -> List[str]:
        self._refresh_if_expired()
        return list(self._cache.get(route_id, []))

    def _refresh_if_expired(self) -> None:
        now = time.time()
        if self._fetched_at is not None and now - self._fetched_at < self.cache_ttl:
            return
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            self._cache = parse_alerts(response.content, now=now)
        except Exception as e:
            # Previous alerts stay cached
            logger.warning(f"Failed to fetch alerts from {self.url}: {e}")
        self._fetched_at = now
