"""Converts raw realtime feed messages into ArrivalObservations."""

import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, NamedTuple, Optional, Union

from google.transit import gtfs_realtime_pb2

from .models import ArrivalObservation, ScheduleRelationship, to_epoch

logger = logging.getLogger(__name__)

_StopTimeUpdate = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate
_STOP_RELATIONSHIPS = {
    _StopTimeUpdate.SCHEDULED: ScheduleRelationship.SCHEDULED,
    _StopTimeUpdate.SKIPPED: ScheduleRelationship.SKIPPED,
    _StopTimeUpdate.NO_DATA: ScheduleRelationship.NO_DATA,
}


class FeedStopTimeEvent(NamedTuple):
    """One stop of a GTFS-RT trip update, the unit the normalizer consumes."""
    trip_update: Any  # gtfs_realtime_pb2.TripUpdate
    stop_time_update: Any  # gtfs_realtime_pb2.TripUpdate.StopTimeUpdate
    header_timestamp: Optional[int] = None


class FeedVehicleEvent(NamedTuple):
    """A GTFS-RT vehicle position."""
    vehicle: Any  # gtfs_realtime_pb2.VehiclePosition
    header_timestamp: Optional[int] = None


def split_feed(feed: Union[bytes, "gtfs_realtime_pb2.FeedMessage"]) -> List[Union[FeedStopTimeEvent, FeedVehicleEvent]]:
    """
    Break a GTFS-RT FeedMessage into single-event messages.

    Args:
        feed: Raw protobuf bytes or an already parsed FeedMessage.

    Returns:
        One FeedStopTimeEvent per stop time update and one FeedVehicleEvent
        per vehicle position, in feed order. Alerts are ignored.
    """
    if isinstance(feed, (bytes, bytearray)):
        message = gtfs_realtime_pb2.FeedMessage()
        message.ParseFromString(bytes(feed))
        feed = message

    header_timestamp = feed.header.timestamp if feed.header.HasField("timestamp") else None
    events: List[Union[FeedStopTimeEvent, FeedVehicleEvent]] = []
    for entity in feed.entity:
        events.extend(split_entity(entity, header_timestamp))
    return events


def split_entity(entity, header_timestamp: Optional[int] = None) -> List[Union[FeedStopTimeEvent, FeedVehicleEvent]]:
    """Break one FeedEntity into single-event messages. Alerts yield nothing."""
    events: List[Union[FeedStopTimeEvent, FeedVehicleEvent]] = []
    if entity.HasField("trip_update"):
        for stop_time_update in entity.trip_update.stop_time_update:
            events.append(FeedStopTimeEvent(entity.trip_update, stop_time_update, header_timestamp))
    if entity.HasField("vehicle"):
        events.append(FeedVehicleEvent(entity.vehicle, header_timestamp))
    return events


def parse_timestamp(value) -> Optional[float]:
    """Parse epoch seconds, a numeric string, or an ISO 8601 string. Naive times are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_epoch(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return float(text)
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_epoch(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


class EventNormalizer:
    """
    Normalizes messages from any upstream source into ArrivalObservations.

    Accepted messages:
    - FeedStopTimeEvent / FeedVehicleEvent (see split_feed())
    - MBTA v3 JSON:API prediction resources
    - Flat replay records with route_id, stop_id, timestamp, delay_seconds, ...

    normalize() returns None for messages that are skipped (no resolvable
    route or stop, skipped stops with no delay) and for malformed messages,
    which are logged. It never raises for a single bad message and never
    touches estimator or aggregator state.
    """

    def __init__(self, tz, static_data=None, collapse_to_parent: bool = True):
        """
        Initialize the normalizer.

        Args:
            tz: Agency timezone, used to pick service dates for delay inference.
            static_data: Optional StaticDataLoader for route lookup by trip,
                         scheduled times and parent stations.
            collapse_to_parent: Map platform stop IDs to their parent station
                                when static data knows it.
        """
        self.tz = tz
        self.static_data = static_data
        self.collapse_to_parent = collapse_to_parent
        self._counts_lock = threading.Lock()
        self.counts: Dict[str, int] = {"normalized": 0, "skipped": 0, "malformed": 0}

    def normalize(self, raw) -> Optional[ArrivalObservation]:
        """
        Convert one raw message into an observation.

        Args:
            raw: Any accepted message type.

        Returns:
            ArrivalObservation, or None when the message is skipped or malformed.
        """
        try:
            if isinstance(raw, FeedStopTimeEvent):
                observation = self._from_stop_time_event(raw)
            elif isinstance(raw, FeedVehicleEvent):
                observation = self._from_vehicle_event(raw)
            elif isinstance(raw, dict) and "attributes" in raw:
                observation = self._from_mbta_prediction(raw)
            elif isinstance(raw, dict):
                observation = self._from_record(raw)
            else:
                raise TypeError(f"Unsupported message type {type(raw).__name__}")
        except Exception as e:
            logger.warning(f"Skipping malformed message: {e}")
            self._count("malformed")
            return None

        self._count("skipped" if observation is None else "normalized")
        return observation

    def normalize_feed(self, feed) -> List[ArrivalObservation]:
        """Normalize every event of a GTFS-RT FeedMessage (bytes or parsed)."""
        try:
            events = split_feed(feed)
        except Exception as e:
            logger.warning(f"Skipping undecodable feed message: {e}")
            self._count("malformed")
            return []
        observations = (self.normalize(event) for event in events)
        return [o for o in observations if o is not None]

    def normalize_entity(self, entity, header_timestamp: Optional[int] = None) -> List[ArrivalObservation]:
        """Normalize one GTFS-RT FeedEntity; a trip update yields one observation per stop."""
        observations = (self.normalize(event) for event in split_entity(entity, header_timestamp))
        return [o for o in observations if o is not None]

    def _count(self, name: str) -> None:
        with self._counts_lock:
            self.counts[name] += 1

    def _from_stop_time_event(self, event: FeedStopTimeEvent) -> Optional[ArrivalObservation]:
        trip_update = event.trip_update
        stop_time_update = event.stop_time_update
        trip = trip_update.trip

        if trip.schedule_relationship == gtfs_realtime_pb2.TripDescriptor.CANCELED:
            logger.debug(f"Skipping canceled trip {trip.trip_id}")
            return None

        trip_id = trip.trip_id or None
        route_id = trip.route_id or self._route_for_trip(trip_id)
        raw_stop_id = stop_time_update.stop_id
        relationship = _STOP_RELATIONSHIPS.get(
            stop_time_update.schedule_relationship, ScheduleRelationship.SCHEDULED
        )

        delay = None
        event_time = None
        for name in ("arrival", "departure"):
            if not stop_time_update.HasField(name):
                continue
            stop_time_event = getattr(stop_time_update, name)
            if delay is None and stop_time_event.HasField("delay"):
                delay = stop_time_event.delay
            if event_time is None and stop_time_event.HasField("time"):
                event_time = float(stop_time_event.time)

        observed_at = event_time
        if observed_at is None and trip_update.HasField("timestamp"):
            observed_at = float(trip_update.timestamp)
        if observed_at is None and event.header_timestamp:
            observed_at = float(event.header_timestamp)

        if delay is None and event_time is not None:
            delay = self._infer_delay(trip_id, raw_stop_id, event_time, trip.start_date)

        direction_id = trip.direction_id if trip.HasField("direction_id") else None
        if direction_id is None and self.static_data is not None:
            direction_id = self.static_data.direction_for_trip(trip_id)

        vehicle_id = None
        if trip_update.HasField("vehicle") and trip_update.vehicle.id:
            vehicle_id = trip_update.vehicle.id

        return self._build(
            route_id=route_id,
            stop_id=raw_stop_id,
            observed_at=observed_at,
            delay=delay,
            trip_id=trip_id,
            vehicle_id=vehicle_id,
            relationship=relationship,
            direction_id=direction_id,
            source="gtfs-rt",
        )

    def _from_vehicle_event(self, event: FeedVehicleEvent) -> Optional[ArrivalObservation]:
        vehicle = event.vehicle
        # Only a vehicle stopped at a platform marks an arrival
        if vehicle.current_status != gtfs_realtime_pb2.VehiclePosition.STOPPED_AT:
            return None

        trip = vehicle.trip
        trip_id = trip.trip_id or None
        route_id = trip.route_id or self._route_for_trip(trip_id)

        observed_at = float(vehicle.timestamp) if vehicle.HasField("timestamp") else None
        if observed_at is None and event.header_timestamp:
            observed_at = float(event.header_timestamp)

        direction_id = trip.direction_id if trip.HasField("direction_id") else None
        if direction_id is None and self.static_data is not None:
            direction_id = self.static_data.direction_for_trip(trip_id)

        return self._build(
            route_id=route_id,
            stop_id=vehicle.stop_id,
            observed_at=observed_at,
            delay=None,
            trip_id=trip_id,
            vehicle_id=vehicle.vehicle.id or None,
            relationship=ScheduleRelationship.NO_DATA,
            direction_id=direction_id,
            source="gtfs-rt",
        )

    def _from_mbta_prediction(self, resource: Dict[str, Any]) -> Optional[ArrivalObservation]:
        attributes = resource.get("attributes") or {}
        relationships = resource.get("relationships") or {}

        def related_id(name: str) -> Optional[str]:
            data = (relationships.get(name) or {}).get("data")
            return data.get("id") if data else None

        trip_id = related_id("trip")
        route_id = related_id("route") or self._route_for_trip(trip_id)
        raw_stop_id = related_id("stop")

        status = attributes.get("schedule_relationship")
        if status in ("CANCELLED", "CANCELED"):
            return None
        relationship = ScheduleRelationship.SCHEDULED
        if status == "SKIPPED":
            relationship = ScheduleRelationship.SKIPPED
        elif status == "NO_DATA":
            relationship = ScheduleRelationship.NO_DATA

        event_time = parse_timestamp(attributes.get("arrival_time")) or parse_timestamp(
            attributes.get("departure_time")
        )
        delay = None
        if event_time is not None:
            delay = self._infer_delay(trip_id, raw_stop_id, event_time, None)

        return self._build(
            route_id=route_id,
            stop_id=raw_stop_id,
            observed_at=event_time,
            delay=delay,
            trip_id=trip_id,
            vehicle_id=related_id("vehicle"),
            relationship=relationship,
            direction_id=attributes.get("direction_id"),
            source="mbta-v3",
        )

    def _from_record(self, record: Dict[str, Any]) -> Optional[ArrivalObservation]:
        relationship = ScheduleRelationship(
            (record.get("schedule_relationship") or ScheduleRelationship.SCHEDULED.value).upper()
        )
        delay = record.get("delay_seconds")
        direction_id = record.get("direction_id")
        trip_id = record.get("trip_id")

        return self._build(
            route_id=record.get("route_id") or self._route_for_trip(trip_id),
            stop_id=record.get("stop_id"),
            observed_at=parse_timestamp(record.get("timestamp", record.get("observed_at"))),
            delay=int(delay) if delay is not None else None,
            trip_id=trip_id,
            vehicle_id=record.get("vehicle_id"),
            relationship=relationship,
            direction_id=int(direction_id) if direction_id is not None else None,
            source=record.get("source", "replay"),
        )

    def _build(
        self,
        route_id: Optional[str],
        stop_id: Optional[str],
        observed_at: Optional[float],
        delay: Optional[int],
        trip_id: Optional[str],
        vehicle_id: Optional[str],
        relationship: ScheduleRelationship,
        direction_id: Optional[int],
        source: str,
    ) -> Optional[ArrivalObservation]:
        if not route_id or not stop_id:
            logger.debug(f"Skipping message without route/stop (route={route_id!r}, stop={stop_id!r})")
            return None
        if observed_at is None:
            logger.debug(f"Skipping {route_id}@{stop_id}: no event time")
            return None
        if not math.isfinite(observed_at):
            raise ValueError(f"Non-finite event time {observed_at!r}")
        try:
            datetime.fromtimestamp(observed_at, self.tz)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Event time {observed_at!r} out of range") from e
        if relationship == ScheduleRelationship.SKIPPED and delay is None:
            logger.debug(f"Skipping skipped stop {route_id}@{stop_id} with no inferable delay")
            return None
        if delay is None and relationship == ScheduleRelationship.SCHEDULED:
            relationship = ScheduleRelationship.NO_DATA

        if self.collapse_to_parent and self.static_data is not None:
            stop_id = self.static_data.parent_stop(stop_id)

        return ArrivalObservation(
            route_id=route_id,
            stop_id=stop_id,
            observed_at=observed_at,
            delay_seconds=delay,
            trip_id=trip_id or None,
            vehicle_id=vehicle_id or None,
            schedule_relationship=relationship,
            direction_id=direction_id,
            source=source,
        )

    def _route_for_trip(self, trip_id: Optional[str]) -> Optional[str]:
        if self.static_data is None:
            return None
        return self.static_data.route_for_trip(trip_id)

    def _infer_delay(
        self, trip_id: Optional[str], stop_id: Optional[str], event_time: float, start_date: Optional[str]
    ) -> Optional[int]:
        """
        Delay from the static schedule, when the trip's scheduled time is known.

        Without a start date the service date is either the event's local date
        or, for trips scheduled past midnight (GTFS times of 24:00 and later),
        the day before. The candidate closer to the event wins.
        """
        if self.static_data is None or not trip_id or not stop_id:
            return None
        if start_date:
            service_dates = [datetime.strptime(start_date, "%Y%m%d").date()]
        else:
            local_date = datetime.fromtimestamp(event_time, self.tz).date()
            service_dates = [local_date, local_date - timedelta(days=1)]

        delays = []
        for service_date in service_dates:
            scheduled = self.static_data.scheduled_time(trip_id, stop_id, service_date)
            if scheduled is not None:
                delays.append(int(round(event_time - scheduled)))
        if not delays:
            return None
        return min(delays, key=abs)
