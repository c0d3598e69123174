"""GTFS static data loader: route/stop identity and scheduled stop times."""

import csv
import io
import logging
import zipfile
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

import requests

from .config import DEFAULT_TIMEZONE, resolve_timezone
from .models import RouteInfo, StopInfo

logger = logging.getLogger(__name__)

# MBTA GTFS static data URL
MBTA_GTFS_URL = "https://cdn.mbta.com/MBTA_GTFS.zip"

GTFS_FILES = ("stops.txt", "routes.txt", "trips.txt", "stop_times.txt")


def parse_gtfs_time(value: str) -> Optional[int]:
    """Parse a GTFS "HH:MM:SS" time (hours may exceed 23) into seconds past service day start."""
    value = (value or "").strip()
    if not value:
        return None
    hours, minutes, seconds = value.split(":")
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds)


class StaticDataLoader:
    """
    Loads and indexes GTFS static data.

    Read-only once loaded: the engine only looks things up. Realtime stop IDs
    for platforms are mapped to their parent station through parent_stop().
    """

    def __init__(self, timezone=DEFAULT_TIMEZONE):
        """
        Initialize the loader.

        Args:
            timezone: Agency timezone name or pytz timezone, used to anchor
                      scheduled times to service dates.
        """
        self.tz = resolve_timezone(timezone)
        self.stops: Dict[str, StopInfo] = {}
        self.routes: Dict[str, RouteInfo] = {}
        self.trip_routes: Dict[str, str] = {}  # trip_id -> route_id
        self.trip_directions: Dict[str, int] = {}  # trip_id -> direction_id
        self.stops_by_route: Dict[str, Set[str]] = {}  # route_id -> {stop_ids}
        self.scheduled_arrivals: Dict[Tuple[str, str], int] = {}  # (trip_id, stop_id) -> seconds

    def load_from_url(self, url: str = MBTA_GTFS_URL, timeout: float = 60) -> None:
        """Download and load a GTFS zip."""
        logger.info(f"Downloading GTFS data from {url}")
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to download GTFS data: {e}")
            raise
        self.load_from_zip(io.BytesIO(response.content))

    def load_from_zip(self, source) -> None:
        """Load a GTFS zip from a path or file-like object."""
        with zipfile.ZipFile(source) as zip_file:
            contents = {name: zip_file.read(name).decode("utf-8-sig") for name in GTFS_FILES}
        self._load_all(contents)

    def load_from_files(self, stops_path: str, routes_path: str, trips_path: str, stop_times_path: str) -> None:
        """Load GTFS data from local CSV files."""
        logger.info("Loading GTFS data from local files")
        contents = {}
        for name, path in zip(GTFS_FILES, (stops_path, routes_path, trips_path, stop_times_path)):
            with open(path, "r", encoding="utf-8-sig") as f:
                contents[name] = f.read()
        self._load_all(contents)

    def _load_all(self, contents: Dict[str, str]) -> None:
        self._load_stops(contents["stops.txt"])
        self._load_routes(contents["routes.txt"])
        self._load_trips(contents["trips.txt"])
        self._load_stop_times(contents["stop_times.txt"])
        logger.info(f"Loaded {len(self.stops)} stops, {len(self.routes)} routes, {len(self.trip_routes)} trips")

    def _load_stops(self, csv_content: str) -> None:
        """Parse stops.txt."""
        for row in csv.DictReader(io.StringIO(csv_content)):
            stop_id = row["stop_id"]
            self.stops[stop_id] = StopInfo(
                stop_id=stop_id,
                name=row.get("stop_name", stop_id),
                latitude=float(row.get("stop_lat") or 0.0),
                longitude=float(row.get("stop_lon") or 0.0),
                parent_station=row.get("parent_station") or None,
            )

    def _load_routes(self, csv_content: str) -> None:
        """Parse routes.txt."""
        for row in csv.DictReader(io.StringIO(csv_content)):
            route_id = row["route_id"]
            route_type = row.get("route_type", "")
            self.routes[route_id] = RouteInfo(
                route_id=route_id,
                short_name=row.get("route_short_name") or "",
                long_name=row.get("route_long_name") or route_id,
                route_type=int(route_type) if route_type.strip() else None,
                color=row.get("route_color") or None,
            )
            self.stops_by_route.setdefault(route_id, set())

    def _load_trips(self, csv_content: str) -> None:
        """Parse trips.txt to map trips to routes and directions."""
        for row in csv.DictReader(io.StringIO(csv_content)):
            trip_id = row["trip_id"]
            self.trip_routes[trip_id] = row["route_id"]
            direction = row.get("direction_id", "")
            if direction.strip():
                self.trip_directions[trip_id] = int(direction)

    def _load_stop_times(self, csv_content: str) -> None:
        """Parse stop_times.txt for scheduled arrivals and route membership."""
        for row in csv.DictReader(io.StringIO(csv_content)):
            trip_id = row["trip_id"]
            stop_id = row["stop_id"]
            scheduled = parse_gtfs_time(row.get("arrival_time") or row.get("departure_time", ""))
            if scheduled is not None:
                self.scheduled_arrivals[(trip_id, stop_id)] = scheduled

            route_id = self.trip_routes.get(trip_id)
            if route_id is None:
                continue
            self.stops_by_route.setdefault(route_id, set()).add(stop_id)
            parent_id = self.parent_stop(stop_id)
            self.stops_by_route[route_id].add(parent_id)

        # Populate each stop's route list (platforms and parent stations alike)
        for route_id, stop_ids in self.stops_by_route.items():
            for stop_id in stop_ids:
                stop = self.stops.get(stop_id)
                if stop is not None and route_id not in stop.routes:
                    stop.routes.append(route_id)

        logger.debug(f"Indexed {len(self.scheduled_arrivals)} scheduled stop times")

    def get_route(self, route_id: str) -> Optional[RouteInfo]:
        return self.routes.get(route_id)

    def get_stop(self, stop_id: str) -> Optional[StopInfo]:
        return self.stops.get(stop_id)

    def route_type(self, route_id: Optional[str]) -> Optional[int]:
        route = self.routes.get(route_id) if route_id else None
        return route.route_type if route else None

    def parent_stop(self, stop_id: str) -> str:
        """Return the parent station for a platform stop, or the stop itself."""
        stop = self.stops.get(stop_id)
        if stop is not None and stop.parent_station:
            return stop.parent_station
        return stop_id

    def routes_for_stop(self, stop_id: str) -> List[str]:
        """Route IDs serving a stop, sorted."""
        return sorted(r for r, stop_ids in self.stops_by_route.items() if stop_id in stop_ids)

    def routes_between(self, from_stop_id: str, to_stop_id: str) -> List[str]:
        """Route IDs serving both stops, sorted."""
        return sorted(set(self.routes_for_stop(from_stop_id)) & set(self.routes_for_stop(to_stop_id)))

    def direction_for_trip(self, trip_id: Optional[str]) -> Optional[int]:
        return self.trip_directions.get(trip_id) if trip_id else None

    def route_for_trip(self, trip_id: Optional[str]) -> Optional[str]:
        return self.trip_routes.get(trip_id) if trip_id else None

    def scheduled_time(
        self, trip_id: Optional[str], stop_id: str, service_date: Optional[date] = None
    ) -> Optional[float]:
        """
        Scheduled arrival of a trip at a stop as a Unix timestamp.

        GTFS times count from "noon minus 12 hours" on the service date in the
        agency zone, which keeps daylight-saving transition days correct.
        service_date defaults to today in the agency zone.
        """
        if not trip_id:
            return None
        seconds = self.scheduled_arrivals.get((trip_id, stop_id))
        if seconds is None:
            return None
        if service_date is None:
            service_date = datetime.now(self.tz).date()
        noon = self.tz.localize(datetime(service_date.year, service_date.month, service_date.day, 12))
        return (noon - timedelta(hours=12)).timestamp() + seconds

    def clear(self) -> None:
        """Clear all loaded data to free memory."""
        self.stops.clear()
        self.routes.clear()
        self.trip_routes.clear()
        self.trip_directions.clear()
        self.stops_by_route.clear()
        self.scheduled_arrivals.clear()
        logger.info("Cleared GTFS data from memory")
