"""
Distance providers for route planning.

Straight-line (haversine) distance is the default; an OSRM table service
can be configured instead. Both return a request-scoped travel matrix that
the optimizer consumes. Nothing here is cached between calls.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from math import atan2, cos, radians, sin, sqrt
from typing import Optional, Sequence

import logging

import httpx

from route_engine.core.config import get_settings
from route_engine.core.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 point."""
    latitude: float
    longitude: float

    def validate(self) -> None:
        """Raise ValueError if the coordinate is out of range."""
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(f"Latitude {self.latitude} out of range [-90, 90]")
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(f"Longitude {self.longitude} out of range [-180, 180]")


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    """
    Calculate the great-circle distance between two points in kilometers.

    Uses the Haversine formula.
    """
    lat1_rad = radians(a.latitude)
    lat2_rad = radians(b.latitude)
    delta_lat = radians(b.latitude - a.latitude)
    delta_lon = radians(b.longitude - a.longitude)

    h = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * atan2(sqrt(h), sqrt(1 - h))

    return EARTH_RADIUS_KM * c


def travel_minutes(distance_km: float, average_speed_kmh: float) -> float:
    """Travel time for a distance at a constant average speed."""
    if average_speed_kmh <= 0:
        raise ValueError("Average speed must be positive")
    return distance_km / average_speed_kmh * 60.0


@dataclass
class TravelMatrix:
    """
    Pairwise travel estimates between points.

    ``distances_km[i][j]`` and ``durations_min[i][j]`` describe the leg from
    point i to point j. Index order matches the points passed to the
    provider.
    """
    distances_km: list[list[float]] = field(default_factory=list)
    durations_min: list[list[float]] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.distances_km)

    def distance(self, i: int, j: int) -> float:
        return self.distances_km[i][j]

    def duration(self, i: int, j: int) -> float:
        return self.durations_min[i][j]


class DistanceProvider(ABC):
    """Abstract source of travel distances and durations."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier ('haversine' or 'osrm')."""

    @abstractmethod
    async def matrix(self, points: Sequence[Coordinate]) -> TravelMatrix:
        """Build the full travel matrix for *points*.

        Raises:
            DependencyUnavailableError: If a remote provider cannot answer.
        """

    async def leg(self, origin: Coordinate, destination: Coordinate) -> tuple[float, float]:
        """Distance (km) and duration (minutes) of a single leg."""
        m = await self.matrix([origin, destination])
        return m.distance(0, 1), m.duration(0, 1)


class HaversineDistanceProvider(DistanceProvider):
    """Straight-line distances with durations at a constant average speed."""

    def __init__(self, average_speed_kmh: Optional[float] = None):
        self.average_speed_kmh = average_speed_kmh or get_settings().average_speed_kmh

    @property
    def provider_name(self) -> str:
        return "haversine"

    async def matrix(self, points: Sequence[Coordinate]) -> TravelMatrix:
        n = len(points)
        distances = [[0.0] * n for _ in range(n)]
        durations = [[0.0] * n for _ in range(n)]

        for i in range(n):
            for j in range(i + 1, n):
                d = haversine_km(points[i], points[j])
                t = travel_minutes(d, self.average_speed_kmh)
                distances[i][j] = distances[j][i] = d
                durations[i][j] = durations[j][i] = t

        return TravelMatrix(distances_km=distances, durations_min=durations)


class OSRMDistanceProvider(DistanceProvider):
    """
    Road distances from an OSRM ``table`` service.

    Cells OSRM cannot route (null in the response) fall back to the
    haversine estimate so a single unroutable machine does not fail the
    whole optimization.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        profile: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.osrm_base_url).rstrip("/")
        self.profile = profile or settings.osrm_profile
        self.timeout = timeout or settings.osrm_timeout_seconds
        self._fallback = HaversineDistanceProvider(settings.average_speed_kmh)
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "osrm"

    async def matrix(self, points: Sequence[Coordinate]) -> TravelMatrix:
        if len(points) < 2:
            return await self._fallback.matrix(points)

        coordinate_str = ";".join(f"{p.longitude},{p.latitude}" for p in points)
        url = f"{self.base_url}/table/v1/{self.profile}/{coordinate_str}"
        params = {"annotations": "duration,distance"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"OSRM table request failed: {e}")
                raise DependencyUnavailableError(
                    f"Distance provider unavailable: {e}",
                    provider=self.provider_name,
                ) from e

        if data.get("code") != "Ok" or "distances" not in data or "durations" not in data:
            raise DependencyUnavailableError(
                f"Distance provider returned {data.get('code', 'no code')}",
                provider=self.provider_name,
            )

        fallback = await self._fallback.matrix(points)
        n = len(points)
        distances = [[0.0] * n for _ in range(n)]
        durations = [[0.0] * n for _ in range(n)]

        for i in range(n):
            for j in range(n):
                meters = data["distances"][i][j]
                seconds = data["durations"][i][j]
                if meters is None or seconds is None:
                    distances[i][j] = fallback.distance(i, j)
                    durations[i][j] = fallback.duration(i, j)
                else:
                    distances[i][j] = meters / 1000.0
                    durations[i][j] = seconds / 60.0

        return TravelMatrix(distances_km=distances, durations_min=durations)


# ---------------------------------------------------------------------------
# Factory / singleton
# ---------------------------------------------------------------------------

_cached_provider: Optional[DistanceProvider] = None


def get_distance_provider() -> DistanceProvider:
    """Return the configured DistanceProvider (cached singleton)."""
    global _cached_provider
    if _cached_provider is not None:
        return _cached_provider

    settings = get_settings()
    if settings.distance_provider == "osrm":
        _cached_provider = OSRMDistanceProvider()
    else:
        _cached_provider = HaversineDistanceProvider()
    logger.info(f"DistanceProvider: using {_cached_provider.provider_name}")

    return _cached_provider


def reset_distance_provider() -> None:
    """Clear the cached provider (for testing)."""
    global _cached_provider
    _cached_provider = None
