"""Distance services for route planning."""

from route_engine.services.geo.distance import (
    Coordinate,
    DistanceProvider,
    HaversineDistanceProvider,
    OSRMDistanceProvider,
    TravelMatrix,
    get_distance_provider,
    haversine_km,
    reset_distance_provider,
    travel_minutes,
)

__all__ = [
    "Coordinate",
    "DistanceProvider",
    "HaversineDistanceProvider",
    "OSRMDistanceProvider",
    "TravelMatrix",
    "get_distance_provider",
    "haversine_km",
    "reset_distance_provider",
    "travel_minutes",
]
