"""
Pydantic schemas for API request/response validation.
"""
from route_engine.schemas.base import (
    BaseSchema,
    PaginatedResponse,
    GeoLocation,
    VersionedRequest,
)
from route_engine.schemas.route import (
    StopCreate,
    StopUpdate,
    RouteStopResponse,
    ReorderRequest,
    RouteCreate,
    RouteUpdate,
    RouteResponse,
    RouteListResponse,
    RouteCompleteRequest,
    RouteStartRequest,
    OptimizeRequest,
    OptimizeResponse,
    PlannedStopResponse,
    StopEventRequest,
    PositionPing,
    InferredEvent,
    PositionIngestResponse,
)

__all__ = [
    # Base
    "BaseSchema",
    "PaginatedResponse",
    "GeoLocation",
    "VersionedRequest",
    # Stops
    "StopCreate",
    "StopUpdate",
    "RouteStopResponse",
    "ReorderRequest",
    # Routes
    "RouteCreate",
    "RouteUpdate",
    "RouteResponse",
    "RouteListResponse",
    "RouteCompleteRequest",
    "RouteStartRequest",
    # Optimization
    "OptimizeRequest",
    "OptimizeResponse",
    "PlannedStopResponse",
    # Progress
    "StopEventRequest",
    "PositionPing",
    "InferredEvent",
    "PositionIngestResponse",
]
