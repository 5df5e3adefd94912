"""
SQLAlchemy ORM Models for the route engine.

This module exports all domain models and enums for the
route planning and stop sequencing engine.
"""

# Enums
from route_engine.models.enums import (
    RouteType,
    RouteStatus,
    StopStatus,
    StopEvent,
)

# Base
from route_engine.models.base import (
    BaseModel,
    TimestampMixin,
    SoftDeleteMixin,
    UUIDPrimaryKeyMixin,
    UTCDateTime,
    utcnow,
)

# Domain Models
from route_engine.models.route import Route, RouteStop

__all__ = [
    # Enums
    "RouteType",
    "RouteStatus",
    "StopStatus",
    "StopEvent",
    # Base
    "BaseModel",
    "TimestampMixin",
    "SoftDeleteMixin",
    "UUIDPrimaryKeyMixin",
    "UTCDateTime",
    "utcnow",
    # Domain Models
    "Route",
    "RouteStop",
]
