"""
Route and RouteStop Pydantic schemas.
"""
from datetime import datetime, date
from typing import Any, Optional, Sequence
from uuid import UUID

from pydantic import AliasChoices, Field, model_validator

from route_engine.models.enums import RouteStatus, RouteType, StopEvent, StopStatus
from route_engine.schemas.base import (
    BaseSchema,
    GeoLocation,
    PaginatedResponse,
    VersionedRequest,
)


# =========================================================================
# Stops
# =========================================================================

class StopCreate(VersionedRequest):
    """Schema for adding a machine visit to a route."""
    machine_id: UUID
    task_id: Optional[UUID] = None
    sequence: Optional[int] = Field(
        None,
        ge=1,
        description="Insert position; appended at the end when omitted",
    )
    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form; serviceMinutes and repeatVisit are interpreted",
    )


class StopUpdate(VersionedRequest):
    """
    Schema for editing a stop.

    Notes and metadata are always editable; task and coordinates only
    while the stop is PENDING.
    """
    task_id: Optional[UUID] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    notes: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def _coordinates_together(self) -> "StopUpdate":
        if ("latitude" in self.model_fields_set) != ("longitude" in self.model_fields_set):
            raise ValueError("latitude and longitude must be updated together")
        return self


class RouteStopResponse(BaseSchema):
    """Schema for route stop response."""
    id: UUID
    route_id: UUID
    machine_id: UUID
    task_id: Optional[UUID] = None

    # Sequence & Status
    sequence: int
    status: StopStatus

    # Timing
    estimated_arrival: Optional[datetime] = None
    actual_arrival: Optional[datetime] = None
    departed_at: Optional[datetime] = None

    # Location snapshot
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("meta", "metadata"),
    )

    # Timestamps
    created_at: datetime
    updated_at: datetime


class ReorderRequest(VersionedRequest):
    """Manual order for the route's non-terminal stops."""
    stop_ids: list[UUID] = Field(
        ...,
        description="Every PENDING/EN_ROUTE/ARRIVED stop id exactly once, in the desired order",
    )


# =========================================================================
# Routes
# =========================================================================

class RouteBase(BaseSchema):
    """Base route schema."""
    name: str = Field(..., min_length=1, max_length=200)
    type: RouteType = RouteType.REFILL
    planned_date: date
    planned_start_at: Optional[datetime] = Field(
        None,
        description="ETA seed; defaults to the start of the working day",
    )
    auto_optimize: bool = False
    notes: Optional[str] = None


class RouteCreate(RouteBase):
    """Schema for creating a route."""
    operator_id: UUID
    metadata: dict[str, Any] = Field(default_factory=dict)
    stops: list[StopCreate] = Field(default_factory=list)


class RouteUpdate(VersionedRequest):
    """Schema for updating a route (partial)."""
    operator_id: Optional[UUID] = None
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    type: Optional[RouteType] = None
    planned_date: Optional[date] = None
    planned_start_at: Optional[datetime] = None
    auto_optimize: Optional[bool] = None
    notes: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class RouteResponse(BaseSchema):
    """Schema for route response."""
    id: UUID
    organization_id: UUID
    operator_id: UUID
    name: str
    type: RouteType
    planned_date: date
    planned_start_at: Optional[datetime] = None
    auto_optimize: bool

    # Derived from the stops
    status: Optional[RouteStatus] = None

    # Estimates vs actuals
    estimated_duration_minutes: Optional[int] = None
    estimated_distance_km: Optional[float] = None
    actual_duration_minutes: Optional[int] = None
    actual_distance_km: Optional[float] = None

    # Execution
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    tracked_distance_km: Optional[float] = None

    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("meta", "metadata"),
    )
    version: int

    # Stops (ordered by sequence)
    stops: list[RouteStopResponse] = []

    # Timestamps
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_route(cls, route: Any, stops: Optional[Sequence[Any]] = None) -> "RouteResponse":
        """Build the response, deriving status from ``stops`` when given."""
        response = cls.model_validate(route)
        if stops is not None:
            response.status = route.derive_status(stops)
            response.stops = [RouteStopResponse.model_validate(s) for s in stops]
        return response


RouteListResponse = PaginatedResponse[RouteResponse]


class RouteStartRequest(VersionedRequest):
    started_at: Optional[datetime] = None


class RouteCompleteRequest(VersionedRequest):
    """Completion data; reported actuals replace the computed ones."""
    completed_at: Optional[datetime] = None
    actual_duration_minutes: Optional[int] = Field(None, ge=0)
    actual_distance_km: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


# =========================================================================
# Optimization
# =========================================================================

class OptimizeRequest(VersionedRequest):
    """Schema for optimizing a route's stop order."""
    preview: bool = Field(
        False,
        description="Compute and return the order without saving it",
    )
    start: Optional[GeoLocation] = Field(
        None,
        description="Start point; defaults to the last visited stop or the depot",
    )


class PlannedStopResponse(BaseSchema):
    stop_id: UUID
    machine_id: UUID
    sequence: int
    estimated_arrival: Optional[datetime] = None
    distance_from_prev_km: Optional[float] = None
    travel_minutes_from_prev: Optional[float] = None
    missing_coordinates: bool = False


class OptimizeResponse(BaseSchema):
    """Proposed or applied stop order with totals."""
    route_id: UUID
    preview: bool
    applied: bool
    engine: str
    stops: list[PlannedStopResponse]
    total_distance_km: float
    total_duration_minutes: float
    two_opt_passes: int
    warnings: list[str] = []
    version: int


# =========================================================================
# Progress
# =========================================================================

class StopEventRequest(VersionedRequest):
    """Progress event reported for a stop."""
    event: StopEvent
    timestamp: Optional[datetime] = Field(
        None,
        description="When it happened; defaults to now",
    )
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @property
    def position(self) -> Optional[GeoLocation]:
        if self.latitude is None or self.longitude is None:
            return None
        return GeoLocation(latitude=self.latitude, longitude=self.longitude)


class PositionPing(VersionedRequest):
    """GPS position reported by the operator's device."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None
    accuracy_meters: Optional[float] = Field(None, ge=0)


class InferredEvent(BaseSchema):
    stop_id: UUID
    previous_status: StopStatus
    new_status: StopStatus
    occurred_at: datetime


class PositionIngestResponse(BaseSchema):
    accepted: bool
    reason: Optional[str] = None
    events: list[InferredEvent] = []
    tracked_distance_km: Optional[float] = None
