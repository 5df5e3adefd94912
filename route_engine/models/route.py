"""
Route and RouteStop models for the route engine.

A route is one operator's planned day of machine visits; its stops carry
the visiting order, the per-stop lifecycle status and the timing data.
"""
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from route_engine.models.base import BaseModel, UTCDateTime
from route_engine.models.enums import RouteStatus, RouteType, StopStatus

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Route(BaseModel):
    """
    Planned sequence of machine visits for one operator on one day.

    There is no persisted status column: the route's state is derived from
    its stops, and ``completed_at`` freezes it.
    """
    __tablename__ = "routes"

    __table_args__ = (
        Index("ix_routes_organization_planned_date", "organization_id", "planned_date"),
    )

    # =========================================================================
    # Ownership
    # =========================================================================
    organization_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
    )

    operator_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
    )

    # =========================================================================
    # Route Details
    # =========================================================================
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    type: Mapped[RouteType] = mapped_column(
        Enum(RouteType, name="route_type"),
        nullable=False,
        default=RouteType.REFILL,
    )

    planned_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
    )

    planned_start_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Seed for ETA computation; defaults to start of working day",
    )

    auto_optimize: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        comment="Re-optimize automatically after each added stop",
    )

    # =========================================================================
    # Estimates vs Actuals
    # =========================================================================
    estimated_duration_minutes: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    estimated_distance_km: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(8, 2),
        nullable=True,
    )

    actual_duration_minutes: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    actual_distance_km: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(8, 2),
        nullable=True,
    )

    # =========================================================================
    # Execution
    # =========================================================================
    started_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Set when the route is finalized; route is read-only afterwards",
    )

    # GPS odometer, fed by position ingest
    last_position_latitude: Mapped[Optional[float]] = mapped_column(
        Numeric(10, 7, asdecimal=False),
        nullable=True,
    )

    last_position_longitude: Mapped[Optional[float]] = mapped_column(
        Numeric(10, 7, asdecimal=False),
        nullable=True,
    )

    last_position_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    tracked_distance_km: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 3),
        nullable=True,
    )

    # =========================================================================
    # Notes & Metadata
    # =========================================================================
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONDocument,
        nullable=False,
        default=dict,
    )

    # =========================================================================
    # Optimistic Locking
    # =========================================================================
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default="1",
        comment="Optimistic locking version counter",
    )

    # =========================================================================
    # Helper Methods
    # =========================================================================

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def derive_status(self, stops: Iterable["RouteStop"]) -> RouteStatus:
        """Derive the route lifecycle status from its stops."""
        if self.completed_at is not None:
            return RouteStatus.COMPLETED
        if self.started_at is not None:
            return RouteStatus.IN_PROGRESS
        if any(s.status not in (StopStatus.PENDING, StopStatus.CANCELLED) for s in stops):
            return RouteStatus.IN_PROGRESS
        return RouteStatus.PLANNED

    def __repr__(self) -> str:
        return (
            f"<Route(id={self.id}, name={self.name!r}, "
            f"planned_date={self.planned_date}, version={self.version})>"
        )


class RouteStop(BaseModel):
    """
    One machine visit within a route.

    ``latitude``/``longitude`` are a snapshot of the machine location taken
    at planning time and may diverge from the live machine record.
    """
    __tablename__ = "route_stops"

    __table_args__ = (
        Index(
            "uq_route_stops_route_sequence",
            "route_id",
            "sequence",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    # =========================================================================
    # Parent Route & Targets
    # =========================================================================
    route_id: Mapped[UUID] = mapped_column(
        ForeignKey("routes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    machine_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
    )

    # Linked work order, owned by the task system
    task_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        index=True,
    )

    # =========================================================================
    # Sequence & Status
    # =========================================================================
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Stop sequence (1-based)",
    )

    status: Mapped[StopStatus] = mapped_column(
        Enum(StopStatus, name="route_stop_status"),
        nullable=False,
        default=StopStatus.PENDING,
    )

    # =========================================================================
    # Timing
    # =========================================================================
    estimated_arrival: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    actual_arrival: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    departed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    # =========================================================================
    # Location Snapshot
    # =========================================================================
    latitude: Mapped[Optional[float]] = mapped_column(
        Numeric(10, 7, asdecimal=False),
        nullable=True,
    )

    longitude: Mapped[Optional[float]] = mapped_column(
        Numeric(10, 7, asdecimal=False),
        nullable=True,
    )

    # =========================================================================
    # Notes & Metadata
    # =========================================================================
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONDocument,
        nullable=False,
        default=dict,
    )

    # =========================================================================
    # Helper Methods
    # =========================================================================

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def is_frozen(self) -> bool:
        """Reached or finished stops keep their place in the sequence."""
        return not self.status.is_reorderable

    def __repr__(self) -> str:
        return (
            f"<RouteStop(route={self.route_id}, seq={self.sequence}, "
            f"machine={self.machine_id}, status={self.status.value})>"
        )
