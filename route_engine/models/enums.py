"""
Enum type definitions for the route engine.

These enums map directly to the PostgreSQL ENUM types created by the
baseline migration.
"""
from enum import Enum


class RouteType(str, Enum):
    """Kind of field work a route is planned for."""
    REFILL = "REFILL"            # Restock product
    COLLECTION = "COLLECTION"    # Collect cash
    MAINTENANCE = "MAINTENANCE"  # Repairs and servicing
    MIXED = "MIXED"


class RouteStatus(str, Enum):
    """
    Derived route lifecycle status.

    Not persisted: a route's state lives on its stops and its
    ``completed_at`` stamp.
    """
    PLANNED = "PLANNED"          # No stop has progressed yet
    IN_PROGRESS = "IN_PROGRESS"  # At least one stop moved past PENDING
    COMPLETED = "COMPLETED"      # Route finalized


class StopStatus(str, Enum):
    """Route stop lifecycle status."""
    PENDING = "PENDING"        # Planned, not started
    EN_ROUTE = "EN_ROUTE"      # Operator travelling toward the stop
    ARRIVED = "ARRIVED"        # Operator on site
    DEPARTED = "DEPARTED"      # Work complete, operator left
    SKIPPED = "SKIPPED"        # Unreachable / not visited
    CANCELLED = "CANCELLED"    # Removed from the plan before start

    @property
    def is_terminal(self) -> bool:
        """Terminal stops accept only notes/metadata edits."""
        return self in (StopStatus.DEPARTED, StopStatus.SKIPPED, StopStatus.CANCELLED)

    @property
    def is_reorderable(self) -> bool:
        """Only stops not yet reached may be re-sequenced."""
        return self in (StopStatus.PENDING, StopStatus.EN_ROUTE)


class StopEvent(str, Enum):
    """Progress events reported for a stop."""
    START_TRAVEL = "START_TRAVEL"
    ARRIVE = "ARRIVE"
    DEPART = "DEPART"
    SKIP = "SKIP"
    CANCEL = "CANCEL"
