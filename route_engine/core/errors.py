"""
Error taxonomy for the route engine.

Every error carries a machine-readable ``kind`` and the HTTP status it maps
to, so the API layer can render it without knowing each class.
"""
from typing import Any, Optional


class RouteEngineError(Exception):
    """Base class for all route engine errors."""

    kind: str = "route_engine_error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.kind,
            "detail": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload


# =========================================================================
# Validation errors (bad input, nothing changed)
# =========================================================================
class ValidationError(RouteEngineError):
    kind = "validation_error"
    status_code = 422


class UnknownMachineError(ValidationError):
    kind = "unknown_machine"


class DuplicateMachineError(ValidationError):
    kind = "duplicate_machine"


class PlannedDateInPastError(ValidationError):
    kind = "planned_date_in_past"


class OperatorNotInOrganizationError(ValidationError):
    kind = "operator_not_in_organization"


class InvalidTimestampError(ValidationError):
    kind = "invalid_timestamp"


class InvalidPositionError(ValidationError):
    kind = "invalid_position"


# =========================================================================
# Lookup errors
# =========================================================================
class NotFoundError(RouteEngineError):
    kind = "not_found"
    status_code = 404


class RouteNotFoundError(NotFoundError):
    kind = "route_not_found"


class StopNotFoundError(NotFoundError):
    kind = "stop_not_found"


# =========================================================================
# State errors (caller should refetch and retry)
# =========================================================================
class StateError(RouteEngineError):
    kind = "state_error"
    status_code = 409


class InvalidStateError(StateError):
    kind = "invalid_state"


class SequenceMismatchError(StateError):
    kind = "sequence_mismatch"


class IllegalTransitionError(StateError):
    """Raised when a stop cannot move from its current status to the requested one."""

    kind = "illegal_transition"

    def __init__(self, current: Any, requested: Any, event: Optional[Any] = None):
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        if event is not None:
            message = (
                f"Cannot apply {getattr(event, 'value', event)} to a stop in "
                f"{current_value} (would move to {requested_value})"
            )
        else:
            message = f"Illegal transition {current_value} -> {requested_value}"
        super().__init__(message, current=current_value, requested=requested_value)
        self.current = current
        self.requested = requested


# =========================================================================
# Concurrency
# =========================================================================
class ConcurrentModificationError(RouteEngineError):
    kind = "concurrent_modification"
    status_code = 409
    retryable = True


# =========================================================================
# Upstream collaborators
# =========================================================================
class DependencyUnavailableError(RouteEngineError):
    kind = "dependency_unavailable"
    status_code = 503
