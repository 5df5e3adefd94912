"""
Route planning and stop sequencing.

Exports:
- RouteStore: transactional persistence with the sequence invariant
- StopStateMachine: stop lifecycle transitions and ETA propagation
- RouteOptimizer: nearest-neighbour + 2-opt ordering and ETA chain
- RouteService: caller-facing orchestration
"""
from route_engine.services.routing.optimizer import (
    MISSING_COORDINATES_WARNING,
    PlannedStop,
    RouteOptimizer,
    RoutePlan,
    StopNode,
)
from route_engine.services.routing.store import RouteStore
from route_engine.services.routing.state_machine import StopStateMachine, TransitionResult
from route_engine.services.routing.service import (
    OptimizationOutcome,
    PositionOutcome,
    RouteService,
)

__all__ = [
    "MISSING_COORDINATES_WARNING",
    "PlannedStop",
    "RouteOptimizer",
    "RoutePlan",
    "StopNode",
    "RouteStore",
    "StopStateMachine",
    "TransitionResult",
    "OptimizationOutcome",
    "PositionOutcome",
    "RouteService",
]
