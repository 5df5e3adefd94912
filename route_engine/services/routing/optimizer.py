"""
Stop sequencing and ETA computation.

Tour construction:
1. Travel matrix over {start} + stop coordinates (request-scoped)
2. Nearest-neighbour from the start point (ties -> lower machine id)
3. Bounded 2-opt improvement on the open path
4. ETA chain: eta[i] = eta[i-1] + travel(i-1, i) + service(i-1)

Stops without coordinates are not part of the matrix; they are appended
after the computed order and reported so the caller can flag them.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID
import logging

from route_engine.core.config import get_settings
from route_engine.models.enums import StopStatus
from route_engine.services.geo.distance import (
    Coordinate,
    DistanceProvider,
    TravelMatrix,
    get_distance_provider,
)

logger = logging.getLogger(__name__)

# 2-opt only accepts strictly shorter paths (km)
IMPROVEMENT_EPSILON = 1e-9

MISSING_COORDINATES_WARNING = "missing_coordinates"


@dataclass
class StopNode:
    """A stop as seen by the optimizer."""
    stop_id: UUID
    machine_id: UUID
    coordinate: Optional[Coordinate]
    service_minutes: int

    # EN_ROUTE stops stay first in the reordered tail
    pinned: bool = False

    @property
    def tie_break_key(self) -> tuple[str, str]:
        return (str(self.machine_id), str(self.stop_id))


@dataclass
class PlannedStop:
    """One stop of a computed plan."""
    stop_id: UUID
    machine_id: UUID
    position: int  # 1-based position within the planned stops
    estimated_arrival: Optional[datetime]
    distance_from_prev_km: Optional[float]
    travel_minutes_from_prev: Optional[float]
    missing_coordinates: bool = False


@dataclass
class RoutePlan:
    """Result of planning or estimating a stop order."""
    stops: list[PlannedStop] = field(default_factory=list)
    total_distance_km: float = 0.0
    total_duration_minutes: float = 0.0
    two_opt_passes: int = 0
    engine: str = "heuristic"

    # False when the optimizer left the existing order untouched
    optimized: bool = False

    @property
    def ordered_stop_ids(self) -> list[UUID]:
        return [s.stop_id for s in self.stops]

    @property
    def missing_coordinate_stop_ids(self) -> list[UUID]:
        return [s.stop_id for s in self.stops if s.missing_coordinates]

    @property
    def etas(self) -> dict[UUID, Optional[datetime]]:
        return {s.stop_id: s.estimated_arrival for s in self.stops}


# =========================================================================
# Tour construction
# =========================================================================

def path_length(matrix: TravelMatrix, path: Sequence[int]) -> float:
    """Total distance of an open path through matrix indices."""
    return sum(matrix.distance(path[k], path[k + 1]) for k in range(len(path) - 1))


def nearest_neighbor(
    matrix: TravelMatrix,
    origin: int,
    candidates: Sequence[int],
    keys: dict[int, tuple],
) -> list[int]:
    """
    Greedy tour: repeatedly visit the closest unvisited candidate.

    Equidistant candidates are ordered by ``keys`` so identical input
    always yields the identical tour.
    """
    remaining = list(candidates)
    order: list[int] = []
    current = origin

    while remaining:
        nearest = min(remaining, key=lambda j: (matrix.distance(current, j), keys[j]))
        order.append(nearest)
        remaining.remove(nearest)
        current = nearest

    return order


def two_opt(
    matrix: TravelMatrix,
    path: list[int],
    max_passes: int,
    fixed_prefix: int = 1,
) -> tuple[list[int], int]:
    """
    Improve an open path by reversing segments.

    The first ``fixed_prefix`` positions (the start point and any pinned
    stop) never move. Stops after ``max_passes`` passes even if further
    improvement is possible.

    Returns:
        (improved path, number of passes run)
    """
    best = list(path)
    best_length = path_length(matrix, best)
    n = len(best)
    passes = 0

    while passes < max_passes:
        passes += 1
        improved = False
        for i in range(fixed_prefix, n - 1):
            for j in range(i + 1, n):
                candidate = best[:i] + best[i:j + 1][::-1] + best[j + 1:]
                candidate_length = path_length(matrix, candidate)
                if candidate_length < best_length - IMPROVEMENT_EPSILON:
                    best, best_length = candidate, candidate_length
                    improved = True
        if not improved:
            break

    return best, passes


# =========================================================================
# ETA propagation
# =========================================================================

def propagate_eta_shift(stops: Iterable[Any], after_sequence: int, delta: timedelta) -> list[Any]:
    """
    Shift estimated arrivals of downstream open stops by ``delta``.

    Only PENDING/EN_ROUTE stops after ``after_sequence`` that already have
    an ETA move; skipped and cancelled stops drop out of propagation.

    Returns:
        The stops whose ETA changed.
    """
    shifted = []
    if not delta:
        return shifted

    for stop in stops:
        if stop.sequence <= after_sequence:
            continue
        if stop.status not in (StopStatus.PENDING, StopStatus.EN_ROUTE):
            continue
        if stop.estimated_arrival is None:
            continue
        stop.estimated_arrival = stop.estimated_arrival + delta
        shifted.append(stop)

    return shifted


# =========================================================================
# Optimizer
# =========================================================================

class RouteOptimizer:
    """
    Computes visiting orders and per-stop ETAs.

    Usage:
        optimizer = RouteOptimizer()
        plan = await optimizer.plan(nodes, start=depot, seed=start_of_day)
    """

    def __init__(
        self,
        distance_provider: Optional[DistanceProvider] = None,
        max_two_opt_passes: Optional[int] = None,
        engine: Optional[str] = None,
    ):
        settings = get_settings()
        self.distance_provider = distance_provider or get_distance_provider()
        self.max_two_opt_passes = (
            max_two_opt_passes
            if max_two_opt_passes is not None
            else settings.optimizer_max_two_opt_passes
        )
        self.engine = engine or settings.optimizer_engine

    async def plan(
        self,
        nodes: Sequence[StopNode],
        start: Coordinate,
        seed: datetime,
    ) -> RoutePlan:
        """
        Compute a distance-minimizing order for ``nodes`` starting at ``start``.

        ``nodes`` must be given in their current order; that order is kept
        for stops without coordinates, which go last unless pinned, and it is
        returned unchanged when there is nothing to optimize.
        """
        located = [n for n in nodes if n.coordinate is not None]
        missing = [n for n in nodes if n.coordinate is None]

        if len(located) < 2:
            logger.debug(f"Nothing to optimize ({len(located)} located stops)")
            plan = await self.estimate(nodes, start, seed)
            plan.engine = self.engine
            return plan

        matrix = await self.distance_provider.matrix(
            [start] + [n.coordinate for n in located]
        )

        # Matrix index 0 is the start point; located[k] sits at k + 1
        keys = {k + 1: n.tie_break_key for k, n in enumerate(located)}
        prefix = [0] + [k + 1 for k, n in enumerate(located) if n.pinned]
        candidates = [k + 1 for k, n in enumerate(located) if not n.pinned]

        if self.engine == "ortools":
            # Imported lazily: OR-Tools is only loaded when configured
            from route_engine.services.solver import solve_open_tour

            tail = solve_open_tour(matrix, prefix[-1], candidates, keys)
        else:
            tail = nearest_neighbor(matrix, prefix[-1], candidates, keys)

        path, passes = two_opt(
            matrix,
            prefix + tail,
            self.max_two_opt_passes,
            fixed_prefix=len(prefix),
        )

        # A pinned stop keeps its place at the head even without coordinates
        ordered = (
            [n for n in missing if n.pinned]
            + [located[idx - 1] for idx in path[1:]]
            + [n for n in missing if not n.pinned]
        )
        index_of = {n.stop_id: k + 1 for k, n in enumerate(located)}
        plan = self._schedule(ordered, index_of, matrix, seed)
        plan.two_opt_passes = passes
        plan.engine = self.engine
        plan.optimized = True

        logger.info(
            f"Planned {len(ordered)} stops: {plan.total_distance_km:.2f} km, "
            f"{plan.total_duration_minutes:.0f} min, {passes} 2-opt passes, "
            f"{len(missing)} without coordinates"
        )
        return plan

    async def estimate(
        self,
        nodes: Sequence[StopNode],
        start: Coordinate,
        seed: datetime,
    ) -> RoutePlan:
        """Compute ETAs and totals for ``nodes`` in exactly the given order."""
        located = [n for n in nodes if n.coordinate is not None]
        matrix = await self.distance_provider.matrix(
            [start] + [n.coordinate for n in located]
        )
        index_of = {n.stop_id: k + 1 for k, n in enumerate(located)}
        return self._schedule(list(nodes), index_of, matrix, seed)

    @staticmethod
    def _schedule(
        ordered: Sequence[StopNode],
        index_of: dict[UUID, int],
        matrix: TravelMatrix,
        seed: datetime,
    ) -> RoutePlan:
        """Walk the order accumulating travel and service time from ``seed``."""
        plan = RoutePlan()
        clock = seed
        prev_index = 0
        prev_service = 0

        for position, node in enumerate(ordered, start=1):
            idx = index_of.get(node.stop_id)
            if idx is None:
                plan.stops.append(PlannedStop(
                    stop_id=node.stop_id,
                    machine_id=node.machine_id,
                    position=position,
                    estimated_arrival=None,
                    distance_from_prev_km=None,
                    travel_minutes_from_prev=None,
                    missing_coordinates=True,
                ))
                continue

            distance = matrix.distance(prev_index, idx)
            duration = matrix.duration(prev_index, idx)
            clock = clock + timedelta(minutes=prev_service + duration)

            plan.total_distance_km += distance
            plan.total_duration_minutes += prev_service + duration
            plan.stops.append(PlannedStop(
                stop_id=node.stop_id,
                machine_id=node.machine_id,
                position=position,
                estimated_arrival=clock,
                distance_from_prev_km=distance,
                travel_minutes_from_prev=duration,
            ))

            prev_index = idx
            prev_service = node.service_minutes

        plan.total_duration_minutes += prev_service
        return plan
