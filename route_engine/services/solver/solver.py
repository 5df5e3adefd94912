"""
Open-path TSP solver using Google OR-Tools.

Alternative tour construction for the route optimizer: one operator,
starting at the origin node, visiting every candidate once and ending
anywhere. The free end is modelled with a dummy end node that every stop
reaches at zero cost.
"""
from datetime import datetime
from typing import Sequence
import logging

from ortools.constraint_solver import routing_enums_pb2
from ortools.constraint_solver import pywrapcp

from route_engine.core.config import get_settings
from route_engine.services.geo.distance import TravelMatrix

logger = logging.getLogger(__name__)


class OpenTourSolver:
    """
    Single-vehicle open tour over a subset of a travel matrix.

    Usage:
        solver = OpenTourSolver(matrix, origin=0, candidates=[1, 2, 3])
        order = solver.solve()
    """

    # OR-Tools status code mapping
    STATUS_MAP = {
        0: "ROUTING_NOT_SOLVED",
        1: "ROUTING_SUCCESS",
        2: "ROUTING_PARTIAL_SUCCESS_LOCAL_OPTIMUM_NOT_REACHED",
        3: "ROUTING_FAIL",
        4: "ROUTING_FAIL_TIMEOUT",
        5: "ROUTING_INVALID",
        6: "ROUTING_INFEASIBLE",
    }

    def __init__(
        self,
        matrix: TravelMatrix,
        origin: int,
        candidates: Sequence[int],
        time_limit_seconds: int | None = None,
    ):
        """
        Args:
            matrix: Travel matrix (km)
            origin: Matrix index the tour starts from
            candidates: Matrix indices to visit, in tie-break order
            time_limit_seconds: Search time limit
        """
        self.matrix = matrix
        self.origin = origin
        self.candidates = list(candidates)
        self.time_limit_seconds = (
            time_limit_seconds or get_settings().ortools_time_limit_seconds
        )

        # Solver node -> matrix index; last solver node is the dummy end
        self.node_to_matrix = [origin] + self.candidates
        self.end_node = len(self.node_to_matrix)

        self.manager = None
        self.routing = None

    def solve(self) -> list[int]:
        """
        Solve the tour.

        Returns:
            Candidate matrix indices in visiting order, or an empty list if
            the solver found no solution.
        """
        if not self.candidates:
            return []

        start_time = datetime.now()

        self.manager = pywrapcp.RoutingIndexManager(
            self.end_node + 1,
            1,
            [0],
            [self.end_node],
        )
        self.routing = pywrapcp.RoutingModel(self.manager)

        transit_index = self.routing.RegisterTransitCallback(self._distance_callback)
        self.routing.SetArcCostEvaluatorOfAllVehicles(transit_index)

        solution = self.routing.SolveWithParameters(self._get_search_parameters())
        solve_time = (datetime.now() - start_time).total_seconds()

        status = self.STATUS_MAP.get(self.routing.status(), "UNKNOWN")
        logger.info(
            f"OR-Tools tour over {len(self.candidates)} stops: status={status}, "
            f"time={solve_time:.2f}s"
        )

        if solution is None:
            return []

        order: list[int] = []
        index = self.routing.Start(0)
        while not self.routing.IsEnd(index):
            node = self.manager.IndexToNode(index)
            if node != 0:
                order.append(self.node_to_matrix[node])
            index = solution.Value(self.routing.NextVar(index))

        return order

    def _distance_callback(self, from_index: int, to_index: int) -> int:
        """Arc cost in meters; arcs into the dummy end are free."""
        from_node = self.manager.IndexToNode(from_index)
        to_node = self.manager.IndexToNode(to_index)
        if to_node == self.end_node or from_node == self.end_node:
            return 0
        return int(round(self.matrix.distance(
            self.node_to_matrix[from_node],
            self.node_to_matrix[to_node],
        ) * 1000))

    def _get_search_parameters(self):
        """Configure solver search parameters."""
        search_parameters = pywrapcp.DefaultRoutingSearchParameters()

        # Cheapest-arc construction keeps the result reproducible; the
        # bounded 2-opt pass afterwards does the local improvement.
        search_parameters.first_solution_strategy = (
            routing_enums_pb2.FirstSolutionStrategy.PATH_CHEAPEST_ARC
        )
        search_parameters.time_limit.seconds = self.time_limit_seconds

        return search_parameters


def solve_open_tour(
    matrix: TravelMatrix,
    origin: int,
    candidates: Sequence[int],
    keys: dict[int, tuple],
) -> list[int]:
    """
    Order ``candidates`` with OR-Tools, falling back to nearest-neighbour.

    Candidates are presented to the solver in tie-break order so equal-cost
    arcs resolve toward the lower machine id.
    """
    from route_engine.services.routing.optimizer import nearest_neighbor

    ordered_candidates = sorted(candidates, key=lambda j: keys[j])
    order = OpenTourSolver(matrix, origin, ordered_candidates).solve()

    if sorted(order) != sorted(candidates):
        logger.warning("OR-Tools returned no complete tour, using nearest-neighbour")
        return nearest_neighbor(matrix, origin, candidates, keys)

    return order
