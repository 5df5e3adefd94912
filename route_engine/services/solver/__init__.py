"""
OR-Tools tour construction for the route optimizer.

Exports:
- OpenTourSolver: single-operator open-path TSP
- solve_open_tour: ordering entry point used by RouteOptimizer
"""
from route_engine.services.solver.solver import (
    OpenTourSolver,
    solve_open_tour,
)

__all__ = [
    "OpenTourSolver",
    "solve_open_tour",
]
