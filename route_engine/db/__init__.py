"""
Database module for the route engine.
"""
from route_engine.db.database import (
    Base,
    build_engine,
    dispose_engine,
    get_async_session,
    get_session_maker,
)

__all__ = [
    "Base",
    "build_engine",
    "dispose_engine",
    "get_async_session",
    "get_session_maker",
]
