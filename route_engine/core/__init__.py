"""
Core package for the route engine.
"""
from route_engine.core.config import settings, get_settings

__all__ = ["settings", "get_settings"]
