"""
API v1 router aggregation.
"""
from fastapi import APIRouter

from route_engine.core.config import Settings, get_settings
from route_engine.api.v1.endpoints import positions, routes


def build_api_router(settings: Settings | None = None) -> APIRouter:
    """Assemble the v1 router; optional features are resolved here, once."""
    settings = settings or get_settings()
    api_router = APIRouter()

    api_router.include_router(
        routes.router,
        prefix="/routes",
        tags=["Routes"],
    )

    if settings.enable_position_ingest:
        api_router.include_router(
            positions.router,
            prefix="/routes",
            tags=["Positions"],
        )

    return api_router

