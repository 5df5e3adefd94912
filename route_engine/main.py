"""
FastAPI application entry point for the VendOps route engine.

Route planning and stop sequencing for vending-machine field operators.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from route_engine.core.config import Settings, get_settings
from route_engine.core.errors import RouteEngineError
from route_engine.api.v1 import build_api_router
from route_engine.db.database import dispose_engine

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan handler.

    Runs startup and shutdown logic.
    """
    # Schema is managed by Alembic migrations
    logger.info("Route engine starting")
    yield
    await dispose_engine()
    logger.info("Route engine stopped")


async def route_engine_error_handler(request: Request, exc: RouteEngineError) -> JSONResponse:
    """Render engine errors as ``{"error", "detail", "retryable"}``."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} -> {exc.status_code} {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_application(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        description="""
        ## VendOps Route Engine

        Plans and tracks the daily machine-visit routes of field operators:

        - **Routes & stops**: create routes, add/remove/reorder machine visits
        - **Optimization**: nearest-neighbour + 2-opt ordering with ETAs
        - **Progress**: stop lifecycle events with downstream ETA shifts
        - **GPS ingest**: arrival/departure inferred from operator positions

        Every mutation is serialized per route; pass the route `version` as
        `If-Match` (or `expected_version`) to reject stale edits.
        """,
        version=settings.app_version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure properly in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RouteEngineError, route_engine_error_handler)

    # Include API router
    app.include_router(build_api_router(settings), prefix=settings.api_v1_prefix)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "app": settings.app_name,
            "version": settings.app_version,
        }

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "app": settings.app_name,
            "version": settings.app_version,
            "docs": f"{settings.api_v1_prefix}/docs",
            "openapi": f"{settings.api_v1_prefix}/openapi.json",
        }

    return app


# Create application instance
app = create_application()
