"""FastAPI dependencies for authentication, authorization and services."""
from dataclasses import dataclass
from typing import Annotated, Callable, Iterable
from uuid import UUID
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from route_engine.core.config import get_settings
from route_engine.core.security import decode_access_token
from route_engine.db.database import get_async_session
from route_engine.services.directory import (
    MachineRegistry,
    OperatorDirectory,
    get_machine_registry,
    get_operator_directory,
)
from route_engine.services.routing.optimizer import RouteOptimizer
from route_engine.services.routing.service import RouteService

logger = logging.getLogger(__name__)

# HTTP Bearer token extractor (reads Authorization: Bearer <token>)
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CallerContext:
    """Identity resolved from the caller's token."""
    user_id: str
    organization_id: UUID
    role: str


async def get_caller(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> CallerContext:
    """Dependency to resolve the calling user from the JWT token.

    Usage:
        @router.get("/protected")
        async def protected_route(
            caller: Annotated[CallerContext, Depends(get_caller)]
        ):
            return {"organization": caller.organization_id}

    Raises:
        HTTPException 401: If token is missing, invalid, or lacks claims
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    # Check if token is present
    if credentials is None:
        raise credentials_exception

    # Decode token
    claims = decode_access_token(credentials.credentials)
    if claims is None:
        raise credentials_exception

    try:
        organization_id = UUID(str(claims["org"]))
    except ValueError:
        raise credentials_exception

    return CallerContext(
        user_id=str(claims["sub"]),
        organization_id=organization_id,
        role=str(claims["role"]),
    )


def require_roles(roles: Callable[[], Iterable[str]]):
    """Build a dependency that admits only callers holding one of ``roles()``.

    ``roles`` is evaluated per request so settings overrides apply.
    """

    async def _check(
        caller: Annotated[CallerContext, Depends(get_caller)],
    ) -> CallerContext:
        allowed = set(roles())
        if caller.role not in allowed:
            logger.warning(f"Role {caller.role!r} denied (needs one of {sorted(allowed)})")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this operation",
            )
        return caller

    return _check


require_planner = require_roles(lambda: get_settings().planning_roles)
require_field_access = require_roles(lambda: get_settings().field_roles)

PlannerCaller = Annotated[CallerContext, Depends(require_planner)]
FieldCaller = Annotated[CallerContext, Depends(require_field_access)]


def get_optimizer() -> RouteOptimizer:
    return RouteOptimizer()


async def get_route_service(
    session: Annotated[AsyncSession, Depends(get_async_session)],
    machine_registry: Annotated[MachineRegistry, Depends(get_machine_registry)],
    operator_directory: Annotated[OperatorDirectory, Depends(get_operator_directory)],
    optimizer: Annotated[RouteOptimizer, Depends(get_optimizer)],
) -> RouteService:
    """Request-scoped RouteService bound to the request's session."""
    return RouteService(
        session=session,
        machine_registry=machine_registry,
        operator_directory=operator_directory,
        optimizer=optimizer,
    )
