"""
GPS position ingest.

Mounted only when ``settings.enable_position_ingest`` is set.
"""
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header

from route_engine.api.v1.endpoints.routes import expected_version
from route_engine.core.dependencies import FieldCaller, get_route_service
from route_engine.schemas.route import (
    InferredEvent,
    PositionIngestResponse,
    PositionPing,
)
from route_engine.services.routing.service import RouteService

router = APIRouter()


@router.post("/{route_id}/positions", response_model=PositionIngestResponse)
async def ingest_position(
    route_id: UUID,
    data: PositionPing,
    caller: FieldCaller,
    service: Annotated[RouteService, Depends(get_route_service)],
    if_match: Optional[str] = Header(None),
):
    """
    Report the operator's position on a route.

    Pings with poor accuracy are ignored. Accepted pings update the route's
    odometer and may mark the current stop as arrived or departed.
    """
    outcome = await service.ingest_position(
        caller.organization_id,
        route_id,
        latitude=data.latitude,
        longitude=data.longitude,
        at=data.timestamp,
        accuracy_meters=data.accuracy_meters,
        expected_version=expected_version(data.expected_version, if_match),
    )
    return PositionIngestResponse(
        accepted=outcome.accepted,
        reason=outcome.reason,
        events=[
            InferredEvent(
                stop_id=t.stop.id,
                previous_status=t.previous_status,
                new_status=t.new_status,
                occurred_at=t.occurred_at,
            )
            for t in outcome.transitions
        ],
        tracked_distance_km=outcome.tracked_distance_km,
    )
