"""
Route API endpoints.
"""
from datetime import date
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from route_engine.core.dependencies import (
    FieldCaller,
    PlannerCaller,
    get_route_service,
)
from route_engine.models import RouteType
from route_engine.schemas.route import (
    OptimizeRequest,
    OptimizeResponse,
    PlannedStopResponse,
    ReorderRequest,
    RouteCompleteRequest,
    RouteCreate,
    RouteListResponse,
    RouteResponse,
    RouteStartRequest,
    RouteStopResponse,
    RouteUpdate,
    StopCreate,
    StopEventRequest,
    StopUpdate,
)
from route_engine.services.geo.distance import Coordinate
from route_engine.services.routing.service import OptimizationOutcome, RouteService

router = APIRouter()

Service = Annotated[RouteService, Depends(get_route_service)]


def expected_version(body_value: Optional[int], if_match: Optional[str]) -> Optional[int]:
    """Version pin from the body, else from an ``If-Match`` header."""
    if body_value is not None:
        return body_value
    if not if_match:
        return None
    raw = if_match.strip()
    if raw.startswith("W/"):
        raw = raw[2:]
    try:
        return int(raw.strip('"'))
    except ValueError:
        raise HTTPException(status_code=400, detail="If-Match must carry the route version")


def _optimize_response(outcome: OptimizationOutcome) -> OptimizeResponse:
    plan = outcome.plan
    warnings = []
    if plan.missing_coordinate_stop_ids:
        warnings.append(
            f"{len(plan.missing_coordinate_stop_ids)} stops have no coordinates "
            f"and were placed at the end"
        )
    if not plan.optimized:
        warnings.append("Fewer than two stops can be optimized; order unchanged")

    return OptimizeResponse(
        route_id=outcome.route.id,
        preview=outcome.preview,
        applied=outcome.applied,
        engine=plan.engine,
        stops=[
            PlannedStopResponse(
                stop_id=s.stop_id,
                machine_id=s.machine_id,
                sequence=outcome.sequences[s.stop_id],
                estimated_arrival=s.estimated_arrival,
                distance_from_prev_km=s.distance_from_prev_km,
                travel_minutes_from_prev=s.travel_minutes_from_prev,
                missing_coordinates=s.missing_coordinates,
            )
            for s in plan.stops
        ],
        total_distance_km=round(plan.total_distance_km, 3),
        total_duration_minutes=round(plan.total_duration_minutes, 1),
        two_opt_passes=plan.two_opt_passes,
        warnings=warnings,
        version=outcome.route.version,
    )


# =========================================================================
# Routes
# =========================================================================

@router.get("", response_model=RouteListResponse)
async def list_routes(
    caller: FieldCaller,
    service: Service,
    operator_id: Optional[UUID] = None,
    type: Optional[RouteType] = None,
    planned_date_from: Optional[date] = None,
    planned_date_to: Optional[date] = None,
    search: Optional[str] = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """
    List routes of the caller's organization.

    - **operator_id**: Filter by assigned operator
    - **type**: Filter by route type
    - **planned_date_from / planned_date_to**: Planned date range (inclusive)
    - **search**: Case-insensitive match on the route name
    """
    routes, total = await service.list_routes(
        caller.organization_id,
        operator_id=operator_id,
        route_type=type,
        planned_date_from=planned_date_from,
        planned_date_to=planned_date_to,
        search=search,
        page=page,
        limit=limit,
    )
    return RouteListResponse.create(
        items=[RouteResponse.from_route(r) for r in routes],
        total=total,
        page=page,
        page_size=limit,
    )


@router.post("", response_model=RouteResponse, status_code=201)
async def create_route(
    data: RouteCreate,
    caller: PlannerCaller,
    service: Service,
):
    """
    Create a route for an operator.

    Initial stops may be included; they are sequenced in the given order
    (or optimized when `auto_optimize` is set).
    """
    route = await service.create_route(caller.organization_id, data)
    _, stops = await service.get_route(caller.organization_id, route.id)
    return RouteResponse.from_route(route, stops)


@router.get("/{route_id}", response_model=RouteResponse)
async def get_route(
    route_id: UUID,
    caller: FieldCaller,
    service: Service,
):
    """Get a specific route with its stops in sequence order."""
    route, stops = await service.get_route(caller.organization_id, route_id)
    return RouteResponse.from_route(route, stops)


@router.patch("/{route_id}", response_model=RouteResponse)
async def update_route(
    route_id: UUID,
    data: RouteUpdate,
    caller: PlannerCaller,
    service: Service,
    if_match: Optional[str] = Header(None),
):
    """Update route details."""
    data.expected_version = expected_version(data.expected_version, if_match)
    route = await service.update_route(caller.organization_id, route_id, data)
    _, stops = await service.get_route(caller.organization_id, route.id)
    return RouteResponse.from_route(route, stops)


@router.delete("/{route_id}", status_code=204)
async def delete_route(
    route_id: UUID,
    caller: PlannerCaller,
    service: Service,
    if_match: Optional[str] = Header(None),
):
    """Delete a route (kept for audit). Routes in progress cannot be deleted."""
    await service.delete_route(
        caller.organization_id,
        route_id,
        expected_version=expected_version(None, if_match),
    )


@router.post("/{route_id}/start", response_model=RouteResponse)
async def start_route(
    route_id: UUID,
    caller: FieldCaller,
    service: Service,
    data: Optional[RouteStartRequest] = None,
    if_match: Optional[str] = Header(None),
):
    """
    Start a planned route.

    Stamps the start time without touching any stop. The first
    `START_TRAVEL` event also starts the route if this is never called.
    """
    data = data or RouteStartRequest()
    route = await service.start_route(
        caller.organization_id,
        route_id,
        at=data.started_at,
        expected_version=expected_version(data.expected_version, if_match),
    )
    _, stops = await service.get_route(caller.organization_id, route.id)
    return RouteResponse.from_route(route, stops)


@router.post("/{route_id}/complete", response_model=RouteResponse)
async def complete_route(
    route_id: UUID,
    caller: FieldCaller,
    service: Service,
    data: Optional[RouteCompleteRequest] = None,
    if_match: Optional[str] = Header(None),
):
    """
    Finalize a route once every stop is departed, skipped or cancelled.

    Records actual duration and distance, computed from the stop
    timestamps and GPS track unless the body reports them. The route is
    read-only afterwards.
    """
    data = data or RouteCompleteRequest()
    route = await service.complete_route(
        caller.organization_id,
        route_id,
        at=data.completed_at,
        actual_duration_minutes=data.actual_duration_minutes,
        actual_distance_km=data.actual_distance_km,
        notes=data.notes,
        expected_version=expected_version(data.expected_version, if_match),
    )
    _, stops = await service.get_route(caller.organization_id, route.id)
    return RouteResponse.from_route(route, stops)


@router.post("/{route_id}/optimize", response_model=OptimizeResponse)
async def optimize_route(
    route_id: UUID,
    caller: PlannerCaller,
    service: Service,
    data: Optional[OptimizeRequest] = None,
    if_match: Optional[str] = Header(None),
):
    """
    Optimize the visiting order of the route's open stops.

    With `preview=true` the proposed order and totals are returned without
    saving. Stops already reached keep their place.
    """
    data = data or OptimizeRequest()
    start = Coordinate(data.start.latitude, data.start.longitude) if data.start else None
    outcome = await service.optimize(
        caller.organization_id,
        route_id,
        preview=data.preview,
        start=start,
        expected_version=expected_version(data.expected_version, if_match),
    )
    return _optimize_response(outcome)


# =========================================================================
# Stops
# =========================================================================

@router.post("/stops/{stop_id}/event", response_model=RouteStopResponse)
async def record_stop_event(
    stop_id: UUID,
    data: StopEventRequest,
    caller: FieldCaller,
    service: Service,
    if_match: Optional[str] = Header(None),
):
    """
    Record stop progress: START_TRAVEL, ARRIVE, DEPART, SKIP or CANCEL.

    DEPART shifts the ETAs of the remaining stops by the observed delay.
    """
    position = data.position
    result = await service.record_progress(
        caller.organization_id,
        stop_id,
        data.event,
        at=data.timestamp,
        position=Coordinate(position.latitude, position.longitude) if position else None,
        expected_version=expected_version(data.expected_version, if_match),
    )
    return RouteStopResponse.model_validate(result.stop)


@router.get("/{route_id}/stops", response_model=list[RouteStopResponse])
async def list_stops(
    route_id: UUID,
    caller: FieldCaller,
    service: Service,
):
    """List the route's stops in sequence order."""
    stops = await service.get_stops(caller.organization_id, route_id)
    return [RouteStopResponse.model_validate(s) for s in stops]


@router.post("/{route_id}/stops", response_model=RouteStopResponse, status_code=201)
async def add_stop(
    route_id: UUID,
    data: StopCreate,
    caller: PlannerCaller,
    service: Service,
    if_match: Optional[str] = Header(None),
):
    """
    Add a machine visit.

    Appended at the end unless `sequence` is given. The machine's current
    location is snapshotted onto the stop.
    """
    data.expected_version = expected_version(data.expected_version, if_match)
    stop = await service.add_stop(caller.organization_id, route_id, data)
    return RouteStopResponse.model_validate(stop)


@router.post("/{route_id}/stops/reorder", response_model=list[RouteStopResponse])
async def reorder_stops(
    route_id: UUID,
    data: ReorderRequest,
    caller: PlannerCaller,
    service: Service,
    if_match: Optional[str] = Header(None),
):
    """
    Manually reorder the stops that are not finished yet.

    `stop_ids` must list every PENDING, EN_ROUTE and ARRIVED stop exactly
    once. ARRIVED stops cannot move. The order is kept as given; ETAs are
    recomputed.
    """
    stops = await service.reorder_stops(
        caller.organization_id,
        route_id,
        data.stop_ids,
        expected_version=expected_version(data.expected_version, if_match),
    )
    return [RouteStopResponse.model_validate(s) for s in stops]


@router.patch("/{route_id}/stops/{stop_id}", response_model=RouteStopResponse)
async def update_stop(
    route_id: UUID,
    stop_id: UUID,
    data: StopUpdate,
    caller: PlannerCaller,
    service: Service,
    if_match: Optional[str] = Header(None),
):
    """Update a stop's notes, metadata, task link or coordinates."""
    data.expected_version = expected_version(data.expected_version, if_match)
    stop = await service.update_stop(caller.organization_id, route_id, stop_id, data)
    return RouteStopResponse.model_validate(stop)


@router.delete("/{route_id}/stops/{stop_id}", status_code=204)
async def remove_stop(
    route_id: UUID,
    stop_id: UUID,
    caller: PlannerCaller,
    service: Service,
    if_match: Optional[str] = Header(None),
):
    """Remove a PENDING stop; later stops move up. Progressed stops must be cancelled instead."""
    await service.remove_stop(
        caller.organization_id,
        route_id,
        stop_id,
        expected_version=expected_version(None, if_match),
    )
