"""
Route planning service.

Orchestrates route creation, stop management, manual reordering,
optimization and progress recording. Every mutation first claims the
route's version (see RouteStore.claim_route) so mutations on one route are
serialized; nothing is committed here, the request session does that.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional, Sequence
from uuid import UUID
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from route_engine.core.config import Settings, get_settings
from route_engine.core.errors import (
    InvalidPositionError,
    InvalidStateError,
    OperatorNotInOrganizationError,
    PlannedDateInPastError,
    StopNotFoundError,
    UnknownMachineError,
)
from route_engine.models import (
    Route,
    RouteStatus,
    RouteStop,
    RouteType,
    StopEvent,
    StopStatus,
    utcnow,
)
from route_engine.schemas.route import (
    RouteCreate,
    RouteUpdate,
    StopCreate,
    StopUpdate,
)
from route_engine.services.directory import MachineRegistry, OperatorDirectory
from route_engine.services.geo.distance import Coordinate, haversine_km
from route_engine.services.routing.optimizer import (
    MISSING_COORDINATES_WARNING,
    RouteOptimizer,
    RoutePlan,
    StopNode,
)
from route_engine.services.routing.state_machine import StopStateMachine, TransitionResult
from route_engine.services.routing.store import RouteStore, assign_slots, with_arrived

logger = logging.getLogger(__name__)

# Stop fields that stay editable after the stop has progressed
ALWAYS_EDITABLE = frozenset({"notes", "meta"})


@dataclass
class OptimizationOutcome:
    """Proposed (preview) or applied optimization result."""
    route: Route
    plan: RoutePlan
    sequences: dict[UUID, int]
    preview: bool
    applied: bool


@dataclass
class PositionOutcome:
    """What a GPS ping did to a route."""
    accepted: bool
    reason: Optional[str] = None
    transitions: list[TransitionResult] = field(default_factory=list)
    tracked_distance_km: Optional[Decimal] = None


def _to_utc(at: Optional[datetime]) -> datetime:
    if at is None:
        return utcnow()
    if at.tzinfo is None:
        return at.replace(tzinfo=timezone.utc)
    return at.astimezone(timezone.utc)


def _km(value: float) -> Decimal:
    return Decimal(str(round(value, 2)))


class RouteService:
    """
    Caller-facing route operations.

    ``organization_id`` is always the caller's already-resolved organization;
    routes of other organizations behave as if they did not exist.
    """

    def __init__(
        self,
        session: AsyncSession,
        machine_registry: MachineRegistry,
        operator_directory: OperatorDirectory,
        optimizer: Optional[RouteOptimizer] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = RouteStore(session)
        self.state_machine = StopStateMachine(self.store)
        self.machine_registry = machine_registry
        self.operator_directory = operator_directory
        self.optimizer = optimizer or RouteOptimizer()
        self.settings = settings or get_settings()

    # =====================================================================
    # Helpers
    # =====================================================================

    def service_minutes(self, route: Route, stop: RouteStop) -> int:
        """Planned time on site: ``metadata.serviceMinutes`` or the route type default."""
        override = (stop.meta or {}).get("serviceMinutes")
        if isinstance(override, (int, float)) and not isinstance(override, bool) and override >= 0:
            return int(override)
        return self.settings.service_minutes_for(RouteType(route.type).value)

    def planned_start(self, route: Route) -> datetime:
        if route.planned_start_at is not None:
            return _to_utc(route.planned_start_at)
        day_start = time.fromisoformat(self.settings.working_day_start)
        return datetime.combine(route.planned_date, day_start, tzinfo=timezone.utc)

    @staticmethod
    def _ensure_open(route: Route) -> None:
        if route.completed_at is not None:
            raise InvalidStateError(
                f"Route {route.id} is completed and can no longer change",
                route_id=route.id,
            )

    def _check_planned_date(self, planned_date: date) -> None:
        earliest = utcnow().date() - timedelta(days=self.settings.planned_date_past_tolerance_days)
        if planned_date < earliest:
            raise PlannedDateInPastError(
                f"Planned date {planned_date} is in the past",
                planned_date=planned_date,
            )

    async def _check_operator(self, organization_id: UUID, operator_id: UUID) -> None:
        operator = await self.operator_directory.get_operator(operator_id)
        if operator is None or operator.organization_id != organization_id:
            logger.warning(f"Operator {operator_id} rejected for organization {organization_id}")
            raise OperatorNotInOrganizationError(
                f"Operator {operator_id} does not belong to the organization",
                operator_id=operator_id,
            )

    def _plan_context(
        self,
        route: Route,
        stops: Sequence[RouteStop],
        start: Optional[Coordinate] = None,
    ) -> tuple[list[StopNode], Coordinate, datetime]:
        """Optimizer input for the route's reorderable tail."""
        visited = [s for s in stops if s.status in (StopStatus.ARRIVED, StopStatus.DEPARTED)]

        if start is None:
            last_located = next((s for s in reversed(visited) if s.has_coordinates), None)
            if last_located is not None:
                start = Coordinate(last_located.latitude, last_located.longitude)
            else:
                start = Coordinate(
                    float(self.settings.default_depot_latitude),
                    float(self.settings.default_depot_longitude),
                )

        seed = self.planned_start(route)
        for stop in visited:
            if stop.departed_at is not None:
                seed = max(seed, stop.departed_at)
            elif stop.actual_arrival is not None:
                seed = max(
                    seed,
                    stop.actual_arrival + timedelta(minutes=self.service_minutes(route, stop)),
                )

        nodes = [
            StopNode(
                stop_id=s.id,
                machine_id=s.machine_id,
                coordinate=Coordinate(s.latitude, s.longitude) if s.has_coordinates else None,
                service_minutes=self.service_minutes(route, s),
                pinned=s.status == StopStatus.EN_ROUTE,
            )
            for s in stops
            if s.status.is_reorderable
        ]
        return nodes, start, seed

    async def _apply_plan(self, route: Route, stops: Sequence[RouteStop], plan: RoutePlan) -> None:
        """Write plan ETAs, missing-coordinate flags and route totals."""
        missing = set(plan.missing_coordinate_stop_ids)
        for stop in stops:
            if stop.id not in plan.etas:
                continue
            meta = dict(stop.meta or {})
            if stop.id in missing:
                meta["warning"] = MISSING_COORDINATES_WARNING
            elif meta.get("warning") == MISSING_COORDINATES_WARNING:
                meta.pop("warning")
            if meta != (stop.meta or {}):
                stop.meta = meta

        await self.store.update_stop_etas(stops, plan.etas)
        await self.store.update_route(
            route,
            estimated_distance_km=_km(plan.total_distance_km),
            estimated_duration_minutes=int(round(plan.total_duration_minutes)),
        )

    async def _refresh_etas(self, route: Route) -> list[RouteStop]:
        """Recompute ETAs for the current order without reordering."""
        stops = await self.store.get_stops(route.id)
        nodes, start, seed = self._plan_context(route, stops)
        plan = await self.optimizer.estimate(nodes, start, seed)
        await self._apply_plan(route, stops, plan)
        return stops

    def _track_position(self, route: Route, point: Coordinate, at: datetime) -> None:
        """Advance the route's GPS odometer."""
        if route.last_position_latitude is not None and route.last_position_longitude is not None:
            previous = Coordinate(route.last_position_latitude, route.last_position_longitude)
            travelled = Decimal(str(round(haversine_km(previous, point), 3)))
            route.tracked_distance_km = (route.tracked_distance_km or Decimal("0")) + travelled
        elif route.tracked_distance_km is None:
            route.tracked_distance_km = Decimal("0")

        route.last_position_latitude = point.latitude
        route.last_position_longitude = point.longitude
        route.last_position_at = at

    @staticmethod
    def _validated_point(latitude: float, longitude: float) -> Coordinate:
        point = Coordinate(latitude, longitude)
        try:
            point.validate()
        except ValueError as e:
            raise InvalidPositionError(str(e), latitude=latitude, longitude=longitude) from e
        return point

    # =====================================================================
    # Routes
    # =====================================================================

    async def create_route(self, organization_id: UUID, data: RouteCreate) -> Route:
        """
        Create a route, optionally with initial stops.

        Raises:
            PlannedDateInPastError: ``planned_date`` before today minus the tolerance.
            OperatorNotInOrganizationError: Unknown operator or another organization's.
            UnknownMachineError: An initial stop references an unknown machine.
        """
        self._check_planned_date(data.planned_date)
        await self._check_operator(organization_id, data.operator_id)

        route = await self.store.create_route(Route(
            organization_id=organization_id,
            operator_id=data.operator_id,
            name=data.name,
            type=RouteType(data.type),
            planned_date=data.planned_date,
            planned_start_at=data.planned_start_at,
            auto_optimize=data.auto_optimize,
            notes=data.notes,
            meta=dict(data.metadata or {}),
        ))

        for stop_data in data.stops:
            await self._insert_stop(route, stop_data)

        if data.stops:
            if route.auto_optimize:
                await self._optimize_and_apply(route)
            else:
                await self._refresh_etas(route)

        return route

    async def get_route(self, organization_id: UUID, route_id: UUID) -> tuple[Route, list[RouteStop]]:
        route = await self.store.get_route(route_id, organization_id)
        stops = await self.store.get_stops(route.id)
        return route, stops

    async def list_routes(self, organization_id: UUID, **filters) -> tuple[list[Route], int]:
        return await self.store.list_routes(organization_id, **filters)

    async def update_route(self, organization_id: UUID, route_id: UUID, data: RouteUpdate) -> Route:
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)

        fields = data.model_dump(exclude_unset=True, exclude={"expected_version"})
        if "metadata" in fields:
            fields["meta"] = dict(fields.pop("metadata") or {})
        if fields.get("type") is not None:
            fields["type"] = RouteType(fields["type"])
        if fields.get("planned_date") is not None:
            self._check_planned_date(fields["planned_date"])
        if fields.get("operator_id") is not None:
            await self._check_operator(organization_id, fields["operator_id"])

        await self.store.claim_route(route, data.expected_version)
        await self.store.update_route(route, **fields)

        if {"planned_date", "planned_start_at", "type"} & fields.keys():
            await self._refresh_etas(route)

        logger.info(f"Updated route {route.id}: {sorted(fields)}")
        return route

    async def delete_route(
        self,
        organization_id: UUID,
        route_id: UUID,
        expected_version: Optional[int] = None,
    ) -> None:
        """
        Soft-delete a route.

        Raises:
            InvalidStateError: The route is being executed.
        """
        route = await self.store.get_route(route_id, organization_id)
        stops = await self.store.get_stops(route.id)
        if route.derive_status(stops) == RouteStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Route {route.id} is in progress and cannot be deleted",
                route_id=route.id,
            )
        await self.store.claim_route(route, expected_version)
        await self.store.soft_delete_route(route)

    # =====================================================================
    # Stops
    # =====================================================================

    async def get_stops(self, organization_id: UUID, route_id: UUID) -> list[RouteStop]:
        route = await self.store.get_route(route_id, organization_id)
        return await self.store.get_stops(route.id)

    async def _insert_stop(self, route: Route, data: StopCreate) -> RouteStop:
        machine = await self.machine_registry.get_machine(data.machine_id)
        if machine is None or machine.organization_id != route.organization_id:
            logger.warning(f"Machine {data.machine_id} rejected for route {route.id}")
            raise UnknownMachineError(
                f"Machine {data.machine_id} not found in the organization",
                machine_id=data.machine_id,
            )

        stop = RouteStop(
            machine_id=data.machine_id,
            task_id=data.task_id,
            status=StopStatus.PENDING,
            latitude=machine.latitude,
            longitude=machine.longitude,
            notes=data.notes,
            meta=dict(data.metadata or {}),
        )
        return await self.store.add_stop(route, stop, position=data.sequence)

    async def add_stop(self, organization_id: UUID, route_id: UUID, data: StopCreate) -> RouteStop:
        """
        Add a machine visit to a route.

        Appends at ``max + 1`` unless a position is given; re-optimizes when
        the route has ``auto_optimize`` set.

        Raises:
            UnknownMachineError: Machine unknown or in another organization.
            DuplicateMachineError: Machine already on the route.
        """
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)
        await self.store.claim_route(route, data.expected_version)

        stop = await self._insert_stop(route, data)

        if route.auto_optimize:
            await self._optimize_and_apply(route)
        else:
            await self._refresh_etas(route)
        return stop

    async def update_stop(
        self,
        organization_id: UUID,
        route_id: UUID,
        stop_id: UUID,
        data: StopUpdate,
    ) -> RouteStop:
        """
        Edit a stop.

        Notes and metadata are always editable; task link and coordinates
        only while the stop is PENDING.
        """
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)
        stops = await self.store.get_stops(route.id)
        stop = next((s for s in stops if s.id == stop_id), None)
        if stop is None:
            raise StopNotFoundError(f"Stop {stop_id} not found on route {route_id}", stop_id=stop_id)

        fields = data.model_dump(exclude_unset=True, exclude={"expected_version"})
        if "metadata" in fields:
            fields["meta"] = dict(fields.pop("metadata") or {})

        restricted = set(fields) - ALWAYS_EDITABLE
        if restricted and stop.status != StopStatus.PENDING:
            raise InvalidStateError(
                f"Stop is {stop.status.value}; only notes and metadata can change",
                stop_id=stop_id,
                fields=",".join(sorted(restricted)),
            )
        if fields.get("latitude") is not None and fields.get("longitude") is not None:
            self._validated_point(fields["latitude"], fields["longitude"])

        await self.store.claim_route(route, data.expected_version)
        await self.store.update_stop(stop, **fields)

        if {"latitude", "longitude", "meta"} & fields.keys():
            await self._refresh_etas(route)
        return stop

    async def remove_stop(
        self,
        organization_id: UUID,
        route_id: UUID,
        stop_id: UUID,
        expected_version: Optional[int] = None,
    ) -> None:
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)
        await self.store.claim_route(route, expected_version)
        await self.store.remove_stop(route, stop_id)
        await self._refresh_etas(route)

    async def reorder_stops(
        self,
        organization_id: UUID,
        route_id: UUID,
        ordered_stop_ids: Sequence[UUID],
        expected_version: Optional[int] = None,
    ) -> list[RouteStop]:
        """
        Apply a manual order to the non-terminal stops.

        The order is kept verbatim and only ETAs are recomputed. ARRIVED
        stops must be listed at their current position.

        Raises:
            SequenceMismatchError: Ids are not exactly the non-terminal stops,
                or an ARRIVED stop was moved.
            ConcurrentModificationError: Another mutation won the race.
        """
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)
        await self.store.claim_route(route, expected_version)

        await self.store.replace_sequence(route, ordered_stop_ids)
        stops = await self._refresh_etas(route)

        logger.info(f"Reordered {len(ordered_stop_ids)} stops on route {route.id}")
        return sorted(stops, key=lambda s: s.sequence)

    # =====================================================================
    # Optimization
    # =====================================================================

    async def _optimize_and_apply(
        self,
        route: Route,
        start: Optional[Coordinate] = None,
    ) -> OptimizationOutcome:
        stops = await self.store.get_stops(route.id)
        nodes, start, seed = self._plan_context(route, stops, start)
        plan = await self.optimizer.plan(nodes, start, seed)
        order = with_arrived(stops, plan.ordered_stop_ids)
        sequences = assign_slots(stops, order)

        if plan.optimized:
            await self.store.replace_sequence(route, order)
            await self._apply_plan(route, stops, plan)

        return OptimizationOutcome(
            route=route,
            plan=plan,
            sequences=sequences,
            preview=False,
            applied=plan.optimized,
        )

    async def optimize(
        self,
        organization_id: UUID,
        route_id: UUID,
        preview: bool = False,
        start: Optional[Coordinate] = None,
        expected_version: Optional[int] = None,
    ) -> OptimizationOutcome:
        """
        Compute a distance-minimizing order for the route's open stops.

        Preview computes and returns without writing anything. With fewer
        than two located open stops the current order is returned and
        nothing is persisted.
        """
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)
        if start is not None:
            start = self._validated_point(start.latitude, start.longitude)

        if preview:
            stops = await self.store.get_stops(route.id)
            nodes, start, seed = self._plan_context(route, stops, start)
            plan = await self.optimizer.plan(nodes, start, seed)
            return OptimizationOutcome(
                route=route,
                plan=plan,
                sequences=assign_slots(stops, with_arrived(stops, plan.ordered_stop_ids)),
                preview=True,
                applied=False,
            )

        await self.store.claim_route(route, expected_version)
        outcome = await self._optimize_and_apply(route, start)
        logger.info(
            f"Optimized route {route.id}: applied={outcome.applied}, "
            f"{outcome.plan.total_distance_km:.2f} km"
        )
        return outcome

    # =====================================================================
    # Execution
    # =====================================================================

    async def record_progress(
        self,
        organization_id: UUID,
        stop_id: UUID,
        event: StopEvent,
        at: Optional[datetime] = None,
        position: Optional[Coordinate] = None,
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """
        Apply a progress event to a stop.

        Raises:
            IllegalTransitionError: Event not allowed from the stop's status;
                nothing changes.
        """
        route, stop = await self.store.get_stop(stop_id, organization_id)
        self._ensure_open(route)
        self.state_machine.resolve(stop, StopEvent(event))
        at = _to_utc(at)

        await self.store.claim_route(route, expected_version)
        if position is not None:
            self._track_position(route, self._validated_point(position.latitude, position.longitude), at)

        stops = await self.store.get_stops(route.id)
        result = await self.state_machine.apply(
            stop,
            StopEvent(event),
            at=at,
            service_minutes=self.service_minutes(route, stop),
            route_stops=stops,
        )

        if result.new_status in (StopStatus.EN_ROUTE, StopStatus.ARRIVED):
            if route.started_at is None:
                route.started_at = result.occurred_at
            if await self.store.advance_stop(route, stop):
                await self._refresh_etas(route)
        await self.store.flush()
        return result

    async def ingest_position(
        self,
        organization_id: UUID,
        route_id: UUID,
        latitude: float,
        longitude: float,
        at: Optional[datetime] = None,
        accuracy_meters: Optional[float] = None,
        expected_version: Optional[int] = None,
    ) -> PositionOutcome:
        """
        Feed a GPS ping into the route.

        Accepted pings advance the odometer and may infer progress: leaving
        an ARRIVED stop's departure radius departs it, entering the EN_ROUTE
        stop's arrival radius arrives at it.
        """
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)
        point = self._validated_point(latitude, longitude)
        at = _to_utc(at)

        if accuracy_meters is not None and accuracy_meters > self.settings.min_gps_accuracy_meters:
            logger.debug(f"Ignoring ping for route {route.id}: accuracy {accuracy_meters} m")
            return PositionOutcome(accepted=False, reason="low_accuracy",
                                   tracked_distance_km=route.tracked_distance_km)
        if route.last_position_at is not None and at < route.last_position_at:
            return PositionOutcome(accepted=False, reason="out_of_order",
                                   tracked_distance_km=route.tracked_distance_km)

        await self.store.claim_route(route, expected_version)
        self._track_position(route, point, at)
        stops = await self.store.get_stops(route.id)
        outcome = PositionOutcome(accepted=True)

        def meters_to(stop: RouteStop) -> float:
            return haversine_km(point, Coordinate(stop.latitude, stop.longitude)) * 1000

        def not_before(stop: RouteStop) -> bool:
            stamps = [t for t in (stop.actual_arrival, stop.departed_at) if t is not None]
            return not stamps or at >= max(stamps)

        arrived = next((s for s in stops if s.status == StopStatus.ARRIVED), None)
        if (
            arrived is not None
            and arrived.has_coordinates
            and not_before(arrived)
            and meters_to(arrived) > self.settings.departure_radius_meters
        ):
            outcome.transitions.append(await self.state_machine.apply(
                arrived,
                StopEvent.DEPART,
                at=at,
                service_minutes=self.service_minutes(route, arrived),
                route_stops=stops,
            ))

        en_route = next((s for s in stops if s.status == StopStatus.EN_ROUTE), None)
        if (
            en_route is not None
            and en_route.has_coordinates
            and not_before(en_route)
            and meters_to(en_route) <= self.settings.arrival_radius_meters
        ):
            outcome.transitions.append(await self.state_machine.apply(
                en_route,
                StopEvent.ARRIVE,
                at=at,
                service_minutes=self.service_minutes(route, en_route),
                route_stops=stops,
            ))
            if route.started_at is None:
                route.started_at = at
            if await self.store.advance_stop(route, en_route):
                await self._refresh_etas(route)

        await self.store.flush()
        outcome.tracked_distance_km = route.tracked_distance_km
        return outcome

    async def start_route(
        self,
        organization_id: UUID,
        route_id: UUID,
        at: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> Route:
        """
        Mark a planned route as started before any stop event arrives.

        Raises:
            InvalidStateError: The route is already in progress or completed.
        """
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)
        stops = await self.store.get_stops(route.id)

        status = route.derive_status(stops)
        if status != RouteStatus.PLANNED:
            raise InvalidStateError(
                f"Route {route.id} is {status.value}; only planned routes can be started",
                route_id=route.id,
            )

        at = _to_utc(at)
        await self.store.claim_route(route, expected_version)
        await self.store.update_route(route, started_at=at)
        logger.info(f"Started route {route.id} at {at.isoformat()}")
        return route

    async def complete_route(
        self,
        organization_id: UUID,
        route_id: UUID,
        at: Optional[datetime] = None,
        actual_duration_minutes: Optional[int] = None,
        actual_distance_km: Optional[float] = None,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Route:
        """
        Finalize a route and record actual duration and distance.

        Reported actuals (an operator without GPS, a missed event) replace
        the values computed from stop timestamps and the odometer.

        Raises:
            InvalidStateError: A stop is still PENDING, EN_ROUTE or ARRIVED,
                or the route is already completed.
        """
        route = await self.store.get_route(route_id, organization_id)
        self._ensure_open(route)
        stops = await self.store.get_stops(route.id)

        unfinished = [s for s in stops if not s.status.is_terminal]
        if unfinished:
            raise InvalidStateError(
                f"{len(unfinished)} stops are not finished",
                route_id=route.id,
                stops=",".join(str(s.id) for s in unfinished),
            )

        at = _to_utc(at)
        await self.store.claim_route(route, expected_version)

        arrivals = [s.actual_arrival for s in stops if s.actual_arrival is not None]
        departures = [s.departed_at for s in stops if s.departed_at is not None]
        started = route.started_at or (min(arrivals) if arrivals else None)
        ended = max(departures) if departures else at

        if started is not None:
            duration = max(0, int(round((ended - started).total_seconds() / 60)))
        else:
            duration = 0

        if route.tracked_distance_km is not None:
            distance = Decimal(str(round(float(route.tracked_distance_km), 2)))
        else:
            visited = [s for s in stops if s.status == StopStatus.DEPARTED and s.has_coordinates]
            path = [Coordinate(s.latitude, s.longitude) for s in visited]
            distance = _km(sum(haversine_km(a, b) for a, b in zip(path, path[1:])))

        if actual_duration_minutes is not None:
            duration = actual_duration_minutes
        if actual_distance_km is not None:
            distance = _km(actual_distance_km)

        fields = {}
        if notes is not None:
            fields["notes"] = notes
        await self.store.update_route(
            route,
            actual_duration_minutes=duration,
            actual_distance_km=distance,
            completed_at=at,
            **fields,
        )
        logger.info(f"Completed route {route.id}: {duration} min, {distance} km")
        return route
