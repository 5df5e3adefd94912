"""
Transactional persistence for routes and their stops.

All reads filter soft-deleted rows. Every stop-set mutation re-checks the
sequence invariant (live stops numbered exactly 1..N) before returning, so
a violating state is never committed: the request session rolls back on
the raised error.
"""
from datetime import date, datetime
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from route_engine.core.errors import (
    ConcurrentModificationError,
    DuplicateMachineError,
    InvalidStateError,
    RouteNotFoundError,
    SequenceMismatchError,
    StopNotFoundError,
)
from route_engine.models import Route, RouteStop, RouteType, StopStatus, utcnow

logger = logging.getLogger(__name__)


# =========================================================================
# Sequence helpers
# =========================================================================

def is_dense(sequences: Iterable[int]) -> bool:
    """True if ``sequences`` is exactly 1..N, each once."""
    values = sorted(sequences)
    return values == list(range(1, len(values) + 1))


def open_in_order(stops: Sequence[RouteStop]) -> list[RouteStop]:
    """Non-terminal stops (PENDING, EN_ROUTE, ARRIVED) by current sequence."""
    return sorted((s for s in stops if not s.status.is_terminal), key=lambda s: s.sequence)


def assign_slots(stops: Sequence[RouteStop], ordered_stop_ids: Sequence[UUID]) -> dict[UUID, int]:
    """
    Map a requested order of the non-terminal stops onto sequence slots.

    Terminal stops keep their slot; the non-terminal ones fill the
    remaining slots in ascending order. An ARRIVED stop is listed like the
    others but must stay where it is: its position in ``ordered_stop_ids``
    has to match its current position among the non-terminal stops.

    Raises:
        SequenceMismatchError: If ``ordered_stop_ids`` is not exactly the
            set of non-terminal stops, or moves an ARRIVED stop.
    """
    open_stops = open_in_order(stops)
    requested = list(ordered_stop_ids)

    if len(requested) != len(set(requested)) or set(requested) != {s.id for s in open_stops}:
        raise SequenceMismatchError(
            "Stop ids must list every non-terminal stop of the route exactly once",
            expected=len(open_stops),
            received=len(requested),
        )

    for index, stop in enumerate(open_stops):
        if stop.status == StopStatus.ARRIVED and requested[index] != stop.id:
            raise SequenceMismatchError(
                f"Stop {stop.id} is ARRIVED and cannot change position",
                stop_id=stop.id,
                position=index + 1,
            )

    return fill_slots(stops, requested)


def fill_slots(stops: Sequence[RouteStop], ordered_open_ids: Sequence[UUID]) -> dict[UUID, int]:
    """Terminal stops keep their slot; ``ordered_open_ids`` take the rest in order."""
    terminal_slots = {s.sequence for s in stops if s.status.is_terminal}
    free_slots = [n for n in range(1, len(stops) + 1) if n not in terminal_slots]

    mapping = {s.id: s.sequence for s in stops if s.status.is_terminal}
    mapping.update(zip(ordered_open_ids, free_slots))
    return mapping


def with_arrived(stops: Sequence[RouteStop], reorderable_ids: Sequence[UUID]) -> list[UUID]:
    """Expand an order of the PENDING/EN_ROUTE stops with ARRIVED stops left in place."""
    open_stops = open_in_order(stops)
    movable = [s for s in open_stops if s.status != StopStatus.ARRIVED]
    if len(reorderable_ids) != len(movable):
        return list(reorderable_ids)

    tail = iter(reorderable_ids)
    return [s.id if s.status == StopStatus.ARRIVED else next(tail) for s in open_stops]


def advanced_order(stops: Sequence[RouteStop], stop_id: UUID) -> Optional[list[UUID]]:
    """
    Order of the non-terminal stops with ``stop_id`` moved ahead of the
    PENDING stops queued directly before it, or None if nothing moves.

    A stop the operator has started or reached is visited before anything
    still waiting, so no PENDING stop is left ahead of it.
    """
    ids = [s.id for s in open_in_order(stops)]
    if stop_id not in ids:
        return None

    by_id = {s.id: s for s in stops}
    index = target = ids.index(stop_id)
    while target > 0 and by_id[ids[target - 1]].status == StopStatus.PENDING:
        target -= 1
    if target == index:
        return None

    ids.insert(target, ids.pop(index))
    return ids


def compact(stops: Sequence[RouteStop]) -> dict[UUID, int]:
    """Renumber ``stops`` 1..N keeping their relative order."""
    ordered = sorted(stops, key=lambda s: s.sequence)
    return {s.id: n for n, s in enumerate(ordered, start=1)}


class RouteStore:
    """
    Route/RouteStop persistence over one AsyncSession.

    The store flushes but never commits; the session owner decides.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def flush(self) -> None:
        await self.session.flush()

    # =====================================================================
    # Routes
    # =====================================================================

    async def create_route(self, route: Route) -> Route:
        self.session.add(route)
        await self.session.flush()
        await self.session.refresh(route)
        logger.info(f"Created route {route.id} ({route.name}) for {route.planned_date}")
        return route

    async def get_route(self, route_id: UUID, organization_id: UUID) -> Route:
        """
        Load a live route of the organization.

        Raises:
            RouteNotFoundError: Unknown, deleted or owned by another organization.
        """
        result = await self.session.execute(
            select(Route).where(
                Route.id == route_id,
                Route.organization_id == organization_id,
                Route.deleted_at.is_(None),
            )
        )
        route = result.scalar_one_or_none()
        if route is None:
            raise RouteNotFoundError(f"Route {route_id} not found", route_id=route_id)
        return route

    async def list_routes(
        self,
        organization_id: UUID,
        operator_id: Optional[UUID] = None,
        route_type: Optional[RouteType] = None,
        planned_date_from: Optional[date] = None,
        planned_date_to: Optional[date] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Route], int]:
        """Page through live routes, newest planned date first."""
        filters = [
            Route.organization_id == organization_id,
            Route.deleted_at.is_(None),
        ]
        if operator_id:
            filters.append(Route.operator_id == operator_id)
        if route_type:
            filters.append(Route.type == route_type)
        if planned_date_from:
            filters.append(Route.planned_date >= planned_date_from)
        if planned_date_to:
            filters.append(Route.planned_date <= planned_date_to)
        if search:
            filters.append(Route.name.ilike(f"%{search}%"))

        query = (
            select(Route)
            .where(*filters)
            .order_by(Route.planned_date.desc(), Route.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.session.execute(query)
        routes = list(result.scalars().all())

        total = await self.session.scalar(select(func.count(Route.id)).where(*filters))
        return routes, total or 0

    async def update_route(self, route: Route, **fields: Any) -> Route:
        for name, value in fields.items():
            setattr(route, name, value)
        await self.session.flush()
        return route

    async def soft_delete_route(self, route: Route) -> None:
        route.deleted_at = utcnow()
        await self.session.flush()
        logger.info(f"Soft-deleted route {route.id}")

    async def claim_route(self, route: Route, expected_version: Optional[int] = None) -> int:
        """
        Take the route's mutation slot by bumping its version.

        Compare-and-swap on ``version``: if another writer bumped it since
        ``expected_version`` (default: the version this session loaded) the
        update matches no row.

        Returns:
            The new version.

        Raises:
            ConcurrentModificationError: The route changed underneath us.
        """
        expected = route.version if expected_version is None else expected_version
        result = await self.session.execute(
            update(Route)
            .where(
                Route.id == route.id,
                Route.version == expected,
                Route.deleted_at.is_(None),
            )
            .values(version=Route.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"Version conflict on route {route.id} (expected {expected})")
            raise ConcurrentModificationError(
                "Route was modified concurrently; refetch and retry",
                route_id=route.id,
                expected_version=expected,
            )
        set_committed_value(route, "version", expected + 1)
        return expected + 1

    # =====================================================================
    # Stops
    # =====================================================================

    async def get_stops(self, route_id: UUID) -> list[RouteStop]:
        """Live stops of a route in sequence order."""
        result = await self.session.execute(
            select(RouteStop)
            .where(RouteStop.route_id == route_id, RouteStop.deleted_at.is_(None))
            .order_by(RouteStop.sequence)
        )
        return list(result.scalars().all())

    async def get_stop(self, stop_id: UUID, organization_id: UUID) -> tuple[Route, RouteStop]:
        """
        Load a live stop together with its route.

        Raises:
            StopNotFoundError: Unknown, deleted or owned by another organization.
        """
        result = await self.session.execute(
            select(RouteStop, Route)
            .join(Route, Route.id == RouteStop.route_id)
            .where(
                RouteStop.id == stop_id,
                RouteStop.deleted_at.is_(None),
                Route.organization_id == organization_id,
                Route.deleted_at.is_(None),
            )
        )
        row = result.first()
        if row is None:
            raise StopNotFoundError(f"Stop {stop_id} not found", stop_id=stop_id)
        stop, route = row
        return route, stop

    async def add_stop(
        self,
        route: Route,
        stop: RouteStop,
        position: Optional[int] = None,
    ) -> RouteStop:
        """
        Insert ``stop`` at ``position`` (default: append).

        Stops at or after ``position`` move down by one. Inserting in front
        of a frozen stop is refused.

        Raises:
            DuplicateMachineError: Machine already on the route without
                ``metadata.repeatVisit``.
            InvalidStateError: ``position`` out of range or inside the
                frozen prefix.
        """
        stops = await self.get_stops(route.id)

        if not (stop.meta or {}).get("repeatVisit"):
            for existing in stops:
                if existing.machine_id == stop.machine_id and existing.status != StopStatus.CANCELLED:
                    raise DuplicateMachineError(
                        f"Machine {stop.machine_id} is already on route {route.id}",
                        machine_id=stop.machine_id,
                        stop_id=existing.id,
                    )

        count = len(stops)
        if position is None:
            position = count + 1

        last_frozen = max((s.sequence for s in stops if s.is_frozen), default=0)
        if position < 1 or position > count + 1:
            raise InvalidStateError(
                f"Position {position} outside 1..{count + 1}",
                position=position,
            )
        if position <= last_frozen:
            raise InvalidStateError(
                f"Cannot insert before stop {last_frozen}, which is already reached",
                position=position,
            )

        if position <= count:
            shifted = {
                s.id: s.sequence + 1 if s.sequence >= position else s.sequence
                for s in stops
            }
            await self._rewrite_sequences(stops, shifted)

        stop.route_id = route.id
        stop.sequence = position
        self.session.add(stop)
        await self.session.flush()
        await self._ensure_dense(route.id)

        logger.info(f"Added stop {stop.id} (machine {stop.machine_id}) to route {route.id} at {position}")
        return stop

    async def remove_stop(self, route: Route, stop_id: UUID) -> RouteStop:
        """
        Soft-delete a PENDING stop and close the gap it leaves.

        Raises:
            StopNotFoundError: Not a live stop of this route.
            InvalidStateError: The stop has progressed past PENDING.
        """
        stops = await self.get_stops(route.id)
        stop = next((s for s in stops if s.id == stop_id), None)
        if stop is None:
            raise StopNotFoundError(f"Stop {stop_id} not found on route {route.id}", stop_id=stop_id)
        if stop.status != StopStatus.PENDING:
            raise InvalidStateError(
                f"Only PENDING stops can be removed (stop is {stop.status.value}); cancel it instead",
                stop_id=stop_id,
                status=stop.status.value,
            )

        stop.deleted_at = utcnow()
        await self.session.flush()

        remaining = [s for s in stops if s.id != stop_id]
        await self._rewrite_sequences(remaining, compact(remaining))
        await self._ensure_dense(route.id)

        logger.info(f"Removed stop {stop_id} from route {route.id}")
        return stop

    async def replace_sequence(self, route: Route, ordered_stop_ids: Sequence[UUID]) -> list[RouteStop]:
        """
        Rewrite the order of the route's non-terminal stops.

        Raises:
            SequenceMismatchError: ``ordered_stop_ids`` is not exactly the
                non-terminal set or moves an ARRIVED stop.
        """
        stops = await self.get_stops(route.id)
        mapping = assign_slots(stops, ordered_stop_ids)
        await self._rewrite_sequences(stops, mapping)
        await self._ensure_dense(route.id)
        return sorted(stops, key=lambda s: s.sequence)

    async def advance_stop(self, route: Route, stop: RouteStop) -> bool:
        """
        Move a just-started or just-reached stop ahead of the PENDING stops
        queued directly before it.

        Returns:
            True if any sequence changed.
        """
        stops = await self.get_stops(route.id)
        order = advanced_order(stops, stop.id)
        if order is None:
            return False

        await self._rewrite_sequences(stops, fill_slots(stops, order))
        await self._ensure_dense(route.id)
        logger.info(f"Stop {stop.id} visited out of order on route {route.id}; now at {stop.sequence}")
        return True

    async def update_stop_status(
        self,
        stop: RouteStop,
        new_status: StopStatus,
        actual_arrival: Optional[datetime] = None,
        departed_at: Optional[datetime] = None,
    ) -> RouteStop:
        """Single-row status write; legality is the caller's concern."""
        stop.status = new_status
        if actual_arrival is not None:
            stop.actual_arrival = actual_arrival
        if departed_at is not None:
            stop.departed_at = departed_at
        await self.session.flush()
        return stop

    async def update_stop(self, stop: RouteStop, **fields: Any) -> RouteStop:
        for name, value in fields.items():
            setattr(stop, name, value)
        await self.session.flush()
        return stop

    async def update_stop_etas(
        self,
        stops: Iterable[RouteStop],
        etas: dict[UUID, Optional[datetime]],
    ) -> None:
        for stop in stops:
            if stop.id in etas:
                stop.estimated_arrival = etas[stop.id]
        await self.session.flush()

    # =====================================================================
    # Internals
    # =====================================================================

    async def _rewrite_sequences(self, stops: Sequence[RouteStop], mapping: dict[UUID, int]) -> None:
        """
        Apply new sequence numbers in two steps.

        Moved stops are first parked on negative numbers so the partial
        unique index never sees a transient duplicate.
        """
        moved = [s for s in stops if mapping[s.id] != s.sequence]
        if not moved:
            return

        for n, stop in enumerate(moved, start=1):
            stop.sequence = -n
        await self.session.flush()

        for stop in moved:
            stop.sequence = mapping[stop.id]
        await self.session.flush()

    async def _ensure_dense(self, route_id: UUID) -> None:
        result = await self.session.execute(
            select(RouteStop.sequence).where(
                RouteStop.route_id == route_id,
                RouteStop.deleted_at.is_(None),
            )
        )
        sequences = list(result.scalars().all())
        if not is_dense(sequences):
            logger.error(f"Route {route_id} sequence not dense: {sorted(sequences)}")
            raise InvalidStateError(
                "Stop sequence would not be contiguous",
                route_id=route_id,
            )
