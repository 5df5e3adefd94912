"""
Route stop lifecycle.

Transitions:
    PENDING  -> EN_ROUTE | SKIPPED | CANCELLED
    EN_ROUTE -> ARRIVED  | SKIPPED
    ARRIVED  -> DEPARTED

DEPARTED, SKIPPED and CANCELLED are terminal. Entering DEPARTED shifts the
ETAs of the remaining open stops by how late (or early) the operator left.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence
import logging

from route_engine.core.errors import IllegalTransitionError, InvalidTimestampError
from route_engine.models import RouteStop, StopEvent, StopStatus, utcnow
from route_engine.services.routing.optimizer import propagate_eta_shift
from route_engine.services.routing.store import RouteStore

logger = logging.getLogger(__name__)

TRANSITIONS: dict[StopStatus, frozenset[StopStatus]] = {
    StopStatus.PENDING: frozenset({StopStatus.EN_ROUTE, StopStatus.SKIPPED, StopStatus.CANCELLED}),
    StopStatus.EN_ROUTE: frozenset({StopStatus.ARRIVED, StopStatus.SKIPPED}),
    StopStatus.ARRIVED: frozenset({StopStatus.DEPARTED}),
    StopStatus.DEPARTED: frozenset(),
    StopStatus.SKIPPED: frozenset(),
    StopStatus.CANCELLED: frozenset(),
}

EVENT_TARGETS: dict[StopEvent, StopStatus] = {
    StopEvent.START_TRAVEL: StopStatus.EN_ROUTE,
    StopEvent.ARRIVE: StopStatus.ARRIVED,
    StopEvent.DEPART: StopStatus.DEPARTED,
    StopEvent.SKIP: StopStatus.SKIPPED,
    StopEvent.CANCEL: StopStatus.CANCELLED,
}


def can_transition(current: StopStatus, target: StopStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


@dataclass
class TransitionResult:
    """Outcome of applying one event to a stop."""
    stop: RouteStop
    previous_status: StopStatus
    new_status: StopStatus
    occurred_at: datetime

    # Set for DEPART only: departed_at - (estimated_arrival + service time)
    delay: Optional[timedelta] = None
    shifted_stops: list[RouteStop] = field(default_factory=list)


class StopStateMachine:
    """
    Validates and applies stop events.

    Usage:
        machine = StopStateMachine(store)
        result = await machine.apply(stop, StopEvent.ARRIVE, route_stops=stops)
    """

    def __init__(self, store: RouteStore):
        self.store = store

    @staticmethod
    def resolve(stop: RouteStop, event: StopEvent) -> StopStatus:
        """
        Return the status ``event`` moves ``stop`` to.

        Raises:
            IllegalTransitionError: If the move is not in the transition table.
        """
        target = EVENT_TARGETS[StopEvent(event)]
        if not can_transition(stop.status, target):
            raise IllegalTransitionError(stop.status, target, event=event)
        return target

    @staticmethod
    def _normalize(at: Optional[datetime]) -> datetime:
        if at is None:
            return utcnow()
        if at.tzinfo is None:
            return at.replace(tzinfo=timezone.utc)
        return at.astimezone(timezone.utc)

    @staticmethod
    def _check_order(stop: RouteStop, at: datetime) -> None:
        previous = [t for t in (stop.actual_arrival, stop.departed_at) if t is not None]
        if previous and at < max(previous):
            raise InvalidTimestampError(
                f"Event time {at.isoformat()} precedes the stop's last recorded time",
                stop_id=stop.id,
                previous=max(previous).isoformat(),
            )

    async def apply(
        self,
        stop: RouteStop,
        event: StopEvent,
        at: Optional[datetime] = None,
        service_minutes: int = 0,
        route_stops: Sequence[RouteStop] = (),
    ) -> TransitionResult:
        """
        Apply ``event`` to ``stop`` and persist the new status.

        Args:
            stop: Stop to transition
            event: Reported event
            at: When it happened (defaults to now, UTC)
            service_minutes: Planned service time at ``stop``, for the DEPART delay
            route_stops: All live stops of the route, for ETA propagation

        Raises:
            IllegalTransitionError: Stop left unchanged.
            InvalidTimestampError: ``at`` precedes an earlier stamp on the stop.
        """
        target = self.resolve(stop, event)
        at = self._normalize(at)
        self._check_order(stop, at)

        previous = stop.status
        stamps: dict[str, datetime] = {}
        if target == StopStatus.ARRIVED:
            stamps["actual_arrival"] = at
        elif target == StopStatus.DEPARTED:
            stamps["departed_at"] = at

        await self.store.update_stop_status(stop, target, **stamps)
        result = TransitionResult(
            stop=stop,
            previous_status=previous,
            new_status=target,
            occurred_at=at,
        )

        if target == StopStatus.DEPARTED and stop.estimated_arrival is not None:
            planned_departure = stop.estimated_arrival + timedelta(minutes=service_minutes)
            result.delay = at - planned_departure
            result.shifted_stops = propagate_eta_shift(
                [s for s in route_stops if s.id != stop.id],
                stop.sequence,
                result.delay,
            )
            if result.shifted_stops:
                await self.store.flush()

        logger.info(
            f"Stop {stop.id} (route {stop.route_id}): {previous.value} -> {target.value}"
            + (f", {len(result.shifted_stops)} ETAs shifted" if result.shifted_stops else "")
        )
        return result
