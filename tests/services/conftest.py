"""Service test fixtures -- routes built through RouteService on SQLite."""
from datetime import datetime, time, timezone
from typing import Iterable, Optional
from uuid import UUID

import pytest

from route_engine.models import Route, RouteStop, StopEvent
from route_engine.schemas.route import RouteCreate, StopCreate
from tests.conftest import OPERATOR_ID, ORG_ID, tomorrow


def planned_start() -> datetime:
    return datetime.combine(tomorrow(), time(8, 0), tzinfo=timezone.utc)


def sequences(stops: Iterable[RouteStop]) -> dict[UUID, int]:
    return {s.id: s.sequence for s in stops}


def machine_order(stops: Iterable[RouteStop]) -> list[UUID]:
    return [s.machine_id for s in sorted(stops, key=lambda s: s.sequence)]


@pytest.fixture
def make_route(route_service):
    async def _make(
        machines: Iterable[UUID] = (),
        auto_optimize: bool = False,
        name: str = "Downtown refill",
        planned_start_at: Optional[datetime] = None,
    ) -> Route:
        data = RouteCreate(
            operator_id=OPERATOR_ID,
            name=name,
            planned_date=tomorrow(),
            planned_start_at=planned_start_at or planned_start(),
            auto_optimize=auto_optimize,
            stops=[StopCreate(machine_id=m) for m in machines],
        )
        return await route_service.create_route(ORG_ID, data)

    return _make


@pytest.fixture
def visit(route_service):
    """Walk a stop through START_TRAVEL -> ARRIVE -> DEPART."""
    async def _visit(stop: RouteStop, arrive_at: datetime, depart_at: datetime) -> RouteStop:
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.START_TRAVEL, at=arrive_at)
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.ARRIVE, at=arrive_at)
        result = await route_service.record_progress(ORG_ID, stop.id, StopEvent.DEPART, at=depart_at)
        return result.stop

    return _visit
