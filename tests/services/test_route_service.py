"""
Tests for RouteService against an in-memory SQLite database.

Covers route/stop management, reordering, optimization, progress events,
GPS ingest and completion.
"""
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from route_engine.core.errors import (
    ConcurrentModificationError,
    DuplicateMachineError,
    IllegalTransitionError,
    InvalidPositionError,
    InvalidStateError,
    InvalidTimestampError,
    OperatorNotInOrganizationError,
    PlannedDateInPastError,
    RouteNotFoundError,
    SequenceMismatchError,
    StopNotFoundError,
    UnknownMachineError,
)
from route_engine.models import RouteStatus, StopEvent, StopStatus, utcnow
from route_engine.schemas.route import RouteCreate, RouteUpdate, StopCreate, StopUpdate
from route_engine.services.geo.distance import Coordinate, haversine_km, travel_minutes
from route_engine.services.routing.optimizer import MISSING_COORDINATES_WARNING
from route_engine.services.routing.store import is_dense
from tests.conftest import (
    FOREIGN_OPERATOR_ID,
    M1,
    M2,
    M3,
    M4,
    M5,
    M_FOREIGN,
    M_NO_COORDS,
    OPERATOR_ID,
    ORG_ID,
    OTHER_ORG_ID,
    tomorrow,
)
from tests.services.conftest import machine_order, planned_start, sequences


# =========================================================================
# Routes
# =========================================================================

class TestCreateRoute:

    async def test_creates_planned_route(self, route_service, make_route):
        route = await make_route()
        fetched, stops = await route_service.get_route(ORG_ID, route.id)

        assert fetched.version == 1
        assert fetched.derive_status(stops) == RouteStatus.PLANNED
        assert stops == []

    async def test_initial_stops_keep_given_order(self, route_service, make_route):
        route = await make_route([M3, M1, M2])
        stops = await route_service.get_stops(ORG_ID, route.id)

        assert machine_order(stops) == [M3, M1, M2]
        assert [s.sequence for s in stops] == [1, 2, 3]
        assert all(s.estimated_arrival is not None for s in stops)

    async def test_machine_location_is_snapshotted(self, route_service, make_route):
        route = await make_route([M2])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]

        assert (stop.latitude, stop.longitude) == (0.0, 1.0)

    async def test_past_planned_date_rejected(self, route_service):
        data = RouteCreate(
            operator_id=OPERATOR_ID,
            name="Yesterday",
            planned_date=utcnow().date() - timedelta(days=2),
        )
        with pytest.raises(PlannedDateInPastError):
            await route_service.create_route(ORG_ID, data)

    @pytest.mark.parametrize("operator_id", [FOREIGN_OPERATOR_ID, uuid4()])
    async def test_operator_must_belong_to_organization(self, route_service, operator_id):
        data = RouteCreate(operator_id=operator_id, name="Route", planned_date=tomorrow())
        with pytest.raises(OperatorNotInOrganizationError):
            await route_service.create_route(ORG_ID, data)


class TestListRoutes:

    async def test_filters_and_pagination(self, route_service, make_route):
        await make_route(name="Downtown refill")
        await make_route(name="Airport cash run")
        await make_route(name="Downtown maintenance")

        routes, total = await route_service.list_routes(ORG_ID, search="downtown")
        assert total == 2
        assert {r.name for r in routes} == {"Downtown refill", "Downtown maintenance"}

        page, total = await route_service.list_routes(ORG_ID, page=2, limit=2)
        assert total == 3
        assert len(page) == 1

    async def test_other_organization_sees_nothing(self, route_service, make_route):
        route = await make_route()

        routes, total = await route_service.list_routes(OTHER_ORG_ID)
        assert (routes, total) == ([], 0)
        with pytest.raises(RouteNotFoundError):
            await route_service.get_route(OTHER_ORG_ID, route.id)


class TestUpdateAndDeleteRoute:

    async def test_update_bumps_version(self, route_service, make_route):
        route = await make_route()
        updated = await route_service.update_route(
            ORG_ID, route.id, RouteUpdate(name="Renamed", metadata={"zone": "north"})
        )

        assert updated.name == "Renamed"
        assert updated.meta == {"zone": "north"}
        assert updated.version == 2

    async def test_update_rejects_past_date(self, route_service, make_route):
        route = await make_route()
        with pytest.raises(PlannedDateInPastError):
            await route_service.update_route(
                ORG_ID, route.id, RouteUpdate(planned_date=utcnow().date() - timedelta(days=3))
            )

    async def test_delete_planned_route(self, route_service, make_route):
        route = await make_route([M1])
        await route_service.delete_route(ORG_ID, route.id)

        with pytest.raises(RouteNotFoundError):
            await route_service.get_route(ORG_ID, route.id)

    async def test_delete_refused_while_in_progress(self, route_service, make_route):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.START_TRAVEL)

        with pytest.raises(InvalidStateError):
            await route_service.delete_route(ORG_ID, route.id)


# =========================================================================
# Stops
# =========================================================================

class TestAddStop:

    async def test_append_without_reordering(self, route_service, make_route):
        route = await make_route([M1, M2, M3, M4])
        before = sequences(await route_service.get_stops(ORG_ID, route.id))

        stop = await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=M5))
        after = sequences(await route_service.get_stops(ORG_ID, route.id))

        assert stop.sequence == 5
        assert {k: v for k, v in after.items() if k != stop.id} == before

    async def test_insert_at_position_shifts_later_stops(self, route_service, make_route):
        route = await make_route([M1, M2, M3])
        await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=M4, sequence=1))

        stops = await route_service.get_stops(ORG_ID, route.id)
        assert machine_order(stops) == [M4, M1, M2, M3]
        assert is_dense(s.sequence for s in stops)

    async def test_insert_before_reached_stop_refused(self, route_service, make_route):
        route = await make_route([M1, M2])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        await route_service.record_progress(ORG_ID, first.id, StopEvent.START_TRAVEL)
        await route_service.record_progress(ORG_ID, first.id, StopEvent.ARRIVE)

        with pytest.raises(InvalidStateError):
            await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=M3, sequence=1))

        await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=M3, sequence=2))
        stops = await route_service.get_stops(ORG_ID, route.id)
        assert machine_order(stops) == [M1, M3, M2]

    @pytest.mark.parametrize("machine_id", [M_FOREIGN, uuid4()])
    async def test_unknown_machine_rejected(self, route_service, make_route, machine_id):
        route = await make_route()
        with pytest.raises(UnknownMachineError):
            await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=machine_id))

    async def test_duplicate_machine_rejected(self, route_service, make_route):
        route = await make_route([M1])
        with pytest.raises(DuplicateMachineError):
            await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=M1))

    async def test_repeat_visit_allows_duplicate(self, route_service, make_route):
        route = await make_route([M1])
        stop = await route_service.add_stop(
            ORG_ID, route.id, StopCreate(machine_id=M1, metadata={"repeatVisit": True})
        )
        assert stop.sequence == 2

    async def test_cancelled_machine_can_be_added_again(self, route_service, make_route):
        route = await make_route([M1, M2])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        await route_service.record_progress(ORG_ID, first.id, StopEvent.CANCEL)

        stop = await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=M1))
        assert stop.sequence == 3

    async def test_auto_optimize_reorders_after_add(self, route_service, make_route):
        route = await make_route([M4, M1], auto_optimize=True)
        await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=M2))

        stops = await route_service.get_stops(ORG_ID, route.id)
        preview = await route_service.optimize(ORG_ID, route.id, preview=True)
        assert [s.id for s in stops] == preview.plan.ordered_stop_ids

    async def test_completed_route_is_frozen(self, route_service, make_route):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.SKIP)
        await route_service.complete_route(ORG_ID, route.id)

        with pytest.raises(InvalidStateError):
            await route_service.add_stop(ORG_ID, route.id, StopCreate(machine_id=M2))


class TestRemoveStop:

    async def test_remove_compacts_sequence(self, route_service, make_route):
        route = await make_route([M1, M2, M3])
        middle = (await route_service.get_stops(ORG_ID, route.id))[1]

        await route_service.remove_stop(ORG_ID, route.id, middle.id)
        stops = await route_service.get_stops(ORG_ID, route.id)

        assert machine_order(stops) == [M1, M3]
        assert [s.sequence for s in stops] == [1, 2]
        assert middle.deleted_at is not None

    async def test_progressed_stop_cannot_be_removed(self, route_service, make_route):
        route = await make_route([M1, M2])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        await route_service.record_progress(ORG_ID, first.id, StopEvent.START_TRAVEL)

        with pytest.raises(InvalidStateError):
            await route_service.remove_stop(ORG_ID, route.id, first.id)

    async def test_unknown_stop(self, route_service, make_route):
        route = await make_route([M1])
        with pytest.raises(StopNotFoundError):
            await route_service.remove_stop(ORG_ID, route.id, uuid4())


class TestUpdateStop:

    async def test_notes_editable_after_departure(self, route_service, make_route, visit):
        route = await make_route([M1, M2])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        start = planned_start()
        await visit(first, start, start + timedelta(minutes=20))

        stop = await route_service.update_stop(
            ORG_ID, route.id, first.id, StopUpdate(notes="Coin jam fixed")
        )
        assert stop.notes == "Coin jam fixed"

    async def test_coordinates_locked_after_departure(self, route_service, make_route, visit):
        route = await make_route([M1, M2])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        start = planned_start()
        await visit(first, start, start + timedelta(minutes=20))

        with pytest.raises(InvalidStateError):
            await route_service.update_stop(
                ORG_ID, route.id, first.id, StopUpdate(latitude=0.1, longitude=0.1)
            )

    async def test_pending_stop_coordinates_update_etas(self, route_service, make_route):
        route = await make_route([M1, M2])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        eta_before = first.estimated_arrival

        await route_service.update_stop(
            ORG_ID, route.id, first.id, StopUpdate(latitude=40.0, longitude=69.0)
        )
        assert first.latitude == 40.0
        assert first.estimated_arrival != eta_before


# =========================================================================
# Reordering
# =========================================================================

class TestReorderStops:

    async def test_manual_order_kept_verbatim(self, route_service, make_route, test_settings):
        route = await make_route([M1, M2, M3])
        stops = await route_service.get_stops(ORG_ID, route.id)
        requested = [s.id for s in reversed(stops)]

        result = await route_service.reorder_stops(ORG_ID, route.id, requested)

        assert [s.id for s in result] == requested
        assert [s.sequence for s in result] == [1, 2, 3]

        depot = Coordinate(
            float(test_settings.default_depot_latitude),
            float(test_settings.default_depot_longitude),
        )
        expected_first = planned_start() + timedelta(
            minutes=travel_minutes(haversine_km(depot, Coordinate(1.0, 0.0)), 40)
        )
        assert abs(result[0].estimated_arrival - expected_first) < timedelta(seconds=1)
        assert result[0].estimated_arrival < result[1].estimated_arrival < result[2].estimated_arrival

    async def test_missing_id_rejected(self, route_service, make_route):
        route = await make_route([M1, M2, M3])
        stops = await route_service.get_stops(ORG_ID, route.id)

        with pytest.raises(SequenceMismatchError):
            await route_service.reorder_stops(ORG_ID, route.id, [s.id for s in stops[:2]])

    async def test_duplicate_id_rejected(self, route_service, make_route):
        route = await make_route([M1, M2])
        stops = await route_service.get_stops(ORG_ID, route.id)

        with pytest.raises(SequenceMismatchError):
            await route_service.reorder_stops(
                ORG_ID, route.id, [stops[0].id, stops[1].id, stops[0].id]
            )

    async def test_departed_stop_keeps_slot(self, route_service, make_route, visit):
        route = await make_route([M1, M2, M3])
        stops = await route_service.get_stops(ORG_ID, route.id)
        start = planned_start()
        await visit(stops[0], start, start + timedelta(minutes=20))

        with pytest.raises(SequenceMismatchError):
            await route_service.reorder_stops(ORG_ID, route.id, [s.id for s in stops])

        result = await route_service.reorder_stops(ORG_ID, route.id, [stops[2].id, stops[1].id])
        assert [s.machine_id for s in result] == [M1, M3, M2]

    async def test_arrived_stop_listed_in_place(self, route_service, make_route):
        route = await make_route([M1, M2, M3])
        stops = await route_service.get_stops(ORG_ID, route.id)
        start = planned_start()
        await route_service.record_progress(ORG_ID, stops[0].id, StopEvent.START_TRAVEL, at=start)
        await route_service.record_progress(
            ORG_ID, stops[0].id, StopEvent.ARRIVE, at=start + timedelta(minutes=10)
        )

        result = await route_service.reorder_stops(
            ORG_ID, route.id, [stops[0].id, stops[2].id, stops[1].id]
        )

        assert [s.machine_id for s in result] == [M1, M3, M2]
        assert result[0].status == StopStatus.ARRIVED

    @pytest.mark.parametrize("order", [
        lambda s: [s[2].id, s[0].id, s[1].id],
        lambda s: [s[2].id, s[1].id],
    ])
    async def test_arrived_stop_cannot_move_or_be_left_out(self, route_service, make_route, order):
        route = await make_route([M1, M2, M3])
        stops = await route_service.get_stops(ORG_ID, route.id)
        start = planned_start()
        await route_service.record_progress(ORG_ID, stops[0].id, StopEvent.START_TRAVEL, at=start)
        await route_service.record_progress(
            ORG_ID, stops[0].id, StopEvent.ARRIVE, at=start + timedelta(minutes=10)
        )

        with pytest.raises(SequenceMismatchError):
            await route_service.reorder_stops(ORG_ID, route.id, order(stops))

    async def test_optimize_keeps_arrived_stop_in_place(self, route_service, make_route):
        route = await make_route([M1, M3, M2])
        stops = await route_service.get_stops(ORG_ID, route.id)
        start = planned_start()
        await route_service.record_progress(ORG_ID, stops[0].id, StopEvent.START_TRAVEL, at=start)
        await route_service.record_progress(
            ORG_ID, stops[0].id, StopEvent.ARRIVE, at=start + timedelta(minutes=10)
        )

        outcome = await route_service.optimize(ORG_ID, route.id)

        assert outcome.sequences[stops[0].id] == 1
        persisted = await route_service.get_stops(ORG_ID, route.id)
        assert persisted[0].id == stops[0].id
        assert is_dense(s.sequence for s in persisted)

    async def test_stale_version_loses(self, route_service, make_route):
        """Two reorders based on the same version: the second one conflicts."""
        route = await make_route([M1, M2, M3])
        version = route.version
        stops = await route_service.get_stops(ORG_ID, route.id)
        winner = [stops[2].id, stops[0].id, stops[1].id]
        loser = [stops[1].id, stops[0].id, stops[2].id]

        await route_service.reorder_stops(ORG_ID, route.id, winner, expected_version=version)
        with pytest.raises(ConcurrentModificationError) as exc_info:
            await route_service.reorder_stops(ORG_ID, route.id, loser, expected_version=version)

        assert exc_info.value.retryable is True
        persisted = await route_service.get_stops(ORG_ID, route.id)
        assert [s.id for s in persisted] == winner


# =========================================================================
# Optimization
# =========================================================================

class TestOptimize:

    async def test_equidistant_stops_resolved_by_machine_id(self, route_service, make_route):
        route = await make_route([M3, M2, M1])

        outcome = await route_service.optimize(ORG_ID, route.id, start=Coordinate(0.0, 0.0))
        stops = await route_service.get_stops(ORG_ID, route.id)

        assert outcome.applied is True
        assert machine_order(stops) == [M1, M2, M3]

        m1, m2, m3 = Coordinate(0.0, 0.0), Coordinate(0.0, 1.0), Coordinate(1.0, 0.0)
        expected = haversine_km(m1, m2) + haversine_km(m2, m3)
        naive = haversine_km(m1, m3) + haversine_km(m3, m2) + haversine_km(m2, m1)
        assert outcome.plan.total_distance_km == pytest.approx(expected)
        assert outcome.plan.total_distance_km < naive
        assert route.estimated_distance_km == Decimal(str(round(expected, 2)))

    async def test_preview_is_repeatable_and_not_saved(self, route_service, make_route):
        route = await make_route([M4, M1, M3, M2, M5])
        before = sequences(await route_service.get_stops(ORG_ID, route.id))

        first = await route_service.optimize(ORG_ID, route.id, preview=True)
        second = await route_service.optimize(ORG_ID, route.id, preview=True)

        assert first.plan.ordered_stop_ids == second.plan.ordered_stop_ids
        assert first.plan.total_distance_km == second.plan.total_distance_km
        assert first.plan.etas == second.plan.etas
        assert first.applied is False
        assert sequences(await route_service.get_stops(ORG_ID, route.id)) == before
        assert route.version == 1

    async def test_departed_stops_never_move(self, route_service, make_route, visit):
        route = await make_route([M1, M4, M2, M3])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        start = planned_start()
        await visit(first, start + timedelta(minutes=30), start + timedelta(minutes=45))
        arrival, departed = first.actual_arrival, first.departed_at

        await route_service.optimize(ORG_ID, route.id)
        stops = await route_service.get_stops(ORG_ID, route.id)

        assert stops[0].id == first.id
        assert first.sequence == 1
        assert first.status == StopStatus.DEPARTED
        assert (first.actual_arrival, first.departed_at) == (arrival, departed)
        # Tail starts from the departed stop's location
        assert machine_order(stops) == [M1, M2, M4, M3]
        assert is_dense(s.sequence for s in stops)

    async def test_en_route_stop_stays_next(self, route_service, make_route):
        route = await make_route([M1, M2, M3])
        third = (await route_service.get_stops(ORG_ID, route.id))[2]
        await route_service.record_progress(ORG_ID, third.id, StopEvent.START_TRAVEL)

        await route_service.optimize(ORG_ID, route.id, start=Coordinate(0.0, 0.0))
        stops = await route_service.get_stops(ORG_ID, route.id)

        assert machine_order(stops) == [M3, M1, M2]

    async def test_single_located_stop_is_noop(self, route_service, make_route):
        route = await make_route([M_NO_COORDS, M1])
        before = sequences(await route_service.get_stops(ORG_ID, route.id))

        outcome = await route_service.optimize(ORG_ID, route.id)

        assert outcome.applied is False
        assert outcome.plan.optimized is False
        assert sequences(await route_service.get_stops(ORG_ID, route.id)) == before

    async def test_missing_coordinates_go_last(self, route_service, make_route):
        route = await make_route([M_NO_COORDS, M3, M1])

        outcome = await route_service.optimize(ORG_ID, route.id, start=Coordinate(0.0, 0.0))
        stops = await route_service.get_stops(ORG_ID, route.id)

        assert machine_order(stops) == [M1, M3, M_NO_COORDS]
        missing = stops[-1]
        assert missing.meta["warning"] == MISSING_COORDINATES_WARNING
        assert missing.estimated_arrival is None
        assert outcome.plan.missing_coordinate_stop_ids == [missing.id]
        assert all(s.estimated_arrival is not None for s in stops[:2])
        assert "warning" not in stops[0].meta

    async def test_started_stop_without_coordinates_stays_next(self, route_service, make_route):
        route = await make_route([M1, M3, M_NO_COORDS])
        started = (await route_service.get_stops(ORG_ID, route.id))[2]
        await route_service.record_progress(ORG_ID, started.id, StopEvent.START_TRAVEL)

        outcome = await route_service.optimize(ORG_ID, route.id, start=Coordinate(0.0, 0.0))
        stops = await route_service.get_stops(ORG_ID, route.id)

        assert machine_order(stops) == [M_NO_COORDS, M1, M3]
        assert stops[0].status == StopStatus.EN_ROUTE
        assert stops[0].meta["warning"] == MISSING_COORDINATES_WARNING
        assert outcome.plan.missing_coordinate_stop_ids == [started.id]
        assert is_dense(s.sequence for s in stops)


# =========================================================================
# Progress
# =========================================================================

class TestRecordProgress:

    async def test_arrive_stamps_and_repeat_is_illegal(self, route_service, make_route):
        route = await make_route([M1, M2])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        arrived_at = planned_start() + timedelta(minutes=20)

        await route_service.record_progress(ORG_ID, stop.id, StopEvent.START_TRAVEL,
                                            at=planned_start())
        result = await route_service.record_progress(ORG_ID, stop.id, StopEvent.ARRIVE,
                                                     at=arrived_at)

        assert result.stop.status == StopStatus.ARRIVED
        assert result.stop.actual_arrival == arrived_at

        with pytest.raises(IllegalTransitionError) as exc_info:
            await route_service.record_progress(ORG_ID, stop.id, StopEvent.ARRIVE,
                                                at=arrived_at + timedelta(minutes=1))
        assert exc_info.value.current == StopStatus.ARRIVED
        assert stop.status == StopStatus.ARRIVED
        assert stop.actual_arrival == arrived_at

    @pytest.mark.parametrize("event", [StopEvent.ARRIVE, StopEvent.DEPART])
    async def test_pending_stop_cannot_skip_ahead(self, route_service, make_route, event):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]

        with pytest.raises(IllegalTransitionError):
            await route_service.record_progress(ORG_ID, stop.id, event)
        assert stop.status == StopStatus.PENDING
        assert stop.actual_arrival is None
        assert route.version == 1

    async def test_start_travel_starts_route(self, route_service, make_route):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        at = planned_start()

        await route_service.record_progress(ORG_ID, stop.id, StopEvent.START_TRAVEL, at=at)
        _, stops = await route_service.get_route(ORG_ID, route.id)

        assert route.started_at == at
        assert route.derive_status(stops) == RouteStatus.IN_PROGRESS

    async def test_out_of_order_visit_moves_ahead_of_waiting_stops(self, route_service, make_route, visit):
        route = await make_route([M1, M2, M3])
        first, second, third = await route_service.get_stops(ORG_ID, route.id)
        start = planned_start()

        await visit(second, start + timedelta(minutes=10), start + timedelta(minutes=25))
        stops = await route_service.get_stops(ORG_ID, route.id)

        assert machine_order(stops) == [M2, M1, M3]
        assert is_dense(s.sequence for s in stops)
        assert second.sequence == 1
        assert first.estimated_arrival > second.departed_at
        assert third.estimated_arrival > first.estimated_arrival

    async def test_late_departure_shifts_downstream_etas(self, route_service, make_route, visit):
        route = await make_route([M1, M2, M3])
        first, second, third = await route_service.get_stops(ORG_ID, route.id)
        eta2, eta3 = second.estimated_arrival, third.estimated_arrival

        arrive = first.estimated_arrival
        depart = arrive + timedelta(minutes=15 + 10)
        await visit(first, arrive, depart)

        assert second.estimated_arrival == eta2 + timedelta(minutes=10)
        assert third.estimated_arrival == eta3 + timedelta(minutes=10)

    async def test_skipped_stop_drops_out_of_propagation(self, route_service, make_route, visit):
        route = await make_route([M1, M2, M3])
        first, second, third = await route_service.get_stops(ORG_ID, route.id)
        eta2, eta3 = second.estimated_arrival, third.estimated_arrival

        await route_service.record_progress(ORG_ID, second.id, StopEvent.SKIP)
        await visit(first, first.estimated_arrival,
                    first.estimated_arrival + timedelta(minutes=15 + 5))

        assert second.sequence == 2
        assert second.estimated_arrival == eta2
        assert third.estimated_arrival == eta3 + timedelta(minutes=5)

    async def test_departure_before_arrival_rejected(self, route_service, make_route):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        at = planned_start()
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.START_TRAVEL, at=at)
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.ARRIVE, at=at)

        with pytest.raises(InvalidTimestampError):
            await route_service.record_progress(ORG_ID, stop.id, StopEvent.DEPART,
                                                at=at - timedelta(minutes=5))
        assert stop.status == StopStatus.ARRIVED

    async def test_other_organization_cannot_see_stop(self, route_service, make_route):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]

        with pytest.raises(StopNotFoundError):
            await route_service.record_progress(OTHER_ORG_ID, stop.id, StopEvent.START_TRAVEL)


# =========================================================================
# GPS ingest
# =========================================================================

class TestIngestPosition:

    async def _en_route(self, route_service, make_route):
        route = await make_route([M1, M2])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        await route_service.record_progress(ORG_ID, first.id, StopEvent.START_TRAVEL,
                                            at=planned_start())
        return route, first

    async def test_arrival_and_departure_inferred(self, route_service, make_route):
        route, first = await self._en_route(route_service, make_route)
        start = planned_start()

        near = await route_service.ingest_position(
            ORG_ID, route.id, 0.0005, 0.0, at=start + timedelta(minutes=5), accuracy_meters=10
        )
        assert near.accepted is True
        assert [t.new_status for t in near.transitions] == [StopStatus.ARRIVED]
        assert first.actual_arrival == start + timedelta(minutes=5)

        away = await route_service.ingest_position(
            ORG_ID, route.id, 0.01, 0.0, at=start + timedelta(minutes=20), accuracy_meters=10
        )
        assert [t.new_status for t in away.transitions] == [StopStatus.DEPARTED]
        assert first.departed_at == start + timedelta(minutes=20)

        travelled = haversine_km(Coordinate(0.0005, 0.0), Coordinate(0.01, 0.0))
        assert float(route.tracked_distance_km) == pytest.approx(travelled, abs=0.001)

    async def test_inaccurate_ping_ignored(self, route_service, make_route):
        route, first = await self._en_route(route_service, make_route)

        outcome = await route_service.ingest_position(
            ORG_ID, route.id, 0.0, 0.0, at=planned_start(), accuracy_meters=80
        )
        assert outcome.accepted is False
        assert outcome.reason == "low_accuracy"
        assert first.status == StopStatus.EN_ROUTE
        assert route.last_position_at is None

    async def test_out_of_order_ping_ignored(self, route_service, make_route):
        route, _ = await self._en_route(route_service, make_route)
        start = planned_start()
        await route_service.ingest_position(ORG_ID, route.id, 5.0, 5.0, at=start + timedelta(minutes=10))

        outcome = await route_service.ingest_position(
            ORG_ID, route.id, 5.1, 5.0, at=start + timedelta(minutes=1)
        )
        assert outcome.reason == "out_of_order"

    async def test_invalid_position_rejected(self, route_service, make_route):
        route, _ = await self._en_route(route_service, make_route)
        with pytest.raises(InvalidPositionError):
            await route_service.ingest_position(ORG_ID, route.id, 95.0, 0.0)


# =========================================================================
# Start
# =========================================================================

class TestStartRoute:

    async def test_start_stamps_route_only(self, route_service, make_route):
        route = await make_route([M1, M2])
        at = planned_start() - timedelta(minutes=5)

        started = await route_service.start_route(ORG_ID, route.id, at=at)
        _, stops = await route_service.get_route(ORG_ID, route.id)

        assert started.started_at == at
        assert started.version == 2
        assert started.derive_status(stops) == RouteStatus.IN_PROGRESS
        assert all(s.status == StopStatus.PENDING for s in stops)

    async def test_first_travel_keeps_start_time(self, route_service, make_route):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        at = planned_start() - timedelta(minutes=5)
        await route_service.start_route(ORG_ID, route.id, at=at)

        await route_service.record_progress(ORG_ID, stop.id, StopEvent.START_TRAVEL,
                                            at=planned_start())

        assert route.started_at == at

    async def test_started_route_cannot_start_again(self, route_service, make_route):
        route = await make_route([M1])
        await route_service.start_route(ORG_ID, route.id)

        with pytest.raises(InvalidStateError):
            await route_service.start_route(ORG_ID, route.id)
        assert route.version == 2

    async def test_route_with_progress_cannot_start(self, route_service, make_route, visit):
        route = await make_route([M1, M2])
        first = (await route_service.get_stops(ORG_ID, route.id))[0]
        await visit(first, planned_start(), planned_start() + timedelta(minutes=15))

        with pytest.raises(InvalidStateError):
            await route_service.start_route(ORG_ID, route.id)

    async def test_stale_version_loses(self, route_service, make_route):
        route = await make_route([M1])

        with pytest.raises(ConcurrentModificationError):
            await route_service.start_route(ORG_ID, route.id, expected_version=7)
        assert route.started_at is None


# =========================================================================
# Completion
# =========================================================================

class TestCompleteRoute:

    async def test_unfinished_stops_block_completion(self, route_service, make_route):
        route = await make_route([M1, M2])
        with pytest.raises(InvalidStateError):
            await route_service.complete_route(ORG_ID, route.id)

    async def test_actuals_from_timestamps_and_stop_path(self, route_service, make_route, visit):
        route = await make_route([M1, M2])
        first, second = await route_service.get_stops(ORG_ID, route.id)
        start = planned_start()
        await visit(first, start + timedelta(minutes=10), start + timedelta(minutes=25))
        await visit(second, start + timedelta(minutes=200), start + timedelta(minutes=215))

        completed = await route_service.complete_route(ORG_ID, route.id)
        _, stops = await route_service.get_route(ORG_ID, route.id)

        assert completed.actual_duration_minutes == 205
        expected_km = round(haversine_km(Coordinate(0.0, 0.0), Coordinate(0.0, 1.0)), 2)
        assert float(completed.actual_distance_km) == pytest.approx(expected_km)
        assert completed.derive_status(stops) == RouteStatus.COMPLETED

        with pytest.raises(InvalidStateError):
            await route_service.complete_route(ORG_ID, route.id)

    async def test_gps_odometer_preferred(self, route_service, make_route):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        start = planned_start()
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.START_TRAVEL, at=start)
        await route_service.ingest_position(ORG_ID, route.id, 0.5, 0.0, at=start + timedelta(minutes=1))
        await route_service.ingest_position(ORG_ID, route.id, 0.0, 0.0, at=start + timedelta(minutes=60))
        assert stop.status == StopStatus.ARRIVED
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.DEPART,
                                            at=start + timedelta(minutes=75))

        completed = await route_service.complete_route(ORG_ID, route.id)

        leg = round(haversine_km(Coordinate(0.5, 0.0), Coordinate(0.0, 0.0)), 3)
        assert float(completed.actual_distance_km) == pytest.approx(round(leg, 2))
        assert completed.actual_duration_minutes == 75

    async def test_all_skipped(self, route_service, make_route):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        await route_service.record_progress(ORG_ID, stop.id, StopEvent.SKIP)

        completed = await route_service.complete_route(ORG_ID, route.id)
        assert completed.actual_duration_minutes == 0
        assert completed.actual_distance_km == Decimal("0")
        assert completed.completed_at is not None

    async def test_reported_actuals_replace_computed(self, route_service, make_route, visit):
        route = await make_route([M1, M2])
        first, second = await route_service.get_stops(ORG_ID, route.id)
        start = planned_start()
        await visit(first, start + timedelta(minutes=10), start + timedelta(minutes=25))
        await visit(second, start + timedelta(minutes=60), start + timedelta(minutes=70))

        completed = await route_service.complete_route(
            ORG_ID,
            route.id,
            actual_duration_minutes=95,
            actual_distance_km=142.37,
            notes="Odometer reading from the van",
        )

        assert completed.actual_duration_minutes == 95
        assert completed.actual_distance_km == Decimal("142.37")
        assert completed.notes == "Odometer reading from the van"

    async def test_partial_report_keeps_computed_duration(self, route_service, make_route, visit):
        route = await make_route([M1])
        stop = (await route_service.get_stops(ORG_ID, route.id))[0]
        start = planned_start()
        await visit(stop, start + timedelta(minutes=10), start + timedelta(minutes=40))

        completed = await route_service.complete_route(ORG_ID, route.id, actual_distance_km=12.5)

        assert completed.actual_duration_minutes == 30
        assert completed.actual_distance_km == Decimal("12.5")
