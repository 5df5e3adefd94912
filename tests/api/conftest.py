"""API test fixtures -- auth headers and request payload helpers."""
from typing import Iterable, Optional
from uuid import UUID

import pytest

from tests.conftest import OPERATOR_ID, tomorrow


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def route_payload(
    machines: Iterable[UUID] = (),
    name: str = "Downtown refill",
    **overrides,
) -> dict:
    payload = {
        "operator_id": str(OPERATOR_ID),
        "name": name,
        "type": "REFILL",
        "planned_date": tomorrow().isoformat(),
        "planned_start_at": f"{tomorrow().isoformat()}T08:00:00Z",
        "stops": [{"machine_id": str(m)} for m in machines],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def planner_headers(planner_token) -> dict[str, str]:
    return auth(planner_token)


@pytest.fixture
def operator_headers(operator_token) -> dict[str, str]:
    return auth(operator_token)


@pytest.fixture
def create_route(client, planner_headers):
    """POST a route and return the response body."""
    async def _create(machines: Iterable[UUID] = (), **overrides) -> dict:
        response = await client.post(
            "/api/v1/routes",
            json=route_payload(machines, **overrides),
            headers=planner_headers,
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _create


async def send_event(
    client,
    headers: dict[str, str],
    stop_id: str,
    event: str,
    timestamp: Optional[str] = None,
):
    body = {"event": event}
    if timestamp:
        body["timestamp"] = timestamp
    return await client.post(f"/api/v1/routes/stops/{stop_id}/event", json=body, headers=headers)
