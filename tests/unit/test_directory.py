"""Tests for the machine registry / operator directory HTTP clients."""
from uuid import uuid4

import httpx
import pytest

from route_engine.core.errors import DependencyUnavailableError
from route_engine.services.directory import (
    HTTPMachineRegistry,
    HTTPOperatorDirectory,
    get_machine_registry,
    reset_collaborators,
)


def transport(status_code=200, payload=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if payload is None:
            return httpx.Response(status_code, text="not json")
        return httpx.Response(status_code, json=payload)
    return httpx.MockTransport(handler)


class TestMachineRegistry:

    async def test_camel_case_record(self):
        machine_id, org_id = uuid4(), uuid4()
        seen = []
        registry = HTTPMachineRegistry(
            base_url="http://registry.test/api/v1/",
            transport=transport(payload={
                "id": str(machine_id),
                "organizationId": str(org_id),
                "latitude": 41.31,
                "longitude": 69.28,
                "name": "Lobby snack",
                "model": "ignored",
            }, seen=seen),
        )

        machine = await registry.get_machine(machine_id)

        assert machine.organization_id == org_id
        assert machine.has_coordinates
        assert seen[0].url.path == f"/api/v1/machines/{machine_id}"

    async def test_machine_without_location(self):
        machine_id = uuid4()
        registry = HTTPMachineRegistry(
            base_url="http://registry.test",
            transport=transport(payload={"id": str(machine_id), "organization_id": str(uuid4())}),
        )
        machine = await registry.get_machine(machine_id)
        assert machine.has_coordinates is False

    async def test_not_found_is_none(self):
        registry = HTTPMachineRegistry(
            base_url="http://registry.test", transport=transport(404, {"detail": "nope"})
        )
        assert await registry.get_machine(uuid4()) is None

    async def test_server_error(self):
        registry = HTTPMachineRegistry(
            base_url="http://registry.test", transport=transport(500, {"detail": "boom"})
        )
        with pytest.raises(DependencyUnavailableError):
            await registry.get_machine(uuid4())

    async def test_unreadable_body(self):
        registry = HTTPMachineRegistry(base_url="http://registry.test", transport=transport(200))
        with pytest.raises(DependencyUnavailableError):
            await registry.get_machine(uuid4())

    async def test_incomplete_record(self):
        registry = HTTPMachineRegistry(
            base_url="http://registry.test", transport=transport(payload={"id": str(uuid4())})
        )
        with pytest.raises(DependencyUnavailableError):
            await registry.get_machine(uuid4())


class TestOperatorDirectory:

    async def test_operator_record(self):
        operator_id, org_id = uuid4(), uuid4()
        directory = HTTPOperatorDirectory(
            base_url="http://directory.test",
            transport=transport(payload={"id": str(operator_id), "organizationId": str(org_id)}),
        )
        operator = await directory.get_operator(operator_id)
        assert operator.organization_id == org_id

    async def test_not_found_is_none(self):
        directory = HTTPOperatorDirectory(
            base_url="http://directory.test", transport=transport(404, {})
        )
        assert await directory.get_operator(uuid4()) is None


class TestFactory:

    def test_cached_until_reset(self):
        first = get_machine_registry()
        assert get_machine_registry() is first

        reset_collaborators()
        assert get_machine_registry() is not first
