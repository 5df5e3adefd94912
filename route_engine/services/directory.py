"""
Clients for the machine registry and the organization/user directory.

Both collaborators are plain JSON-over-HTTP services. A 404 means "no such
record" and is reported as ``None``; anything else that prevents an answer
is a DependencyUnavailableError.
"""
from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import UUID
import logging

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from route_engine.core.config import get_settings
from route_engine.core.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)


class MachineRecord(BaseModel):
    """Machine as reported by the registry."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: UUID
    organization_id: UUID = Field(validation_alias=AliasChoices("organizationId", "organization_id"))
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class OperatorRecord(BaseModel):
    """Field operator as reported by the directory."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: UUID
    organization_id: UUID = Field(validation_alias=AliasChoices("organizationId", "organization_id"))


class MachineRegistry(ABC):
    @abstractmethod
    async def get_machine(self, machine_id: UUID) -> Optional[MachineRecord]:
        """Return the machine, or None if the registry does not know it."""


class OperatorDirectory(ABC):
    @abstractmethod
    async def get_operator(self, operator_id: UUID) -> Optional[OperatorRecord]:
        """Return the operator, or None if the directory does not know them."""


async def _fetch_json(
    base_url: str,
    path: str,
    service: str,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[dict[str, Any]]:
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            response = await client.get(url)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{service} request {url} failed: {e}")
            raise DependencyUnavailableError(
                f"{service} unavailable: {e}",
                service=service,
            ) from e


class HTTPMachineRegistry(MachineRegistry):
    """``GET {machine_registry_url}/machines/{id}``"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = base_url or settings.machine_registry_url
        self.timeout = timeout or settings.collaborator_timeout_seconds
        self._transport = transport

    async def get_machine(self, machine_id: UUID) -> Optional[MachineRecord]:
        data = await _fetch_json(
            self.base_url, f"machines/{machine_id}", "machine registry", self.timeout, self._transport
        )
        if data is None:
            return None
        try:
            return MachineRecord.model_validate(data)
        except ValidationError as e:
            raise DependencyUnavailableError(
                f"Machine registry returned an unreadable record: {e}",
                service="machine registry",
            ) from e


class HTTPOperatorDirectory(OperatorDirectory):
    """``GET {operator_directory_url}/operators/{id}``"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = base_url or settings.operator_directory_url
        self.timeout = timeout or settings.collaborator_timeout_seconds
        self._transport = transport

    async def get_operator(self, operator_id: UUID) -> Optional[OperatorRecord]:
        data = await _fetch_json(
            self.base_url, f"operators/{operator_id}", "operator directory", self.timeout, self._transport
        )
        if data is None:
            return None
        try:
            return OperatorRecord.model_validate(data)
        except ValidationError as e:
            raise DependencyUnavailableError(
                f"Operator directory returned an unreadable record: {e}",
                service="operator directory",
            ) from e


# ---------------------------------------------------------------------------
# Factory / singleton
# ---------------------------------------------------------------------------

_cached_registry: Optional[MachineRegistry] = None
_cached_directory: Optional[OperatorDirectory] = None


def get_machine_registry() -> MachineRegistry:
    """Return the configured MachineRegistry (cached singleton)."""
    global _cached_registry
    if _cached_registry is None:
        _cached_registry = HTTPMachineRegistry()
    return _cached_registry


def get_operator_directory() -> OperatorDirectory:
    """Return the configured OperatorDirectory (cached singleton)."""
    global _cached_directory
    if _cached_directory is None:
        _cached_directory = HTTPOperatorDirectory()
    return _cached_directory


def reset_collaborators() -> None:
    """Clear cached clients (for testing)."""
    global _cached_registry, _cached_directory
    _cached_registry = None
    _cached_directory = None
