"""Contracts cirrus needs from the remote control plane and blob storage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "ComputeClient",
    "SerialPortOutput",
    "StorageClient",
]


@dataclass(frozen=True, slots=True)
class SerialPortOutput:
    """A chunk of serial console output and the offset to resume from."""

    contents: str
    next: int


@runtime_checkable
class ComputeClient(Protocol):
    """Remote control plane calls used by validate and run.

    Existence lookups return False when the resource is confirmed absent
    and raise when the lookup itself failed.
    """

    async def create_instance(self, project: str, zone: str, instance: dict[str, Any]) -> None: ...

    async def get_serial_port_output(
        self, project: str, zone: str, instance: str, port: int, start: int,
    ) -> SerialPortOutput: ...

    async def instance_stopped(self, project: str, zone: str, instance: str) -> bool: ...

    async def project_exists(self, project: str) -> bool: ...

    async def zone_exists(self, project: str, zone: str) -> bool: ...

    async def machine_type_exists(self, project: str, zone: str, machine_type: str) -> bool: ...

    async def disk_exists(self, project: str, zone: str, disk: str) -> bool: ...

    async def image_exists(self, project: str, image: str, *, family: bool = False) -> bool: ...

    async def network_exists(self, project: str, network: str) -> bool: ...


@runtime_checkable
class StorageClient(Protocol):
    """Durable object storage with overwrite semantics."""

    async def write_object(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> None: ...
