"""Compute Engine adapter over the sync google-cloud-compute clients.

Blocking client calls are dispatched to a dedicated thread pool. Existence
lookups retry transient server-side failures; a NotFound means "absent".
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

from google.api_core.exceptions import NotFound, ServerError, TooManyRequests
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cirrus.clients.protocols import SerialPortOutput

log = logger.bind(component="gce")

_STOPPED_STATUSES = frozenset({"STOPPED", "STOPPING", "TERMINATED", "SUSPENDED"})

_transient = retry(
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=0.5, max=8),
    retry=retry_if_exception_type((ServerError, TooManyRequests)),
    reraise=True,
)

T = TypeVar("T")


class GCEClient:
    """ComputeClient backed by google-cloud-compute."""

    def __init__(
        self,
        *,
        instances_client: object,
        projects_client: object,
        zones_client: object,
        machine_types_client: object,
        disks_client: object,
        images_client: object,
        networks_client: object,
        thread_pool: ThreadPoolExecutor,
        operation_timeout: float = 600.0,
    ) -> None:
        self._instances = instances_client
        self._projects = projects_client
        self._zones = zones_client
        self._machine_types = machine_types_client
        self._disks = disks_client
        self._images = images_client
        self._networks = networks_client
        self._pool = thread_pool
        self._operation_timeout = operation_timeout

    @classmethod
    def create(cls, *, thread_pool_size: int = 8) -> GCEClient:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return cls(
            instances_client=compute_v1.InstancesClient(),
            projects_client=compute_v1.ProjectsClient(),
            zones_client=compute_v1.ZonesClient(),
            machine_types_client=compute_v1.MachineTypesClient(),
            disks_client=compute_v1.DisksClient(),
            images_client=compute_v1.ImagesClient(),
            networks_client=compute_v1.NetworksClient(),
            thread_pool=ThreadPoolExecutor(
                max_workers=thread_pool_size, thread_name_prefix="gce-io",
            ),
        )

    async def _run(self, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
        loop = asyncio.get_running_loop()
        if kwargs:
            return await loop.run_in_executor(self._pool, lambda: fn(*args, **kwargs))
        return await loop.run_in_executor(self._pool, fn, *args)

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    async def create_instance(self, project: str, zone: str, instance: dict[str, Any]) -> None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        resource = compute_v1.Instance.from_json(
            json.dumps(instance), ignore_unknown_fields=True,
        )
        operation = await self._run(
            self._instances.insert,  # type: ignore[attr-defined]
            request=compute_v1.InsertInstanceRequest(
                project=project, zone=zone, instance_resource=resource,
            ),
        )
        await self._run(operation.result, timeout=self._operation_timeout)
        log.debug("Instance {name} inserted in {zone}", name=instance.get("name"), zone=zone)

    async def get_serial_port_output(
        self, project: str, zone: str, instance: str, port: int, start: int,
    ) -> SerialPortOutput:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        resp = await self._run(
            self._instances.get_serial_port_output,  # type: ignore[attr-defined]
            request=compute_v1.GetSerialPortOutputInstanceRequest(
                project=project, zone=zone, instance=instance, port=port, start=start,
            ),
        )
        return SerialPortOutput(contents=resp.contents, next=int(resp.next_))

    async def instance_stopped(self, project: str, zone: str, instance: str) -> bool:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        inst = await self._run(
            self._instances.get,  # type: ignore[attr-defined]
            request=compute_v1.GetInstanceRequest(
                project=project, zone=zone, instance=instance,
            ),
        )
        return inst.status in _STOPPED_STATUSES

    @_transient
    async def _exists(self, fn: Callable[..., object], request: object) -> bool:
        try:
            await self._run(fn, request=request)
        except NotFound:
            return False
        return True

    async def project_exists(self, project: str) -> bool:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._exists(
            self._projects.get,  # type: ignore[attr-defined]
            compute_v1.GetProjectRequest(project=project),
        )

    async def zone_exists(self, project: str, zone: str) -> bool:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._exists(
            self._zones.get,  # type: ignore[attr-defined]
            compute_v1.GetZoneRequest(project=project, zone=zone),
        )

    async def machine_type_exists(self, project: str, zone: str, machine_type: str) -> bool:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._exists(
            self._machine_types.get,  # type: ignore[attr-defined]
            compute_v1.GetMachineTypeRequest(
                project=project, zone=zone, machine_type=machine_type,
            ),
        )

    async def disk_exists(self, project: str, zone: str, disk: str) -> bool:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._exists(
            self._disks.get,  # type: ignore[attr-defined]
            compute_v1.GetDiskRequest(project=project, zone=zone, disk=disk),
        )

    async def image_exists(self, project: str, image: str, *, family: bool = False) -> bool:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        if family:
            return await self._exists(
                self._images.get_from_family,  # type: ignore[attr-defined]
                compute_v1.GetFromFamilyImageRequest(project=project, family=image),
            )
        return await self._exists(
            self._images.get,  # type: ignore[attr-defined]
            compute_v1.GetImageRequest(project=project, image=image),
        )

    async def network_exists(self, project: str, network: str) -> bool:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return await self._exists(
            self._networks.get,  # type: ignore[attr-defined]
            compute_v1.GetNetworkRequest(project=project, network=network),
        )
