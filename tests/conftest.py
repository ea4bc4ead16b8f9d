from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from loguru import logger

from cirrus.clients.protocols import SerialPortOutput
from cirrus.workflow import Step, Workflow

PROJECT = "test-project"
ZONE = "test-zone"
IMAGE = "projects/debian-cloud/global/images/family/debian-12"


class FakeCompute:
    """In-memory ComputeClient with knobs for failures and gating."""

    def __init__(self) -> None:
        self.projects = {PROJECT}
        self.zones = {(PROJECT, ZONE)}
        self.machine_types = {(PROJECT, ZONE, "n1-standard-1"), (PROJECT, ZONE, "e2-medium")}
        self.disks: set[tuple[str, str, str]] = set()
        self.images: set[tuple[str, str]] = set()
        self.families = {("debian-cloud", "debian-12")}
        self.networks = {(PROJECT, "default")}

        self.lookup_errors: dict[str, Exception] = {}
        self.create_errors: dict[str, Exception] = {}
        self.create_gate: asyncio.Event | None = None
        # Names held by create_gate; empty means every creation waits.
        self.gated: set[str] = set()
        self.started: list[str] = []
        self.created: list[dict[str, Any]] = []

        self.serial_chunks: list[str] = []
        self.serial_error: Exception | None = None
        self.serial_starts: list[int] = []
        self.stopped = False
        self.stopped_error: Exception | None = None

    def _lookup(self, kind: str) -> None:
        if (err := self.lookup_errors.get(kind)) is not None:
            raise err

    async def create_instance(self, project: str, zone: str, instance: dict[str, Any]) -> None:
        name = instance["name"]
        self.started.append(name)
        if self.create_gate is not None and (not self.gated or name in self.gated):
            await self.create_gate.wait()
        if (err := self.create_errors.get(name)) is not None:
            raise err
        self.created.append(instance)

    async def get_serial_port_output(
        self, project: str, zone: str, instance: str, port: int, start: int,
    ) -> SerialPortOutput:
        self.serial_starts.append(start)
        if self.serial_error is not None:
            raise self.serial_error
        contents = self.serial_chunks.pop(0) if self.serial_chunks else ""
        return SerialPortOutput(contents=contents, next=start + len(contents))

    async def instance_stopped(self, project: str, zone: str, instance: str) -> bool:
        if self.stopped_error is not None:
            raise self.stopped_error
        return self.stopped

    async def project_exists(self, project: str) -> bool:
        self._lookup("project")
        return project in self.projects

    async def zone_exists(self, project: str, zone: str) -> bool:
        self._lookup("zone")
        return (project, zone) in self.zones

    async def machine_type_exists(self, project: str, zone: str, machine_type: str) -> bool:
        self._lookup("machine_type")
        return (project, zone, machine_type) in self.machine_types

    async def disk_exists(self, project: str, zone: str, disk: str) -> bool:
        self._lookup("disk")
        return (project, zone, disk) in self.disks

    async def image_exists(self, project: str, image: str, *, family: bool = False) -> bool:
        self._lookup("image")
        return (project, image) in (self.families if family else self.images)

    async def network_exists(self, project: str, network: str) -> bool:
        self._lookup("network")
        return (project, network) in self.networks


class FakeStorage:
    """In-memory StorageClient; ``errors`` are raised by the next writes, in order."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.writes: list[tuple[str, str, bytes, str]] = []
        self.errors: list[Exception] = []

    async def write_object(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.writes.append((bucket, path, data, content_type))
        self.objects[(bucket, path)] = data


class NoopStep:
    """Step implementation that does nothing in every phase."""

    async def populate(self, step: Step) -> None:
        pass

    async def validate(self, step: Step) -> None:
        pass

    async def run(self, step: Step) -> None:
        pass


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.fixture
def compute() -> FakeCompute:
    return FakeCompute()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def startup_script(tmp_path: Path) -> Path:
    script = tmp_path / "startup.sh"
    script.write_text("#!/bin/sh\necho hello\n")
    return script


@pytest.fixture
def wf(compute: FakeCompute, storage: FakeStorage, startup_script: Path) -> Workflow:
    return Workflow(
        "test-wf",
        project=PROJECT,
        zone=ZONE,
        gcs_path="gs://test-bucket",
        compute=compute,
        storage=storage,
        sources={"startup.sh": startup_script},
        username="tester",
        workflow_id="abcde",
        serial_interval=0.01,
    )


@pytest.fixture
def log_records():
    records: list[dict[str, Any]] = []
    logger.enable("cirrus")
    hid = logger.add(lambda m: records.append(m.record), level="TRACE")
    yield records
    logger.remove(hid)
    logger.disable("cirrus")
