"""CreateInstances: create Compute Engine instances as one workflow step.

The step holds an ordered collection of InstanceDescriptors. populate
normalizes them (defaults, naming, fully qualified URLs, bookkeeping
metadata), validate checks every descriptor and reserves names in the
registries, and run creates all instances concurrently. Each created
instance gets a detached serial console stream.

Example descriptor (camelCase, as in the Compute Engine REST body):

    {
        "name": "builder",
        "disks": [{"initializeParams": {"sourceImage": "projects/debian-cloud/global/images/family/debian-12"}}],
        "startupScript": "build.sh",
        "metadata": {"target": "rhel-9"},
    }
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from cirrus.core.exceptions import (
    CirrusError,
    ErrorCollector,
    RemoteOperationError,
    ResourceLookupError,
    ResourceReferenceError,
    ValidationError,
)
from cirrus.resources.registry import Resource
from cirrus.resources.urls import (
    DISK_TYPE_URL,
    DISK_URL,
    IMAGE_URL,
    MACHINE_TYPE_URL,
    NETWORK_URL,
    check_disk_mode,
    check_name,
    disk_link,
    extend_partial_url,
    instance_link,
    named_groups,
    strip_api_prefix,
)
from cirrus.steps.serial import stream_serial_output
from cirrus.types.instance import AttachedDisk, Instance, NetworkInterface, ServiceAccount

if TYPE_CHECKING:
    from cirrus.clients.protocols import ComputeClient
    from cirrus.workflow.step import Step
    from cirrus.workflow.workflow import Workflow

log = logger.bind(component="create_instances")

DEFAULT_DISK_MODE = "READ_WRITE"
DEFAULT_DISK_TYPE = "pd-standard"
DEFAULT_MACHINE_TYPE = "n1-standard-1"
DEFAULT_NETWORK = "default"
DEFAULT_ACCESS_CONFIG_TYPE = "ONE_TO_ONE_NAT"
DEFAULT_SCOPE = "https://www.googleapis.com/auth/devstorage.read_only"

_OVERLAY_KEYS = (
    "scopes", "startupScript", "project", "zone", "noCleanup", "realName", "exactName",
)


@dataclass(slots=True)
class InstanceDescriptor:
    """A plain instance body plus the fields only cirrus understands.

    Attributes:
        instance: The Compute Engine instance body.
        metadata: Extra metadata to set on the instance.
        scopes: OAuth2 scopes for the default service account. If none are
            given, read-only storage access is granted.
        startup_script: Sources path of a startup script; mapped to the
            startup-script metadata keys.
        project: Project override; defaults to the workflow project.
        zone: Zone override; defaults to the workflow zone.
        no_cleanup: Keep the instance after the workflow.
        real_name: Use this name verbatim instead of generating one.
        exact_name: Deprecated; use real_name.
        logical_name: The name the workflow refers to the instance by. Set by populate.
    """

    instance: Instance = field(default_factory=Instance)
    metadata: dict[str, str] = field(default_factory=dict)
    scopes: list[str] = field(default_factory=list)
    startup_script: str = ""
    project: str = ""
    zone: str = ""
    no_cleanup: bool = False
    real_name: str = ""
    exact_name: bool = False
    logical_name: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> InstanceDescriptor:
        rest = dict(raw)
        overlay = {k: rest.pop(k) for k in _OVERLAY_KEYS if k in rest}
        metadata = rest.pop("metadata", None) or {}
        if isinstance(metadata.get("items"), list):
            rest["metadata"] = metadata
            metadata = {}
        return cls(
            instance=Instance.from_dict(rest),
            metadata={str(k): str(v) for k, v in metadata.items()},
            scopes=list(overlay.get("scopes", ())),
            startup_script=overlay.get("startupScript", ""),
            project=overlay.get("project", ""),
            zone=overlay.get("zone", ""),
            no_cleanup=bool(overlay.get("noCleanup", False)),
            real_name=overlay.get("realName", ""),
            exact_name=bool(overlay.get("exactName", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize as a descriptor.

        Overlay metadata shadows the instance body metadata, so this is the
        pre-populate view: bookkeeping and startup-script keys added by
        populate are not part of it.
        """
        out = self.instance.to_dict()
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        if self.scopes:
            out["scopes"] = list(self.scopes)
        if self.startup_script:
            out["startupScript"] = self.startup_script
        if self.project:
            out["project"] = self.project
        if self.zone:
            out["zone"] = self.zone
        if self.no_cleanup:
            out["noCleanup"] = True
        if self.real_name:
            out["realName"] = self.real_name
        if self.exact_name:
            out["exactName"] = True
        return out

    @property
    def name(self) -> str:
        return self.logical_name or self.instance.name


class CreateInstances:
    """Step implementation creating a collection of instances."""

    def __init__(self, descriptors: Iterable[InstanceDescriptor | Mapping[str, Any]]) -> None:
        self.descriptors = [
            d if isinstance(d, InstanceDescriptor) else InstanceDescriptor.from_dict(d)
            for d in descriptors
        ]

    def __iter__(self) -> Iterator[InstanceDescriptor]:
        return iter(self.descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

    # -- populate ----------------------------------------------------------

    async def populate(self, step: Step) -> None:
        wf = step.workflow
        errs = ErrorCollector()
        for d in self.descriptors:
            inst = d.instance
            if not inst.name:
                errs.add(ValidationError("cannot create instance: no name provided"))
                continue
            d.logical_name = inst.name
            if d.exact_name and not d.real_name:
                d.real_name = inst.name
            inst.name = d.real_name or wf.gen_name(inst.name)
            d.project = d.project or wf.project
            d.zone = d.zone or wf.zone
            inst.description = inst.description or (
                f"Instance created by cirrus in workflow {wf.name!r} on behalf of {wf.username}."
            )

            _populate_disks(d)
            _populate_machine_type(d)
            with errs.capture():
                _populate_metadata(d, wf)
            _populate_networks(d)
            _populate_scopes(d)
        errs.raise_if_any()

    # -- validate ----------------------------------------------------------

    async def validate(self, step: Step) -> None:
        errs = ErrorCollector()
        for d in self.descriptors:
            await self._validate_one(d, step, errs)
        errs.raise_if_any()

    async def _validate_one(self, d: InstanceDescriptor, step: Step, errs: ErrorCollector) -> None:
        compute = step.workflow.compute
        inst = d.instance
        if not check_name(inst.name):
            errs.add(ValidationError(f"cannot create instance {inst.name!r}: bad name"))

        try:
            await _check_location(compute, d.project, d.zone)
        except ResourceLookupError as e:
            errs.add(e)
            return

        await self._validate_disks(d, step, errs)
        await _validate_machine_type(d, compute, errs)
        await self._validate_networks(d, step, errs)

        resource = Resource(
            real=inst.name,
            link=instance_link(d.project, d.zone, inst.name),
            no_cleanup=d.no_cleanup,
        )
        with errs.capture():
            await step.registries.instances.register_creation(d.name, resource, step)

    async def _validate_disks(self, d: InstanceDescriptor, step: Step, errs: ErrorCollector) -> None:
        if not d.instance.disks:
            errs.add(ValidationError("cannot create instance: no disks provided"))

        for disk in d.instance.disks:
            if not check_disk_mode(disk.mode):
                errs.add(ValidationError(f"cannot create instance: bad disk mode: {disk.mode!r}"))
            if disk.source and disk.initialize_params is not None:
                errs.add(ValidationError(
                    "cannot create instance: disk.source and disk.initializeParams "
                    "are mutually exclusive"
                ))
                continue
            if disk.initialize_params is not None:
                await self._validate_initialize_params(d, disk, step, errs)
            else:
                await self._validate_disk_source(d, disk, step, errs)

    async def _validate_disk_source(
        self, d: InstanceDescriptor, disk: AttachedDisk, step: Step, errs: ErrorCollector,
    ) -> None:
        try:
            resource = await step.registries.disks.register_usage(disk.source, step)
        except CirrusError as e:
            errs.add(e)
            return

        parts = named_groups(DISK_URL, resource.link)
        if parts.get("project") != d.project:
            errs.add(ResourceReferenceError(
                f"cannot create instance in project {d.project!r} with disk in project "
                f"{parts.get('project')!r}: {disk.source!r}"
            ))
        if parts.get("zone") != d.zone:
            errs.add(ResourceReferenceError(
                f"cannot create instance in zone {d.zone!r} with disk in zone "
                f"{parts.get('zone')!r}: {disk.source!r}"
            ))

    async def _validate_initialize_params(
        self, d: InstanceDescriptor, disk: AttachedDisk, step: Step, errs: ErrorCollector,
    ) -> None:
        params = disk.initialize_params
        assert params is not None
        if not check_name(params.disk_name):
            errs.add(ValidationError(
                f"cannot create instance: bad initializeParams.diskName: {params.disk_name!r}"
            ))

        with errs.capture():
            await step.registries.images.register_usage(params.source_image, step)

        parts = named_groups(DISK_TYPE_URL, params.disk_type)
        if not parts:
            errs.add(ValidationError(
                f"cannot create instance: bad initializeParams.diskType: {params.disk_type!r}"
            ))
        else:
            if parts["project"] != d.project:
                errs.add(ResourceReferenceError(
                    f"cannot create instance in project {d.project!r} with "
                    f"initializeParams.diskType in project {parts['project']!r}"
                ))
            if parts["zone"] != d.zone:
                errs.add(ResourceReferenceError(
                    f"cannot create instance in zone {d.zone!r} with "
                    f"initializeParams.diskType in zone {parts['zone']!r}"
                ))

        # An auto-deleted disk goes away with its instance.
        resource = Resource(
            real=params.disk_name,
            link=disk_link(d.project, d.zone, params.disk_name),
            no_cleanup=disk.auto_delete,
        )
        with errs.capture():
            await step.registries.disks.register_creation(params.disk_name, resource, step)

    async def _validate_networks(self, d: InstanceDescriptor, step: Step, errs: ErrorCollector) -> None:
        for nic in d.instance.network_interfaces or ():
            try:
                resource = await step.registries.networks.register_usage(nic.network, step)
            except CirrusError as e:
                errs.add(e)
                continue

            parts = named_groups(NETWORK_URL, resource.link)
            if parts.get("project") != d.project:
                errs.add(ResourceReferenceError(
                    f"cannot create instance in project {d.project!r} with network in "
                    f"project {parts.get('project')!r}: {nic.network!r}"
                ))

    # -- run ---------------------------------------------------------------

    async def run(self, step: Step) -> None:
        """Create every instance concurrently.

        Raises the first creation failure once all creations finished. If the
        workflow is cancelled meanwhile, waits for the in-flight creations so
        whatever was created stays registered for cleanup. A failure seen
        before the cancellation is still raised; otherwise returns None.
        """
        tasks = [
            asyncio.create_task(self._create(d, step), name=f"create-{d.instance.name}")
            for d in self.descriptors
        ]
        if not tasks:
            return

        cancelled = asyncio.create_task(step.cancel.wait())
        pending = set(tasks)
        first_error: BaseException | None = None
        try:
            while pending:
                done, _ = await asyncio.wait(
                    pending | {cancelled}, return_when=asyncio.FIRST_COMPLETED,
                )
                if cancelled in done:
                    step.log.info(
                        "Cancelled; waiting for {n} in-flight instance creations",
                        n=len(pending),
                    )
                    await _drain(tasks)
                    break
                for task in done:
                    pending.discard(task)
                    if (exc := task.exception()) is not None and first_error is None:
                        first_error = exc
        except asyncio.CancelledError:
            await _drain(tasks)
            raise
        finally:
            cancelled.cancel()

        if first_error is not None:
            raise first_error

    async def _create(self, d: InstanceDescriptor, step: Step) -> None:
        wf = step.workflow
        registries = step.registries
        inst = d.instance
        for disk in inst.disks:
            if (res := registries.disks.get(disk.source)) is not None:
                disk.source = res.link
            params = disk.initialize_params
            if params is not None and (img := registries.images.get(params.source_image)) is not None:
                params.source_image = img.link

        step.log.info("Creating instance {name}", name=inst.name)
        try:
            await wf.compute.create_instance(d.project, d.zone, inst.to_dict())
        except Exception as e:
            raise RemoteOperationError(f"failed to create instance {inst.name!r}: {e}") from e

        await registries.instances.mark_created(d.name)
        for disk in inst.disks:
            if disk.initialize_params is not None:
                await registries.disks.mark_created(disk.initialize_params.disk_name)

        wf.tasks.spawn(
            stream_serial_output(
                wf, name=d.name, instance=inst.name, project=d.project, zone=d.zone,
            ),
            name=f"serial-{inst.name}",
        )


async def _drain(tasks: list[asyncio.Task[None]]) -> None:
    """Wait for every task; their outcomes are consumed and dropped."""
    await asyncio.wait(tasks)
    for task in tasks:
        if not task.cancelled() and (exc := task.exception()) is not None:
            log.debug("Drained creation {name}: {err}", name=task.get_name(), err=exc)


def _qualify(url: str, pattern: re.Pattern[str], project: str, default: str) -> str:
    if pattern.match(strip_api_prefix(url)):
        return extend_partial_url(url, project)
    return default


def _populate_disks(d: InstanceDescriptor) -> None:
    inst = d.instance
    autoname_idx = 1
    for i, disk in enumerate(inst.disks):
        disk.boot = i == 0
        disk.mode = disk.mode or DEFAULT_DISK_MODE
        if DISK_URL.match(strip_api_prefix(disk.source)):
            disk.source = extend_partial_url(disk.source, d.project)

        params = disk.initialize_params
        if params is None:
            continue
        if not params.disk_name:
            params.disk_name = inst.name if autoname_idx == 1 else f"{inst.name}-{autoname_idx}"
            autoname_idx += 1
        if IMAGE_URL.match(strip_api_prefix(params.source_image)):
            params.source_image = extend_partial_url(params.source_image, d.project)
        disk_type = params.disk_type or DEFAULT_DISK_TYPE
        params.disk_type = _qualify(
            disk_type,
            DISK_TYPE_URL,
            d.project,
            f"projects/{d.project}/zones/{d.zone}/diskTypes/{disk_type}",
        )


def _populate_machine_type(d: InstanceDescriptor) -> None:
    mt = d.instance.machine_type or DEFAULT_MACHINE_TYPE
    d.instance.machine_type = _qualify(
        mt,
        MACHINE_TYPE_URL,
        d.project,
        f"projects/{d.project}/zones/{d.zone}/machineTypes/{mt}",
    )


def _populate_metadata(d: InstanceDescriptor, wf: Workflow) -> None:
    metadata = dict(d.metadata)
    metadata["cirrus-sources-path"] = wf.gcs_url(wf.sources_path)
    metadata["cirrus-logs-path"] = wf.gcs_url(wf.logs_path)
    metadata["cirrus-outs-path"] = wf.gcs_url(wf.outs_path)
    d.instance.metadata.update(metadata)

    if not d.startup_script:
        return
    if not wf.source_exists(d.startup_script):
        raise ResourceReferenceError(
            f"bad value for startupScript, source not found: {d.startup_script!r}"
        )
    d.startup_script = wf.gcs_url(wf.sources_path, d.startup_script)
    d.instance.metadata["startup-script-url"] = d.startup_script
    d.instance.metadata["windows-startup-script-url"] = d.startup_script


def _populate_networks(d: InstanceDescriptor) -> None:
    inst = d.instance
    if inst.network_interfaces is None:
        inst.network_interfaces = [NetworkInterface()]
    for nic in inst.network_interfaces:
        if nic.access_configs is None:
            nic.access_configs = [{"type": DEFAULT_ACCESS_CONFIG_TYPE}]
        network = nic.network or DEFAULT_NETWORK
        nic.network = _qualify(
            network,
            NETWORK_URL,
            d.project,
            f"projects/{d.project}/global/networks/{network}",
        )


def _populate_scopes(d: InstanceDescriptor) -> None:
    if not d.scopes:
        d.scopes = [DEFAULT_SCOPE]
    if d.instance.service_accounts is None:
        d.instance.service_accounts = [ServiceAccount(email="default", scopes=list(d.scopes))]


async def _check_location(compute: ComputeClient, project: str, zone: str) -> None:
    try:
        exists = await compute.project_exists(project)
    except Exception as e:
        raise ResourceLookupError(
            f"cannot create instance: bad project lookup: {project!r}, error: {e}"
        ) from e
    if not exists:
        raise ResourceLookupError(f"cannot create instance: project does not exist: {project!r}")

    try:
        exists = await compute.zone_exists(project, zone)
    except Exception as e:
        raise ResourceLookupError(
            f"cannot create instance: bad zone lookup: {zone!r}, error: {e}"
        ) from e
    if not exists:
        raise ResourceLookupError(f"cannot create instance: zone does not exist: {zone!r}")


async def _validate_machine_type(
    d: InstanceDescriptor, compute: ComputeClient, errs: ErrorCollector,
) -> None:
    mt = d.instance.machine_type
    parts = named_groups(MACHINE_TYPE_URL, mt)
    if not parts:
        errs.add(ValidationError(f"cannot create instance: bad machineType: {mt!r}"))
        return

    if parts["project"] != d.project:
        errs.add(ResourceReferenceError(
            f"cannot create instance in project {d.project!r} with machineType in "
            f"project {parts['project']!r}: {mt!r}"
        ))
    if parts["zone"] != d.zone:
        errs.add(ResourceReferenceError(
            f"cannot create instance in zone {d.zone!r} with machineType in "
            f"zone {parts['zone']!r}: {mt!r}"
        ))

    try:
        exists = await compute.machine_type_exists(
            parts["project"], parts["zone"], parts["machinetype"],
        )
    except Exception as e:
        errs.add(ResourceLookupError(
            f"cannot create instance, bad machineType lookup: {parts['machinetype']!r}, "
            f"error: {e}"
        ))
        return
    if not exists:
        errs.add(ResourceLookupError(
            f"cannot create instance, machineType does not exist: {parts['machinetype']!r}"
        ))
