"""Per-kind registries of logical resources.

A workflow keeps one registry per resource kind. Steps reserve names during
validate (``register_creation``), resolve references to other steps'
resources (``register_usage``) and, once the remote call succeeded, record
the creation (``mark_created``). Teardown reads ``cleanup_candidates``.

Every mutating operation is an atomic check-and-insert under the registry's
lock. ``get`` takes no lock: it is a point-in-time read.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeAlias

from loguru import logger

from cirrus.core.exceptions import (
    CirrusError,
    ConflictError,
    NotFoundError,
    ResourceLookupError,
    UnresolvedError,
)
from cirrus.resources.urls import (
    DISK_URL,
    IMAGE_URL,
    INSTANCE_URL,
    NETWORK_URL,
    extend_partial_url,
    named_groups,
    strip_api_prefix,
)

if TYPE_CHECKING:
    from cirrus.clients.protocols import ComputeClient
    from cirrus.workflow.step import Step

log = logger.bind(component="registry")

ExistsFn: TypeAlias = Callable[[dict[str, str]], Awaitable[bool]]

_LOCATION_GROUPS = frozenset({"project", "zone"})


@dataclass(slots=True, eq=False)
class Resource:
    """A logical resource and what is known about its remote counterpart."""

    real: str
    link: str
    no_cleanup: bool = False
    name: str = ""
    creator: Step | None = None
    deleter: Step | None = None
    users: list[Step] = field(default_factory=list)
    created: bool = False
    external: bool = False


class ResourceRegistry:
    """Logical name -> Resource mapping for a single resource kind."""

    def __init__(
        self,
        kind: str,
        *,
        project: str,
        url_pattern: re.Pattern[str] | None = None,
        exists: ExistsFn | None = None,
    ) -> None:
        self.kind = kind
        self._project = project
        self._url_pattern = url_pattern
        self._exists = exists
        self._resources: dict[str, Resource] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, name: str) -> Resource | None:
        if (resource := self._resources.get(name)) is not None:
            return resource
        if self._is_url(name):
            return self._resources.get(extend_partial_url(name, self._project))
        return None

    def resources(self) -> dict[str, Resource]:
        return dict(self._resources)

    def cleanup_candidates(self) -> list[Resource]:
        return [
            r for r in self._resources.values()
            if r.created and not r.no_cleanup and r.deleter is None
        ]

    async def register_creation(
        self,
        name: str,
        resource: Resource,
        creator: Step,
        *,
        allow_existing: bool = False,
    ) -> Resource:
        async with self._lock:
            existing = self._resources.get(name)
            if existing is not None and not allow_existing:
                owner = existing.creator.name if existing.creator else "<external>"
                raise ConflictError(
                    f"cannot create {self.kind} {name!r}; already created by step {owner!r}"
                )
            resource.name = name
            resource.creator = creator
            self._resources[name] = resource
            log.debug(
                "Step {step} reserved {kind} {name} -> {link}",
                step=creator.name, kind=self.kind, name=name, link=resource.link,
            )
            return resource

    async def register_usage(self, name: str, user: Step) -> Resource:
        async with self._lock:
            if self._is_url(name):
                resource = await self._register_url(name)
            else:
                resource = self._resources.get(name)
                if resource is None:
                    raise NotFoundError(self.kind, name)
                if resource.creator is not None and not user.depends_on(resource.creator):
                    raise UnresolvedError(
                        f"using {self.kind} {name!r} MUST transitively depend on step "
                        f"{resource.creator.name!r} which creates {name!r}"
                    )
                if resource.deleter is not None:
                    raise UnresolvedError(
                        f"using {self.kind} {name!r}; step {resource.deleter.name!r} "
                        f"deletes {name!r} and MUST transitively depend on step {user.name!r}"
                    )
            resource.users.append(user)
            return resource

    async def register_deletion(self, name: str, deleter: Step) -> Resource:
        async with self._lock:
            resource = self.get(name)
            if resource is None:
                raise NotFoundError(self.kind, name)
            if resource.deleter is not None:
                raise ConflictError(
                    f"cannot delete {self.kind} {name!r}; already deleted by step "
                    f"{resource.deleter.name!r}"
                )
            if resource.creator is not None and not deleter.depends_on(resource.creator):
                raise UnresolvedError(
                    f"deleting {self.kind} {name!r} MUST transitively depend on step "
                    f"{resource.creator.name!r} which creates {name!r}"
                )
            for user in resource.users:
                if user is not deleter and not deleter.depends_on(user):
                    raise UnresolvedError(
                        f"deleting {self.kind} {name!r} MUST transitively depend on step "
                        f"{user.name!r} which uses {name!r}"
                    )
            resource.deleter = deleter
            return resource

    async def mark_created(self, name: str) -> None:
        async with self._lock:
            if (resource := self._resources.get(name)) is not None:
                resource.created = True

    async def mark_deleted(self, name: str) -> None:
        async with self._lock:
            if self._resources.pop(name, None) is not None:
                log.debug("Removed {kind} {name}", kind=self.kind, name=name)

    def _is_url(self, name: str) -> bool:
        return (
            self._url_pattern is not None
            and self._exists is not None
            and self._url_pattern.match(strip_api_prefix(name)) is not None
        )

    async def _register_url(self, url: str) -> Resource:
        link = extend_partial_url(url, self._project)
        if (resource := self._resources.get(link)) is not None:
            return resource

        assert self._url_pattern is not None and self._exists is not None
        parts = named_groups(self._url_pattern, link)
        try:
            exists = await self._exists(parts)
        except CirrusError:
            raise
        except Exception as e:
            raise ResourceLookupError(f"bad {self.kind} lookup {link!r}: {e}") from e
        if not exists:
            raise ResourceLookupError(f"{self.kind} does not exist: {link!r}")

        real = next(
            (v for k, v in parts.items() if k not in _LOCATION_GROUPS and v),
            link,
        )
        resource = Resource(
            real=real, link=link, no_cleanup=True, name=link, created=True, external=True,
        )
        self._resources[link] = resource
        log.debug("Registered external {kind} {link}", kind=self.kind, link=link)
        return resource


class Registries:
    """The registries of one workflow, one per resource kind."""

    __slots__ = ("disks", "images", "instances", "networks")

    def __init__(
        self,
        *,
        disks: ResourceRegistry,
        images: ResourceRegistry,
        instances: ResourceRegistry,
        networks: ResourceRegistry,
    ) -> None:
        self.disks = disks
        self.images = images
        self.instances = instances
        self.networks = networks

    @classmethod
    def create(cls, project: str, compute: ComputeClient) -> Registries:
        async def disk_exists(p: dict[str, str]) -> bool:
            return await compute.disk_exists(p["project"], p["zone"], p["disk"])

        async def image_exists(p: dict[str, str]) -> bool:
            if p["family"]:
                return await compute.image_exists(p["project"], p["family"], family=True)
            return await compute.image_exists(p["project"], p["image"])

        async def network_exists(p: dict[str, str]) -> bool:
            return await compute.network_exists(p["project"], p["network"])

        return cls(
            disks=ResourceRegistry(
                "disk", project=project, url_pattern=DISK_URL, exists=disk_exists,
            ),
            images=ResourceRegistry(
                "image", project=project, url_pattern=IMAGE_URL, exists=image_exists,
            ),
            instances=ResourceRegistry(
                "instance", project=project, url_pattern=INSTANCE_URL,
            ),
            networks=ResourceRegistry(
                "network", project=project, url_pattern=NETWORK_URL, exists=network_exists,
            ),
        )

    def all(self) -> tuple[ResourceRegistry, ...]:
        return (self.instances, self.disks, self.images, self.networks)

    def cleanup_candidates(self) -> list[Resource]:
        return [r for registry in self.all() for r in registry.cleanup_candidates()]
