"""Plain Compute Engine instance shapes.

These mirror the parts of the Compute Engine REST body that cirrus reads or
rewrites. Everything else the caller supplies is kept in ``extra`` and
emitted unchanged, so any instance field the API accepts passes through.
Serialization is explicit: ``from_dict`` reads the camelCase REST form and
``to_dict`` emits exactly the REST body, omitting empty values.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "AttachedDisk",
    "InitializeParams",
    "Instance",
    "NetworkInterface",
    "ServiceAccount",
]


def _put(out: dict[str, Any], key: str, value: Any) -> None:
    if value:
        out[key] = value


@dataclass(slots=True)
class InitializeParams:
    disk_name: str = ""
    source_image: str = ""
    disk_type: str = ""
    disk_size_gb: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> InitializeParams:
        rest = dict(raw)
        size = rest.pop("diskSizeGb", None)
        return cls(
            disk_name=rest.pop("diskName", ""),
            source_image=rest.pop("sourceImage", ""),
            disk_type=rest.pop("diskType", ""),
            disk_size_gb=int(size) if size is not None else None,
            extra=rest,
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        _put(out, "diskName", self.disk_name)
        _put(out, "sourceImage", self.source_image)
        _put(out, "diskType", self.disk_type)
        if self.disk_size_gb is not None:
            out["diskSizeGb"] = str(self.disk_size_gb)
        return out


@dataclass(slots=True)
class AttachedDisk:
    source: str = ""
    mode: str = ""
    boot: bool = False
    auto_delete: bool = False
    initialize_params: InitializeParams | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> AttachedDisk:
        rest = dict(raw)
        params = rest.pop("initializeParams", None)
        return cls(
            source=rest.pop("source", ""),
            mode=rest.pop("mode", ""),
            boot=bool(rest.pop("boot", False)),
            auto_delete=bool(rest.pop("autoDelete", False)),
            initialize_params=InitializeParams.from_dict(params) if params is not None else None,
            extra=rest,
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        _put(out, "source", self.source)
        _put(out, "mode", self.mode)
        _put(out, "boot", self.boot)
        _put(out, "autoDelete", self.auto_delete)
        if self.initialize_params is not None:
            out["initializeParams"] = self.initialize_params.to_dict()
        return out


@dataclass(slots=True)
class NetworkInterface:
    """A network attachment.

    ``access_configs`` is None when unset (populate adds a NAT config) and an
    empty list when the caller explicitly wants no external address.
    """

    network: str = ""
    access_configs: list[dict[str, Any]] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> NetworkInterface:
        rest = dict(raw)
        acs = rest.pop("accessConfigs", None)
        return cls(
            network=rest.pop("network", ""),
            access_configs=[dict(ac) for ac in acs] if acs is not None else None,
            extra=rest,
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        _put(out, "network", self.network)
        if self.access_configs is not None:
            out["accessConfigs"] = [dict(ac) for ac in self.access_configs]
        return out


@dataclass(slots=True)
class ServiceAccount:
    email: str
    scopes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ServiceAccount:
        return cls(email=raw.get("email", ""), scopes=list(raw.get("scopes", ())))

    def to_dict(self) -> dict[str, Any]:
        return {"email": self.email, "scopes": list(self.scopes)}


@dataclass(slots=True)
class Instance:
    """The Compute Engine instance body sent to the API."""

    name: str = ""
    description: str = ""
    machine_type: str = ""
    disks: list[AttachedDisk] = field(default_factory=list)
    network_interfaces: list[NetworkInterface] | None = None
    service_accounts: list[ServiceAccount] | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Instance:
        rest = dict(raw)
        nics = rest.pop("networkInterfaces", None)
        sas = rest.pop("serviceAccounts", None)
        metadata = rest.pop("metadata", None) or {}
        return cls(
            name=rest.pop("name", ""),
            description=rest.pop("description", ""),
            machine_type=rest.pop("machineType", ""),
            disks=[AttachedDisk.from_dict(d) for d in rest.pop("disks", ())],
            network_interfaces=(
                [NetworkInterface.from_dict(n) for n in nics] if nics is not None else None
            ),
            service_accounts=[ServiceAccount.from_dict(s) for s in sas] if sas is not None else None,
            metadata={i["key"]: i.get("value", "") for i in metadata.get("items", ())},
            extra=rest,
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        _put(out, "name", self.name)
        _put(out, "description", self.description)
        _put(out, "machineType", self.machine_type)
        if self.disks:
            out["disks"] = [d.to_dict() for d in self.disks]
        if self.network_interfaces is not None:
            out["networkInterfaces"] = [n.to_dict() for n in self.network_interfaces]
        if self.service_accounts is not None:
            out["serviceAccounts"] = [s.to_dict() for s in self.service_accounts]
        if self.metadata:
            out["metadata"] = {
                "items": [{"key": k, "value": v} for k, v in self.metadata.items()],
            }
        return out
