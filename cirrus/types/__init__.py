from .instance import AttachedDisk, InitializeParams, Instance, NetworkInterface, ServiceAccount

__all__ = [
    "AttachedDisk",
    "InitializeParams",
    "Instance",
    "NetworkInterface",
    "ServiceAccount",
]
