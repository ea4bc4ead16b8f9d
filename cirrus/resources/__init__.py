from .registry import Registries, Resource, ResourceRegistry

__all__ = [
    "Registries",
    "Resource",
    "ResourceRegistry",
]
