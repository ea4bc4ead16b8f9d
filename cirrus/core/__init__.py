from .exceptions import (
    CirrusError,
    CompositeError,
    ConfigurationError,
    ConflictError,
    ErrorCollector,
    NotFoundError,
    RemoteOperationError,
    ResourceLookupError,
    ResourceReferenceError,
    StepTimeoutError,
    UnresolvedError,
    ValidationError,
)

__all__ = [
    "CirrusError",
    "CompositeError",
    "ConfigurationError",
    "ConflictError",
    "ErrorCollector",
    "NotFoundError",
    "RemoteOperationError",
    "ResourceLookupError",
    "ResourceReferenceError",
    "StepTimeoutError",
    "UnresolvedError",
    "ValidationError",
]
