"""Custom exception hierarchy for cirrus.

All cirrus-specific exceptions inherit from CirrusError, enabling
users to catch all cirrus exceptions with a single except clause.

Populate and validate never stop at the first problem: they gather every
error into an ErrorCollector and raise a single CompositeError, so a
workflow author sees everything that is wrong before any remote mutation.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager


class CirrusError(Exception):
    """Base exception for all cirrus errors."""


class ValidationError(CirrusError):
    """Raised for statically malformed input (names, disk modes, URLs)."""


class ResourceReferenceError(CirrusError):
    """Raised for a broken or mismatched cross-resource reference."""


class NotFoundError(ResourceReferenceError):
    """Raised when a logical resource name was never registered."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"missing reference for {kind} {name!r}")


class UnresolvedError(ResourceReferenceError):
    """Raised when a registered resource cannot be used from a step yet."""


class ResourceLookupError(CirrusError):
    """Raised when a remote existence check failed or found nothing."""


class ConflictError(CirrusError):
    """Raised when a logical name is registered for creation twice."""


class RemoteOperationError(CirrusError):
    """Raised when a remote mutating call failed."""


class StepTimeoutError(CirrusError):
    """Raised when a step does not finish within its timeout."""

    def __init__(self, step: str, timeout: float) -> None:
        self.step = step
        self.timeout = timeout
        super().__init__(f"step {step!r} did not complete within {timeout:.1f}s")


class ConfigurationError(CirrusError):
    """Raised for invalid configuration or missing required settings."""


class CompositeError(CirrusError):
    """An ordered group of errors reported together."""

    def __init__(self, errors: Sequence[CirrusError]) -> None:
        self.errors = tuple(errors)
        super().__init__(_format(self.errors))

    def __iter__(self) -> Iterator[CirrusError]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)


def _format(errors: Sequence[CirrusError]) -> str:
    match errors:
        case ():
            return "no errors"
        case (single,):
            return str(single)
        case _:
            return "Multiple errors:\n" + "\n".join(f"* {e}" for e in errors)


class ErrorCollector:
    """Accumulates errors across a phase and raises them as one."""

    __slots__ = ("_errors",)

    def __init__(self) -> None:
        self._errors: list[CirrusError] = []

    def add(self, error: CirrusError | None) -> None:
        match error:
            case None:
                return
            case CompositeError(errors=nested):
                self._errors.extend(nested)
            case _:
                self._errors.append(error)

    @contextmanager
    def capture(self) -> Iterator[None]:
        """Record a CirrusError raised inside the block instead of propagating it."""
        try:
            yield
        except CirrusError as e:
            self.add(e)

    @property
    def errors(self) -> tuple[CirrusError, ...]:
        return tuple(self._errors)

    def __bool__(self) -> bool:
        return bool(self._errors)

    def __len__(self) -> int:
        return len(self._errors)

    def raise_if_any(self) -> None:
        if self._errors:
            raise CompositeError(self._errors)
