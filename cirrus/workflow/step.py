"""Steps: the unit of work a workflow drives through populate, validate and run.

A StepImpl knows how to normalize (populate), check and reserve (validate)
and execute (run) one kind of work. The Step wrapping it carries the name,
timeout and the workflow context every phase reads from.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from cirrus.core.exceptions import StepTimeoutError

if TYPE_CHECKING:
    from loguru import Logger

    from cirrus.resources.registry import Registries
    from cirrus.workflow.workflow import Workflow

__all__ = [
    "Step",
    "StepImpl",
]


@runtime_checkable
class StepImpl(Protocol):
    """The three phases every step type implements.

    populate must not make remote calls. validate may look things up
    remotely and reserves names in the registries. run performs the
    remote mutation.
    """

    async def populate(self, step: Step) -> None: ...

    async def validate(self, step: Step) -> None: ...

    async def run(self, step: Step) -> None: ...


class Step:
    __slots__ = ("impl", "name", "timeout", "workflow")

    def __init__(self, name: str, impl: StepImpl, workflow: Workflow, timeout: float) -> None:
        self.name = name
        self.impl = impl
        self.workflow = workflow
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"Step(name={self.name!r}, impl={type(self.impl).__name__})"

    @property
    def registries(self) -> Registries:
        return self.workflow.registries

    @property
    def cancel(self) -> asyncio.Event:
        return self.workflow.cancel

    @property
    def log(self) -> Logger:
        return self.workflow.log.bind(step=self.name)

    def depends_on(self, other: Step) -> bool:
        """True if this step transitively depends on ``other``."""
        return self.workflow.step_depends_on(self, other)

    async def populate(self) -> None:
        await self.impl.populate(self)

    async def validate(self) -> None:
        await self.impl.validate(self)

    async def run(self) -> None:
        try:
            await asyncio.wait_for(self.impl.run(self), self.timeout)
        except TimeoutError:
            raise StepTimeoutError(self.name, self.timeout) from None
