"""The workflow: the context every step reads from, and the driver of the phases.

A workflow owns the resolved defaults (project, zone), the scratch layout in
Cloud Storage, the declared sources, the resource registries, the
cancellation signal and the tracker for detached background tasks. It drives
its steps through populate, validate and run, honoring step dependencies.
"""

from __future__ import annotations

import asyncio
import getpass
import posixpath
import random
import string
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from cirrus.core.exceptions import CirrusError, ConfigurationError, ErrorCollector, ValidationError
from cirrus.logging import LogConfig, setup_logging, teardown_logging
from cirrus.resources.registry import Registries
from cirrus.workflow.step import Step, StepImpl
from cirrus.workflow.tasks import TaskTracker

if TYPE_CHECKING:
    from cirrus.clients.protocols import ComputeClient, StorageClient
    from cirrus.config import WorkflowConfig

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _random_id(n: int = 5) -> str:
    return "".join(random.choices(_ID_ALPHABET, k=n))


def _split_gcs_path(gcs_path: str) -> tuple[str, str]:
    if not gcs_path.startswith("gs://"):
        raise ConfigurationError(f"not a gs:// path: {gcs_path!r}")
    bucket, _, prefix = gcs_path.removeprefix("gs://").partition("/")
    if not bucket:
        raise ConfigurationError(f"no bucket in {gcs_path!r}")
    return bucket, prefix.strip("/")


class Workflow:
    """A graph of steps sharing defaults, registries and a cancellation signal."""

    def __init__(
        self,
        name: str,
        *,
        project: str,
        zone: str,
        gcs_path: str,
        compute: ComputeClient,
        storage: StorageClient,
        sources: Mapping[str, str | Path] | None = None,
        username: str | None = None,
        step_timeout: float = 600.0,
        serial_interval: float = 3.0,
        log_config: LogConfig | None = None,
        workflow_id: str | None = None,
    ) -> None:
        self.name = name
        self.project = project
        self.zone = zone
        self.id = workflow_id or _random_id()
        self.username = username or getpass.getuser()
        self.compute = compute
        self.storage = storage
        self.sources: dict[str, Path] = {k: Path(v) for k, v in (sources or {}).items()}
        self.step_timeout = step_timeout
        self.serial_interval = serial_interval

        self.bucket, prefix = _split_gcs_path(gcs_path)
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        self.scratch_path = posixpath.join(prefix, f"cirrus-{name}-{stamp}-{self.id}")
        self.sources_path = posixpath.join(self.scratch_path, "sources")
        self.logs_path = posixpath.join(self.scratch_path, "logs")
        self.outs_path = posixpath.join(self.scratch_path, "outs")

        self.cancel = asyncio.Event()
        self.registries = Registries.create(project, compute)
        self.tasks = TaskTracker()
        self.steps: dict[str, Step] = {}
        self.dependencies: dict[str, set[str]] = {}
        self.log = logger.bind(component="workflow", workflow=name)

        self._log_config = log_config
        self._log_handlers: list[int] = []
        self._closers: list[Callable[[], None]] = []

    @classmethod
    def create(
        cls,
        name: str,
        *,
        config: WorkflowConfig | None = None,
        sources: Mapping[str, str | Path] | None = None,
        **overrides: object,
    ) -> Workflow:
        """Build a workflow from configuration with Google-backed clients."""
        from cirrus.clients.gce import GCEClient
        from cirrus.clients.gcs import GCSStorage
        from cirrus.config import workflow_config

        config = config or workflow_config(**overrides)
        compute = GCEClient.create(thread_pool_size=config.thread_pool_size)
        storage = GCSStorage.create(project=config.project)
        wf = cls(
            name,
            project=config.project,
            zone=config.zone,
            gcs_path=config.gcs_path,
            compute=compute,
            storage=storage,
            sources=sources,
            step_timeout=config.step_timeout,
            serial_interval=config.serial_interval,
            log_config=config.log,
        )
        wf._closers.extend([compute.close, storage.close])
        return wf

    # -- context -----------------------------------------------------------

    def gen_name(self, base: str) -> str:
        """Unique, RFC 1035 friendly real name derived from ``base``."""
        prefix = f"{base}-{self.name}"
        if len(prefix) > 57:
            prefix = prefix[:56]
        result = f"{prefix}-{self.id}"
        if len(result) > 63:
            result = result[:63]
        return result.lower()

    @property
    def source_paths(self) -> tuple[str, ...]:
        return tuple(self.sources)

    def source_exists(self, path: str) -> bool:
        """True if ``path`` is a declared source or lies under a declared directory."""
        path = path.strip("/")
        for src in self.sources:
            src = src.strip("/")
            if path == src or path.startswith(src + "/"):
                return True
        return False

    def gcs_url(self, *parts: str) -> str:
        return "gs://" + posixpath.join(self.bucket, *parts)

    # -- graph -------------------------------------------------------------

    def add_step(self, name: str, impl: StepImpl, *, timeout: float | None = None) -> Step:
        if name in self.steps:
            raise ValidationError(f"duplicate step name {name!r}")
        step = Step(name, impl, self, timeout or self.step_timeout)
        self.steps[name] = step
        self.dependencies.setdefault(name, set())
        return step

    def add_dependency(self, step: str, *depends_on: str) -> None:
        self.dependencies.setdefault(step, set()).update(depends_on)

    def step_depends_on(self, step: Step, other: Step) -> bool:
        seen: set[str] = set()
        stack = list(self.dependencies.get(step.name, ()))
        while stack:
            current = stack.pop()
            if current == other.name:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependencies.get(current, ()))
        return False

    def _check_graph(self) -> list[Step]:
        """Validate the dependency graph; return the steps in topological order."""
        errs = ErrorCollector()
        for name, deps in self.dependencies.items():
            if name not in self.steps:
                errs.add(ValidationError(f"dependency declared for unknown step {name!r}"))
            for dep in sorted(deps - self.steps.keys()):
                errs.add(ValidationError(f"step {name!r} depends on unknown step {dep!r}"))
        errs.raise_if_any()

        ordered: list[Step] = []
        remaining = {name: set(self.dependencies.get(name, ())) for name in self.steps}
        while remaining:
            ready = [name for name, deps in remaining.items() if not deps]
            if not ready:
                raise ValidationError(
                    f"dependency cycle between steps: {', '.join(sorted(remaining))}"
                )
            for name in ready:
                ordered.append(self.steps[name])
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)
        return ordered

    # -- phases ------------------------------------------------------------

    async def populate(self) -> None:
        errs = ErrorCollector()
        for step in self.steps.values():
            with errs.capture():
                await step.populate()
        errs.raise_if_any()

    async def validate(self) -> None:
        errs = ErrorCollector()
        for step in self._check_graph():
            with errs.capture():
                await step.validate()
        errs.raise_if_any()

    async def stage_sources(self) -> None:
        """Upload declared sources to the workflow's sources path."""
        if missing := [k for k, v in self.sources.items() if not v.exists()]:
            raise ValidationError(f"sources not found locally: {', '.join(missing)}")
        uploads = [
            (posixpath.join(self.sources_path, logical, *rel), local)
            for logical, root in self.sources.items()
            for rel, local in _walk(root)
        ]
        for path, local in uploads:
            data = await asyncio.to_thread(local.read_bytes)
            await self.storage.write_object(self.bucket, path, data)
        if uploads:
            self.log.info("Staged {n} source files to {url}", n=len(uploads), url=self.gcs_url(self.sources_path))

    async def execute(self) -> None:
        """Run every step once its dependencies finished; stop on the first failure."""
        finished = {name: asyncio.Event() for name in self.steps}

        async def run_step(step: Step) -> None:
            try:
                for dep in self.dependencies.get(step.name, ()):
                    await finished[dep].wait()
                if self.cancel.is_set():
                    self.log.debug("Skipping step {step}: workflow cancelled", step=step.name)
                    return
                self.log.info("Running step {step}", step=step.name)
                try:
                    await step.run()
                except Exception:
                    self.cancel.set()
                    raise
                self.log.info("Step {step} finished", step=step.name)
            finally:
                finished[step.name].set()

        results = await asyncio.gather(
            *(run_step(s) for s in self.steps.values()), return_exceptions=True,
        )
        for step, result in zip(self.steps.values(), results, strict=True):
            if isinstance(result, BaseException):
                self.log.error("Step {step} failed: {err}", step=step.name, err=result)
        if errors := [r for r in results if isinstance(r, BaseException)]:
            raise errors[0]

    async def run(self) -> None:
        """populate, validate, stage sources, execute, then close."""
        if self._log_config is not None:
            self._log_handlers = setup_logging(self._log_config)
        try:
            self.log.info("Running workflow {name} ({id})", name=self.name, id=self.id)
            await self.populate()
            await self.validate()
            await self.stage_sources()
            await self.execute()
        except CirrusError as e:
            self.log.error("Workflow {name} failed: {err}", name=self.name, err=e)
            raise
        finally:
            await self.close()

    def cancel_workflow(self) -> None:
        if not self.cancel.is_set():
            self.log.info("Cancelling workflow {name}", name=self.name)
            self.cancel.set()

    async def close(self, grace: float = 10.0) -> None:
        """Signal cancellation, join background tasks, then release clients."""
        self.cancel.set()
        if not await self.tasks.join(timeout=grace):
            await self.tasks.cancel_all()
        for close in self._closers:
            close()
        self._closers.clear()
        if self._log_handlers:
            teardown_logging(self._log_handlers)
            self._log_handlers = []


def _walk(root: Path) -> Iterable[tuple[tuple[str, ...], Path]]:
    if root.is_dir():
        for local in sorted(p for p in root.rglob("*") if p.is_file()):
            yield local.relative_to(root).parts, local
    else:
        yield (), root
