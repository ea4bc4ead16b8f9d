from __future__ import annotations

import asyncio

import pytest
from conftest import NoopStep

from cirrus.core.exceptions import (
    CompositeError,
    ConfigurationError,
    RemoteOperationError,
    StepTimeoutError,
    ValidationError,
)
from cirrus.workflow import Step, Workflow

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class RecordingStep:
    def __init__(self, record: list[str], *, delay: float = 0.0, error: Exception | None = None):
        self.record = record
        self.delay = delay
        self.error = error

    async def populate(self, step: Step) -> None:
        pass

    async def validate(self, step: Step) -> None:
        pass

    async def run(self, step: Step) -> None:
        self.record.append(f"start:{step.name}")
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.record.append(f"end:{step.name}")


class FailingPhases(NoopStep):
    def __init__(self, message: str):
        self.message = message

    async def populate(self, step: Step) -> None:
        raise ValidationError(f"populate {self.message}")

    async def validate(self, step: Step) -> None:
        raise ValidationError(f"validate {self.message}")


class TestContext:
    def test_gen_name(self, wf):
        assert wf.gen_name("vm") == "vm-test-wf-abcde"

    def test_gen_name_lowercases(self, wf):
        assert wf.gen_name("Builder") == "builder-test-wf-abcde"

    def test_gen_name_truncates(self, wf):
        name = wf.gen_name("a" * 60)
        assert name == "a" * 56 + "-abcde"
        assert len(name) <= 63

    def test_scratch_layout(self, wf):
        assert wf.bucket == "test-bucket"
        assert wf.scratch_path.startswith("cirrus-test-wf-")
        assert wf.scratch_path.endswith("-abcde")
        assert wf.sources_path == f"{wf.scratch_path}/sources"
        assert wf.logs_path == f"{wf.scratch_path}/logs"
        assert wf.outs_path == f"{wf.scratch_path}/outs"

    def test_gcs_url(self, wf):
        assert wf.gcs_url(wf.logs_path) == f"gs://test-bucket/{wf.logs_path}"

    def test_gcs_path_prefix(self, compute, storage):
        wf = Workflow(
            "w", project="p", zone="z", gcs_path="gs://bkt/some/prefix/",
            compute=compute, storage=storage, workflow_id="x",
        )
        assert wf.bucket == "bkt"
        assert wf.scratch_path.startswith("some/prefix/cirrus-w-")

    def test_bad_gcs_path(self, compute, storage):
        with pytest.raises(ConfigurationError):
            Workflow("w", project="p", zone="z", gcs_path="s3://nope", compute=compute, storage=storage)

    def test_source_exists(self, wf, tmp_path):
        scripts = tmp_path / "scripts"
        scripts.mkdir()
        wf.sources["scripts"] = scripts

        assert wf.source_exists("startup.sh")
        assert wf.source_exists("scripts/setup/run.sh")
        assert not wf.source_exists("missing.sh")
        assert not wf.source_exists("scripts2/run.sh")
        assert set(wf.source_paths) == {"startup.sh", "scripts"}


class TestGraph:
    def test_duplicate_step(self, wf):
        wf.add_step("a", NoopStep())
        with pytest.raises(ValidationError, match="duplicate"):
            wf.add_step("a", NoopStep())

    def test_step_timeout_defaults_to_workflow(self, wf):
        assert wf.add_step("a", NoopStep()).timeout == wf.step_timeout
        assert wf.add_step("b", NoopStep(), timeout=5).timeout == 5

    def test_depends_on_is_transitive(self, wf):
        a = wf.add_step("a", NoopStep())
        b = wf.add_step("b", NoopStep())
        c = wf.add_step("c", NoopStep())
        wf.add_dependency("b", "a")
        wf.add_dependency("c", "b")

        assert c.depends_on(a)
        assert c.depends_on(b)
        assert not a.depends_on(c)
        assert not a.depends_on(a)

    @pytest.mark.asyncio
    async def test_unknown_dependency(self, wf):
        wf.add_step("a", NoopStep())
        wf.add_dependency("a", "ghost")
        with pytest.raises(CompositeError, match="unknown step 'ghost'"):
            await wf.validate()

    @pytest.mark.asyncio
    async def test_cycle(self, wf):
        wf.add_step("a", NoopStep())
        wf.add_step("b", NoopStep())
        wf.add_dependency("a", "b")
        wf.add_dependency("b", "a")
        with pytest.raises(ValidationError, match="cycle"):
            await wf.validate()


class TestPhases:
    @pytest.mark.asyncio
    async def test_populate_and_validate_accumulate(self, wf):
        wf.add_step("a", FailingPhases("a"))
        wf.add_step("b", FailingPhases("b"))

        with pytest.raises(CompositeError) as populate_err:
            await wf.populate()
        assert [str(e) for e in populate_err.value] == ["populate a", "populate b"]

        with pytest.raises(CompositeError) as validate_err:
            await wf.validate()
        assert len(validate_err.value) == 2

    @pytest.mark.asyncio
    async def test_execute_honors_dependencies(self, wf):
        record: list[str] = []
        wf.add_step("first", RecordingStep(record, delay=0.05))
        wf.add_step("second", RecordingStep(record))
        wf.add_dependency("second", "first")

        await wf.execute()
        assert record == ["start:first", "end:first", "start:second", "end:second"]

    @pytest.mark.asyncio
    async def test_independent_steps_run_concurrently(self, wf):
        record: list[str] = []
        wf.add_step("a", RecordingStep(record, delay=0.05))
        wf.add_step("b", RecordingStep(record, delay=0.05))

        await wf.execute()
        assert record[:2] == ["start:a", "start:b"]

    @pytest.mark.asyncio
    async def test_failure_cancels_and_skips_dependents(self, wf):
        record: list[str] = []
        wf.add_step("broken", RecordingStep(record, error=RemoteOperationError("boom")))
        wf.add_step("after", RecordingStep(record))
        wf.add_dependency("after", "broken")

        with pytest.raises(RemoteOperationError, match="boom"):
            await wf.execute()
        assert wf.cancel.is_set()
        assert record == ["start:broken"]

    @pytest.mark.asyncio
    async def test_step_timeout(self, wf):
        wf.add_step("slow", RecordingStep([], delay=10), timeout=0.05)
        with pytest.raises(StepTimeoutError):
            await wf.execute()

    @pytest.mark.asyncio
    async def test_stage_sources(self, wf, storage):
        await wf.stage_sources()
        path = f"{wf.sources_path}/startup.sh"
        assert storage.objects[("test-bucket", path)] == b"#!/bin/sh\necho hello\n"

    @pytest.mark.asyncio
    async def test_stage_directory_sources(self, wf, storage, tmp_path):
        scripts = tmp_path / "scripts"
        (scripts / "lib").mkdir(parents=True)
        (scripts / "lib" / "util.sh").write_text("util")
        wf.sources = {"scripts": scripts}

        await wf.stage_sources()
        assert storage.objects[("test-bucket", f"{wf.sources_path}/scripts/lib/util.sh")] == b"util"

    @pytest.mark.asyncio
    async def test_stage_missing_source(self, wf, tmp_path):
        wf.sources["gone"] = tmp_path / "gone"
        with pytest.raises(ValidationError, match="gone"):
            await wf.stage_sources()

    @pytest.mark.asyncio
    async def test_close_joins_background_tasks(self, wf):
        finished = asyncio.Event()

        async def background():
            await wf.cancel.wait()
            finished.set()

        wf.tasks.spawn(background(), name="bg")
        await wf.close()
        assert finished.is_set()
        assert len(wf.tasks) == 0

    @pytest.mark.asyncio
    async def test_close_abandons_stuck_tasks(self, wf):
        task = wf.tasks.spawn(asyncio.sleep(10), name="stuck")
        await wf.close(grace=0.01)
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_run_closes_on_failure(self, wf):
        closed: list[bool] = []
        wf._closers.append(lambda: closed.append(True))
        wf.add_step("bad", FailingPhases("bad"))

        with pytest.raises(CompositeError):
            await wf.run()
        assert closed == [True]
        assert wf.cancel.is_set()
