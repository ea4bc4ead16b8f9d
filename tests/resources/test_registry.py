from __future__ import annotations

import asyncio

import pytest
from conftest import PROJECT, ZONE, NoopStep

from cirrus.core.exceptions import (
    ConflictError,
    NotFoundError,
    ResourceLookupError,
    UnresolvedError,
)
from cirrus.resources.registry import Resource

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def _disk(real: str = "data-real", *, no_cleanup: bool = False) -> Resource:
    return Resource(
        real=real, link=f"projects/{PROJECT}/zones/{ZONE}/disks/{real}", no_cleanup=no_cleanup,
    )


class TestRegisterCreation:
    def test_get_unknown_is_none(self, wf):
        assert wf.registries.disks.get("ghost") is None
        assert wf.registries.networks.get("global/networks/default") is None

    @pytest.mark.asyncio
    async def test_reserves_name(self, wf):
        creator = wf.add_step("create", NoopStep())
        res = await wf.registries.disks.register_creation("data", _disk(), creator)

        assert wf.registries.disks.get("data") is res
        assert res.creator is creator
        assert res.name == "data"
        assert not res.created

    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, wf):
        first = wf.add_step("first", NoopStep())
        second = wf.add_step("second", NoopStep())
        await wf.registries.disks.register_creation("data", _disk(), first)

        with pytest.raises(ConflictError, match="already created by step 'first'"):
            await wf.registries.disks.register_creation("data", _disk(), second)

    @pytest.mark.asyncio
    async def test_same_creator_also_conflicts(self, wf):
        step = wf.add_step("create", NoopStep())
        await wf.registries.disks.register_creation("data", _disk(), step)

        with pytest.raises(ConflictError):
            await wf.registries.disks.register_creation("data", _disk(), step)

    @pytest.mark.asyncio
    async def test_allow_existing(self, wf):
        step = wf.add_step("create", NoopStep())
        await wf.registries.disks.register_creation("data", _disk(), step)
        res = await wf.registries.disks.register_creation(
            "data", _disk("other"), step, allow_existing=True,
        )
        assert wf.registries.disks.get("data") is res

    @pytest.mark.asyncio
    async def test_concurrent_reservations_admit_one(self, wf):
        steps = [wf.add_step(f"s{i}", NoopStep()) for i in range(5)]
        results = await asyncio.gather(
            *(wf.registries.instances.register_creation("vm", _disk(), s) for s in steps),
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, Resource)]
        assert len(successes) == 1
        assert all(isinstance(r, ConflictError) for r in results if r not in successes)


class TestRegisterUsage:
    @pytest.mark.asyncio
    async def test_unknown_name(self, wf):
        user = wf.add_step("use", NoopStep())
        with pytest.raises(NotFoundError):
            await wf.registries.disks.register_usage("ghost", user)

    @pytest.mark.asyncio
    async def test_requires_dependency_on_creator(self, wf):
        creator = wf.add_step("create", NoopStep())
        user = wf.add_step("use", NoopStep())
        await wf.registries.disks.register_creation("data", _disk(), creator)

        with pytest.raises(UnresolvedError, match="MUST transitively depend"):
            await wf.registries.disks.register_usage("data", user)

    @pytest.mark.asyncio
    async def test_transitive_dependency(self, wf):
        creator = wf.add_step("create", NoopStep())
        wf.add_step("middle", NoopStep())
        user = wf.add_step("use", NoopStep())
        wf.add_dependency("middle", "create")
        wf.add_dependency("use", "middle")
        res = await wf.registries.disks.register_creation("data", _disk(), creator)

        assert await wf.registries.disks.register_usage("data", user) is res
        assert res.users == [user]

    @pytest.mark.asyncio
    async def test_existing_url_registers_external(self, wf, compute):
        compute.disks.add((PROJECT, ZONE, "golden"))
        user = wf.add_step("use", NoopStep())

        res = await wf.registries.disks.register_usage(f"zones/{ZONE}/disks/golden", user)

        assert res.link == f"projects/{PROJECT}/zones/{ZONE}/disks/golden"
        assert res.real == "golden"
        assert res.external
        assert res.no_cleanup
        assert res.created
        assert wf.registries.disks.get(f"zones/{ZONE}/disks/golden") is res
        assert res not in wf.registries.cleanup_candidates()

    @pytest.mark.asyncio
    async def test_url_registered_once(self, wf, compute):
        compute.disks.add((PROJECT, ZONE, "golden"))
        user = wf.add_step("use", NoopStep())
        url = f"projects/{PROJECT}/zones/{ZONE}/disks/golden"

        first = await wf.registries.disks.register_usage(url, user)
        second = await wf.registries.disks.register_usage(url, user)
        assert first is second

    @pytest.mark.asyncio
    async def test_missing_url(self, wf):
        user = wf.add_step("use", NoopStep())
        with pytest.raises(ResourceLookupError, match="does not exist"):
            await wf.registries.disks.register_usage(f"zones/{ZONE}/disks/ghost", user)

    @pytest.mark.asyncio
    async def test_failed_lookup(self, wf, compute):
        compute.lookup_errors["image"] = RuntimeError("backend down")
        user = wf.add_step("use", NoopStep())
        with pytest.raises(ResourceLookupError, match="backend down"):
            await wf.registries.images.register_usage("global/images/family/debian-12", user)


class TestDeletionAndCleanup:
    @pytest.mark.asyncio
    async def test_deleter_must_follow_users(self, wf):
        creator = wf.add_step("create", NoopStep())
        user = wf.add_step("use", NoopStep())
        deleter = wf.add_step("delete", NoopStep())
        wf.add_dependency("use", "create")
        wf.add_dependency("delete", "create")
        await wf.registries.disks.register_creation("data", _disk(), creator)
        await wf.registries.disks.register_usage("data", user)

        with pytest.raises(UnresolvedError, match="which uses"):
            await wf.registries.disks.register_deletion("data", deleter)

        wf.add_dependency("delete", "use")
        res = await wf.registries.disks.register_deletion("data", deleter)
        assert res.deleter is deleter

    @pytest.mark.asyncio
    async def test_usage_after_deletion_is_unresolved(self, wf):
        creator = wf.add_step("create", NoopStep())
        deleter = wf.add_step("delete", NoopStep())
        user = wf.add_step("use", NoopStep())
        wf.add_dependency("delete", "create")
        wf.add_dependency("use", "create")
        await wf.registries.disks.register_creation("data", _disk(), creator)
        await wf.registries.disks.register_deletion("data", deleter)

        with pytest.raises(UnresolvedError, match="deletes"):
            await wf.registries.disks.register_usage("data", user)

    @pytest.mark.asyncio
    async def test_cleanup_candidates(self, wf):
        step = wf.add_step("create", NoopStep())
        disks = wf.registries.disks
        kept = await disks.register_creation("kept", _disk("kept", no_cleanup=True), step)
        made = await disks.register_creation("made", _disk("made"), step)
        await disks.register_creation("pending", _disk("pending"), step)
        await disks.mark_created("kept")
        await disks.mark_created("made")

        assert disks.cleanup_candidates() == [made]
        assert kept.created

    @pytest.mark.asyncio
    async def test_mark_deleted_removes(self, wf):
        step = wf.add_step("create", NoopStep())
        await wf.registries.instances.register_creation("vm", _disk(), step)
        await wf.registries.instances.mark_deleted("vm")
        assert wf.registries.instances.get("vm") is None
        assert "vm" not in wf.registries.instances
