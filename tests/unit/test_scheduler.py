"""Tests for per-cluster pass serialization."""

import asyncio

import pytest

from mongo_operator.core.scheduler import PassGuard, PassScheduler
from mongo_operator.errors import PassAbandoned


class TestPassScheduler:
    """Tests for PassScheduler."""

    async def test_notifications_coalesce_into_one_pass(self) -> None:
        """Test that callers arriving mid-pass share a single follow-up pass."""
        scheduler = PassScheduler()
        gate = asyncio.Event()
        calls = []

        async def pass_fn(guard: PassGuard) -> int:
            calls.append(guard)
            if len(calls) == 1:
                await gate.wait()
            return len(calls)

        first = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        await asyncio.sleep(0)
        assert scheduler.busy("default/demo")

        second = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        third = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        await asyncio.sleep(0)
        gate.set()

        results = await asyncio.gather(first, second, third)

        assert results == [1, 2, 2]
        assert len(calls) == 2
        assert calls[0] is calls[1]

    async def test_failure_reaches_every_waiter(self) -> None:
        """Test that an exception of a shared pass is raised to all its callers."""
        scheduler = PassScheduler()
        gate = asyncio.Event()
        calls = []

        async def pass_fn(guard: PassGuard) -> None:
            calls.append(guard)
            if len(calls) == 1:
                await gate.wait()
                return None
            raise RuntimeError("boom")

        first = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        await asyncio.sleep(0)
        second = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        third = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        await asyncio.sleep(0)
        gate.set()

        results = await asyncio.gather(first, second, third, return_exceptions=True)

        assert results[0] is None
        assert isinstance(results[1], RuntimeError)
        assert isinstance(results[2], RuntimeError)
        assert len(calls) == 2

    async def test_different_clusters_run_concurrently(self) -> None:
        """Test that passes of different clusters do not wait for each other."""
        scheduler = PassScheduler()
        gate = asyncio.Event()
        running = []

        async def pass_fn(guard: PassGuard) -> str:
            running.append(guard.cluster)
            await gate.wait()
            return guard.cluster

        first = asyncio.create_task(scheduler.run("default/a", pass_fn))
        second = asyncio.create_task(scheduler.run("default/b", pass_fn))
        await asyncio.sleep(0)

        assert sorted(running) == ["default/a", "default/b"]
        gate.set()
        assert await asyncio.gather(first, second) == ["default/a", "default/b"]

    async def test_forget_drops_idle_slot(self) -> None:
        """Test that a forgotten cluster starts over with a fresh guard."""
        scheduler = PassScheduler()
        guard = scheduler.guard("default/demo")
        guard.abandon()

        scheduler.forget("default/demo")

        assert scheduler.guard("default/demo") is not guard
        assert scheduler.guard("default/demo").abandoned is False

    async def test_cancelled_queued_caller_does_not_block_later_passes(self) -> None:
        """Test that cancelling a caller waiting for the lock leaves the cluster schedulable."""
        scheduler = PassScheduler()
        gate = asyncio.Event()

        async def slow(guard: PassGuard) -> str:
            await gate.wait()
            return "slow"

        async def quick(guard: PassGuard) -> str:
            return "ok"

        running = asyncio.create_task(scheduler.run("default/demo", slow))
        await asyncio.sleep(0)
        queued = asyncio.create_task(scheduler.run("default/demo", quick))
        await asyncio.sleep(0)

        queued.cancel()
        with pytest.raises(asyncio.CancelledError):
            await queued
        gate.set()

        assert await running == "slow"
        assert await asyncio.wait_for(scheduler.run("default/demo", quick), 1) == "ok"

    async def test_waiters_of_cancelled_caller_run_their_own_pass(self) -> None:
        """Test that callers sharing a cancelled queued pass are served by a new pass."""
        scheduler = PassScheduler()
        gate = asyncio.Event()
        calls = []

        async def pass_fn(guard: PassGuard) -> int:
            calls.append(guard)
            if len(calls) == 1:
                await gate.wait()
            return len(calls)

        running = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        await asyncio.sleep(0)
        queued = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        await asyncio.sleep(0)
        waiter = asyncio.create_task(scheduler.run("default/demo", pass_fn))
        await asyncio.sleep(0)

        queued.cancel()
        await asyncio.sleep(0)
        gate.set()

        assert await running == 1
        assert await asyncio.wait_for(waiter, 1) == 2
        assert queued.cancelled()

    async def test_uncoalesced_call_runs_its_own_function(self) -> None:
        """Test that a call with coalesce=False is never served by a queued pass."""
        scheduler = PassScheduler()
        gate = asyncio.Event()
        ran = []

        async def slow(guard: PassGuard) -> str:
            ran.append("slow")
            await gate.wait()
            return "slow"

        async def reconcile(guard: PassGuard) -> str:
            ran.append("reconcile")
            return "reconcile"

        async def finalize(guard: PassGuard) -> str:
            ran.append("finalize")
            return "finalize"

        running = asyncio.create_task(scheduler.run("default/demo", slow))
        await asyncio.sleep(0)
        queued = asyncio.create_task(scheduler.run("default/demo", reconcile))
        await asyncio.sleep(0)
        final = asyncio.create_task(scheduler.run("default/demo", finalize, coalesce=False))
        await asyncio.sleep(0)
        gate.set()

        assert await asyncio.gather(running, queued, final) == ["slow", "reconcile", "finalize"]
        assert sorted(ran) == ["finalize", "reconcile", "slow"]

    async def test_recreated_cluster_gets_fresh_guard(self) -> None:
        """Test that a new uid replaces a guard abandoned by the previous incarnation."""
        scheduler = PassScheduler()
        gate = asyncio.Event()

        async def slow(guard: PassGuard) -> None:
            await gate.wait()

        old = scheduler.guard("default/demo", "uid-1")
        running = asyncio.create_task(scheduler.run("default/demo", slow))
        await asyncio.sleep(0)
        queued = asyncio.create_task(scheduler.run("default/demo", slow))
        await asyncio.sleep(0)
        old.abandon()
        scheduler.forget("default/demo")

        fresh = scheduler.guard("default/demo", "uid-2")

        assert fresh is not old
        assert fresh.abandoned is False
        assert old.abandoned is True
        assert scheduler.guard("default/demo", "uid-2") is fresh
        gate.set()
        await asyncio.gather(running, queued)


class TestPassGuard:
    """Tests for PassGuard."""

    def test_active_guard_allows_mutations(self) -> None:
        """Test that a fresh guard does not raise."""
        PassGuard("default/demo").ensure_active()

    def test_abandoned_guard_raises(self) -> None:
        """Test that mutations are refused once deletion is observed."""
        guard = PassGuard("default/demo")
        guard.abandon()

        assert guard.abandoned is True
        with pytest.raises(PassAbandoned, match="being deleted"):
            guard.ensure_active()
