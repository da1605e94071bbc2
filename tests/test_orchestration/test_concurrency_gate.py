"""
Tests for pipewright.orchestration.concurrency_gate
=====================================================

What's Being Tested:
    - Acquire on an idle group proceeds immediately
    - Queued acquisition waits for the occupant and inherits occupancy
    - Only the newest waiter is kept; older waiters are SUPERSEDED
    - cancel_in_progress signals the occupant but never double-occupies
    - Queue timeouts raise GateTimeoutError and leave the occupant alone
    - occupy() releases on every exit path, including errors
    - Different groups are independent; idle groups are forgotten
"""

import asyncio

import pytest

from pipewright.core.config import GateConfig
from pipewright.core.enums import AcquireOutcome
from pipewright.core.exceptions import GateTimeoutError
from pipewright.orchestration.concurrency_gate import ConcurrencyGate


# =============================================================================
# Helpers
# =============================================================================
async def _until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# =============================================================================
# Test: Basic Acquire / Release
# =============================================================================
class TestAcquireRelease:
    async def test_idle_group_proceeds(self, gate) -> None:
        result = await gate.acquire("pages", "run-a")

        assert result.proceed
        assert result.lease is not None
        assert gate.occupant("pages") == "run-a"
        assert not gate.is_idle("pages")

    async def test_release_returns_group_to_idle(self, gate) -> None:
        result = await gate.acquire("pages", "run-a")
        await gate.release(result.lease)

        assert gate.is_idle("pages")
        assert result.lease.released

    async def test_double_release_is_noop(self, gate) -> None:
        result = await gate.acquire("pages", "run-a")
        await gate.release(result.lease)
        await gate.release(result.lease)
        assert gate.is_idle("pages")

    async def test_groups_are_independent(self, gate) -> None:
        a = await gate.acquire("pages", "run-a")
        b = await asyncio.wait_for(gate.acquire("docs", "run-b"), timeout=1.0)

        assert a.proceed and b.proceed
        assert gate.groups == ["docs", "pages"]

    async def test_idle_group_is_forgotten(self, gate) -> None:
        a = await gate.acquire("pages", "run-a")
        b = await gate.acquire("docs", "run-b")

        await gate.release(a.lease)
        assert gate.groups == ["docs"]
        await gate.release(b.lease)
        assert gate.groups == []

    async def test_group_kept_while_handing_over(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")
        second = asyncio.ensure_future(gate.acquire("pages", "run-b"))
        await _until(lambda: gate.waiter("pages") == "run-b")

        await gate.release(first.lease)
        assert gate.groups == ["pages"]

        result = await second
        await gate.release(result.lease)
        assert gate.groups == []

    async def test_reacquire_after_group_forgotten(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")
        await gate.release(first.lease)

        again = await asyncio.wait_for(gate.acquire("pages", "run-b"), timeout=1.0)
        assert again.proceed
        assert gate.occupant("pages") == "run-b"

    async def test_release_racing_acquire_never_double_occupies(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")
        _, second = await asyncio.gather(
            gate.release(first.lease),
            gate.acquire("pages", "run-b"),
        )
        assert second.proceed

        third = asyncio.ensure_future(gate.acquire("pages", "run-c"))
        await _until(lambda: gate.waiter("pages") == "run-c")
        assert gate.occupant("pages") == "run-b"

        await gate.release(second.lease)
        result = await asyncio.wait_for(third, timeout=1.0)
        await gate.release(result.lease)
        assert gate.groups == []


# =============================================================================
# Test: Queued Runs
# =============================================================================
class TestQueuedRuns:
    """Non-preemptive mode: the occupant is never interrupted."""

    async def test_waiter_blocks_until_release(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")
        second = asyncio.ensure_future(gate.acquire("pages", "run-b"))

        await _until(lambda: gate.waiter("pages") == "run-b")
        await asyncio.sleep(0.05)
        assert not second.done()
        assert not first.lease.cancel_requested.is_set()

        await gate.release(first.lease)
        result = await asyncio.wait_for(second, timeout=1.0)

        assert result.proceed
        assert gate.occupant("pages") == "run-b"
        assert gate.waiter("pages") is None

    async def test_handover_never_passes_through_idle(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")
        second = asyncio.ensure_future(gate.acquire("pages", "run-b"))
        await _until(lambda: gate.waiter("pages") == "run-b")

        await gate.release(first.lease)
        # Occupancy moved to run-b inside release, before run-b resumed.
        assert gate.occupant("pages") == "run-b"
        await second

    async def test_newer_waiter_supersedes_older(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")
        second = asyncio.ensure_future(gate.acquire("pages", "run-b"))
        await _until(lambda: gate.waiter("pages") == "run-b")
        third = asyncio.ensure_future(gate.acquire("pages", "run-c"))

        superseded = await asyncio.wait_for(second, timeout=1.0)
        assert superseded.outcome == AcquireOutcome.SUPERSEDED
        assert superseded.lease is None
        assert gate.waiter("pages") == "run-c"
        assert gate.occupant("pages") == "run-a"

        await gate.release(first.lease)
        latest = await asyncio.wait_for(third, timeout=1.0)
        assert latest.proceed
        assert gate.occupant("pages") == "run-c"

    async def test_waited_seconds_recorded(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")
        second = asyncio.ensure_future(gate.acquire("pages", "run-b"))
        await asyncio.sleep(0.05)
        await gate.release(first.lease)

        result = await second
        assert result.waited_seconds >= 0.04


# =============================================================================
# Test: Preemptive Runs
# =============================================================================
class TestCancelInProgress:
    async def test_occupant_signaled_and_callback_fired(self, gate) -> None:
        signals: list[str] = []
        first = await gate.acquire("pages", "run-a", on_cancel=lambda: signals.append("run-a"))

        second = asyncio.ensure_future(
            gate.acquire("pages", "run-b", cancel_in_progress=True)
        )
        await _until(lambda: gate.waiter("pages") == "run-b")

        assert first.lease.cancel_requested.is_set()
        assert signals == ["run-a"]

        await gate.release(first.lease)
        assert (await asyncio.wait_for(second, timeout=1.0)).proceed

    async def test_no_double_occupancy(self, gate) -> None:
        """The preempting run proceeds only after the occupant releases."""
        first = await gate.acquire("pages", "run-a")
        second = asyncio.ensure_future(
            gate.acquire("pages", "run-b", cancel_in_progress=True)
        )
        await _until(lambda: gate.waiter("pages") == "run-b")
        await asyncio.sleep(0.05)

        assert not second.done()
        assert gate.occupant("pages") == "run-a"

        await gate.release(first.lease)
        result = await asyncio.wait_for(second, timeout=1.0)
        assert result.proceed
        assert gate.occupant("pages") == "run-b"


# =============================================================================
# Test: Timeouts & Cancellation
# =============================================================================
class TestTimeouts:
    async def test_queued_wait_times_out(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")

        with pytest.raises(GateTimeoutError) as exc_info:
            await gate.acquire("pages", "run-b", timeout=0.05)

        assert exc_info.value.group == "pages"
        assert gate.occupant("pages") == "run-a"
        assert gate.waiter("pages") is None
        assert not first.lease.cancel_requested.is_set()

    async def test_configured_timeout_applies(self) -> None:
        gate = ConcurrencyGate(GateConfig(queue_timeout_seconds=0.05))
        await gate.acquire("pages", "run-a")

        with pytest.raises(GateTimeoutError):
            await gate.acquire("pages", "run-b")

    async def test_cancelled_waiter_is_removed(self, gate) -> None:
        first = await gate.acquire("pages", "run-a")
        waiting = asyncio.ensure_future(gate.acquire("pages", "run-b"))
        await _until(lambda: gate.waiter("pages") == "run-b")

        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting

        assert gate.waiter("pages") is None
        await gate.release(first.lease)
        assert gate.is_idle("pages")


# =============================================================================
# Test: Scoped Occupancy
# =============================================================================
class TestOccupy:
    async def test_release_on_normal_exit(self, gate) -> None:
        async with gate.occupy("pages", "run-a") as result:
            assert result.proceed
            assert gate.occupant("pages") == "run-a"
        assert gate.is_idle("pages")

    async def test_release_on_error(self, gate) -> None:
        with pytest.raises(RuntimeError):
            async with gate.occupy("pages", "run-a"):
                raise RuntimeError("deploy crashed")
        assert gate.is_idle("pages")
