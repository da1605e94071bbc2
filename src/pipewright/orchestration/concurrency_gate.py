"""
pipewright.orchestration.concurrency_gate - Per-Group Deployment Gate
=======================================================================

The gate serializes gated stages (deployments) that share a concurrency
group. It is an explicit keyed registry: each group key owns one slot with
its own lock, its current occupant, and at most ONE pending waiter.

State machine per group:

    idle ──acquire──→ occupied ──release──→ idle
                         │  ↑
                         │  └── release with a waiter: occupancy is handed
                         │      straight to the waiter (never idle between)
                         └── acquire while occupied: caller becomes the waiter

Queued runs (cancel_in_progress=False):
    The occupant is never interrupted. A newly queued run replaces any
    existing waiter; the replaced waiter resolves immediately with
    ``AcquireOutcome.SUPERSEDED`` and must not run its gated stage. Only the
    latest queued run proceeds when the occupant releases.

Preemptive runs (cancel_in_progress=True):
    The occupant's lease is flagged (``cancel_requested``) and its
    ``on_cancel`` callback fires, then the new run waits like any other
    waiter. Occupancy moves only when the occupant actually releases, so
    two runs never hold a group at once.

Timeouts:
    A queued wait longer than ``timeout`` (or ``GateConfig.queue_timeout_seconds``)
    raises GateTimeoutError. The occupant is unaffected.

Usage:
    >>> gate = ConcurrencyGate()
    >>> async with gate.occupy("pages", run_id) as result:
    ...     if result.proceed:
    ...         await deploy()
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from pipewright.core.config import GateConfig
from pipewright.core.enums import AcquireOutcome
from pipewright.core.exceptions import GateTimeoutError


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


# =============================================================================
# Lease & Result
# =============================================================================
class GateLease:
    """Proof of occupancy of one concurrency group.

    Attributes:
        group: Group key held.
        run_id: Run holding the group.
        acquired_at: When occupancy was granted.
        cancel_requested: Set when a newer run with cancel_in_progress
            asks this occupant to stop.
        released: True once the lease was given back.
    """

    def __init__(self, group: str, run_id: str) -> None:
        self.group = group
        self.run_id = run_id
        self.acquired_at = datetime.now(timezone.utc)
        self.cancel_requested = asyncio.Event()
        self.released = False

    def __repr__(self) -> str:
        return (
            f"GateLease(group={self.group!r}, run_id={self.run_id!r}, "
            f"released={self.released})"
        )


class AcquireResult(BaseModel):
    """What ``acquire`` returned to a caller."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: AcquireOutcome
    group: str
    run_id: str
    lease: Optional[GateLease] = None
    waited_seconds: float = Field(default=0.0, ge=0)

    @property
    def proceed(self) -> bool:
        return self.outcome == AcquireOutcome.PROCEED


class _Waiter:
    def __init__(
        self,
        run_id: str,
        future: asyncio.Future,
        on_cancel: Optional[Callable[[], object]],
    ) -> None:
        self.run_id = run_id
        self.future = future
        self.on_cancel = on_cancel


class _GroupSlot:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.occupant: Optional[GateLease] = None
        self.occupant_on_cancel: Optional[Callable[[], object]] = None
        self.waiter: Optional[_Waiter] = None


# =============================================================================
# Concurrency Gate
# =============================================================================
class ConcurrencyGate:
    """Keyed registry of concurrency group slots.

    Different groups never block each other; every mutation of a slot
    happens under that slot's lock. A slot is dropped once its group is
    idle with no waiter.

    Args:
        config: Gate settings (default queued-wait timeout).
    """

    def __init__(self, config: Optional[GateConfig] = None) -> None:
        self._config = config or GateConfig()
        self._slots: dict[str, _GroupSlot] = {}
        self._logger = logger.bind(component="concurrency_gate")

    def _slot(self, group: str) -> _GroupSlot:
        slot = self._slots.get(group)
        if slot is None:
            slot = _GroupSlot()
            self._slots[group] = slot
        return slot

    @asynccontextmanager
    async def _locked(self, group: str) -> AsyncIterator[_GroupSlot]:
        """Hold the lock of the slot currently registered for ``group``."""
        while True:
            slot = self._slot(group)
            async with slot.lock:
                # A release may have dropped this slot while we waited.
                if self._slots.get(group) is slot:
                    yield slot
                    return

    def _grant(
        self,
        slot: _GroupSlot,
        group: str,
        run_id: str,
        on_cancel: Optional[Callable[[], object]],
    ) -> GateLease:
        lease = GateLease(group=group, run_id=run_id)
        slot.occupant = lease
        slot.occupant_on_cancel = on_cancel
        return lease

    # -------------------------------------------------------------------------
    # Acquire / Release
    # -------------------------------------------------------------------------
    async def acquire(
        self,
        group: str,
        run_id: str,
        cancel_in_progress: bool = False,
        timeout: Optional[float] = None,
        on_cancel: Optional[Callable[[], object]] = None,
    ) -> AcquireResult:
        """Ask for occupancy of ``group``.

        Args:
            group: Concurrency group key.
            run_id: Run asking for occupancy.
            cancel_in_progress: Signal the current occupant to cancel.
            timeout: Maximum queued wait in seconds; falls back to the
                configured queue timeout (None waits indefinitely).
            on_cancel: Called if a later run preempts this one while it
                occupies the group.

        Returns:
            PROCEED with a lease, or SUPERSEDED (no lease) if a newer run
            replaced this one in the queue.

        Raises:
            GateTimeoutError: If the queued wait exceeded the timeout.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        async with self._locked(group) as slot:
            if slot.occupant is None:
                lease = self._grant(slot, group, run_id, on_cancel)
                self._logger.info("gate_acquired", group=group, run_id=run_id)
                return AcquireResult(
                    outcome=AcquireOutcome.PROCEED,
                    group=group,
                    run_id=run_id,
                    lease=lease,
                )

            previous = slot.waiter
            if previous is not None and not previous.future.done():
                previous.future.set_result(None)
                self._logger.info(
                    "gate_waiter_superseded",
                    group=group,
                    superseded_run_id=previous.run_id,
                    run_id=run_id,
                )

            waiter = _Waiter(run_id, loop.create_future(), on_cancel)
            slot.waiter = waiter
            occupant = slot.occupant

            if cancel_in_progress and not occupant.cancel_requested.is_set():
                occupant.cancel_requested.set()
                if slot.occupant_on_cancel is not None:
                    slot.occupant_on_cancel()
                self._logger.warning(
                    "gate_occupant_cancel_requested",
                    group=group,
                    occupant_run_id=occupant.run_id,
                    run_id=run_id,
                )

            self._logger.info(
                "gate_queued",
                group=group,
                run_id=run_id,
                occupant_run_id=occupant.run_id,
            )

        if timeout is None:
            timeout = self._config.queue_timeout_seconds

        try:
            lease = await asyncio.wait_for(asyncio.shield(waiter.future), timeout)
        except asyncio.TimeoutError:
            if waiter.future.done():
                lease = waiter.future.result()
            else:
                waiter.future.cancel()
                if slot.waiter is waiter:
                    slot.waiter = None
                self._logger.warning(
                    "gate_wait_timed_out",
                    group=group,
                    run_id=run_id,
                    timeout_seconds=timeout,
                )
                raise GateTimeoutError(group=group, run_id=run_id, timeout_seconds=timeout)
        except asyncio.CancelledError:
            if slot.waiter is waiter:
                slot.waiter = None
            if waiter.future.done() and waiter.future.result() is not None:
                await self.release(waiter.future.result())
            else:
                waiter.future.cancel()
            raise

        waited = loop.time() - started
        if lease is None:
            return AcquireResult(
                outcome=AcquireOutcome.SUPERSEDED,
                group=group,
                run_id=run_id,
                waited_seconds=waited,
            )
        return AcquireResult(
            outcome=AcquireOutcome.PROCEED,
            group=group,
            run_id=run_id,
            lease=lease,
            waited_seconds=waited,
        )

    async def release(self, lease: GateLease) -> None:
        """Give a group back; hands occupancy to the waiter if there is one.

        Releasing the same lease twice is a no-op.
        """
        slot = self._slots.get(lease.group)
        if slot is None or lease.released:
            return

        async with slot.lock:
            if lease.released:
                return
            lease.released = True
            if slot.occupant is not lease:
                self._logger.warning(
                    "gate_release_not_occupant",
                    group=lease.group,
                    run_id=lease.run_id,
                )
                return

            slot.occupant = None
            slot.occupant_on_cancel = None
            waiter, slot.waiter = slot.waiter, None

            if waiter is not None and not waiter.future.done():
                next_lease = self._grant(slot, lease.group, waiter.run_id, waiter.on_cancel)
                waiter.future.set_result(next_lease)
                self._logger.info(
                    "gate_handed_over",
                    group=lease.group,
                    from_run_id=lease.run_id,
                    to_run_id=waiter.run_id,
                )
            else:
                self._slots.pop(lease.group, None)
                self._logger.info("gate_released", group=lease.group, run_id=lease.run_id)

    @asynccontextmanager
    async def occupy(
        self,
        group: str,
        run_id: str,
        cancel_in_progress: bool = False,
        timeout: Optional[float] = None,
        on_cancel: Optional[Callable[[], object]] = None,
    ) -> AsyncIterator[AcquireResult]:
        """Scoped acquire: the lease is released on every exit path.

        The body must check ``result.proceed`` before running gated work.
        """
        result = await self.acquire(
            group,
            run_id,
            cancel_in_progress=cancel_in_progress,
            timeout=timeout,
            on_cancel=on_cancel,
        )
        try:
            yield result
        finally:
            if result.lease is not None:
                await self.release(result.lease)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------
    def occupant(self, group: str) -> Optional[str]:
        """Run id currently occupying ``group``, if any."""
        slot = self._slots.get(group)
        if slot is None or slot.occupant is None:
            return None
        return slot.occupant.run_id

    def waiter(self, group: str) -> Optional[str]:
        """Run id queued to proceed next on ``group``, if any."""
        slot = self._slots.get(group)
        if slot is None or slot.waiter is None:
            return None
        return slot.waiter.run_id

    def is_idle(self, group: str) -> bool:
        return self.occupant(group) is None

    @property
    def groups(self) -> list[str]:
        return sorted(self._slots)
