"""
Virtual-user pool for one scenario.

`pre_allocated` slots exist from the start; further slots are created on
demand up to `max_vus` when every existing slot is busy. Slots created on
demand are kept until the end of the run rather than retired after an idle
period, so the allocated count only grows and `peak_in_use` can be compared
directly with it in the run summary.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

from ...errors import PoolExhausted

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class VirtualUser:
    """One unit of concurrency capacity. `id` is 1-based within its scenario."""

    id: int
    scenario: str
    pre_allocated: bool = True
    iterations: int = 0


class VirtualUserPool:
    """
    Bounded pool of VU slots.

    All mutation happens on the event loop thread; acquire/release never await
    between checking and updating the free set, so they are atomic with
    respect to other tasks.
    """

    def __init__(self, scenario: str, pre_allocated: int, max_vus: int):
        if max_vus < 1:
            raise ValueError("max_vus must be >= 1")
        if not 0 <= pre_allocated <= max_vus:
            raise ValueError("pre_allocated must be within [0, max_vus]")
        self.scenario = scenario
        self.pre_allocated = pre_allocated
        self.max_vus = max_vus
        self._vus: Dict[int, VirtualUser] = {}
        self._free: Deque[VirtualUser] = deque()
        self._busy: Dict[int, VirtualUser] = {}
        self._peak_in_use = 0
        self._waiters: Deque[asyncio.Future] = deque()
        for _ in range(pre_allocated):
            self._free.append(self._create(pre_allocated=True))

    # Stats -------------------------------------------------------------------
    @property
    def allocated(self) -> int:
        return len(self._vus)

    @property
    def in_use(self) -> int:
        return len(self._busy)

    @property
    def available(self) -> int:
        """Slots that could be handed out right now, counting not-yet-created ones."""
        return len(self._free) + (self.max_vus - len(self._vus))

    @property
    def peak_in_use(self) -> int:
        return self._peak_in_use

    # Acquire / release -------------------------------------------------------
    def acquire(self) -> VirtualUser:
        """Take a free slot, creating one if below max. Raises PoolExhausted otherwise."""
        if self._free:
            vu = self._free.popleft()
        elif len(self._vus) < self.max_vus:
            vu = self._create(pre_allocated=False)
            logger.debug(
                "Scenario %s allocated VU %d on demand (%d/%d)",
                self.scenario,
                vu.id,
                len(self._vus),
                self.max_vus,
            )
        else:
            raise PoolExhausted(self.scenario, self.max_vus)

        self._busy[vu.id] = vu
        if len(self._busy) > self._peak_in_use:
            self._peak_in_use = len(self._busy)
        return vu

    async def acquire_wait(self, timeout: Optional[float] = None) -> VirtualUser:
        """
        Take a slot, waiting for one to be released when the pool is exhausted.

        Waiters are served in FIFO order: a released slot is handed straight to
        the oldest waiter instead of going back to the free set. Raises
        PoolExhausted if `timeout` elapses first.
        """
        try:
            return self.acquire()
        except PoolExhausted:
            pass

        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            if timeout is None:
                return await waiter
            return await asyncio.wait_for(asyncio.shield(waiter), timeout=max(timeout, 0.0))
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            if waiter.done() and not waiter.cancelled():
                # Handed a slot in the same tick the wait gave up; give it back.
                self.release(waiter.result(), completed=False)
            else:
                waiter.cancel()
            with contextlib.suppress(ValueError):
                self._waiters.remove(waiter)
            if isinstance(exc, asyncio.TimeoutError):
                raise PoolExhausted(self.scenario, self.max_vus) from None
            raise

    def release(self, vu: VirtualUser, completed: bool = True) -> None:
        if self._busy.get(vu.id) is not vu:
            raise ValueError(f"VU {vu.id} is not checked out from pool '{self.scenario}'")
        if completed:
            vu.iterations += 1
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot stays busy; ownership moves to the waiter.
                waiter.set_result(vu)
                return
        del self._busy[vu.id]
        self._free.append(vu)

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def stats(self) -> Dict[str, int]:
        return {
            "pre_allocated": self.pre_allocated,
            "max_vus": self.max_vus,
            "allocated": self.allocated,
            "in_use": self.in_use,
            "peak_in_use": self.peak_in_use,
        }

    def _create(self, pre_allocated: bool) -> VirtualUser:
        vu = VirtualUser(id=len(self._vus) + 1, scenario=self.scenario, pre_allocated=pre_allocated)
        self._vus[vu.id] = vu
        return vu

