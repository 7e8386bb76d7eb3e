"""
Constant arrival-rate scheduler (open model).

Start `i` of a scenario is due at `t0 + i * time_unit / rate`. The scheduler
sleeps until the next due time (waking early only for a stop signal), takes a
VU from the scenario's pool and launches the iteration as its own task. It
never waits for earlier iterations to finish before issuing the next start.

When a start is due and the pool is exhausted:

- ExhaustionPolicy.DROP records one `dropped_iterations` observation and
  moves on to the next tick.
- ExhaustionPolicy.BLOCK waits for a VU to be released (bounded by the end
  of the scenario window and by stop()). Ticks that became due meanwhile keep
  their original due times, so the scheduler catches up once VUs free up.
  A start still blocked when the window closes is counted as dropped.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Optional, Set

from ...config import ExhaustionPolicy, ScenarioConfig
from ...errors import PoolExhausted
from ..metrics.registry import DROPPED_ITERATIONS, INCOMPLETE_ITERATIONS, MetricRegistry
from .context import IterationContext, IterationOutcome, execute_iteration
from .pool import VirtualUser, VirtualUserPool

logger = logging.getLogger(__name__)


class ArrivalRateScheduler:
    """Issues iteration starts for one scenario at its configured rate."""

    def __init__(
        self,
        config: ScenarioConfig,
        registry: MetricRegistry,
        pool: Optional[VirtualUserPool] = None,
        transport: Any = None,
        data: Any = None,
        on_iteration: Optional[Callable[[IterationOutcome], None]] = None,
    ):
        self.config = config
        self.name = config.name
        self.pool = pool or VirtualUserPool(config.name, config.pre_allocated_vus, config.max_vus)
        self.metrics = registry.scoped(config.tags, scenario=config.name)
        self.transport = transport
        self.data = data
        self.on_iteration = on_iteration

        self._stop = asyncio.Event()
        self._finished = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._seq = itertools.count(1)

        # Counters for the run summary.
        self.issued = 0
        self.started = 0
        self.dropped = 0
        self.completed = 0
        self.failed = 0
        self.incomplete = 0

    # State ---------------------------------------------------------------------
    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def finished(self) -> bool:
        """True once the scheduler has stopped issuing starts."""
        return self._finished.is_set()

    def stop(self) -> None:
        """Stop issuing starts. In-flight iterations keep running."""
        if not self._stop.is_set():
            logger.info("Stopping scenario %s", self.name)
            self._stop.set()

    async def wait_finished(self) -> None:
        await self._finished.wait()

    # Main loop -------------------------------------------------------------------
    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        cfg = self.config
        try:
            if cfg.start_time > 0 and await self._sleep_or_stop(cfg.start_time):
                return

            t0 = loop.time()
            end = t0 + cfg.duration
            interval = cfg.interval
            logger.info(
                "Scenario %s: %.6g iterations/%.6gs for %.6gs (VUs %d..%d, %s on exhaustion)",
                self.name,
                cfg.rate,
                cfg.time_unit,
                cfg.duration,
                cfg.pre_allocated_vus,
                cfg.max_vus,
                cfg.exhaustion_policy.value,
            )

            for i in range(cfg.expected_starts):
                if self._stop.is_set():
                    break
                due = t0 + i * interval
                delay = due - loop.time()
                if delay > 0 and await self._sleep_or_stop(delay):
                    break
                await self.issue(scheduled_at=due, deadline=end)
        finally:
            self._finished.set()
            logger.info(
                "Scenario %s stopped issuing: issued=%d started=%d dropped=%d in_flight=%d",
                self.name,
                self.issued,
                self.started,
                self.dropped,
                self.in_flight,
            )

    async def issue(
        self, scheduled_at: Optional[float] = None, deadline: Optional[float] = None
    ) -> bool:
        """
        Issue one start: acquire a VU according to the exhaustion policy and
        launch the iteration task. Returns False if the start was dropped or
        abandoned because of stop().
        """
        loop = asyncio.get_running_loop()
        if scheduled_at is None:
            scheduled_at = loop.time()

        if self.config.exhaustion_policy is ExhaustionPolicy.BLOCK:
            vu = await self._acquire_blocking(deadline)
            if vu is None:
                return False
        else:
            try:
                vu = self.pool.acquire()
            except PoolExhausted:
                self._record_drop()
                return False

        self.issued += 1
        self.started += 1
        seq = next(self._seq)
        task = loop.create_task(self._run_one(vu, seq, scheduled_at))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def wait_in_flight(self, timeout: Optional[float] = None) -> int:
        """
        Wait for in-flight iterations; cancel whatever is still running after
        `timeout` seconds. Returns the number of abandoned iterations, which
        are recorded as `incomplete_iterations` rather than failures.
        """
        pending = set(self._tasks)
        if not pending:
            return 0
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if not still_running:
            return 0

        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)
        abandoned = len(still_running)
        self.incomplete += abandoned
        self.metrics.add(INCOMPLETE_ITERATIONS, abandoned)
        logger.warning(
            "Scenario %s: %d iteration(s) still running after %.3gs hard stop were abandoned",
            self.name,
            abandoned,
            timeout if timeout is not None else 0.0,
        )
        return abandoned

    def summary(self) -> dict:
        return {
            "issued": self.issued,
            "started": self.started,
            "dropped": self.dropped,
            "completed": self.completed,
            "failed": self.failed,
            "incomplete": self.incomplete,
            **self.pool.stats(),
        }

    # Internals -----------------------------------------------------------------
    async def _run_one(self, vu: VirtualUser, seq: int, scheduled_at: float) -> None:
        loop = asyncio.get_running_loop()
        ctx = IterationContext(
            scenario=self.name,
            iteration=seq,
            vu=vu.id,
            metrics=self.metrics,
            http=self.transport,
            data=self.data,
            scheduled_at=scheduled_at,
            started_at=loop.time(),
        )
        completed = False
        try:
            outcome = await execute_iteration(self.config.exec_fn, ctx, clock=loop.time)
            completed = True
        finally:
            self.pool.release(vu, completed=completed)

        self.completed += 1
        if outcome.failed:
            self.failed += 1
        if self.on_iteration is not None:
            try:
                self.on_iteration(outcome)
            except Exception as e:
                logger.error(f"on_iteration callback failed for {self.name}: {e}")

    async def _acquire_blocking(self, deadline: Optional[float]) -> Optional[VirtualUser]:
        loop = asyncio.get_running_loop()
        timeout = None if deadline is None else max(deadline - loop.time(), 0.0)
        acquire = loop.create_task(self.pool.acquire_wait(timeout=timeout))
        stopper = loop.create_task(self._stop.wait())
        try:
            await asyncio.wait({acquire, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()

        if acquire.done():
            try:
                return acquire.result()
            except PoolExhausted:
                # The window closed while waiting for a VU.
                self._record_drop()
                return None

        # stop() fired first: abandon the pending start.
        acquire.cancel()
        await asyncio.gather(acquire, return_exceptions=True)
        return None

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Sleep `delay` seconds; return True if stop() interrupted the sleep."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _record_drop(self) -> None:
        self.issued += 1
        self.dropped += 1
        self.metrics.add(DROPPED_ITERATIONS, 1)
        logger.debug(
            "Scenario %s dropped a start: all %d VUs busy", self.name, self.pool.max_vus
        )
