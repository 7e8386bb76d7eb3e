"""
Scenario orchestration: one pool and one scheduler per scenario, all started
together against a shared metric registry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ...config import RunConfig
from ..metrics.registry import ITERATION_FAILED, MetricRegistry
from .context import IterationOutcome
from .models import ScenarioSummary
from .pool import VirtualUserPool
from .scheduler import ArrivalRateScheduler

logger = logging.getLogger(__name__)


class ScenarioOrchestrator:
    def __init__(
        self,
        config: RunConfig,
        registry: MetricRegistry,
        transport: Any = None,
        data: Any = None,
        on_iteration: Optional[Callable[[IterationOutcome], None]] = None,
    ):
        self.config = config
        self.registry = registry
        self.schedulers: Dict[str, ArrivalRateScheduler] = {}
        for name, sc in config.scenarios.items():
            pool = VirtualUserPool(name, sc.pre_allocated_vus, sc.max_vus)
            self.schedulers[name] = ArrivalRateScheduler(
                sc,
                registry,
                pool=pool,
                transport=transport,
                data=data,
                on_iteration=on_iteration,
            )

    async def run(self) -> None:
        """Run every scenario's issuing loop concurrently until all have stopped."""
        logger.info("Starting %d scenario(s): %s", len(self.schedulers), ", ".join(self.schedulers))
        results = await asyncio.gather(
            *(s.run() for s in self.schedulers.values()), return_exceptions=True
        )
        for name, res in zip(self.schedulers, results):
            if isinstance(res, BaseException):
                # A scheduler fault stops its siblings; the run controller reports it.
                self.stop_all()
                logger.error(f"Scenario {name} scheduler crashed: {res!r}")
                raise res

    def stop_all(self) -> None:
        for s in self.schedulers.values():
            s.stop()

    @property
    def in_flight(self) -> int:
        return sum(s.in_flight for s in self.schedulers.values())

    async def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for in-flight iterations of every scenario.

        Each scenario gets its own `graceful_stop` unless `timeout` overrides
        it. Returns the total number of iterations abandoned at the hard stop.
        """
        waits = [
            s.wait_in_flight(s.config.graceful_stop if timeout is None else timeout)
            for s in self.schedulers.values()
        ]
        abandoned: List[int] = list(await asyncio.gather(*waits))
        return sum(abandoned)

    def summaries(self) -> Dict[str, ScenarioSummary]:
        out: Dict[str, ScenarioSummary] = {}
        for name, s in self.schedulers.items():
            failed = self.registry.select(ITERATION_FAILED, {"scenario": name})
            pool = s.pool
            out[name] = ScenarioSummary(
                name=name,
                expected_starts=s.config.expected_starts,
                started=s.started,
                dropped=s.dropped,
                completed=s.completed,
                failed=s.failed,
                incomplete=s.incomplete,
                failure_rate=failed.rate if failed is not None else None,
                pre_allocated_vus=pool.pre_allocated,
                max_vus=pool.max_vus,
                allocated_vus=pool.allocated,
                peak_vus=pool.peak_in_use,
            )
        return out
