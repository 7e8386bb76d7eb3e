"""
Iteration context and the wrapper that executes iteration functions.

An iteration function is `async def fn(ctx: IterationContext) -> None`. It
performs its I/O through `ctx.http`, validates responses with `ctx.check`,
and records custom observations through `ctx.metrics`, which is already
tagged with the scenario name. The wrapper guarantees that nothing raised by
the function reaches the scheduler: any exception becomes a failed-iteration
observation.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional

from ...errors import IterationError
from ..metrics.registry import (
    CHECKS,
    ITERATION_DURATION,
    ITERATION_FAILED,
    ITERATIONS,
    ScopedMetrics,
)

if TYPE_CHECKING:  # pragma: no cover
    from ...transport.http import HttpResponse, HttpTransport

logger = logging.getLogger(__name__)


@dataclass
class IterationContext:
    """Everything one iteration may touch. Created per iteration, never shared."""

    scenario: str
    iteration: int
    vu: int
    metrics: ScopedMetrics
    http: Optional["HttpTransport"] = None
    data: Any = None
    scheduled_at: float = 0.0
    started_at: float = 0.0

    def check(
        self,
        value: Any,
        checks: Mapping[str, Callable[[Any], Any]],
        tags: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Run named predicates against `value`, recording each into the `checks` rate.

        A predicate that raises counts as a failed check. Returns True only if
        every predicate passed.
        """
        all_ok = True
        for name, predicate in checks.items():
            try:
                ok = bool(predicate(value))
            except Exception as e:
                logger.debug(f"Check '{name}' raised in scenario {self.scenario}: {e}")
                ok = False
            check_tags: Dict[str, Any] = {"check": name}
            if tags:
                check_tags.update(tags)
            self.metrics.add(CHECKS, ok, check_tags)
            all_ok = all_ok and ok
        return all_ok

    async def sleep(self, seconds: float) -> None:
        """Pacing delay between logical steps of an iteration."""
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def request(self, method: str, path: str, **kwargs: Any) -> "HttpResponse":
        if self.http is None:
            raise IterationError("No HTTP transport configured for this run")
        return await self.http.request(method, path, metrics=self.metrics, **kwargs)

    async def get(self, path: str, **kwargs: Any) -> "HttpResponse":
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> "HttpResponse":
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> "HttpResponse":
        return await self.request("PUT", path, **kwargs)


@dataclass(frozen=True)
class IterationOutcome:
    scenario: str
    iteration: int
    vu: int
    scheduled_at: float
    started_at: float
    finished_at: float
    failed: bool
    error: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        return (self.finished_at - self.started_at) * 1000.0

    @property
    def latency_ms(self) -> float:
        """Scheduled-start to completion, including any wait for a free VU."""
        return (self.finished_at - self.scheduled_at) * 1000.0


async def execute_iteration(
    fn: Callable[..., Any],
    ctx: IterationContext,
    clock: Callable[[], float] = time.monotonic,
) -> IterationOutcome:
    """
    Run `fn(ctx)` and record `iterations`, `iteration_duration` and
    `iteration_failed`.

    Exceptions are converted into a failed observation tagged with the
    exception class name. Cancellation (hard stop) is not an Exception and
    propagates, so abandoned iterations record nothing here.
    """
    started = clock()
    error: Optional[str] = None
    try:
        await _maybe_await(fn(ctx))
    except IterationError as e:
        error = type(e).__name__
        logger.debug(f"Iteration {ctx.scenario}#{ctx.iteration} failed: {e}")
    except Exception as e:
        error = type(e).__name__
        logger.warning(
            "Iteration %s#%d raised %s: %s", ctx.scenario, ctx.iteration, error, e, exc_info=True
        )
    finished = clock()

    duration_ms = (finished - started) * 1000.0
    ctx.metrics.add(ITERATIONS, 1)
    ctx.metrics.add(ITERATION_DURATION, duration_ms)
    ctx.metrics.add(ITERATION_FAILED, error is not None, {"error": error} if error else None)

    return IterationOutcome(
        scenario=ctx.scenario,
        iteration=ctx.iteration,
        vu=ctx.vu,
        scheduled_at=ctx.scheduled_at,
        started_at=started,
        finished_at=finished,
        failed=error is not None,
        error=error,
    )


async def _maybe_await(x: Any) -> Any:
    if inspect.isawaitable(x):
        return await x
    return x
