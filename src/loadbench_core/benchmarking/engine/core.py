"""
Run controller.

The Engine owns one run end to end:

    validate thresholds -> setup hook -> scenarios (+ abort watcher, max_duration cap)
        -> drain in-flight iterations -> teardown hook -> evaluate thresholds -> RunReport

Configuration errors surface as ConfigError before any traffic is generated.
Everything that happens inside iterations is recorded as metrics; the only
run-level failure modes are a failing setup hook and a crashed scheduler.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from ...config import RunConfig, build_run_config
from ...transport.http import HttpTransport
from ..metrics.registry import MetricRegistry
from ..thresholds.evaluator import ThresholdEvaluator, ThresholdResult, ThresholdStatus
from .context import IterationContext, _maybe_await
from .models import RunReport, RunStatus
from .orchestrator import ScenarioOrchestrator

logger = logging.getLogger(__name__)


class Engine:
    """
    Executes a RunConfig and produces a RunReport.

    An Engine is single-use: `run()` may be awaited once. Pass `transport` to
    reuse an existing HttpTransport (or a test double); otherwise one is
    created from `config.base_url` when set and closed at the end of the run.
    """

    def __init__(
        self,
        config: RunConfig,
        transport: Any = None,
        registry: Optional[MetricRegistry] = None,
    ):
        self.config = config
        self.registry = registry or MetricRegistry(relative_error=config.trend_relative_error)
        self.evaluator = ThresholdEvaluator.from_config(config.thresholds)
        self.run_id = uuid.uuid4().hex[:12]
        self._transport = transport
        self._owns_transport = False
        self._orchestrator: Optional[ScenarioOrchestrator] = None
        self._abort_results: List[ThresholdResult] = []
        self._started = False

    @property
    def orchestrator(self) -> Optional[ScenarioOrchestrator]:
        return self._orchestrator

    def stop(self) -> None:
        """Stop issuing new starts in every scenario (graceful stop follows)."""
        if self._orchestrator is not None:
            self._orchestrator.stop_all()

    async def run(self) -> RunReport:
        if self._started:
            raise RuntimeError("Engine.run() can only be called once")
        self._started = True

        # Fail fast on declarations, before any traffic.
        for name, kind in self.config.metrics.items():
            self.registry.declare(name, kind)
        self.evaluator.validate_kinds(self.registry)

        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        status = RunStatus.completed
        error: Optional[str] = None
        abort_reason: Optional[str] = None

        transport = self._open_transport()
        try:
            data: Any = None
            setup_ok = True
            if self.config.setup is not None:
                try:
                    data = await _maybe_await(self.config.setup(self._hook_context("setup", transport)))
                except Exception as e:
                    logger.error(f"Setup hook failed, no scenarios will run: {e}", exc_info=True)
                    status = RunStatus.failed
                    error = f"setup failed: {type(e).__name__}: {e}"
                    setup_ok = False

            if setup_ok:
                status, error, abort_reason = await self._execute(transport, data)
                if self.config.teardown is not None:
                    try:
                        await _maybe_await(
                            self.config.teardown(self._hook_context("teardown", transport, data))
                        )
                    except Exception as e:
                        logger.error(f"Teardown hook failed: {e}", exc_info=True)
                        error = error or f"teardown failed: {type(e).__name__}: {e}"
        finally:
            await self._close_transport(transport)

        results = self.evaluator.evaluate(self.registry)
        passed = status is not RunStatus.failed and ThresholdEvaluator.verdict(results)
        for r in results:
            if r.status is ThresholdStatus.no_data:
                logger.warning("Threshold %s %s had no data", r.selector, r.expression)
            elif r.status is ThresholdStatus.failed:
                logger.warning(
                    "Threshold %s %s failed (observed=%s)", r.selector, r.expression, r.observed
                )

        report = RunReport(
            run_id=self.run_id,
            status=status,
            passed=passed,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration_s=time.monotonic() - t0,
            abort_reason=abort_reason,
            error=error,
            thresholds=results,
            scenarios=self._orchestrator.summaries() if self._orchestrator else {},
            metrics=self.registry.snapshot(),
            config=self.config.describe(),
        )
        logger.info(
            "Run %s finished: %s, verdict %s (%d/%d thresholds passed)",
            self.run_id,
            status.value,
            "PASS" if passed else "FAIL",
            sum(1 for r in results if r.passed),
            len(results),
        )
        return report

    # ---------------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------------
    async def _execute(self, transport: Any, data: Any):
        """Run all scenarios, returning (status, error, abort_reason)."""
        orch = ScenarioOrchestrator(self.config, self.registry, transport=transport, data=data)
        self._orchestrator = orch
        self.registry.restart_clock()

        loop = asyncio.get_running_loop()
        run_task = loop.create_task(orch.run())
        watcher: Optional[asyncio.Task] = None
        if self.evaluator.has_abort_thresholds:
            watcher = loop.create_task(self._watch_thresholds(orch))

        status = RunStatus.completed
        error: Optional[str] = None
        abort_reason: Optional[str] = None
        try:
            waiters = {run_task} if watcher is None else {run_task, watcher}
            done, _ = await asyncio.wait(
                waiters, timeout=self.config.max_duration, return_when=asyncio.FIRST_COMPLETED
            )
            if run_task not in done:
                orch.stop_all()
                if watcher is not None and watcher in done and watcher.exception() is not None:
                    exc = watcher.exception()
                    logger.error(f"Threshold watcher crashed: {exc!r}")
                    status = RunStatus.failed
                    error = f"threshold watcher failed: {type(exc).__name__}: {exc}"
                elif watcher is not None and watcher in done:
                    status = RunStatus.aborted
                    abort_reason = "; ".join(
                        f"{r.selector} {r.expression} (observed={r.observed})"
                        for r in self._abort_results
                    )
                else:
                    logger.warning(
                        "Run %s reached max_duration=%.3gs; stopping scenarios",
                        self.run_id,
                        self.config.max_duration or 0.0,
                    )
            try:
                await run_task
            except Exception as e:
                status = RunStatus.failed
                error = f"scheduler failed: {type(e).__name__}: {e}"
        finally:
            if watcher is not None and not watcher.done():
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)

        abandoned = await orch.drain()
        if abandoned:
            logger.info("Run %s abandoned %d in-flight iteration(s) at hard stop", self.run_id, abandoned)
        return status, error, abort_reason

    async def _watch_thresholds(self, orch: ScenarioOrchestrator) -> None:
        interval = self.config.threshold_check_interval
        while True:
            await asyncio.sleep(interval)
            failing = self.evaluator.abort_candidates(self.registry, self.registry.elapsed())
            if failing:
                self._abort_results = failing
                orch.stop_all()
                return

    def _hook_context(self, name: str, transport: Any, data: Any = None) -> IterationContext:
        return IterationContext(
            scenario=name,
            iteration=0,
            vu=0,
            metrics=self.registry.scoped(scenario=name),
            http=transport,
            data=data,
        )

    def _open_transport(self) -> Any:
        if self._transport is not None or not self.config.base_url:
            return self._transport
        self._owns_transport = True
        return HttpTransport(self.config.base_url, timeout=self.config.http_timeout)

    async def _close_transport(self, transport: Any) -> None:
        if self._owns_transport and transport is not None:
            await transport.aclose()


RunController = Engine


async def run_benchmark(
    config: Union[Dict[str, Any], RunConfig], transport: Any = None
) -> RunReport:
    """Validate `config` (raising ConfigError) and run it to completion."""
    cfg = build_run_config(config)
    return await Engine(cfg, transport=transport).run()
