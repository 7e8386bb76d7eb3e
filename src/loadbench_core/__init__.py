"""
loadbench_core: open-model load generation with streaming metrics and
threshold-based pass/fail verdicts.

    from loadbench_core import build_run_config, run_benchmark

    async def hit(ctx):
        resp = await ctx.get("/health")
        ctx.check(resp, {"status is 200": lambda r: r.status == 200})

    config = build_run_config({
        "baseUrl": "http://localhost:8080",
        "scenarios": {"smoke": {"rate": 10, "duration": "10s", "preAllocatedVUs": 5, "exec": hit}},
        "thresholds": {"http_req_duration": ["p(95)<200"]},
    })
    report = await run_benchmark(config)
"""

from .benchmarking.engine import (
    ArrivalRateScheduler,
    Engine,
    IterationContext,
    RunController,
    RunReport,
    RunStatus,
    ScenarioOrchestrator,
    ScenarioSummary,
    VirtualUserPool,
    run_benchmark,
)
from .benchmarking.metrics import MetricKind, MetricRegistry
from .benchmarking.thresholds import ThresholdEvaluator, ThresholdResult, ThresholdStatus
from .config import (
    ExhaustionPolicy,
    RunConfig,
    ScenarioConfig,
    ThresholdConfig,
    build_run_config,
    load_run_config,
)
from .errors import (
    CheckFailure,
    ConfigError,
    IterationError,
    LoadBenchError,
    PoolExhausted,
    TransportFailure,
)
from .transport import HttpResponse, HttpTransport

__version__ = "0.1.0"

__all__ = [
    "ArrivalRateScheduler",
    "CheckFailure",
    "ConfigError",
    "Engine",
    "ExhaustionPolicy",
    "HttpResponse",
    "HttpTransport",
    "IterationContext",
    "IterationError",
    "LoadBenchError",
    "MetricKind",
    "MetricRegistry",
    "PoolExhausted",
    "RunConfig",
    "RunController",
    "RunReport",
    "RunStatus",
    "ScenarioConfig",
    "ScenarioOrchestrator",
    "ScenarioSummary",
    "ThresholdConfig",
    "ThresholdEvaluator",
    "ThresholdResult",
    "ThresholdStatus",
    "TransportFailure",
    "VirtualUserPool",
    "build_run_config",
    "load_run_config",
    "run_benchmark",
]
