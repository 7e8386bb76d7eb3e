"""Open-model execution: VU pools, arrival-rate schedulers, and the run controller."""

from .context import IterationContext, IterationOutcome, execute_iteration
from .core import Engine, RunController, run_benchmark
from .models import RunReport, RunStatus, ScenarioSummary
from .orchestrator import ScenarioOrchestrator
from .pool import VirtualUser, VirtualUserPool
from .scheduler import ArrivalRateScheduler

__all__ = [
    "ArrivalRateScheduler",
    "Engine",
    "IterationContext",
    "IterationOutcome",
    "RunController",
    "RunReport",
    "RunStatus",
    "ScenarioOrchestrator",
    "ScenarioSummary",
    "VirtualUser",
    "VirtualUserPool",
    "execute_iteration",
    "run_benchmark",
]
