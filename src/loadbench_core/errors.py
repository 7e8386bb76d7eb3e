"""Error taxonomy for loadbench_core.

Only ConfigError is fatal to a run. Everything raised inside an iteration is
converted into a failure observation by the iteration wrapper, and
PoolExhausted is handled by the scheduler according to its exhaustion policy.
"""

from __future__ import annotations

from typing import Optional


class LoadBenchError(Exception):
    """Base class for all engine errors."""


class ConfigError(LoadBenchError, ValueError):
    """Malformed scenario or threshold declaration; aborts before any traffic.

    Subclasses ValueError so that raising it inside a pydantic validator is
    reported as a regular validation error.
    """


class PoolExhausted(LoadBenchError):
    """No free virtual-user slot and the pool is already at its maximum."""

    def __init__(self, scenario: str, max_vus: int):
        super().__init__(f"Scenario '{scenario}' has no free VU (max_vus={max_vus})")
        self.scenario = scenario
        self.max_vus = max_vus


class IterationError(LoadBenchError):
    """An iteration-local failure. Recorded, never propagated to the scheduler."""


class TransportFailure(IterationError):
    """The I/O call itself errored or timed out."""

    def __init__(
        self,
        message: str,
        *,
        method: Optional[str] = None,
        url: Optional[str] = None,
        duration_ms: Optional[float] = None,
    ):
        super().__init__(message)
        self.method = method
        self.url = url
        self.duration_ms = duration_ms


class CheckFailure(IterationError):
    """A response arrived but failed a correctness check."""

    def __init__(self, message: str, failed_checks: Optional[list] = None):
        super().__init__(message)
        self.failed_checks = list(failed_checks or [])


__all__ = [
    "LoadBenchError",
    "ConfigError",
    "PoolExhausted",
    "IterationError",
    "TransportFailure",
    "CheckFailure",
]
