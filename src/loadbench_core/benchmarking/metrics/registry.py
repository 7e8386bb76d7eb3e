"""
Run-scoped metric registry.

A MetricRegistry owns every aggregator of one run. Series are keyed by
(metric name, tag set); a metric name is bound to exactly one MetricKind the
first time it is declared. There is no process-wide registry: the run
controller creates one registry per run and hands scoped handles to
iterations explicitly.

Typical use from an iteration function:

    duration = ctx.metrics.trend("read_request_duration")
    duration.add(12.5)                        # tagged with the scenario
    ctx.metrics.rate("cache_hit_rate").add(True, {"endpoint": "get"})
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ...errors import ConfigError
from .base import BaseAggregator, MetricKind, MetricSnapshot, create_aggregator

TagSet = Tuple[Tuple[str, str], ...]

# Metrics recorded by the engine and the HTTP transport.
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
ITERATION_FAILED = "iteration_failed"
DROPPED_ITERATIONS = "dropped_iterations"
INCOMPLETE_ITERATIONS = "incomplete_iterations"
CHECKS = "checks"
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"

BUILTIN_METRICS: Dict[str, MetricKind] = {
    ITERATIONS: MetricKind.counter,
    ITERATION_DURATION: MetricKind.trend,
    ITERATION_FAILED: MetricKind.rate,
    DROPPED_ITERATIONS: MetricKind.counter,
    INCOMPLETE_ITERATIONS: MetricKind.counter,
    CHECKS: MetricKind.rate,
    HTTP_REQS: MetricKind.counter,
    HTTP_REQ_DURATION: MetricKind.trend,
    HTTP_REQ_FAILED: MetricKind.rate,
}


def freeze_tags(tags: Optional[Mapping[str, Any]]) -> TagSet:
    if not tags:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))


class MetricRegistry:
    """Owns all metric series of a single run."""

    def __init__(
        self,
        relative_error: float = 0.01,
        clock: Callable[[], float] = time.monotonic,
        declare_builtins: bool = True,
    ) -> None:
        self._lock = threading.Lock()
        self._relative_error = relative_error
        self._clock = clock
        self._started_at = clock()
        self._kinds: Dict[str, MetricKind] = {}
        self._series: Dict[str, Dict[TagSet, BaseAggregator]] = {}
        if declare_builtins:
            for name, kind in BUILTIN_METRICS.items():
                self.declare(name, kind)

    # Declaration ---------------------------------------------------------------
    def declare(self, name: str, kind: MetricKind) -> MetricKind:
        """Bind `name` to `kind`. Re-declaring with the same kind is a no-op."""
        if not isinstance(name, str) or not name:
            raise ConfigError("Metric name must be a non-empty string")
        kind = MetricKind(kind)
        with self._lock:
            existing = self._kinds.get(name)
            if existing is not None and existing is not kind:
                raise ConfigError(
                    f"Metric '{name}' is already declared as {existing.value}, not {kind.value}"
                )
            self._kinds[name] = kind
            self._series.setdefault(name, {})
        return kind

    def kind_of(self, name: str) -> Optional[MetricKind]:
        with self._lock:
            return self._kinds.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._kinds)

    def trend(self, name: str) -> "MetricHandle":
        return MetricHandle(self, name, self.declare(name, MetricKind.trend))

    def rate(self, name: str) -> "MetricHandle":
        return MetricHandle(self, name, self.declare(name, MetricKind.rate))

    def counter(self, name: str) -> "MetricHandle":
        return MetricHandle(self, name, self.declare(name, MetricKind.counter))

    # Recording -----------------------------------------------------------------
    def add(self, name: str, value: Any, tags: Optional[Mapping[str, Any]] = None) -> None:
        """Record one observation into the (name, tags) series."""
        key = freeze_tags(tags)
        with self._lock:
            kind = self._kinds.get(name)
            if kind is None:
                raise KeyError(f"Metric '{name}' has not been declared")
            series = self._series[name]
            agg = series.get(key)
            if agg is None:
                agg = create_aggregator(kind, self._relative_error)
                series[key] = agg
        # Aggregators carry their own lock; the registry lock only guards the maps.
        agg.record(value)

    def scoped(self, tags: Optional[Mapping[str, Any]] = None, **extra: Any) -> "ScopedMetrics":
        base = dict(tags or {})
        base.update(extra)
        return ScopedMetrics(self, base)

    # Reading -------------------------------------------------------------------
    def restart_clock(self) -> None:
        self._started_at = self._clock()

    def elapsed(self) -> float:
        return max(self._clock() - self._started_at, 0.0)

    def series(self, name: str) -> Dict[TagSet, BaseAggregator]:
        with self._lock:
            return dict(self._series.get(name, {}))

    def select(
        self, name: str, tag_filter: Optional[Mapping[str, str]] = None
    ) -> Optional[BaseAggregator]:
        """
        Merge every series of `name` whose tags contain `tag_filter`.

        Returns None when the metric was never declared; otherwise a fresh
        aggregator (possibly empty) that does not alias registry state.
        """
        with self._lock:
            kind = self._kinds.get(name)
            if kind is None:
                return None
            candidates = list(self._series.get(name, {}).items())
        wanted = dict(tag_filter or {})
        merged = create_aggregator(kind, self._relative_error)
        for key, agg in candidates:
            tags = dict(key)
            if all(tags.get(k) == v for k, v in wanted.items()):
                merged.merge(agg)
        return merged

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Every metric's merged totals plus its per-tag-set series."""
        elapsed = self.elapsed()
        out: Dict[str, Dict[str, Any]] = {}
        for name in self.names():
            kind = self.kind_of(name)
            total = self.select(name)
            series: List[MetricSnapshot] = [
                agg.snapshot(name, dict(key), elapsed) for key, agg in self.series(name).items()
            ]
            out[name] = {
                "kind": kind.value if kind else None,
                "values": total.values(elapsed) if total is not None else {},
                "series": [s.to_dict() for s in series],
            }
        return out


class MetricHandle:
    """A declared metric bound to a registry and a set of default tags."""

    def __init__(
        self,
        registry: MetricRegistry,
        name: str,
        kind: MetricKind,
        tags: Optional[Mapping[str, Any]] = None,
    ):
        self.registry = registry
        self.name = name
        self.kind = kind
        self._tags = dict(tags or {})

    def add(self, value: Any = 1, tags: Optional[Mapping[str, Any]] = None) -> None:
        merged = dict(self._tags)
        if tags:
            merged.update(tags)
        self.registry.add(self.name, value, merged)

    def __repr__(self) -> str:
        return f"MetricHandle(name={self.name!r}, kind={self.kind.value}, tags={self._tags!r})"


class ScopedMetrics:
    """
    Registry view that stamps a fixed tag set (always including the scenario)
    onto every observation. Per-call tags override the scoped ones.
    """

    def __init__(self, registry: MetricRegistry, tags: Mapping[str, Any]):
        self.registry = registry
        self.tags: Dict[str, str] = {str(k): str(v) for k, v in tags.items()}

    def add(self, name: str, value: Any, tags: Optional[Mapping[str, Any]] = None) -> None:
        merged: Dict[str, Any] = dict(self.tags)
        if tags:
            merged.update(tags)
        self.registry.add(name, value, merged)

    def trend(self, name: str) -> MetricHandle:
        return self._handle(name, MetricKind.trend)

    def rate(self, name: str) -> MetricHandle:
        return self._handle(name, MetricKind.rate)

    def counter(self, name: str) -> MetricHandle:
        return self._handle(name, MetricKind.counter)

    def _handle(self, name: str, kind: MetricKind) -> MetricHandle:
        return MetricHandle(self.registry, name, self.registry.declare(name, kind), self.tags)

    def with_tags(self, **extra: Any) -> "ScopedMetrics":
        merged: Dict[str, Any] = dict(self.tags)
        merged.update(extra)
        return ScopedMetrics(self.registry, merged)
