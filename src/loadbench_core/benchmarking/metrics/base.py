"""
Streaming metric aggregators.

Three reduction semantics share one capability, `record(value)`:

- TrendAggregator: non-negative numeric samples (e.g. durations in ms) with
  count/sum/min/max and bounded-error quantiles.
- RateAggregator: boolean samples, exposing the fraction that were true.
- CounterAggregator: positive increments, exposing a never-decreasing total.

Every aggregator guards its state with a lock, so concurrent writers never
lose writes and `snapshot()` never observes a half-applied sample. State is
append-only for the lifetime of a run.
"""

from __future__ import annotations

import abc
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .statistical import LogLinearHistogram


class MetricKind(str, Enum):
    trend = "trend"
    rate = "rate"
    counter = "counter"


@dataclass
class MetricSnapshot:
    """Point-in-time view of one aggregator (one metric series, or a merge of several)."""

    name: str
    kind: MetricKind
    tags: Dict[str, str] = field(default_factory=dict)
    values: Dict[str, Optional[float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "tags": dict(self.tags),
            "values": dict(self.values),
        }


class BaseAggregator(abc.ABC):
    """Abstract base for all aggregators."""

    kind: MetricKind

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    @abc.abstractmethod
    def count(self) -> int:
        """Number of observations recorded so far."""

    @property
    def has_data(self) -> bool:
        return self.count > 0

    @abc.abstractmethod
    def record(self, value: Any) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def merge(self, other: "BaseAggregator") -> None:
        """Fold another aggregator of the same kind into this one."""

    @abc.abstractmethod
    def copy(self) -> "BaseAggregator":
        raise NotImplementedError

    @abc.abstractmethod
    def values(self, elapsed_s: Optional[float] = None) -> Dict[str, Optional[float]]:
        """Statistic name -> value, read atomically."""

    def stat(
        self, name: str, percentile: Optional[float] = None, elapsed_s: Optional[float] = None
    ) -> Optional[float]:
        """
        Return one statistic by threshold name, or None when there is no data.

        `percentile` is only used for the trend statistic "p".
        """
        return self.values(elapsed_s).get(name)

    def snapshot(
        self, name: str, tags: Optional[Dict[str, str]] = None, elapsed_s: Optional[float] = None
    ) -> MetricSnapshot:
        return MetricSnapshot(
            name=name, kind=self.kind, tags=dict(tags or {}), values=self.values(elapsed_s)
        )

    def _same_kind(self, other: "BaseAggregator") -> Any:
        if other.kind is not self.kind or not isinstance(other, type(self)):
            raise TypeError(f"Cannot merge {other.kind.value} into {self.kind.value}")
        return other


class TrendAggregator(BaseAggregator):
    """Numeric samples with exact count/sum/min/max and histogram quantiles."""

    kind = MetricKind.trend
    summary_percentiles = (90.0, 95.0, 99.0)

    def __init__(self, relative_error: float = 0.01):
        super().__init__()
        self._relative_error = relative_error
        self._hist = LogLinearHistogram(relative_error=relative_error)
        self._count = 0
        self._sum = 0.0
        self._min: Optional[float] = None
        self._max: Optional[float] = None

    @property
    def count(self) -> int:
        return self._count

    def record(self, value: Any) -> None:
        if isinstance(value, bool):
            raise TypeError("Trend metrics take numeric samples, not booleans")
        v = float(value)
        if math.isnan(v) or v < 0:
            raise ValueError(f"Trend samples must be non-negative numbers, got {value!r}")
        with self._lock:
            self._hist.add(v)
            self._count += 1
            self._sum += v
            self._min = v if self._min is None else min(self._min, v)
            self._max = v if self._max is None else max(self._max, v)

    def merge(self, other: BaseAggregator) -> None:
        other = self._same_kind(other)
        with other._lock:
            hist = other._hist.copy()
            count, total, lo, hi = other._count, other._sum, other._min, other._max
        if count == 0:
            return
        with self._lock:
            self._hist.merge(hist)
            self._count += count
            self._sum += total
            self._min = lo if self._min is None else min(self._min, lo)
            self._max = hi if self._max is None else max(self._max, hi)

    def copy(self) -> "TrendAggregator":
        clone = TrendAggregator(self._relative_error)
        clone.merge(self)
        return clone

    def quantile(self, percentile: float) -> Optional[float]:
        """Percentile in [0, 100]; p(0) is the exact min and p(100) the exact max."""
        if not 0.0 <= percentile <= 100.0:
            raise ValueError("percentile must be within [0, 100]")
        with self._lock:
            return self._quantile_locked(percentile)

    def _quantile_locked(self, percentile: float) -> Optional[float]:
        if self._count == 0:
            return None
        if percentile <= 0.0:
            return self._min
        if percentile >= 100.0:
            return self._max
        estimate = self._hist.quantile(percentile / 100.0)
        return min(max(estimate, self._min), self._max)

    def stat(
        self, name: str, percentile: Optional[float] = None, elapsed_s: Optional[float] = None
    ) -> Optional[float]:
        if name == "p":
            if percentile is None:
                raise ValueError("percentile is required for the 'p' statistic")
            return self.quantile(percentile)
        return super().stat(name, percentile, elapsed_s)

    def values(self, elapsed_s: Optional[float] = None) -> Dict[str, Optional[float]]:
        with self._lock:
            out: Dict[str, Optional[float]] = {
                "count": self._count,
                "sum": self._sum,
                "avg": (self._sum / self._count) if self._count else None,
                "min": self._min,
                "max": self._max,
                "med": self._quantile_locked(50.0),
            }
            for p in self.summary_percentiles:
                out[f"p({int(p)})"] = self._quantile_locked(p)
        return out


class RateAggregator(BaseAggregator):
    """Boolean samples; `rate` is None ("no data") until something is recorded."""

    kind = MetricKind.rate

    def __init__(self) -> None:
        super().__init__()
        self._trues = 0
        self._total = 0

    @property
    def count(self) -> int:
        return self._total

    @property
    def true_count(self) -> int:
        return self._trues

    @property
    def false_count(self) -> int:
        with self._lock:
            return self._total - self._trues

    @property
    def rate(self) -> Optional[float]:
        with self._lock:
            return (self._trues / self._total) if self._total else None

    def record(self, value: Any) -> None:
        hit = bool(value)
        with self._lock:
            self._total += 1
            if hit:
                self._trues += 1

    def merge(self, other: BaseAggregator) -> None:
        other = self._same_kind(other)
        with other._lock:
            trues, total = other._trues, other._total
        with self._lock:
            self._trues += trues
            self._total += total

    def copy(self) -> "RateAggregator":
        clone = RateAggregator()
        clone.merge(self)
        return clone

    def values(self, elapsed_s: Optional[float] = None) -> Dict[str, Optional[float]]:
        with self._lock:
            return {
                "count": self._total,
                "passes": self._trues,
                "fails": self._total - self._trues,
                "rate": (self._trues / self._total) if self._total else None,
            }


class CounterAggregator(BaseAggregator):
    """Monotonically increasing total; `rate` is total per second of elapsed run time."""

    kind = MetricKind.counter

    def __init__(self) -> None:
        super().__init__()
        self._total = 0.0
        self._observations = 0

    @property
    def count(self) -> int:
        return self._observations

    @property
    def total(self) -> float:
        with self._lock:
            return self._total

    def record(self, value: Any = 1) -> None:
        if isinstance(value, bool):
            value = int(value)
        v = float(value)
        if math.isnan(v) or v < 0:
            raise ValueError(f"Counter increments must be non-negative, got {value!r}")
        with self._lock:
            self._total += v
            self._observations += 1

    def merge(self, other: BaseAggregator) -> None:
        other = self._same_kind(other)
        with other._lock:
            total, obs = other._total, other._observations
        with self._lock:
            self._total += total
            self._observations += obs

    def copy(self) -> "CounterAggregator":
        clone = CounterAggregator()
        clone.merge(self)
        return clone

    def values(self, elapsed_s: Optional[float] = None) -> Dict[str, Optional[float]]:
        with self._lock:
            total, obs = self._total, self._observations
        rate = (total / elapsed_s) if (obs and elapsed_s and elapsed_s > 0) else None
        # "count" and "value" are both the running total
        return {"count": total, "value": total, "rate": rate, "observations": obs}


def create_aggregator(kind: MetricKind, relative_error: float = 0.01) -> BaseAggregator:
    kind = MetricKind(kind)
    if kind is MetricKind.trend:
        return TrendAggregator(relative_error=relative_error)
    if kind is MetricKind.rate:
        return RateAggregator()
    return CounterAggregator()
