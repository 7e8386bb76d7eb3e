"""
Bounded-memory quantile estimation for Trend metrics.

LogLinearHistogram buckets samples on a logarithmic grid so that every
bucket's representative value is within `relative_error` of any sample that
landed in it. Memory grows with the dynamic range of the data (a few hundred
buckets for microseconds-to-minutes latencies), not with the sample count.
"""

from __future__ import annotations

import math
from typing import Dict, Iterator, Optional, Tuple


class LogLinearHistogram:
    """
    Logarithmic bucket histogram with bounded relative error.

    Samples smaller than `min_value` (including exact zeros) are counted in a
    dedicated zero bucket whose representative value is 0.0.
    """

    def __init__(self, relative_error: float = 0.01, min_value: float = 1e-9):
        if not 0.0 < relative_error < 1.0:
            raise ValueError("relative_error must be within (0, 1)")
        if min_value <= 0.0:
            raise ValueError("min_value must be > 0")
        self.relative_error = relative_error
        self.min_value = min_value
        self._gamma = (1.0 + relative_error) / (1.0 - relative_error)
        self._log_gamma = math.log(self._gamma)
        self._buckets: Dict[int, int] = {}
        self._zero_count = 0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def bucket_count(self) -> int:
        return len(self._buckets) + (1 if self._zero_count else 0)

    def add(self, value: float, count: int = 1) -> None:
        if value < 0 or math.isnan(value):
            raise ValueError(f"Histogram values must be non-negative, got {value!r}")
        if count <= 0:
            return
        if value < self.min_value:
            self._zero_count += count
        else:
            idx = self._index(value)
            self._buckets[idx] = self._buckets.get(idx, 0) + count
        self._count += count

    def merge(self, other: "LogLinearHistogram") -> None:
        if not math.isclose(self._gamma, other._gamma) or self.min_value != other.min_value:
            raise ValueError("Cannot merge histograms with different bucket layouts")
        for idx, c in other._buckets.items():
            self._buckets[idx] = self._buckets.get(idx, 0) + c
        self._zero_count += other._zero_count
        self._count += other._count

    def copy(self) -> "LogLinearHistogram":
        clone = LogLinearHistogram(self.relative_error, self.min_value)
        clone.merge(self)
        return clone

    def quantile(self, q: float) -> Optional[float]:
        """
        Estimate the q-quantile, q in [0, 1].

        The zero-based rank q * (n - 1) is interpolated linearly between the
        bucket values of the order statistics either side of it.
        Returns None when the histogram is empty.
        """
        if not 0.0 <= q <= 1.0:
            raise ValueError("q must be within [0, 1]")
        if self._count == 0:
            return None

        rank = q * (self._count - 1)
        lo_rank = math.floor(rank)
        hi_rank = min(lo_rank + 1, self._count - 1)
        lo = hi = None
        cumulative = 0
        for value, c in self._iter_buckets():
            cumulative += c
            if lo is None and cumulative > lo_rank:
                lo = value
            if cumulative > hi_rank:
                hi = value
                break
        if lo is None or hi is None:
            # Float rounding on the last bucket
            last = self._value(max(self._buckets)) if self._buckets else 0.0
            lo = last if lo is None else lo
            hi = last
        return lo + (hi - lo) * (rank - lo_rank)

    def _iter_buckets(self) -> Iterator[Tuple[float, int]]:
        if self._zero_count:
            yield 0.0, self._zero_count
        for idx in sorted(self._buckets):
            yield self._value(idx), self._buckets[idx]

    def _index(self, value: float) -> int:
        return int(math.ceil(math.log(value) / self._log_gamma))

    def _value(self, idx: int) -> float:
        return 2.0 * (self._gamma**idx) / (self._gamma + 1.0)
