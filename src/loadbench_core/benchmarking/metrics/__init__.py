"""Streaming metric aggregators and the run-scoped registry."""

from .base import (
    BaseAggregator,
    CounterAggregator,
    MetricKind,
    MetricSnapshot,
    RateAggregator,
    TrendAggregator,
    create_aggregator,
)
from .registry import BUILTIN_METRICS, MetricHandle, MetricRegistry, ScopedMetrics
from .statistical import LogLinearHistogram

__all__ = [
    "BUILTIN_METRICS",
    "BaseAggregator",
    "CounterAggregator",
    "LogLinearHistogram",
    "MetricHandle",
    "MetricKind",
    "MetricRegistry",
    "MetricSnapshot",
    "RateAggregator",
    "ScopedMetrics",
    "TrendAggregator",
    "create_aggregator",
]
