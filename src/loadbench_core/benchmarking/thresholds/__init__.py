"""Threshold parsing and evaluation."""

from .evaluator import Threshold, ThresholdEvaluator, ThresholdResult, ThresholdStatus
from .parser import MetricSelector, ThresholdExpression, parse_expression, parse_selector

__all__ = [
    "MetricSelector",
    "Threshold",
    "ThresholdEvaluator",
    "ThresholdExpression",
    "ThresholdResult",
    "ThresholdStatus",
    "parse_expression",
    "parse_selector",
]
