"""
Threshold evaluation against a run's metric registry.

Each threshold selects a metric by name and tag filter, reads one statistic
from the merged aggregator, and compares it with the declared bound. A
selector that matches no observations is reported as NO_DATA, which counts as
unmet for the verdict; it never passes silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from ...errors import ConfigError
from ..metrics.registry import MetricRegistry
from .parser import (
    STATS_BY_KIND,
    MetricSelector,
    ThresholdExpression,
    parse_expression,
    parse_selector,
)

if TYPE_CHECKING:  # pragma: no cover
    from ...config import ThresholdConfig

logger = logging.getLogger(__name__)


class ThresholdStatus(str, Enum):
    passed = "passed"
    failed = "failed"
    no_data = "no_data"


class ThresholdResult(BaseModel):
    """Outcome of one threshold at evaluation time."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    selector: str
    metric: str
    tags: Dict[str, str] = Field(default_factory=dict)
    expression: str
    observed: Optional[float] = None
    status: ThresholdStatus
    abort_on_fail: bool = False
    message: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status is ThresholdStatus.passed


@dataclass(frozen=True)
class Threshold:
    """A selector, an expression, and the abort options attached to them."""

    selector: MetricSelector
    expression: ThresholdExpression
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @classmethod
    def parse(
        cls,
        selector: str,
        expression: str,
        abort_on_fail: bool = False,
        delay_abort_eval: float = 0.0,
    ) -> "Threshold":
        return cls(
            selector=parse_selector(selector),
            expression=parse_expression(expression),
            abort_on_fail=bool(abort_on_fail),
            delay_abort_eval=float(delay_abort_eval),
        )


class ThresholdEvaluator:
    """Evaluates a fixed list of thresholds; safe to call repeatedly during a run."""

    def __init__(self, thresholds: Iterable[Threshold] = ()):
        self.thresholds: List[Threshold] = list(thresholds)

    @classmethod
    def from_config(
        cls, thresholds: Mapping[str, Sequence[Union["ThresholdConfig", str]]]
    ) -> "ThresholdEvaluator":
        parsed: List[Threshold] = []
        for selector, items in thresholds.items():
            for item in items:
                if isinstance(item, str):
                    parsed.append(Threshold.parse(selector, item))
                else:
                    parsed.append(
                        Threshold.parse(
                            selector,
                            item.threshold,
                            abort_on_fail=item.abort_on_fail,
                            delay_abort_eval=item.delay_abort_eval,
                        )
                    )
        return cls(parsed)

    @property
    def has_abort_thresholds(self) -> bool:
        return any(t.abort_on_fail for t in self.thresholds)

    def validate_kinds(self, registry: MetricRegistry) -> None:
        """
        Reject thresholds whose statistic does not exist for an already
        declared metric (e.g. p(95) on a rate). Undeclared metrics are left
        alone; they evaluate to NO_DATA unless something records into them.
        """
        errors: List[str] = []
        for t in self.thresholds:
            kind = registry.kind_of(t.selector.name)
            if kind is not None and not t.expression.supports(kind.value):
                allowed = ", ".join(STATS_BY_KIND[kind.value])
                errors.append(
                    f"'{t.expression.source}' on {kind.value} metric '{t.selector}' "
                    f"(allowed: {allowed})"
                )
        if errors:
            raise ConfigError("Invalid thresholds: " + "; ".join(errors))

    def evaluate(
        self, registry: MetricRegistry, elapsed_s: Optional[float] = None
    ) -> List[ThresholdResult]:
        if elapsed_s is None:
            elapsed_s = registry.elapsed()
        return [self.evaluate_one(t, registry, elapsed_s) for t in self.thresholds]

    def evaluate_one(
        self, threshold: Threshold, registry: MetricRegistry, elapsed_s: Optional[float] = None
    ) -> ThresholdResult:
        selector, expr = threshold.selector, threshold.expression
        base: Dict[str, Any] = {
            "selector": str(selector),
            "metric": selector.name,
            "tags": selector.tag_filter,
            "expression": expr.source,
            "abort_on_fail": threshold.abort_on_fail,
        }

        agg = registry.select(selector.name, selector.tag_filter)
        if agg is None or not agg.has_data:
            return ThresholdResult(
                **base,
                status=ThresholdStatus.no_data,
                message="no observations matched this selector",
            )

        if not expr.supports(agg.kind.value):
            return ThresholdResult(
                **base,
                status=ThresholdStatus.failed,
                message=f"statistic '{expr.label}' is not defined for {agg.kind.value} metrics",
            )

        observed = agg.stat(expr.stat, expr.percentile, elapsed_s)
        if observed is None:
            return ThresholdResult(
                **base,
                status=ThresholdStatus.no_data,
                message=f"statistic '{expr.label}' has no value yet",
            )

        status = ThresholdStatus.passed if expr.compare(observed) else ThresholdStatus.failed
        return ThresholdResult(**base, observed=float(observed), status=status)

    def abort_candidates(
        self, registry: MetricRegistry, run_elapsed_s: float
    ) -> List[ThresholdResult]:
        """
        Failed abort-on-fail thresholds whose evaluation delay has elapsed.

        NO_DATA never triggers an abort: early in a run most metrics are empty.
        """
        failing: List[ThresholdResult] = []
        for t in self.thresholds:
            if not t.abort_on_fail or run_elapsed_s < t.delay_abort_eval:
                continue
            result = self.evaluate_one(t, registry)
            if result.status is ThresholdStatus.failed:
                logger.warning(
                    "Threshold %s %s crossed (observed=%s); aborting run",
                    result.selector,
                    result.expression,
                    result.observed,
                )
                failing.append(result)
        return failing

    @staticmethod
    def verdict(results: Iterable[ThresholdResult]) -> bool:
        """AND of all thresholds; NO_DATA is unmet."""
        return all(r.status is ThresholdStatus.passed for r in results)
