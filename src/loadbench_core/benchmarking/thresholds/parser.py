"""
Parsing of threshold selectors and expressions.

Selectors name a metric and an optional exact-match tag filter:

    read_request_duration
    read_request_duration{scenario:read_scenario}
    http_req_duration{scenario=write_scenario,method:PUT}

Expressions compare one statistic of the selected metric with a number:

    p(95)<200      avg<=50      rate<0.01      count>=100

Both parsers raise ConfigError on malformed input so that bad declarations are
rejected while the run configuration is validated, before any traffic.
"""

from __future__ import annotations

import math
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from ...errors import ConfigError

_SELECTOR_RE = re.compile(r"^\s*(?P<name>[A-Za-z_][\w.\-]*)\s*(?:\{(?P<tags>[^{}]*)\})?\s*$")
_TAG_RE = re.compile(r"^\s*(?P<key>[A-Za-z_][\w.\-]*)\s*[:=]\s*(?P<value>.*?)\s*$")
_EXPR_RE = re.compile(
    r"^\s*(?P<stat>p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)|avg|min|max|med|count|sum|rate|value)"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<value>[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

# Statistic names each aggregator kind can answer.
STATS_BY_KIND: Dict[str, Tuple[str, ...]] = {
    "trend": ("p", "avg", "min", "max", "med", "count", "sum"),
    "rate": ("rate", "count"),
    "counter": ("count", "rate", "value"),
}


@dataclass(frozen=True)
class MetricSelector:
    """A metric name plus an exact-match tag filter."""

    name: str
    tags: Tuple[Tuple[str, str], ...] = ()

    @property
    def tag_filter(self) -> Dict[str, str]:
        return dict(self.tags)

    def matches(self, tags: Mapping[str, str]) -> bool:
        return all(tags.get(k) == v for k, v in self.tags)

    def __str__(self) -> str:
        if not self.tags:
            return self.name
        inner = ",".join(f"{k}:{v}" for k, v in self.tags)
        return f"{self.name}{{{inner}}}"


@dataclass(frozen=True)
class ThresholdExpression:
    """A parsed `<stat> <op> <number>` comparison."""

    source: str
    stat: str
    op: str
    value: float
    percentile: Optional[float] = None

    @property
    def label(self) -> str:
        if self.stat == "p":
            return f"p({_format_number(self.percentile)})"
        return self.stat

    def compare(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.value)

    def supports(self, kind: str) -> bool:
        return self.stat in STATS_BY_KIND.get(kind, ())

    def __str__(self) -> str:
        return f"{self.label}{self.op}{_format_number(self.value)}"


def parse_selector(text: str) -> MetricSelector:
    if not isinstance(text, str) or not text.strip():
        raise ConfigError("Threshold selector must be a non-empty string")
    m = _SELECTOR_RE.match(text)
    if m is None:
        raise ConfigError(f"Invalid threshold selector: {text!r}")

    raw_tags = m.group("tags")
    tags: Dict[str, str] = {}
    if raw_tags is not None:
        if not raw_tags.strip():
            raise ConfigError(f"Empty tag filter in selector: {text!r}")
        for part in raw_tags.split(","):
            tm = _TAG_RE.match(part)
            if tm is None or not tm.group("value"):
                raise ConfigError(f"Invalid tag filter {part!r} in selector {text!r}")
            key = tm.group("key")
            if key in tags:
                raise ConfigError(f"Duplicate tag {key!r} in selector {text!r}")
            tags[key] = tm.group("value")
    return MetricSelector(name=m.group("name"), tags=tuple(sorted(tags.items())))


def parse_expression(text: str) -> ThresholdExpression:
    if not isinstance(text, str) or not text.strip():
        raise ConfigError("Threshold expression must be a non-empty string")
    m = _EXPR_RE.match(text)
    if m is None:
        raise ConfigError(
            f"Invalid threshold expression {text!r}; expected e.g. 'p(95)<200' or 'rate<0.01'"
        )

    value = float(m.group("value"))
    if not math.isfinite(value):
        raise ConfigError(f"Threshold value must be finite: {text!r}")

    stat = m.group("stat")
    percentile: Optional[float] = None
    if stat.startswith("p("):
        percentile = float(m.group("pct"))
        if not 0.0 <= percentile <= 100.0:
            raise ConfigError(f"Percentile must be within [0, 100]: {text!r}")
        stat = "p"

    return ThresholdExpression(
        source=text.strip(), stat=stat, op=m.group("op"), value=value, percentile=percentile
    )


def _format_number(x: Optional[float]) -> str:
    if x is None:
        return ""
    return str(int(x)) if float(x).is_integer() else repr(float(x))
