"""
Run configuration for loadbench_core.

A run is declared as a RunConfig: named scenarios, each with its own
arrival-rate schedule and iteration function, plus a global threshold map
keyed by metric selector. Everything is validated (and iteration references
resolved) while the config is built, so a malformed declaration fails with
ConfigError before any traffic is generated.

Field names follow Python conventions; the k6 spellings (`timeUnit`,
`preAllocatedVUs`, `maxVUs`, `startTime`, `gracefulStop`, `abortOnFail`,
`delayAbortEval`) are accepted as aliases so existing option blocks can be
loaded unchanged from YAML.
"""

from __future__ import annotations

import importlib
import math
import re
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .benchmarking.metrics.base import MetricKind
from .benchmarking.thresholds.parser import parse_expression, parse_selector
from .errors import ConfigError

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|s|m|h)")
_UNIT_SECONDS = {"us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Convert a duration to seconds.

    Numbers are taken as seconds. Strings use k6 notation and may chain
    units: "500ms", "1s", "1m30s", "2h".
    """
    if isinstance(value, bool):
        raise ValueError("Duration must be a number of seconds or a string like '1m30s'")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported duration value: {value!r}")

    text = value.strip().replace(" ", "")
    if not text:
        raise ValueError("Duration string must not be empty")
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for m in _DURATION_PART_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def resolve_callable(ref: Any) -> Callable[..., Any]:
    """
    Resolve an iteration or lifecycle reference.

    Accepts a callable or a "package.module:function" string.
    """
    if callable(ref):
        return ref
    if not isinstance(ref, str) or ":" not in ref:
        raise ValueError(f"Expected a callable or 'module:function' reference, got {ref!r}")
    mod_name, attr = ref.split(":", 1)
    try:
        module = importlib.import_module(mod_name)
    except ImportError as exc:
        raise ValueError(f"Cannot import module '{mod_name}' for {ref!r}: {exc}") from exc
    target = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise ValueError(f"'{attr}' not found in module '{mod_name}'")
    if not callable(target):
        raise ValueError(f"{ref!r} does not reference a callable")
    return target


def callable_name(fn: Callable[..., Any]) -> str:
    module = getattr(fn, "__module__", None) or "?"
    name = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or repr(fn)
    return f"{module}:{name}"


class ExecutorType(str, Enum):
    """Supported scenario executors."""

    CONSTANT_ARRIVAL_RATE = "constant-arrival-rate"


class ExhaustionPolicy(str, Enum):
    """What the scheduler does when a start is due and no VU is free."""

    DROP = "drop"
    BLOCK = "block"


class ScenarioConfig(BaseModel):
    """Schedule parameters and iteration function for one named scenario."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    name: str = Field(..., min_length=1)
    executor: ExecutorType = ExecutorType.CONSTANT_ARRIVAL_RATE
    rate: float = Field(..., gt=0, description="Iterations started per time_unit")
    time_unit: float = Field(1.0, alias="timeUnit", description="Seconds per rate unit")
    duration: float = Field(..., description="Seconds during which starts are issued")
    pre_allocated_vus: int = Field(..., ge=0, alias="preAllocatedVUs")
    max_vus: Optional[int] = Field(None, ge=1, alias="maxVUs")
    exec_fn: Callable[..., Any] = Field(..., alias="exec")
    start_time: float = Field(0.0, alias="startTime")
    graceful_stop: float = Field(30.0, alias="gracefulStop")
    exhaustion_policy: ExhaustionPolicy = Field(ExhaustionPolicy.DROP, alias="exhaustionPolicy")
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("time_unit", "duration", "start_time", "graceful_stop", mode="before")
    @classmethod
    def _parse_durations(cls, v: Any) -> float:
        return parse_duration(v)

    @field_validator("time_unit", "duration")
    @classmethod
    def _positive_duration(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("start_time", "graceful_stop")
    @classmethod
    def _non_negative_duration(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("exec_fn", mode="before")
    @classmethod
    def _resolve_exec(cls, v: Any) -> Callable[..., Any]:
        return resolve_callable(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _stringify_tags(cls, v: Any) -> Dict[str, str]:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("tags must be a mapping")
        return {str(k): str(val) for k, val in v.items()}

    @model_validator(mode="after")
    def _check_vus(self) -> "ScenarioConfig":
        max_vus = self.max_vus if self.max_vus is not None else self.pre_allocated_vus
        if max_vus < 1:
            raise ValueError("a scenario needs at least one VU (set maxVUs or preAllocatedVUs)")
        if self.pre_allocated_vus > max_vus:
            raise ValueError(
                f"preAllocatedVUs ({self.pre_allocated_vus}) must not exceed maxVUs ({max_vus})"
            )
        if self.max_vus is None:
            object.__setattr__(self, "max_vus", max_vus)
        if "scenario" in self.tags and self.tags["scenario"] != self.name:
            raise ValueError("the 'scenario' tag is reserved for the scenario name")
        return self

    @property
    def interval(self) -> float:
        """Seconds between two consecutive starts."""
        return self.time_unit / self.rate

    @property
    def expected_starts(self) -> int:
        """Number of ticks that fall inside [0, duration)."""
        return max(int(math.ceil(self.duration * self.rate / self.time_unit - 1e-9)), 0)

    @property
    def exec_name(self) -> str:
        return callable_name(self.exec_fn)


class ThresholdConfig(BaseModel):
    """One threshold expression with its abort options."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    threshold: str
    abort_on_fail: bool = Field(False, alias="abortOnFail")
    delay_abort_eval: float = Field(0.0, alias="delayAbortEval")

    @field_validator("threshold")
    @classmethod
    def _check_expression(cls, v: str) -> str:
        parse_expression(v)
        return v.strip()

    @field_validator("delay_abort_eval", mode="before")
    @classmethod
    def _parse_delay(cls, v: Any) -> float:
        return parse_duration(v)


class RunConfig(BaseModel):
    """Complete declaration of a run."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    scenarios: Dict[str, ScenarioConfig]
    thresholds: Dict[str, List[ThresholdConfig]] = Field(default_factory=dict)
    metrics: Dict[str, MetricKind] = Field(
        default_factory=dict, description="Custom metrics declared before the run starts"
    )
    setup: Optional[Callable[..., Any]] = None
    teardown: Optional[Callable[..., Any]] = None
    base_url: Optional[str] = Field(None, alias="baseUrl")
    http_timeout: float = Field(60.0, alias="httpTimeout")
    max_duration: Optional[float] = Field(None, alias="maxDuration")
    threshold_check_interval: float = Field(1.0, alias="thresholdCheckInterval")
    trend_relative_error: float = Field(0.01, gt=0, lt=0.5)

    @model_validator(mode="before")
    @classmethod
    def _inject_scenario_names(cls, values: Any) -> Any:
        if isinstance(values, dict) and isinstance(values.get("scenarios"), dict):
            scenarios: Dict[str, Any] = {}
            for key, entry in values["scenarios"].items():
                if isinstance(entry, dict):
                    entry = dict(entry)
                    entry.setdefault("name", key)
                elif isinstance(entry, ScenarioConfig) and entry.name != key:
                    raise ValueError(f"scenario key '{key}' does not match name '{entry.name}'")
                scenarios[key] = entry
            values = {**values, "scenarios": scenarios}
        return values

    @field_validator("scenarios")
    @classmethod
    def _non_empty(cls, v: Dict[str, ScenarioConfig]) -> Dict[str, ScenarioConfig]:
        if not v:
            raise ValueError("at least one scenario is required")
        return v

    @field_validator("thresholds", mode="before")
    @classmethod
    def _coerce_thresholds(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("thresholds must map metric selectors to expression lists")
        out: Dict[str, List[Any]] = {}
        for selector, items in v.items():
            parse_selector(selector)
            if isinstance(items, (str, dict, ThresholdConfig)):
                items = [items]
            out[selector] = [{"threshold": i} if isinstance(i, str) else i for i in items]
        return out

    @field_validator("setup", "teardown", mode="before")
    @classmethod
    def _resolve_hooks(cls, v: Any) -> Any:
        return None if v is None else resolve_callable(v)

    @field_validator("http_timeout", "threshold_check_interval", mode="before")
    @classmethod
    def _parse_positive_durations(cls, v: Any) -> float:
        seconds = parse_duration(v)
        if seconds <= 0:
            raise ValueError("must be > 0")
        return seconds

    @field_validator("max_duration", mode="before")
    @classmethod
    def _parse_max_duration(cls, v: Any) -> Optional[float]:
        if v is None:
            return None
        seconds = parse_duration(v)
        if seconds <= 0:
            raise ValueError("must be > 0")
        return seconds

    def threshold_count(self) -> int:
        return sum(len(items) for items in self.thresholds.values())

    def describe(self) -> Dict[str, Any]:
        """JSON-friendly summary of the configuration for reports."""
        return {
            "scenarios": {
                name: {
                    "executor": sc.executor.value,
                    "rate": sc.rate,
                    "time_unit": sc.time_unit,
                    "duration": sc.duration,
                    "pre_allocated_vus": sc.pre_allocated_vus,
                    "max_vus": sc.max_vus,
                    "exec": sc.exec_name,
                    "start_time": sc.start_time,
                    "graceful_stop": sc.graceful_stop,
                    "exhaustion_policy": sc.exhaustion_policy.value,
                }
                for name, sc in self.scenarios.items()
            },
            "thresholds": {
                sel: [t.threshold for t in items] for sel, items in self.thresholds.items()
            },
            "base_url": self.base_url,
        }


def build_run_config(data: Union[Dict[str, Any], RunConfig], **overrides: Any) -> RunConfig:
    """
    Validate a raw mapping into a RunConfig.

    Any validation problem is re-raised as ConfigError so callers only need to
    handle one exception type before the run starts.
    """
    if isinstance(data, RunConfig) and not overrides:
        return data
    raw = data.model_dump(by_alias=False) if isinstance(data, RunConfig) else dict(data or {})
    for key, value in overrides.items():
        if value is None:
            continue
        field = RunConfig.model_fields.get(key)
        if field is not None and field.alias:
            raw.pop(field.alias, None)
        raw[key] = value
    try:
        return RunConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid run configuration: {exc}") from exc


def load_run_config(path: Union[str, Path], **overrides: Any) -> RunConfig:
    """
    Load a RunConfig from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigError: If the YAML cannot be parsed or does not validate.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Run configuration not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Cannot parse {p}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{p} must contain a mapping at the top level")
    # Accept a k6-style top-level `options:` block.
    if "options" in data and "scenarios" not in data:
        data = dict(data["options"] or {})
    return build_run_config(data, **overrides)


__all__ = [
    "ExecutorType",
    "ExhaustionPolicy",
    "RunConfig",
    "ScenarioConfig",
    "ThresholdConfig",
    "build_run_config",
    "callable_name",
    "load_run_config",
    "parse_duration",
    "resolve_callable",
]
