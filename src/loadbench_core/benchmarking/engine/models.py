"""
Run output models.

Pydantic models for the machine-readable result of a run. Threshold results
and per-scenario iteration outcomes are reported side by side: a scenario can
have a non-zero iteration failure rate while every threshold still passes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..thresholds.evaluator import ThresholdResult, ThresholdStatus


class RunStatus(str, Enum):
    completed = "completed"
    aborted = "aborted"
    failed = "failed"


class ScenarioSummary(BaseModel):
    name: str
    expected_starts: int = Field(0, ge=0, description="Ticks due in a full-length window")
    started: int = Field(0, ge=0)
    dropped: int = Field(0, ge=0)
    completed: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    incomplete: int = Field(0, ge=0)
    failure_rate: Optional[float] = Field(None, ge=0.0, le=1.0)
    pre_allocated_vus: int = Field(0, ge=0)
    max_vus: int = Field(0, ge=0)
    allocated_vus: int = Field(0, ge=0)
    peak_vus: int = Field(0, ge=0)

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "examples": [
                {
                    "name": "read_scenario",
                    "expected_starts": 54000,
                    "started": 53991,
                    "dropped": 9,
                    "completed": 53991,
                    "failed": 12,
                    "incomplete": 0,
                    "failure_rate": 0.00022,
                    "pre_allocated_vus": 100,
                    "max_vus": 500,
                    "allocated_vus": 131,
                    "peak_vus": 131,
                }
            ]
        },
    )


class RunReport(BaseModel):
    """Everything a caller needs to judge a run: verdict, thresholds, scenarios, metrics."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    run_id: str
    status: RunStatus
    passed: bool
    started_at: datetime
    finished_at: datetime
    duration_s: float = Field(0.0, ge=0.0)
    abort_reason: Optional[str] = None
    error: Optional[str] = None
    thresholds: List[ThresholdResult] = Field(default_factory=list)
    scenarios: Dict[str, ScenarioSummary] = Field(default_factory=dict)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def failed_thresholds(self) -> List[ThresholdResult]:
        return [t for t in self.thresholds if t.status is not ThresholdStatus.passed]

    def summary_lines(self) -> List[str]:
        """Short human-readable summary, one line per threshold and scenario."""
        verdict = "PASSED" if self.passed else "FAILED"
        lines = [f"run {self.run_id}: {verdict} ({self.status.value}, {self.duration_s:.2f}s)"]
        if self.abort_reason:
            lines.append(f"  aborted: {self.abort_reason}")
        if self.error:
            lines.append(f"  error: {self.error}")
        for t in self.thresholds:
            mark = "ok" if t.passed else "FAIL"
            observed = "n/a" if t.observed is None else f"{t.observed:.6g}"
            lines.append(f"  [{mark}] {t.selector}: {t.expression} (observed {observed}, {t.status.value})")
        for s in self.scenarios.values():
            rate = "n/a" if s.failure_rate is None else f"{s.failure_rate:.2%}"
            lines.append(
                f"  {s.name}: started={s.started} dropped={s.dropped} failed={s.failed} "
                f"incomplete={s.incomplete} failure_rate={rate} peak_vus={s.peak_vus}/{s.max_vus}"
            )
        return lines

    def to_json(self, indent: Optional[int] = 2) -> str:
        return self.model_dump_json(indent=indent)
