"""Threshold parsing and evaluation against a metric registry."""

import pytest

from loadbench_core.benchmarking.metrics import MetricRegistry
from loadbench_core.benchmarking.thresholds import (
    Threshold,
    ThresholdEvaluator,
    ThresholdStatus,
    parse_expression,
    parse_selector,
)
from loadbench_core.config import ThresholdConfig
from loadbench_core.errors import ConfigError


# -------------------------
# Parsing
# -------------------------
def test_parse_selector_with_and_without_tags():
    plain = parse_selector("http_req_duration")
    assert plain.name == "http_req_duration"
    assert plain.tag_filter == {}

    tagged = parse_selector("read_request_duration{scenario:read_scenario, method=GET}")
    assert tagged.name == "read_request_duration"
    assert tagged.tag_filter == {"scenario": "read_scenario", "method": "GET"}
    assert str(tagged) == "read_request_duration{method:GET,scenario:read_scenario}"
    assert tagged.matches({"scenario": "read_scenario", "method": "GET", "status": "200"})
    assert not tagged.matches({"scenario": "read_scenario"})


@pytest.mark.parametrize(
    "text", ["", "   ", "9lives", "m{}", "m{scenario}", "m{a:1,a:2}", "m{scenario:x"]
)
def test_parse_selector_rejects_malformed(text):
    with pytest.raises(ConfigError):
        parse_selector(text)


@pytest.mark.parametrize(
    "text,stat,op,value,pct",
    [
        ("p(95)<200", "p", "<", 200.0, 95.0),
        ("p(99.9) <= 1.5e3", "p", "<=", 1500.0, 99.9),
        ("avg<50", "avg", "<", 50.0, None),
        ("rate<0.01", "rate", "<", 0.01, None),
        ("rate>0.5", "rate", ">", 0.5, None),
        ("count>=100", "count", ">=", 100.0, None),
        ("med != 3", "med", "!=", 3.0, None),
    ],
)
def test_parse_expression(text, stat, op, value, pct):
    expr = parse_expression(text)
    assert expr.stat == stat
    assert expr.op == op
    assert expr.value == pytest.approx(value)
    assert expr.percentile == pct


@pytest.mark.parametrize("text", ["", "p(95)", "p(101)<1", "p95<200", "avg << 3", "stddev<1", "rate<x"])
def test_parse_expression_rejects_malformed(text):
    with pytest.raises(ConfigError):
        parse_expression(text)


# -------------------------
# Evaluation
# -------------------------
def _registry_with_latencies():
    reg = MetricRegistry()
    read = reg.scoped(scenario="read_scenario")
    write = reg.scoped(scenario="write_scenario")
    for v in range(1, 101):
        read.add("http_req_duration", float(v))
    for v in (300.0, 400.0):
        write.add("http_req_duration", v)
    return reg


def test_evaluate_pass_fail_with_tag_filters():
    reg = _registry_with_latencies()
    evaluator = ThresholdEvaluator(
        [
            Threshold.parse("http_req_duration{scenario:read_scenario}", "p(95)<200"),
            Threshold.parse("http_req_duration{scenario:write_scenario}", "p(95)<200"),
            Threshold.parse("http_req_duration", "max<=400"),
        ]
    )
    results = evaluator.evaluate(reg)
    assert [r.status for r in results] == [
        ThresholdStatus.passed,
        ThresholdStatus.failed,
        ThresholdStatus.passed,
    ]
    assert results[0].observed == pytest.approx(95, rel=0.02)
    assert results[1].observed == pytest.approx(395, rel=0.02)
    assert results[0].tags == {"scenario": "read_scenario"}
    assert ThresholdEvaluator.verdict(results) is False
    assert ThresholdEvaluator.verdict(results[::2]) is True


def test_no_observations_is_no_data_and_fails_verdict():
    reg = MetricRegistry()
    reg.rate("cache_hit_rate")
    evaluator = ThresholdEvaluator(
        [
            Threshold.parse("cache_hit_rate{scenario:read_scenario}", "rate>0.5"),
            Threshold.parse("never_recorded", "count>0"),
        ]
    )
    results = evaluator.evaluate(reg)
    assert all(r.status is ThresholdStatus.no_data for r in results)
    assert all(r.observed is None for r in results)
    assert ThresholdEvaluator.verdict(results) is False


def test_empty_threshold_list_passes():
    assert ThresholdEvaluator.verdict(ThresholdEvaluator().evaluate(MetricRegistry())) is True


def test_rate_thresholds():
    reg = MetricRegistry()
    metrics = reg.scoped(scenario="read_scenario")
    for i in range(200):
        metrics.add("iteration_failed", i == 0)  # 0.5% failures
    evaluator = ThresholdEvaluator(
        [
            Threshold.parse("iteration_failed", "rate<0.01"),
            Threshold.parse("iteration_failed{scenario:read_scenario}", "rate<0.001"),
        ]
    )
    passed, failed = evaluator.evaluate(reg)
    assert passed.status is ThresholdStatus.passed
    assert passed.observed == pytest.approx(0.005)
    assert failed.status is ThresholdStatus.failed


def test_counter_rate_uses_elapsed_time():
    reg = MetricRegistry()
    reg.scoped(scenario="s").add("iterations", 30)
    evaluator = ThresholdEvaluator([Threshold.parse("iterations", "rate>=10")])
    [result] = evaluator.evaluate(reg, elapsed_s=2.0)
    assert result.observed == pytest.approx(15.0)
    assert result.passed


def test_validate_kinds_rejects_stat_not_defined_for_metric():
    reg = MetricRegistry()
    evaluator = ThresholdEvaluator([Threshold.parse("iteration_failed", "p(95)<1")])
    with pytest.raises(ConfigError):
        evaluator.validate_kinds(reg)


def test_stat_mismatch_on_late_declared_metric_fails():
    reg = MetricRegistry()
    evaluator = ThresholdEvaluator([Threshold.parse("custom", "p(95)<1")])
    evaluator.validate_kinds(reg)  # unknown yet, accepted
    reg.scoped(scenario="s").rate("custom").add(True)
    [result] = evaluator.evaluate(reg)
    assert result.status is ThresholdStatus.failed
    assert "not defined" in result.message


def test_from_config_and_abort_candidates():
    evaluator = ThresholdEvaluator.from_config(
        {
            "iteration_failed": [
                ThresholdConfig(threshold="rate<0.1", abortOnFail=True, delayAbortEval="5s")
            ],
            "http_req_duration": ["p(95)<200"],
        }
    )
    assert evaluator.has_abort_thresholds
    reg = MetricRegistry()
    for _ in range(10):
        reg.scoped(scenario="s").add("iteration_failed", True)

    # Before the delay nothing aborts; afterwards the failing one does.
    assert evaluator.abort_candidates(reg, run_elapsed_s=1.0) == []
    [candidate] = evaluator.abort_candidates(reg, run_elapsed_s=6.0)
    assert candidate.selector == "iteration_failed"
    assert candidate.abort_on_fail is True
    assert candidate.status is ThresholdStatus.failed


def test_no_data_never_aborts():
    evaluator = ThresholdEvaluator([Threshold.parse("iteration_failed", "rate<0.1", abort_on_fail=True)])
    assert evaluator.abort_candidates(MetricRegistry(), run_elapsed_s=100.0) == []


def test_single_slow_outlier_fails_latency_threshold():
    reg = MetricRegistry()
    metrics = reg.scoped(scenario="main")
    for v in [1.0] * 9 + [1000.0]:
        metrics.add("iteration_duration", v)

    [result] = ThresholdEvaluator([Threshold.parse("iteration_duration", "p(95)<100")]).evaluate(reg)
    assert result.status is ThresholdStatus.failed
    assert result.observed == pytest.approx(550.45, rel=0.02)
