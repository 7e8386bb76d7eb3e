import json

from loadbench_core.cli import EXIT_CONFIG_ERROR, EXIT_OK, EXIT_THRESHOLDS_FAILED, main

CONFIG_TEMPLATE = """\
options:
  scenarios:
    main:
      executor: constant-arrival-rate
      rate: 20
      timeUnit: 1s
      duration: 200ms
      preAllocatedVUs: 2
      maxVUs: 4
      exec: "{exec}"
  thresholds:
    iteration_failed: ["rate<0.01"]
"""


def _write_config(tmp_path, exec_ref):
    path = tmp_path / "run.yaml"
    path.write_text(CONFIG_TEMPLATE.format(exec=exec_ref), encoding="utf-8")
    return path


def test_list_prints_bundled_workloads(capsys):
    assert main(["list"]) == EXIT_OK
    assert "item_store" in capsys.readouterr().out.split()


def test_passing_run_exits_zero_and_writes_report(tmp_path, capsys):
    # `id` accepts the iteration context and returns immediately.
    config = _write_config(tmp_path, "builtins:id")
    out = tmp_path / "reports" / "run.json"

    assert main(["run", str(config), "--out", str(out), "--log-level", "WARNING"]) == EXIT_OK
    assert "PASSED" in capsys.readouterr().out

    report = json.loads(out.read_text(encoding="utf-8"))
    assert report["passed"] is True
    assert report["scenarios"]["main"]["started"] == 4


def test_failed_threshold_exits_99(tmp_path, capsys):
    # `len` raises TypeError on the context, so every iteration fails.
    config = _write_config(tmp_path, "builtins:len")
    assert main(["run", str(config), "--log-level", "ERROR"]) == EXIT_THRESHOLDS_FAILED
    assert "FAILED" in capsys.readouterr().out


def test_config_errors_exit_2(tmp_path, capsys):
    bad_exec = _write_config(tmp_path, "no_such_module:fn")
    assert main(["run", str(bad_exec)]) == EXIT_CONFIG_ERROR
    assert "[ERROR]" in capsys.readouterr().err

    assert main(["run", "no_such_workload"]) == EXIT_CONFIG_ERROR
    assert main(["run", str(tmp_path / "missing.yaml")]) == EXIT_CONFIG_ERROR
    assert main(["run", "item_store", "--log-level", "LOUD"]) == EXIT_CONFIG_ERROR
