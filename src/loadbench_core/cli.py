"""
Command-line entry point.

    loadbench run CONFIG [--base-url URL] [--out report.json] [--log-level LEVEL]
    loadbench list

CONFIG is a YAML file or the name of a bundled workload. Exit codes:
0 when every threshold passed, 99 when a threshold failed (or the run could
not complete), 2 on configuration errors.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .benchmarking.engine.core import Engine
from .config import RunConfig, load_run_config
from .errors import ConfigError
from .logging_config import setup_logging
from .workloads import available_workloads, load_workload

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_THRESHOLDS_FAILED = 99


def _load(target: str, base_url: Optional[str]) -> RunConfig:
    path = Path(target)
    if path.suffix in (".yaml", ".yml") or path.exists():
        return load_run_config(path, base_url=base_url)
    return load_workload(target, base_url=base_url)


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="loadbench", description="Open-model load generator")
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a workload and evaluate its thresholds")
    run.add_argument("config", help="YAML file or bundled workload name")
    run.add_argument("--base-url", default=None, help="Override the target base URL")
    run.add_argument("--out", default=None, help="Write the JSON run report to this path")
    run.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")

    sub.add_parser("list", help="List bundled workloads")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.command == "list":
        for name in available_workloads():
            print(name)
        return EXIT_OK

    try:
        setup_logging(args.log_level)
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        # ConfigError is a ValueError; so is an unknown workload name.
        config = _load(args.config, args.base_url)
    except (ValueError, FileNotFoundError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    try:
        report = asyncio.run(Engine(config).run())
    except ConfigError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(report.to_json(), encoding="utf-8")
        logger.info("Report written to %s", out)

    for line in report.summary_lines():
        print(line)
    return EXIT_OK if report.passed else EXIT_THRESHOLDS_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
