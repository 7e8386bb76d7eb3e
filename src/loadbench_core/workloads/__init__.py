from __future__ import annotations

from pathlib import Path
from typing import Any, List

from ..config import RunConfig, load_run_config


def _workloads_dir() -> Path:
    """Bundled workload YAML files live next to this module."""
    return Path(__file__).resolve().parent


def available_workloads() -> List[str]:
    return sorted(p.stem for p in _workloads_dir().glob("*.yaml"))


def workload_path(name: str) -> Path:
    """
    Path of a bundled workload definition.

    Raises:
        ValueError: If no workload of that name is bundled.
    """
    path = _workloads_dir() / f"{name}.yaml"
    if not path.exists():
        raise ValueError(f"Unknown workload '{name}'; available: {available_workloads()}")
    return path


def load_workload(name: str, **overrides: Any) -> RunConfig:
    """Load a bundled workload as a validated RunConfig (e.g. `load_workload("item_store")`)."""
    return load_run_config(workload_path(name), **overrides)


__all__: List[str] = ["available_workloads", "load_workload", "workload_path"]
