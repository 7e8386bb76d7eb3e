from __future__ import annotations

import logging
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure root logging for command-line runs. Libraries never call this."""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level!r}")
        level = resolved
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    # Per-request debug lines from httpx are noise at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
