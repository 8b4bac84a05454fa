"""Loguru sink setup shared by the command-line scripts."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Mapping

from loguru import logger


def configure_logging(logging_config: Mapping[str, Any] | None) -> None:
    """Replace the default stderr sink with the configured level and optional file sink."""
    cfg = dict(logging_config or {})
    level = str(cfg.get("level", "INFO")).upper()
    logger.remove()
    logger.add(sys.stderr, level=level)

    log_file = cfg.get("file")
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(path, level=level, rotation=cfg.get("rotation", "50 MB"))
        logger.debug("Logging to {}", path)
