from __future__ import annotations

import logging
import sys
from typing import Any


LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")


def _normalize_log_level(value: Any, default: str = "info") -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return default


def configure_logging(logger: logging.Logger, level: Any, *, default: str = "info") -> None:
    normalized = _normalize_log_level(level, default)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    logger.propagate = False
