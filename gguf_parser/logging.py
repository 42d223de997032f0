# gguf_parser/logging.py
"""
Logging setup using Loguru.

The library itself only emits records; ``gguf_parser`` is disabled on import
and enabled here, so embedding applications opt in explicitly.

- Debug / quiet toggles
- Human-readable console formatting, thread-safe sink (remote reads log from
  a background fetch thread)
"""
from __future__ import annotations

import sys

from loguru import logger


def configure_logging(*, debug: bool = False, quiet: bool = False) -> None:
    """Configure loguru logging sinks.

    Args:
        debug: Enable verbose debug logging (decode timings, range requests).
        quiet: Only report warnings and errors. Ignored when ``debug`` is set.
    """
    logger.remove()
    level = "DEBUG" if debug else ("WARNING" if quiet else "INFO")
    fmt = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
        "| <level>{level: <8}</level> "
        "| pid={process} tid={thread} "
        "<cyan>{module}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> "
        "- <level>{message}</level>"
    )
    logger.add(sys.stderr, level=level, format=fmt, enqueue=True, backtrace=debug, diagnose=debug)
    logger.enable("gguf_parser")
