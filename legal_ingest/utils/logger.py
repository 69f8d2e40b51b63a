"""Structured logging setup using Loguru."""
from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message}"


def setup_logger(
    log_level: str = "INFO",
    log_file: str | None = "logs/pipeline.log",
    serialize: bool = False,
) -> None:
    """
    Configure loguru for the CLI and the worker/orchestrator server.

    - Console: coloured, human-readable, always on
    - File: rotating and compressed; omitted when log_file is None
    - serialize=True writes the file sink as JSON lines for log shipping
    """
    logger.remove()
    logger.add(sys.stderr, level=log_level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=log_level,
            format=FILE_FORMAT,
            serialize=serialize,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
        )

    logger.debug(f"[Logger] level={log_level} | file={log_file} | json={serialize}")
