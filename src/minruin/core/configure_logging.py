# src/minruin/core/configure_logging.py

import sys

from loguru import logger
from omegaconf import DictConfig

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

SHORT_FORMAT = "<level>{level:8}</level> | <level>{message}</level>\n{exception}"
FULL_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level:8}</level> | "
    "<cyan>{process.id}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>\n{exception}"
)

_current_level: str | None = None


def current_log_level() -> str | None:
    """Level set by the last configure_logging call in this process, if any."""
    return _current_level


def _format_for(level: str):
    verbose = level in {"DEBUG", "TRACE"}

    def formatter(record):
        if not verbose and record["level"].name in {"INFO", "SUCCESS"}:
            return SHORT_FORMAT
        return FULL_FORMAT

    return formatter


def configure_logging(log_level: "str | DictConfig | None" = "INFO"):
    """
    Replace the loguru handlers with one stderr sink at ``log_level``.

    INFO and SUCCESS records print in a short format unless the level is
    DEBUG or TRACE; everything else gets timestamp, process id and source.
    A composed config is accepted and read at ``logging.level``. ``None``
    or an empty level leaves logging untouched.

    Worker processes call this through the pool initializer, so the sink
    is always bound to the stderr of the calling process.
    """
    global _current_level

    if isinstance(log_level, DictConfig):
        log_level = log_level.get("logging", {}).get("level", "INFO")
    if not log_level:
        return

    level = str(log_level).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level}")

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=_format_for(level),
        backtrace=level == "TRACE",
        diagnose=level == "TRACE",
    )
    _current_level = level

    logger.debug("Loguru configured (level={})", level)
